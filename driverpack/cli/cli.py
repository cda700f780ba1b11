"""Main CLI entry point for DriverPack Fetcher.

This module provides the ``driverpack`` command: run a vendor script with live
output, and inspect or seed the configuration file.
"""

import concurrent.futures
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from driverpack import __version__
from driverpack.core.config import (
    ConfigStore,
    DriverPackConfig,
    Vendor,
    default_config,
    resolve_config_path,
    save_config,
)
from driverpack.core.coordinator import RunCoordinator
from driverpack.core.errors import (
    DriverPackError,
    LaunchError,
    RunCancelledError,
    RuntimeFailure,
)
from driverpack.core.models import RunRequest, RunResult
from driverpack.core.scripts import ScriptMaterializer
from driverpack.utils.log import enable_file_logging, get_logger
from driverpack.utils.platform import user_config_path

console = Console()
logger = get_logger()

EXIT_CANCELLED = 130
_RESULT_POLL_SECONDS = 0.2

_VENDOR_CHOICE = click.Choice([vendor.value for vendor in Vendor], case_sensitive=False)


def _config_override(ctx: click.Context) -> Optional[Path]:
    obj: Dict[str, Any] = ctx.find_root().obj or {}
    return obj.get("config_path")


def _open_store(ctx: click.Context) -> ConfigStore:
    """Load the configuration named by --config, or the resolved default."""
    store = ConfigStore(path=_config_override(ctx))
    try:
        store.load()
    except DriverPackError as exc:
        raise click.ClickException(str(exc)) from exc
    return store


def _print_line(line: str) -> None:
    console.print(line, markup=False, highlight=False, soft_wrap=True)


def _exit_status(code: Optional[int]) -> int:
    # Signal deaths report negative codes; shells only carry 1..255.
    if code is None or not 0 < code < 256:
        return 1
    return code


def _wait_for_run(
    coordinator: RunCoordinator, future: "concurrent.futures.Future[RunResult]"
) -> RunResult:
    """Block until the run finishes; Ctrl+C cancels it, a second Ctrl+C abandons it."""
    interrupted = False
    while True:
        try:
            return future.result(timeout=_RESULT_POLL_SECONDS)
        except concurrent.futures.TimeoutError:
            continue
        except KeyboardInterrupt:
            if interrupted:
                future.cancel()
                raise
            interrupted = True
            console.print("\n[yellow]Cancelling run (Ctrl+C again to abort)...[/yellow]")
            logger.info("[cli] Run cancellation requested from keyboard")
            coordinator.cancel()


@click.group()
@click.version_option(version=__version__, prog_name="driverpack")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file to use instead of the per-user/bundled one",
)
@click.option("--verbose", is_flag=True, help="Verbose output")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool) -> None:
    """DriverPack Fetcher - download and stage vendor driver packs"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    if verbose:
        logger.set_console_level(logging.DEBUG)

    logger.debug(
        "[cli] Starting CLI invocation",
        extra={
            "command": ctx.invoked_subcommand,
            "config_path": str(config_path) if config_path else None,
        },
    )


def _start_file_logging(command: str) -> Optional[Path]:
    """Attach the daily log file; only long-running commands write one."""
    try:
        log_file = enable_file_logging()
    except OSError as exc:
        logger.debug("[cli] File logging unavailable: %s: %s", type(exc).__name__, exc)
        return None
    logger.info("[cli] Command started", extra={"command": command, "log_file": str(log_file)})
    return log_file


@cli.command(name="run")
@click.argument("vendor", type=_VENDOR_CHOICE)
@click.option("--model", "model_name", help="Single model to fetch (default: all models)")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(dir_okay=False),
    help="CSV file listing the models to fetch",
)
@click.option("--firmware/--no-firmware", default=False, help="Also fetch firmware updates")
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Kill the script after this many seconds",
)
@click.option(
    "--scripts-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory holding the vendor scripts (default: bundled scripts)",
)
@click.pass_context
def run_cmd(
    ctx: click.Context,
    vendor: str,
    model_name: Optional[str],
    csv_path: Optional[str],
    firmware: bool,
    timeout: Optional[float],
    scripts_dir: Optional[Path],
) -> None:
    """Run the driver script for VENDOR and stream its output"""
    _start_file_logging("run")
    store = _open_store(ctx)
    request = RunRequest(
        vendor=Vendor(vendor),
        model_name=model_name,
        csv_path=csv_path,
        include_firmware=firmware,
    )
    coordinator = RunCoordinator(
        store, ScriptMaterializer(resource_root=scripts_dir), timeout=timeout
    )

    console.print(f"[bold]Running {request.vendor.value} driver script[/bold]")
    try:
        result = _wait_for_run(coordinator, coordinator.submit(request, _print_line))
    except DriverPackError as exc:
        raise click.ClickException(str(exc)) from exc
    except KeyboardInterrupt:
        console.print("[yellow]Run abandoned[/yellow]")
        ctx.exit(EXIT_CANCELLED)

    try:
        result.raise_for_state()
    except RuntimeFailure as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        ctx.exit(_exit_status(exc.exit_code))
    except RunCancelledError as exc:
        console.print(f"[yellow]{escape(str(exc))}[/yellow]")
        if not result.termination_confirmed:
            console.print("[red]The script process may still be running.[/red]")
        ctx.exit(EXIT_CANCELLED)
    except LaunchError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(
        f"[green]Script completed successfully[/green] [dim]({result.duration_ms / 1000:.1f}s)[/dim]"
    )


@cli.group(name="config")
def config_group() -> None:
    """Inspect and manage the configuration file"""


def _profile_table(config: DriverPackConfig, vendor: Optional[Vendor]) -> Table:
    table = Table(title="DriverPack configuration", show_lines=False)
    table.add_column("Vendor", style="cyan", no_wrap=True)
    table.add_column("Setting", style="bold")
    table.add_column("Value", overflow="fold")
    for current, profile in config.profiles().items():
        if vendor is not None and current is not vendor:
            continue
        for key, value in profile.model_dump(by_alias=True).items():
            table.add_row(current.value, key, "" if value is None else str(value))
    return table


@config_group.command(name="show")
@click.option("--vendor", type=_VENDOR_CHOICE, default=None, help="Only show one vendor")
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON document")
@click.pass_context
def config_show_cmd(ctx: click.Context, vendor: Optional[str], as_json: bool) -> None:
    """Show the active configuration"""
    store = _open_store(ctx)
    selected = Vendor(vendor) if vendor else None
    if selected is not None:
        try:
            profile = store.profile(selected)
        except DriverPackError as exc:
            raise click.ClickException(str(exc)) from exc
        if as_json:
            click.echo(profile.model_dump_json(indent=2, by_alias=True, exclude_none=True))
            return
    elif as_json:
        click.echo(store.snapshot.model_dump_json(indent=2, by_alias=True, exclude_none=True))
        return

    console.print(f"[dim]Loaded from {escape(str(store.path))}[/dim]")
    console.print(_profile_table(store.snapshot, selected))


@config_group.command(name="path")
@click.pass_context
def config_path_cmd(ctx: click.Context) -> None:
    """Print the configuration file that would be used"""
    override = _config_override(ctx)
    click.echo(str(override if override is not None else resolve_config_path()))


@config_group.command(name="init")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_context
def config_init_cmd(ctx: click.Context, force: bool) -> None:
    """Write the default configuration to the per-user location"""
    target = _config_override(ctx) or user_config_path()
    if target.exists() and not force:
        raise click.ClickException(f"{target} already exists. Use --force to overwrite it.")
    try:
        written = save_config(default_config(), target)
    except DriverPackError as exc:
        raise click.ClickException(str(exc)) from exc
    except OSError as exc:
        raise click.ClickException(f"Cannot write {target}: {exc}") from exc
    logger.info("[cli] Default configuration written", extra={"path": str(written)})
    console.print(f"[green]Wrote default configuration to {escape(str(written))}[/green]")


@config_group.command(name="watch")
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0.05),
    default=0.5,
    show_default=True,
    help="Seconds between change checks",
)
@click.option(
    "--duration",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop watching after this many seconds (default: until Ctrl+C)",
)
@click.pass_context
def config_watch_cmd(ctx: click.Context, poll_interval: float, duration: Optional[float]) -> None:
    """Reload the configuration whenever the file changes"""
    _start_file_logging("config watch")
    store = _open_store(ctx)

    def _on_change(config: DriverPackConfig) -> None:
        vendors = ", ".join(vendor.value for vendor in config.profiles()) or "none"
        console.print(f"[green]Configuration reloaded[/green] [dim](vendors: {vendors})[/dim]")

    def _on_error(exc: Exception) -> None:
        console.print(f"[red]Reload failed, keeping previous configuration: {escape(str(exc))}[/red]")

    watcher = store.watch(_on_change, _on_error, poll_interval=poll_interval)
    console.print(f"[bold]Watching {escape(str(watcher.path))}[/bold] [dim](Ctrl+C to stop)[/dim]")
    deadline = time.monotonic() + duration if duration else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(min(poll_interval, 0.5))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching[/yellow]")
    finally:
        store.close()


@cli.command(name="scripts")
@click.option(
    "--scripts-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory holding the vendor scripts (default: bundled scripts)",
)
def scripts_cmd(scripts_dir: Optional[Path]) -> None:
    """List the available vendor scripts"""
    names = ScriptMaterializer(resource_root=scripts_dir).available_scripts()
    if not names:
        console.print("[yellow]No vendor scripts available.[/yellow]")
        return
    for name in names:
        click.echo(name)


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(EXIT_CANCELLED)
    except SystemExit:
        raise
    except (RuntimeError, ValueError, OSError, DriverPackError) as e:
        console.print(f"[red]Fatal error: {escape(str(e))}[/red]")
        logger.warning(
            "[cli] Fatal error in main CLI entrypoint: %s: %s",
            type(e).__name__,
            e,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()

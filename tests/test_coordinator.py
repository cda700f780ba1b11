"""End-to-end tests for RunCoordinator with stub interpreters."""

import asyncio
import json
import os

import pytest

from driverpack.core.config import ConfigStore, Vendor
from driverpack.core.coordinator import RunCoordinator, RunPhase
from driverpack.core.errors import (
    ConfigNotFoundError,
    InvalidRunRequestError,
    ResourceNotFoundError,
    RunInProgressError,
)
from driverpack.core.models import RunRequest, RunState
from driverpack.core.scripts import ScriptMaterializer

pytestmark = pytest.mark.skipif(os.name != "posix", reason="stub interpreters rely on a shebang line")


def _config(executable, **overrides):
    dell = {
        "DriverScriptName": "Dell-Drivers.ps1",
        "DownloadPath": "/srv/dell",
        "NetworkPath": "/net/dell",
        "PowerShellExe": str(executable),
    }
    lenovo = {
        "DriverScriptName": "Lenovo-Drivers.ps1",
        "DownloadPath": "/srv/lenovo",
        "NetworkPath": "/net/lenovo",
        "PowerShellExe": str(executable),
    }
    dell.update(overrides)
    return {"Dell": dell, "Lenovo": lenovo}


@pytest.fixture
def make_coordinator(write_config, scripts_dir, scratch_dir):
    def _make(executable, **overrides):
        store = ConfigStore(write_config(_config(executable, **overrides)))
        store.load()
        materializer = ScriptMaterializer(scripts_dir, scratch_dir=scratch_dir)
        return RunCoordinator(store, materializer, kill_grace=5)

    return _make


def _report(lines):
    """The JSON line printed by the echo stub."""
    return json.loads(next(line for line in lines if line.startswith("{")))


@pytest.mark.asyncio
async def test_dell_run_succeeds(make_coordinator, echo_stub, scratch_dir):
    coordinator = make_coordinator(echo_stub)
    seen = []

    result = await coordinator.execute(RunRequest(vendor=Vendor.DELL), seen.append)

    assert result.state is RunState.SUCCESS
    assert seen == list(result.lines)
    report = _report(result.lines)
    assert report["args"][-1] == "/net/dell"
    assert "-IncludeFirmware" not in report["args"]
    assert report["bom"] is True
    assert not os.path.exists(report["script"])
    assert list(scratch_dir.iterdir()) == []
    assert coordinator.phase is RunPhase.CLEANED_UP
    assert not coordinator.in_flight
    assert coordinator.last_result is result


@pytest.mark.asyncio
async def test_lenovo_run_passes_config_path(make_coordinator, echo_stub):
    coordinator = make_coordinator(echo_stub)

    result = await coordinator.execute(RunRequest(vendor=Vendor.LENOVO, model_name="T14"))

    args = _report(result.lines)["args"]
    assert args[args.index("-ConfigPath") + 1] == str(coordinator.store.path)
    assert args[-2:] == ["-Option", "1"]


@pytest.mark.asyncio
async def test_output_is_streamed_during_the_streaming_phase(make_coordinator, echo_stub):
    coordinator = make_coordinator(echo_stub)
    phases = []

    await coordinator.execute(RunRequest(vendor=Vendor.DELL), lambda _line: phases.append(coordinator.phase))

    assert phases and set(phases) == {RunPhase.STREAMING}


@pytest.mark.asyncio
async def test_non_zero_exit_still_cleans_up(make_coordinator, echo_stub, scratch_dir, monkeypatch):
    monkeypatch.setenv("STUB_EXIT_CODE", "4")
    coordinator = make_coordinator(echo_stub)

    result = await coordinator.execute(RunRequest(vendor=Vendor.DELL, include_firmware=True))

    assert result.state is RunState.NON_ZERO_EXIT
    assert result.exit_code == 4
    assert _report(result.lines)["args"][-1] == "-IncludeFirmware"
    assert list(scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_model_and_csv_rejected_before_materialization(make_coordinator, echo_stub, scratch_dir):
    coordinator = make_coordinator(echo_stub)
    request = RunRequest(vendor=Vendor.LENOVO, model_name="T14", csv_path="/data/models.csv")
    seen = []

    with pytest.raises(InvalidRunRequestError):
        await coordinator.execute(request, seen.append)

    assert seen == []
    assert list(scratch_dir.iterdir()) == []
    assert coordinator.phase is RunPhase.CLEANED_UP
    assert not coordinator.in_flight


@pytest.mark.asyncio
async def test_missing_vendor_section(make_coordinator, echo_stub, scratch_dir):
    coordinator = make_coordinator(echo_stub)

    with pytest.raises(ConfigNotFoundError):
        await coordinator.execute(RunRequest(vendor=Vendor.HP))

    assert list(scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_missing_script_resource(make_coordinator, echo_stub, scratch_dir):
    coordinator = make_coordinator(echo_stub, DriverScriptName="Dell-Firmware.ps1")

    with pytest.raises(ResourceNotFoundError):
        await coordinator.execute(RunRequest(vendor=Vendor.DELL))

    assert list(scratch_dir.iterdir()) == []
    assert not coordinator.in_flight


@pytest.mark.asyncio
async def test_launch_failure_deletes_temp_script(make_coordinator, tmp_path, scratch_dir):
    coordinator = make_coordinator(tmp_path / "missing-pwsh")

    result = await coordinator.execute(RunRequest(vendor=Vendor.DELL))

    assert result.state is RunState.LAUNCH_FAILURE
    assert isinstance(result.error, OSError)
    assert list(scratch_dir.iterdir()) == []


def test_cancel_without_a_run_returns_false(make_coordinator, echo_stub):
    coordinator = make_coordinator(echo_stub)
    assert coordinator.phase is RunPhase.IDLE
    assert coordinator.cancel() is False


@pytest.mark.asyncio
async def test_cancel_mid_run(make_coordinator, sleeping_stub, scratch_dir):
    coordinator = make_coordinator(sleeping_stub)
    answers = []

    def _sink(line):
        if line == "ready":
            answers.append(coordinator.cancel())
            answers.append(coordinator.cancel())

    result = await asyncio.wait_for(coordinator.execute(RunRequest(vendor=Vendor.DELL), _sink), timeout=15)

    assert answers == [True, False]
    assert result.state is RunState.CANCELLED
    assert result.termination_confirmed
    assert list(scratch_dir.iterdir()) == []
    assert coordinator.cancel() is False


@pytest.mark.asyncio
async def test_second_run_is_rejected_while_one_is_in_flight(make_coordinator, sleeping_stub):
    coordinator = make_coordinator(sleeping_stub)
    ready = asyncio.Event()

    def _sink(line):
        if line == "ready":
            ready.set()

    first = asyncio.create_task(coordinator.execute(RunRequest(vendor=Vendor.DELL), _sink))
    await asyncio.wait_for(ready.wait(), timeout=10)
    try:
        assert coordinator.in_flight
        with pytest.raises(RunInProgressError):
            await coordinator.execute(RunRequest(vendor=Vendor.DELL))
    finally:
        coordinator.cancel()
    result = await asyncio.wait_for(first, timeout=15)

    assert result.state is RunState.CANCELLED


@pytest.mark.asyncio
async def test_task_cancellation_cleans_up(make_coordinator, sleeping_stub, scratch_dir):
    coordinator = make_coordinator(sleeping_stub)
    ready = asyncio.Event()
    late_lines = []

    def _sink(line):
        if ready.is_set():
            late_lines.append(line)
        ready.set()

    task = asyncio.create_task(coordinator.execute(RunRequest(vendor=Vendor.DELL), _sink))
    await asyncio.wait_for(ready.wait(), timeout=10)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert list(scratch_dir.iterdir()) == []
    assert late_lines == []
    assert not coordinator.in_flight


def test_submit_runs_on_background_loop(make_coordinator, echo_stub):
    coordinator = make_coordinator(echo_stub)

    future = coordinator.submit(RunRequest(vendor=Vendor.DELL))
    result = future.result(timeout=30)

    assert result.state is RunState.SUCCESS
    assert not coordinator.in_flight


@pytest.mark.asyncio
async def test_reload_during_run_does_not_change_its_arguments(make_coordinator, echo_stub, write_config):
    coordinator = make_coordinator(echo_stub)

    def _sink(line):
        if line == "starting":
            write_config(_config(echo_stub, NetworkPath="/net/elsewhere"))
            coordinator.store.reload()

    result = await coordinator.execute(RunRequest(vendor=Vendor.DELL), _sink)

    assert _report(result.lines)["args"][-1] == "/net/dell"
    assert coordinator.store.get(Vendor.DELL, "NetworkPath") == "/net/elsewhere"

"""Error types for DriverPack Fetcher.

Configuration, resource and request errors are raised before any process
exists. Launch, runtime and cancellation errors describe a finished run and are
produced by ``RunResult.raise_for_state()``.
"""

from __future__ import annotations

from typing import Optional, Sequence


class DriverPackError(Exception):
    """Base exception for all DriverPack Fetcher errors."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "An error occurred in DriverPack Fetcher"


class ConfigError(DriverPackError):
    """The configuration file is missing, unreadable or malformed."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ConfigNotFoundError(ConfigError, KeyError):
    """A vendor section or key could not be resolved."""

    def __init__(self, message: str, vendor: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.vendor = vendor
        self.key = key


class ResourceNotFoundError(DriverPackError, LookupError):
    """No bundled script payload matches the requested name."""

    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(message)
        self.name = name


class InvalidRunRequestError(DriverPackError, ValueError):
    """The run request sets both a model name and a CSV batch file."""


class RunInProgressError(DriverPackError, RuntimeError):
    """A coordinator was asked to start a run while another is in flight."""


class LaunchError(DriverPackError):
    """The script interpreter could not be started."""

    def __init__(self, message: str, os_error: Optional[OSError] = None) -> None:
        super().__init__(message)
        self.os_error = os_error


class RuntimeFailure(DriverPackError):
    """The script ran but exited with a non-zero code."""

    def __init__(self, message: str, exit_code: int, lines: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.lines = tuple(lines)


class RunCancelledError(DriverPackError):
    """The run was cancelled by the user or by the configured timeout."""

    def __init__(self, message: str, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


__all__ = [
    "DriverPackError",
    "ConfigError",
    "ConfigNotFoundError",
    "ResourceNotFoundError",
    "InvalidRunRequestError",
    "RunInProgressError",
    "LaunchError",
    "RuntimeFailure",
    "RunCancelledError",
]

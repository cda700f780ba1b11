"""Run request and run result types."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict

from driverpack.core.config import Vendor
from driverpack.core.errors import (
    InvalidRunRequestError,
    LaunchError,
    RunCancelledError,
    RuntimeFailure,
)


class RunRequest(BaseModel):
    """One user-initiated run of a vendor script.

    ``model_name`` and ``csv_path`` are mutually exclusive; with neither set
    the script processes all models. Empty strings count as unset.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    vendor: Vendor
    model_name: Optional[str] = None
    csv_path: Optional[str] = None
    include_firmware: bool = False

    @property
    def uses_csv(self) -> bool:
        return bool(self.csv_path)

    def check_scope(self) -> None:
        """Raise InvalidRunRequestError when both a model and a CSV file are given."""
        if self.model_name and self.csv_path:
            raise InvalidRunRequestError(
                "A run request may name a single model or a CSV batch file, not both "
                f"(model={self.model_name!r}, csv={self.csv_path!r})."
            )


class RunState(str, Enum):
    """Terminal state of a launched run."""

    SUCCESS = "success"
    NON_ZERO_EXIT = "non_zero_exit"
    LAUNCH_FAILURE = "launch_failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunResult:
    """Outcome of one external process run. Immutable once produced."""

    state: RunState
    exit_code: Optional[int] = None
    lines: Tuple[str, ...] = ()
    error: Optional[OSError] = None
    timed_out: bool = False
    # False when a kill was sent but the OS never reported the process gone.
    termination_confirmed: bool = True
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is RunState.SUCCESS

    @property
    def output(self) -> str:
        return "\n".join(self.lines)

    def raise_for_state(self) -> "RunResult":
        """Return self on success, otherwise raise the matching DriverPackError."""
        if self.state is RunState.SUCCESS:
            return self
        if self.state is RunState.NON_ZERO_EXIT:
            raise RuntimeFailure(
                f"Script exited with code {self.exit_code}.",
                exit_code=self.exit_code if self.exit_code is not None else -1,
                lines=self.lines,
            )
        if self.state is RunState.LAUNCH_FAILURE:
            raise LaunchError(
                f"Could not start script interpreter: {self.error}", os_error=self.error
            ) from self.error
        reason = "timed out" if self.timed_out else "was cancelled"
        raise RunCancelledError(f"Run {reason}.", timed_out=self.timed_out)


__all__ = ["RunRequest", "RunState", "RunResult"]

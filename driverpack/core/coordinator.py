"""End-to-end orchestration of one vendor script run.

Phases::

    idle -> resolving -> materializing -> launching -> streaming
         -> completed | cancelled | failed -> cleaned_up

Configuration, request and resource errors raise before any process exists.
The temp script is deleted and the caller's sink is closed on every way out,
including exceptions and task cancellation.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
import uuid
from enum import Enum
from typing import Dict, Optional

from driverpack.core.arguments import ArgumentBuilder, format_command_line, resolve_executable
from driverpack.core.config import ConfigStore
from driverpack.core.errors import RunInProgressError
from driverpack.core.models import RunRequest, RunResult, RunState
from driverpack.core.runner import KILL_GRACE_SECONDS, CancelToken, OutputSink, ProcessRunner
from driverpack.core.scripts import ScriptMaterializer, TempScript
from driverpack.utils import background_loop
from driverpack.utils.log import BoundLogger, get_logger

logger = get_logger()


class RunPhase(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    MATERIALIZING = "materializing"
    LAUNCHING = "launching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    CLEANED_UP = "cleaned_up"


TERMINAL_PHASES = frozenset(
    {RunPhase.COMPLETED, RunPhase.CANCELLED, RunPhase.FAILED, RunPhase.CLEANED_UP}
)

_PHASE_FOR_STATE: Dict[RunState, RunPhase] = {
    RunState.SUCCESS: RunPhase.COMPLETED,
    RunState.NON_ZERO_EXIT: RunPhase.COMPLETED,
    RunState.CANCELLED: RunPhase.CANCELLED,
    RunState.LAUNCH_FAILURE: RunPhase.FAILED,
}


class _ClosableSink:
    """Forward lines to the caller's sink until closed."""

    def __init__(self, sink: Optional[OutputSink]) -> None:
        self._sink = sink
        self._open = True

    def __call__(self, line: str) -> None:
        if self._open and self._sink is not None:
            self._sink(line)

    def close(self) -> None:
        self._open = False


class RunCoordinator:
    """Run vendor scripts one at a time against a live ConfigStore."""

    def __init__(
        self,
        store: ConfigStore,
        materializer: Optional[ScriptMaterializer] = None,
        *,
        builder: Optional[ArgumentBuilder] = None,
        timeout: Optional[float] = None,
        kill_grace: float = KILL_GRACE_SECONDS,
    ) -> None:
        self.store = store
        self.materializer = materializer or ScriptMaterializer()
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.last_result: Optional[RunResult] = None
        self._builder = builder
        self._lock = threading.Lock()
        self._phase = RunPhase.IDLE
        self._token: Optional[CancelToken] = None
        self._log: BoundLogger = logger

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def in_flight(self) -> bool:
        return self._token is not None

    def _set_phase(self, phase: RunPhase) -> None:
        self._log.debug(
            "[coordinator] Phase change",
            extra={"from": self._phase.value, "to": phase.value},
        )
        self._phase = phase

    def _begin(self, request: RunRequest) -> CancelToken:
        with self._lock:
            if self._token is not None:
                raise RunInProgressError("A script run is already in progress.")
            token = CancelToken()
            self._token = token
            self._log = logger.bind(run_id=uuid.uuid4().hex[:8], vendor=request.vendor.value)
        self._set_phase(RunPhase.RESOLVING)
        return token

    def _finish(self) -> None:
        with self._lock:
            self._token = None
        self._set_phase(RunPhase.CLEANED_UP)

    def cancel(self) -> bool:
        """Cancel the in-flight run.

        Returns False when there is nothing to cancel: no run, a run that
        already reached a terminal phase, or a repeated request.
        """
        with self._lock:
            token = self._token
            if token is None or self._phase in TERMINAL_PHASES:
                return False
            cancelled = token.cancel()
        if cancelled:
            self._log.info("[coordinator] Cancellation requested", extra={"phase": self._phase.value})
        return cancelled

    async def execute(self, request: RunRequest, sink: Optional[OutputSink] = None) -> RunResult:
        """Resolve, materialize, run and clean up one request.

        Raises:
            RunInProgressError: another run is in flight on this coordinator.
            InvalidRunRequestError: the request names both a model and a CSV file.
            ConfigError: the vendor profile cannot be resolved.
            ResourceNotFoundError: the vendor's script is not bundled.
        """
        token = self._begin(request)
        output = _ClosableSink(sink)
        temp_script: Optional[TempScript] = None
        try:
            request.check_scope()
            profile = self.store.resolve_profile(request.vendor)
            executable = resolve_executable(profile)
            builder = self._builder or ArgumentBuilder(config_path=self.store.path)

            self._set_phase(RunPhase.MATERIALIZING)
            temp_script = self.materializer.materialize(profile.script_name)
            argv = builder.build(request, profile, temp_script.path)

            self._set_phase(RunPhase.LAUNCHING)
            self._log.info(
                "[coordinator] Running script",
                extra={
                    "script": str(temp_script.path),
                    "command": format_command_line(executable, argv),
                },
            )
            runner = ProcessRunner(timeout=self.timeout, kill_grace=self.kill_grace)
            result = await runner.run(
                executable,
                argv,
                output,
                token,
                on_started=lambda _pid: self._set_phase(RunPhase.STREAMING),
            )
            self._set_phase(_PHASE_FOR_STATE[result.state])
            self.last_result = result
            log = self._log.info if result.state is RunState.SUCCESS else self._log.warning
            log(
                "[coordinator] Script finished: %s",
                result.state.value,
                extra={
                    "exit_code": result.exit_code,
                    "duration_ms": round(result.duration_ms, 1),
                },
            )
            return result
        except asyncio.CancelledError:
            self._set_phase(RunPhase.CANCELLED)
            raise
        except BaseException as exc:
            self._set_phase(RunPhase.FAILED)
            self._log.warning(
                "[coordinator] Run failed before completion: %s: %s",
                type(exc).__name__,
                exc,
            )
            raise
        finally:
            output.close()
            if temp_script is not None:
                temp_script.release()
            self._finish()

    def submit(
        self, request: RunRequest, sink: Optional[OutputSink] = None
    ) -> "concurrent.futures.Future[RunResult]":
        """Run ``execute`` on the background loop; the caller's thread stays free."""
        if self.in_flight:
            raise RunInProgressError("A script run is already in progress.")
        return background_loop.submit(self.execute(request, sink))


__all__ = ["RunPhase", "TERMINAL_PHASES", "RunCoordinator"]

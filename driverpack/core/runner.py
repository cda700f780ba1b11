"""Run one external process and stream its output line by line.

stdout and stderr are read by two pump tasks that push decoded lines into a
single bounded queue; the run loop pops lines in arrival order and hands each
one to the caller's sink as soon as it arrives. The loop also watches the
cancel token and the optional timeout, and kills the process (its whole
process group on POSIX) when either fires.

Known risk: if the OS never reports the killed process as exited within
``kill_grace`` seconds the runner stops waiting, logs a warning and reports
``termination_confirmed=False`` instead of hanging.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import signal
import threading
from typing import Any, Callable, List, Optional, Sequence

from driverpack.core.models import RunResult, RunState
from driverpack.utils.log import get_logger
from driverpack.utils.platform import is_posix

logger = get_logger()

KILL_GRACE_SECONDS = 5.0
POLL_INTERVAL_SECONDS = 0.1
PUMP_DRAIN_SECONDS = 1.0
STREAM_LIMIT = 1024 * 1024
QUEUE_SIZE = 256

OutputSink = Callable[[str], None]


class CancelToken:
    """Thread-safe, one-shot cancellation trigger."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """Trigger cancellation. Returns False if it was already triggered."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


async def _cancel_getter(getter: "asyncio.Task[str]") -> Optional[str]:
    """Cancel a pending queue read; return its line if it won the race."""
    if not getter.done():
        getter.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await getter
    if getter.cancelled():
        return None
    return getter.result()


async def _stop_tasks(tasks: Sequence["asyncio.Task[Any]"]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.debug("[runner] Stream task ended with %s: %s", type(result).__name__, result)


class ProcessRunner:
    """Spawn, stream and (if asked) kill exactly one external process."""

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        kill_grace: float = KILL_GRACE_SECONDS,
    ) -> None:
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.process: Optional[asyncio.subprocess.Process] = None
        self._used = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def run(
        self,
        executable: str,
        argv: Sequence[str],
        on_output_line: Optional[OutputSink] = None,
        cancel_token: Optional[CancelToken] = None,
        on_started: Optional[Callable[[int], None]] = None,
    ) -> RunResult:
        """Run ``executable`` with ``argv`` until it exits or is cancelled.

        ``on_started`` receives the pid once the process exists.
        """
        if self._used:
            raise RuntimeError("ProcessRunner is single-use; create a new runner per process.")
        self._used = True

        token = cancel_token or CancelToken()
        loop = asyncio.get_running_loop()
        start = loop.time()

        def _elapsed_ms() -> float:
            return (loop.time() - start) * 1000.0

        if token.cancelled:
            logger.debug("[runner] Cancelled before launch", extra={"executable": executable})
            return RunResult(state=RunState.CANCELLED, duration_ms=_elapsed_ms())

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                # Own process group so a kill also reaches the script's children.
                start_new_session=is_posix(),
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            logger.warning(
                "[runner] Failed to launch process: %s: %s",
                type(exc).__name__,
                exc,
                extra={"executable": executable},
            )
            return RunResult(state=RunState.LAUNCH_FAILURE, error=exc, duration_ms=_elapsed_ms())

        self.process = process
        logger.debug("[runner] Process started", extra={"pid": process.pid, "executable": executable})

        lines: List[str] = []
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=QUEUE_SIZE)

        def _emit(line: str) -> None:
            lines.append(line)
            if on_output_line is not None:
                on_output_line(line)

        async def _pump_stream(stream: Optional[asyncio.StreamReader]) -> None:
            if stream is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            split_line = False
            while True:
                try:
                    raw = await stream.readuntil(b"\n")
                except asyncio.IncompleteReadError as exc:
                    raw = exc.partial
                except asyncio.LimitOverrunError as exc:
                    # Line longer than STREAM_LIMIT; hand it over in pieces.
                    chunk = await stream.read(exc.consumed)
                    split_line = True
                    text = decoder.decode(chunk)
                    if text:
                        await queue.put(text)
                    continue
                if not raw:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        await queue.put(tail)
                    return
                if split_line and raw.rstrip(b"\r\n") == b"":
                    # Only the terminator of an already forwarded long line is left.
                    split_line = False
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        await queue.put(tail)
                    continue
                split_line = False
                await queue.put(decoder.decode(raw, final=True).rstrip("\r\n"))

        pump_tasks = [
            asyncio.create_task(_pump_stream(process.stdout)),
            asyncio.create_task(_pump_stream(process.stderr)),
        ]
        wait_task = asyncio.create_task(process.wait())
        get_task: Optional[asyncio.Task[str]] = None
        deadline = start + self.timeout if self.timeout else None
        cancelled = False
        timed_out = False
        termination_confirmed = True

        try:
            if on_started is not None:
                on_started(process.pid)
            while True:
                if get_task is None:
                    get_task = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {get_task, wait_task},
                    timeout=POLL_INTERVAL_SECONDS,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if get_task in done:
                    _emit(get_task.result())
                    get_task = None

                # An exit the OS already reported wins over a late cancel.
                if wait_task in done:
                    break

                if token.cancelled or (deadline is not None and loop.time() >= deadline):
                    cancelled = True
                    timed_out = not token.cancelled
                    termination_confirmed = await self._force_kill(process)
                    break
        except BaseException:
            # Sink raised or the task was cancelled: never orphan the process.
            await self._abort(process, pump_tasks, wait_task, get_task)
            raise

        if get_task is not None:
            line = await _cancel_getter(get_task)
            if line is not None:
                _emit(line)
        await self._drain_pumps(pump_tasks, queue, _emit)
        await _stop_tasks([wait_task])

        exit_code = process.returncode
        duration_ms = _elapsed_ms()
        if cancelled:
            logger.info(
                "[runner] Process %s",
                "timed out" if timed_out else "cancelled",
                extra={"pid": process.pid, "exit_code": exit_code, "confirmed": termination_confirmed},
            )
            return RunResult(
                state=RunState.CANCELLED,
                exit_code=exit_code,
                lines=tuple(lines),
                timed_out=timed_out,
                termination_confirmed=termination_confirmed,
                duration_ms=duration_ms,
            )

        state = RunState.SUCCESS if exit_code == 0 else RunState.NON_ZERO_EXIT
        logger.debug(
            "[runner] Process exited",
            extra={"pid": process.pid, "exit_code": exit_code, "lines": len(lines)},
        )
        return RunResult(
            state=state,
            exit_code=exit_code,
            lines=tuple(lines),
            duration_ms=duration_ms,
        )

    async def _drain_pumps(
        self,
        pump_tasks: List["asyncio.Task[None]"],
        queue: "asyncio.Queue[str]",
        emit: OutputSink,
    ) -> None:
        """Forward what is still in the pipes once the process has exited.

        Gives up after PUMP_DRAIN_SECONDS when a grandchild keeps a pipe open.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + PUMP_DRAIN_SECONDS
        while True:
            pending = [task for task in pump_tasks if not task.done()]
            remaining = deadline - loop.time()
            if not pending or remaining <= 0:
                break
            getter = asyncio.create_task(queue.get())
            await asyncio.wait(
                {getter, *pending}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            line = await _cancel_getter(getter)
            if line is not None:
                emit(line)

        await _stop_tasks(pump_tasks)
        while not queue.empty():
            emit(queue.get_nowait())

    async def _abort(
        self,
        process: asyncio.subprocess.Process,
        pump_tasks: List["asyncio.Task[None]"],
        wait_task: "asyncio.Task[int]",
        get_task: Optional["asyncio.Task[str]"],
    ) -> None:
        tasks: List[asyncio.Task] = [*pump_tasks, wait_task]
        if get_task is not None:
            tasks.append(get_task)
        await self._force_kill(process)
        await _stop_tasks(tasks)

    async def _force_kill(self, process: asyncio.subprocess.Process) -> bool:
        """Kill the process and wait for the OS to confirm it is gone."""
        if process.returncode is not None:
            return True

        with contextlib.suppress(ProcessLookupError, PermissionError):
            if is_posix() and hasattr(os, "killpg"):
                try:
                    os.killpg(process.pid, signal.SIGKILL)
                except PermissionError:
                    process.kill()
            else:
                process.kill()

        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "[runner] Process did not exit within %.1fs of being killed",
                self.kill_grace,
                extra={"pid": process.pid},
            )
            return False


__all__ = ["CancelToken", "OutputSink", "ProcessRunner", "KILL_GRACE_SECONDS"]

"""Dedicated event loop thread for running scripts off the caller's thread.

Callers on a UI or CLI thread submit coroutines and get a
``concurrent.futures.Future`` back, so they stay responsive while a script
runs. The loop is created lazily and torn down at interpreter exit; tearing it
down cancels every run still in flight, which kills its process and deletes
its temp script.
"""

import asyncio
import atexit
import concurrent.futures
import threading
from typing import Any, Coroutine, Optional, TypeVar

from driverpack.utils.log import get_logger

logger = get_logger()

T = TypeVar("T")

THREAD_NAME = "driverpack-run-loop"


class RunLoop:
    """An asyncio loop running forever on its own daemon thread."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._started = threading.Event()
        self.thread = threading.Thread(target=self._serve, name=THREAD_NAME, daemon=True)

    def _serve(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._started.set)
        self.loop.run_forever()

    def start(self) -> "RunLoop":
        self.thread.start()
        self._started.wait()
        return self

    @property
    def alive(self) -> bool:
        return self.loop.is_running() and not self.loop.is_closed()

    async def _cancel_all(self) -> int:
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current]
        for task in pending:
            task.cancel()
        # Each run cleans up in its own finally block; wait for those to finish.
        await asyncio.gather(*pending, return_exceptions=True)
        await self.loop.shutdown_asyncgens()
        return len(pending)

    def close(self, timeout: float) -> None:
        if self.loop.is_running():
            try:
                cancelled = asyncio.run_coroutine_threadsafe(self._cancel_all(), self.loop).result(
                    timeout=timeout
                )
                logger.debug("[background_loop] Cancelled pending runs", extra={"count": cancelled})
            except (RuntimeError, concurrent.futures.TimeoutError):
                logger.warning(
                    "[background_loop] Pending runs did not finish within %.1fs", timeout
                )
            self.loop.call_soon_threadsafe(self.loop.stop)
        if self.thread.is_alive():
            self.thread.join(timeout=2)
        if not self.loop.is_running() and not self.loop.is_closed():
            self.loop.close()


_current: Optional[RunLoop] = None
_lock = threading.Lock()
_atexit_registered = False


def ensure_background_loop() -> asyncio.AbstractEventLoop:
    """Return the shared loop, starting its thread on first use."""
    global _current, _atexit_registered
    with _lock:
        if _current is None or not _current.alive:
            _current = RunLoop().start()
            if not _atexit_registered:
                atexit.register(shutdown_background_loop)
                _atexit_registered = True
        return _current.loop


def submit(coro: Coroutine[Any, Any, T]) -> "concurrent.futures.Future[T]":
    """Schedule ``coro`` on the shared loop and return a thread-safe future."""
    return asyncio.run_coroutine_threadsafe(coro, ensure_background_loop())


def shutdown_background_loop(timeout: float = 10.0) -> None:
    """Cancel pending runs, stop the loop and join its thread."""
    global _current
    with _lock:
        run_loop, _current = _current, None
    if run_loop is not None:
        run_loop.close(timeout)


__all__ = ["ensure_background_loop", "submit", "shutdown_background_loop"]

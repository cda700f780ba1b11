"""Tests for the shared background run loop."""

import asyncio
import threading

from driverpack.utils import background_loop


def test_submit_runs_on_a_separate_thread():
    async def _thread_name():
        await asyncio.sleep(0)
        return threading.current_thread().name

    assert background_loop.submit(_thread_name()).result(timeout=5) == "driverpack-run-loop"


def test_shutdown_cancels_pending_work_and_restarts_lazily():
    started = threading.Event()
    cancelled = threading.Event()

    async def _hang():
        started.set()
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    future = background_loop.submit(_hang())
    assert started.wait(5)

    background_loop.shutdown_background_loop(timeout=5)

    assert cancelled.is_set()
    assert future.cancelled()
    assert background_loop._current is None

    async def _answer():
        return 42

    assert background_loop.submit(_answer()).result(timeout=5) == 42

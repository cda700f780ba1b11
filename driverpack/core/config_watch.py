"""Hot-reload of the configuration file.

A daemon thread polls the file's last-write time. When it changes the watcher
waits a short settle delay (another process may still be writing), reloads the
store and publishes the new snapshot. Reloads are serialized: a notification
that arrives while a reload is running is dropped.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from driverpack.core.errors import ConfigError
from driverpack.utils.log import get_logger

if TYPE_CHECKING:
    from driverpack.core.config import ConfigStore, DriverPackConfig

logger = get_logger()

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_SETTLE_DELAY = 0.5


def _mtime(path: Path) -> Optional[int]:
    """Last-write time in ns, or None when the file is missing."""
    try:
        return os.stat(path).st_mtime_ns
    except OSError:
        return None


class ConfigWatcher:
    """Reload a ``ConfigStore`` whenever the watched file changes.

    The watched file may not exist yet; its appearance counts as a change.
    """

    def __init__(
        self,
        store: "ConfigStore",
        path: Union[str, Path],
        *,
        resolve: bool = False,
        on_change: Optional[Callable[["DriverPackConfig"], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ) -> None:
        self.path = Path(path)
        # True: the store re-resolves its candidates instead of loading self.path.
        self.resolve = resolve
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.reload_count = 0
        self.last_error: Optional[Exception] = None
        self._store = store
        self._on_change = on_change
        self._on_error = on_error
        self._stop_event = threading.Event()
        self._reload_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._last_mtime = _mtime(self.path)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_reloading(self) -> bool:
        return self._reload_lock.locked()

    def start(self) -> "ConfigWatcher":
        if self.is_running:
            return self
        self._stop_event.clear()
        self._last_mtime = _mtime(self.path)
        thread = threading.Thread(
            target=self._poll_loop,
            name="driverpack-config-watch",
            daemon=True,
        )
        thread.start()
        self._thread = thread
        logger.debug(
            "[config_watch] Watching configuration file",
            extra={"path": str(self.path), "poll_interval": self.poll_interval},
        )
        return self

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def __enter__(self) -> "ConfigWatcher":
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            if _mtime(self.path) != self._last_mtime:
                self.notify()

    def notify(self) -> bool:
        """Handle one change notification.

        Returns False when the notification was dropped because a reload is
        already in progress or the watcher is stopping.
        """
        if not self._reload_lock.acquire(blocking=False):
            logger.debug(
                "[config_watch] Reload already in progress; ignoring change",
                extra={"path": str(self.path)},
            )
            return False
        try:
            if self._stop_event.wait(self.settle_delay):
                return False
            # Anything written after this point triggers the next reload.
            self._last_mtime = _mtime(self.path)
            try:
                config = self._store.reload() if self.resolve else self._store.load(self.path)
            except ConfigError as exc:
                self.last_error = exc
                logger.warning(
                    "[config_watch] Reload failed; keeping previous configuration: %s",
                    exc,
                    extra={"path": str(self.path)},
                )
                self._invoke(self._on_error, exc)
                return True

            self.reload_count += 1
            self.last_error = None
            logger.info(
                "[config_watch] Configuration reloaded",
                extra={"path": str(self.path), "reload_count": self.reload_count},
            )
            self._invoke(self._on_change, config)
            return True
        finally:
            self._reload_lock.release()

    def _invoke(self, callback: Optional[Callable[[Any], None]], argument: Any) -> None:
        if callback is None:
            return
        try:
            callback(argument)
        except Exception:
            # Callback failures never stop the watcher.
            logger.exception(
                "[config_watch] Configuration callback raised",
                extra={"path": str(self.path)},
            )


__all__ = ["ConfigWatcher", "DEFAULT_POLL_INTERVAL", "DEFAULT_SETTLE_DELAY"]

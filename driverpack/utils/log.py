"""Logging for DriverPack Fetcher.

All modules share one ``logging.Logger`` named ``driverpack``. The console
handler on stderr follows ``DRIVERPACK_LOG_LEVEL`` (default WARNING); the
optional daily log file always records DEBUG with structured context::

    2024-03-09T10:15:02.123Z [INFO] [coordinator] Script finished: success | {"exit_code": 0, "run_id": "5f0c1a2b", "vendor": "Dell"}

``bind()`` returns a view that stamps fixed fields (run id, vendor) onto every
record it emits.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

LOGGER_NAME = "driverpack"
LOG_FILE_PREFIX = "driverpack_"
LOG_RETENTION_FILES = 14

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord(LOGGER_NAME, logging.INFO, __file__, 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """ISO-8601 UTC timestamps, with ``extra`` context appended as JSON."""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return f"{stamp:%Y-%m-%dT%H:%M:%S}.{int(record.msecs):03d}Z"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = _record_context(record)
        if not context:
            return message
        try:
            payload = json.dumps(context, sort_keys=True, ensure_ascii=True, default=str)
        except (TypeError, ValueError):
            payload = repr(context)
        return f"{message} | {payload}"


class BoundLogger:
    """Thin front for the shared logger that merges fixed context into ``extra``."""

    def __init__(self, logger: logging.Logger, context: Optional[Mapping[str, Any]] = None):
        self.logger = logger
        self.context: Dict[str, Any] = dict(context or {})

    def bind(self, **context: Any) -> "BoundLogger":
        return BoundLogger(self.logger, {**self.context, **context})

    def _log(self, level: int, message: str, args: Any, kwargs: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra = {**self.context, **(kwargs.get("extra") or {})}
        if extra:
            # logging refuses extras that shadow LogRecord attributes.
            kwargs["extra"] = {
                (f"ctx_{key}" if key in _RESERVED_ATTRS else key): value
                for key, value in extra.items()
            }
        # Attribute the record to our caller, not to this wrapper.
        kwargs.setdefault("stacklevel", 3)
        self.logger.log(level, message, *args, **kwargs)

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, args, kwargs)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, message, args, kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, args, kwargs)

    def error(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, args, kwargs)

    def exception(self, message: str, *args: Any, **kwargs: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, args, kwargs)


class DriverPackLogger(BoundLogger):
    """Owner of the shared logger's handlers."""

    def __init__(self, name: str = LOGGER_NAME, log_dir: Optional[Path] = None):
        super().__init__(logging.getLogger(name))
        # The logger passes everything; each handler filters for itself.
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        self._console_handler = self._find_console_handler()
        if self._console_handler is None:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
            self.logger.addHandler(handler)
            self._console_handler = handler
        self._console_handler.setLevel(_level_from_env())

        self._file_handler: Optional[logging.FileHandler] = None
        if log_dir:
            self.attach_file_handler(Path(log_dir) / default_log_filename())

    def _find_console_handler(self) -> Optional[logging.Handler]:
        for handler in self.logger.handlers:
            if type(handler) is logging.StreamHandler:
                return handler
        return None

    @property
    def log_file(self) -> Optional[Path]:
        return Path(self._file_handler.baseFilename) if self._file_handler else None

    def attach_file_handler(self, log_file: Path) -> Path:
        """Send records to ``log_file``, replacing any earlier file handler."""
        log_file = Path(log_file)
        if self.log_file == Path(os.path.abspath(log_file)):
            return log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)
        self.detach_file_handler()

        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(StructuredFormatter("%(asctime)s [%(levelname)s] %(message)s"))
        self.logger.addHandler(handler)
        self._file_handler = handler
        return log_file

    def detach_file_handler(self) -> None:
        handler, self._file_handler = self._file_handler, None
        if handler is None:
            return
        self.logger.removeHandler(handler)
        try:
            handler.close()
        except OSError:
            # The console keeps working even if the old file cannot be closed.
            pass

    def set_console_level(self, level: int) -> None:
        """Change the stderr threshold (``--verbose`` lowers it to DEBUG)."""
        if self._console_handler is not None:
            self._console_handler.setLevel(level)


def _level_from_env() -> int:
    name = os.getenv("DRIVERPACK_LOG_LEVEL", "WARNING").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


_logger: Optional[DriverPackLogger] = None


def get_logger() -> DriverPackLogger:
    """The process-wide logger."""
    global _logger
    if _logger is None:
        _logger = DriverPackLogger()
    return _logger


def init_logger(log_dir: Optional[Path] = None) -> DriverPackLogger:
    """Recreate the process-wide logger, optionally logging to ``log_dir``."""
    global _logger
    if _logger is not None:
        _logger.detach_file_handler()
    _logger = DriverPackLogger(log_dir=log_dir)
    return _logger


def default_log_filename(when: Optional[datetime] = None) -> str:
    return f"{LOG_FILE_PREFIX}{(when or datetime.now()):%Y%m%d}.log"


def prune_logs(log_dir: Path, keep: int = LOG_RETENTION_FILES) -> List[Path]:
    """Delete all but the ``keep`` newest daily log files. Returns what was removed."""
    # Daily names sort chronologically.
    files = sorted(Path(log_dir).glob(f"{LOG_FILE_PREFIX}*.log"), reverse=True)
    removed: List[Path] = []
    for stale in files[keep:]:
        try:
            stale.unlink()
        except OSError:
            continue
        removed.append(stale)
    return removed


def enable_file_logging(log_dir: Optional[Path] = None) -> Path:
    """Log to today's file under ``log_dir`` (default ``<user config dir>/logs``)."""
    from driverpack.utils.platform import user_config_dir

    logger = get_logger()
    target_dir = Path(log_dir) if log_dir else user_config_dir() / "logs"
    log_file = logger.attach_file_handler(target_dir / default_log_filename())
    removed = prune_logs(target_dir)
    logger.debug(
        "[logging] File logging enabled",
        extra={"log_file": str(log_file), "pruned": len(removed)},
    )
    return log_file

"""Build the interpreter argument vector for a run.

Each vendor script takes its own parameter set. All of them start with::

    -NoProfile -ExecutionPolicy Bypass -File <script>
    (-ModelName <name> | -CsvPath <csv>) -DownloadPath <dir> -NetworkPath <dir>

Lenovo additionally reads its catalog settings from the configuration file,
so it gets ``-ConfigPath <file> -Option 1|2``. ``-IncludeFirmware`` is always
last when requested. Every value is its own argv element; the process is
started without a shell, so no quoting or escaping is applied.
"""

from __future__ import annotations

import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from driverpack.core.config import Vendor, VendorProfile
from driverpack.core.errors import InvalidRunRequestError
from driverpack.core.models import RunRequest
from driverpack.utils.platform import default_script_executable, is_windows

INTERPRETER_FLAGS: tuple[str, ...] = ("-NoProfile", "-ExecutionPolicy", "Bypass")
FIRMWARE_FLAG = "-IncludeFirmware"

# Lenovo's -Option: 1 = single model (or all), 2 = CSV batch.
LENOVO_OPTION_MODEL = "1"
LENOVO_OPTION_CSV = "2"


_WINDOWS_VARIABLE = re.compile(r"%([^%\s]+)%")


def expand_path(value: str) -> str:
    """Expand a leading ``~`` and, on Windows, ``%VAR%`` references.

    ``$name`` is left alone. Unknown ``%VAR%`` references are kept as written.
    """
    if not value:
        return value
    if is_windows():
        value = _WINDOWS_VARIABLE.sub(lambda match: os.environ.get(match.group(1), match.group(0)), value)
    return os.path.expanduser(value)


def resolve_executable(profile: VendorProfile) -> str:
    """Interpreter for ``profile``: its override, else the platform default."""
    return expand_path(profile.executable or default_script_executable())


def format_command_line(executable: str, argv: Sequence[str]) -> str:
    """Human-readable command line for logs. Never passed to a shell."""
    parts = [executable, *argv]
    if is_windows():
        return subprocess.list2cmdline(parts)
    return shlex.join(parts)


Schema = Callable[[RunRequest, VendorProfile, str], List[str]]


class ArgumentBuilder:
    """Deterministically compose the argv for a run request."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None) -> None:
        self.config_path = str(config_path) if config_path is not None else None
        self._schemas: Dict[Vendor, Schema] = {
            Vendor.HP: self._standard_arguments,
            Vendor.LENOVO: self._lenovo_arguments,
            Vendor.DELL: self._standard_arguments,
        }

    def build(
        self,
        request: RunRequest,
        profile: VendorProfile,
        temp_script_path: Union[str, Path],
    ) -> List[str]:
        """Return the argument vector (without the executable).

        Raises:
            InvalidRunRequestError: the request names both a model and a CSV
                file, or targets a different vendor than ``profile``.
        """
        request.check_scope()
        if request.vendor is not profile.vendor:
            raise InvalidRunRequestError(
                f"Run request for {request.vendor.value} cannot use the "
                f"{profile.vendor.value} profile."
            )
        argv = self._schemas[profile.vendor](request, profile, str(temp_script_path))
        if request.include_firmware:
            argv.append(FIRMWARE_FLAG)
        return argv

    def _standard_arguments(
        self, request: RunRequest, profile: VendorProfile, script_path: str
    ) -> List[str]:
        argv = [*INTERPRETER_FLAGS, "-File", script_path]
        if request.uses_csv:
            argv += ["-CsvPath", expand_path(request.csv_path or "")]
        else:
            # An empty model name means "all models".
            argv += ["-ModelName", request.model_name or ""]
        argv += [
            "-DownloadPath",
            expand_path(profile.download_path),
            "-NetworkPath",
            expand_path(profile.network_path),
        ]
        return argv

    def _lenovo_arguments(
        self, request: RunRequest, profile: VendorProfile, script_path: str
    ) -> List[str]:
        argv = self._standard_arguments(request, profile, script_path)
        if self.config_path:
            argv += ["-ConfigPath", self.config_path]
        argv += ["-Option", LENOVO_OPTION_CSV if request.uses_csv else LENOVO_OPTION_MODEL]
        return argv


__all__ = [
    "INTERPRETER_FLAGS",
    "FIRMWARE_FLAG",
    "ArgumentBuilder",
    "expand_path",
    "format_command_line",
    "resolve_executable",
]

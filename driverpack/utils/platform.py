"""Platform detection and well-known locations.

Use these helpers instead of direct checks like ``sys.platform == "win32"``::

    from driverpack.utils.platform import is_windows, user_config_dir

    config_file = user_config_dir() / "config.json"
"""

import os
import shutil
import sys
from pathlib import Path
from typing import Final

APP_DIR_NAME: Final = "DriverPackFetcher"
CONFIG_FILE_NAME: Final = "config.json"

WINDOWS_INTERPRETER: Final = "powershell.exe"
POSIX_INTERPRETER: Final = "pwsh"


def is_windows() -> bool:
    return sys.platform == "win32"


def is_posix() -> bool:
    """True on Linux, macOS and the BSDs; process groups are available there."""
    return os.name == "posix"


def user_config_dir() -> Path:
    """Per-user writable directory holding config.json and logs.

    ``DRIVERPACK_CONFIG_DIR`` overrides the location. Otherwise this is
    ``%APPDATA%\\DriverPackFetcher`` on Windows and
    ``$XDG_CONFIG_HOME/DriverPackFetcher`` (``~/.config``) elsewhere.
    """
    override = os.environ.get("DRIVERPACK_CONFIG_DIR")
    if override:
        return Path(override).expanduser()

    if is_windows():
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    else:
        xdg = os.environ.get("XDG_CONFIG_HOME")
        base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / APP_DIR_NAME


def user_config_path() -> Path:
    return user_config_dir() / CONFIG_FILE_NAME


def default_script_executable() -> str:
    """Interpreter used when the vendor profile does not name one.

    ``DRIVERPACK_EXECUTABLE`` wins. Windows PowerShell ships with every Windows
    install; elsewhere only PowerShell 7 (``pwsh``) exists.
    """
    env_override = os.environ.get("DRIVERPACK_EXECUTABLE")
    if env_override:
        return env_override
    if is_windows():
        return WINDOWS_INTERPRETER
    return shutil.which(POSIX_INTERPRETER) or POSIX_INTERPRETER

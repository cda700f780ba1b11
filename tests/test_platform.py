"""Tests for platform detection and well-known locations."""

from pathlib import Path

from driverpack.utils import platform
from driverpack.utils.platform import (
    default_script_executable,
    is_posix,
    is_windows,
    user_config_dir,
    user_config_path,
)


def test_windows_and_posix_are_exclusive():
    assert not (is_windows() and is_posix())


def test_config_dir_override(tmp_path, monkeypatch):
    monkeypatch.setenv("DRIVERPACK_CONFIG_DIR", str(tmp_path / "cfg"))
    assert user_config_dir() == tmp_path / "cfg"
    assert user_config_path() == tmp_path / "cfg" / "config.json"


def test_config_dir_uses_xdg_on_posix(tmp_path, monkeypatch):
    monkeypatch.delenv("DRIVERPACK_CONFIG_DIR", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    monkeypatch.setattr(platform, "is_windows", lambda: False)
    assert user_config_dir() == tmp_path / "DriverPackFetcher"


def test_config_dir_uses_appdata_on_windows(tmp_path, monkeypatch):
    monkeypatch.delenv("DRIVERPACK_CONFIG_DIR", raising=False)
    monkeypatch.setenv("APPDATA", str(tmp_path))
    monkeypatch.setattr(platform, "is_windows", lambda: True)
    assert user_config_dir() == Path(tmp_path) / "DriverPackFetcher"


def test_default_executable(monkeypatch):
    monkeypatch.setattr(platform, "is_windows", lambda: True)
    assert default_script_executable() == "powershell.exe"

    monkeypatch.setattr(platform, "is_windows", lambda: False)
    monkeypatch.setattr(platform.shutil, "which", lambda name: None)
    assert default_script_executable() == "pwsh"

    monkeypatch.setenv("DRIVERPACK_EXECUTABLE", "/opt/microsoft/powershell/7/pwsh")
    assert default_script_executable() == "/opt/microsoft/powershell/7/pwsh"

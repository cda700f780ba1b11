"""Pytest configuration and fixtures for all tests."""

import json
import stat
import sys
from pathlib import Path
from typing import Any, Callable, Dict

import pytest

from driverpack.utils import background_loop


@pytest.fixture(scope="session", autouse=True)
def cleanup_background_loop_after_all_tests():
    """Shut the shared run loop down once the whole session is done.

    Runs submitted through ``RunCoordinator.submit`` live on that loop; any
    left over are cancelled so their processes and temp files go away.
    """
    yield
    background_loop.shutdown_background_loop()


@pytest.fixture(autouse=True)
def isolated_user_config(tmp_path, monkeypatch) -> Path:
    """Point the per-user config directory (and its logs) into tmp_path."""
    config_dir = tmp_path / "user-config"
    monkeypatch.setenv("DRIVERPACK_CONFIG_DIR", str(config_dir))
    monkeypatch.delenv("DRIVERPACK_EXECUTABLE", raising=False)
    return config_dir


@pytest.fixture
def make_stub(tmp_path) -> Callable[..., Path]:
    """Write an executable Python script that stands in for the interpreter."""

    def _make(body: str, name: str = "stub-interpreter") -> Path:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture
def write_config(tmp_path) -> Callable[..., Path]:
    def _write(data: Dict[str, Any], name: str = "config.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def scripts_dir(tmp_path) -> Path:
    """A script resource root holding one payload per vendor."""
    root = tmp_path / "scripts"
    root.mkdir()
    for name in ("HP-Drivers.ps1", "Dell-Drivers.ps1"):
        (root / name).write_text(f"Write-Output '{name}'\n", encoding="utf-8")
    lenovo = root / "lenovo"
    lenovo.mkdir()
    (lenovo / "Lenovo-Drivers.ps1").write_text("Write-Output 'lenovo'\n", encoding="utf-8")
    return root


@pytest.fixture
def scratch_dir(tmp_path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


ECHO_ARGS_STUB = """\
import json
import os
import sys

args = sys.argv[1:]
script = args[args.index("-File") + 1]
with open(script, "rb") as handle:
    head = handle.read(3)
print("starting")
print(json.dumps({"args": args, "script": script, "bom": head == b"\\xef\\xbb\\xbf"}))
sys.stdout.flush()
sys.exit(int(os.environ.get("STUB_EXIT_CODE", "0")))
"""

SLEEPING_STUB = """\
import time

print("ready", flush=True)
time.sleep(60)
"""


@pytest.fixture
def echo_stub(make_stub) -> Path:
    """Interpreter that prints ``starting`` and then its argv as JSON."""
    return make_stub(ECHO_ARGS_STUB, name="echo-interpreter")


@pytest.fixture
def sleeping_stub(make_stub) -> Path:
    """Interpreter that prints ``ready`` and then hangs for a minute."""
    return make_stub(SLEEPING_STUB, name="sleeping-interpreter")

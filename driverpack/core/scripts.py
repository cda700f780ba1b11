"""Materialize bundled vendor scripts into temporary files.

Payloads live under ``driverpack/resources/scripts`` and are addressed by
dotted identifiers built from their relative path (``scripts/Dell-Drivers.ps1``
becomes ``Dell-Drivers.ps1``, ``lenovo/Lenovo-Drivers.ps1`` becomes
``lenovo.Lenovo-Drivers.ps1``). A lookup name matches an identifier when it is
equal to it or a dot-separated suffix of it, ignoring case.
"""

from __future__ import annotations

import os
import re
import tempfile
from importlib.resources import files
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Tuple, Union

from driverpack.core.errors import ResourceNotFoundError
from driverpack.utils.log import get_logger

if TYPE_CHECKING:
    from importlib.resources.abc import Traversable

logger = get_logger()

# PowerShell 5 reads BOM-less files in the ANSI code page.
SCRIPT_ENCODING = "utf-8-sig"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def default_script_root() -> "Traversable":
    return files("driverpack.resources") / "scripts"


class TempScript:
    """A materialized script file owned by a single run.

    ``release`` deletes the file. It may be called any number of times and
    tolerates the file having been removed already.
    """

    def __init__(self, path: Path, script_name: str) -> None:
        self.path = path
        self.script_name = script_name
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Delete the file. Returns True when this call removed it."""
        if self._released:
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.debug("[scripts] Temp script already gone", extra={"path": str(self.path)})
            self._released = True
            return False
        except OSError as exc:
            logger.warning(
                "[scripts] Failed to delete temp script: %s: %s",
                type(exc).__name__,
                exc,
                extra={"path": str(self.path)},
            )
            return False
        self._released = True
        logger.debug("[scripts] Deleted temp script", extra={"path": str(self.path)})
        return True

    def __enter__(self) -> "TempScript":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"TempScript(path={str(self.path)!r}, released={self._released})"


class ScriptMaterializer:
    """Look up embedded script payloads and write them to scratch files."""

    def __init__(
        self,
        resource_root: Optional[Union[str, Path, "Traversable"]] = None,
        scratch_dir: Optional[Union[str, Path]] = None,
    ) -> None:
        if resource_root is None:
            self._root: Traversable = default_script_root()
        elif isinstance(resource_root, str):
            self._root = Path(resource_root)
        else:
            self._root = resource_root
        self.scratch_dir = Path(scratch_dir) if scratch_dir is not None else None

    def _iter_payloads(self) -> Iterator[Tuple[str, "Traversable"]]:
        if not self._root.is_dir():
            return
        pending: List[Tuple[Tuple[str, ...], Traversable]] = [((), self._root)]
        while pending:
            prefix, directory = pending.pop()
            for entry in directory.iterdir():
                if entry.name.startswith((".", "__")):
                    continue
                parts = prefix + (entry.name,)
                if entry.is_dir():
                    pending.append((parts, entry))
                elif entry.is_file():
                    yield ".".join(parts), entry

    def available_scripts(self) -> List[str]:
        """Identifiers of every bundled payload, sorted."""
        return sorted(identifier for identifier, _ in self._iter_payloads())

    def find_payload(self, name: str) -> Optional["Traversable"]:
        target = name.strip().replace("/", ".").replace("\\", ".").lower()
        if not target:
            return None
        matches = sorted(
            (
                (identifier, payload)
                for identifier, payload in self._iter_payloads()
                if identifier.lower() == target or identifier.lower().endswith("." + target)
            ),
            key=lambda item: item[0],
        )
        if not matches:
            return None
        if len(matches) > 1:
            logger.debug(
                "[scripts] Several payloads match; using the first",
                extra={"script": name, "matches": [identifier for identifier, _ in matches]},
            )
        return matches[0][1]

    def materialize(self, name: str) -> TempScript:
        """Write the payload called ``name`` to a fresh temp file.

        Raises:
            ResourceNotFoundError: no payload matches, or the payload is empty.
        """
        payload = self.find_payload(name)
        if payload is None:
            raise ResourceNotFoundError(f"Embedded script '{name}' not found.", name=name)

        # Decoding with utf-8-sig drops a BOM the payload may already carry, so
        # the written file always starts with exactly one.
        content = payload.read_bytes().decode(SCRIPT_ENCODING)
        if not content:
            raise ResourceNotFoundError(f"Embedded script '{name}' is empty.", name=name)

        payload_name = Path(payload.name)
        stem = _UNSAFE_NAME_CHARS.sub("_", payload_name.stem) or "script"
        fd, raw_path = tempfile.mkstemp(
            prefix=f"{stem}-",
            suffix=payload_name.suffix or ".ps1",
            dir=str(self.scratch_dir) if self.scratch_dir is not None else None,
        )
        temp_script = TempScript(Path(raw_path), name)
        try:
            with os.fdopen(fd, "w", encoding=SCRIPT_ENCODING, newline="") as handle:
                handle.write(content)
            logger.debug(
                "[scripts] Script written",
                extra={"script": name, "path": str(temp_script.path), "chars": len(content)},
            )
        except BaseException:
            temp_script.release()
            raise
        return temp_script


__all__ = ["SCRIPT_ENCODING", "TempScript", "ScriptMaterializer", "default_script_root"]

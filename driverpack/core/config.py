"""Configuration management for DriverPack Fetcher.

The configuration document is a JSON object with one section per vendor::

    {
      "HP": {"DriverScriptName": "HP-Drivers.ps1", "LocalPath": "...", ...},
      "Lenovo": {"DriverScriptName": "Lenovo-Drivers.ps1", "DownloadPath": "...", ...},
      "Dell": {"DriverScriptName": "Dell-Drivers.ps1", "DownloadPath": "...", ...}
    }

It is resolved from the per-user location first and the bundled default second.
Loaded documents are immutable; ``ConfigStore`` swaps the whole snapshot on
every (re)load so readers see either the old or the new configuration.
"""

from __future__ import annotations

import json
import threading
from enum import Enum
from importlib.resources import files
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from driverpack.core.errors import ConfigError, ConfigNotFoundError
from driverpack.utils.log import get_logger
from driverpack.utils.platform import CONFIG_FILE_NAME, user_config_path

if TYPE_CHECKING:
    from driverpack.core.config_watch import ConfigWatcher


logger = get_logger()


class Vendor(str, Enum):
    """Hardware vendors with a download script."""

    HP = "HP"
    LENOVO = "Lenovo"
    DELL = "Dell"

    @classmethod
    def _missing_(cls, value: object) -> Optional["Vendor"]:
        """Accept vendor names in any case ("dell", "LENOVO")."""
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value.lower() == normalized:
                    return member
        return None


def coerce_vendor(vendor: Union[Vendor, str]) -> Vendor:
    """Parse a vendor identifier, raising ConfigNotFoundError for unknown names."""
    try:
        return Vendor(vendor)
    except ValueError as exc:
        choices = ", ".join(member.value for member in Vendor)
        raise ConfigNotFoundError(
            f"Unknown vendor '{vendor}'. Expected one of: {choices}.", vendor=str(vendor)
        ) from exc


_PROFILE_CONFIG = ConfigDict(
    frozen=True,
    validate_by_alias=True,
    validate_by_name=True,
    serialize_by_alias=True,
    extra="ignore",
)


class _VendorProfileBase(BaseModel):
    """Fields shared by every vendor profile."""

    model_config = _PROFILE_CONFIG

    vendor: ClassVar[Vendor]

    script_name: str = Field(default="", alias="DriverScriptName")
    network_path: str = Field(default="", alias="NetworkPath")
    # Interpreter override; the platform default is used when unset.
    powershell_exe: Optional[str] = Field(default=None, alias="PowerShellExe")

    @field_validator("*", mode="before")
    @classmethod
    def _null_strings_to_empty(cls, value: Any, info: Any) -> Any:
        """Older settings files serialize unset paths as null."""
        if value is None and info.field_name not in ("powershell_exe", "days_to_refresh"):
            return ""
        return value

    @property
    def executable(self) -> Optional[str]:
        exe = (self.powershell_exe or "").strip()
        return exe or None


class HPProfile(_VendorProfileBase):
    """HP downloads into a local folder rather than a download cache."""

    vendor: ClassVar[Vendor] = Vendor.HP

    local_path: str = Field(default="", alias="LocalPath")

    @property
    def download_path(self) -> str:
        return self.local_path


class LenovoProfile(_VendorProfileBase):
    """Lenovo also needs its driver-pack catalog and refresh interval."""

    vendor: ClassVar[Vendor] = Vendor.LENOVO

    download_path: str = Field(default="", alias="DownloadPath")
    catalog_path: str = Field(default="", alias="CatalogPath")
    days_to_refresh: int = Field(default=40, alias="DaysToRefresh")


class DellProfile(_VendorProfileBase):
    vendor: ClassVar[Vendor] = Vendor.DELL

    download_path: str = Field(default="", alias="DownloadPath")


VendorProfile = Union[HPProfile, LenovoProfile, DellProfile]


class DriverPackConfig(BaseModel):
    """Whole configuration document; one optional section per vendor."""

    model_config = _PROFILE_CONFIG

    hp: Optional[HPProfile] = Field(default=None, alias="HP")
    lenovo: Optional[LenovoProfile] = Field(default=None, alias="Lenovo")
    dell: Optional[DellProfile] = Field(default=None, alias="Dell")

    _SECTIONS: ClassVar[Dict[Vendor, str]] = {
        Vendor.HP: "hp",
        Vendor.LENOVO: "lenovo",
        Vendor.DELL: "dell",
    }

    def section(self, vendor: Vendor) -> Optional[VendorProfile]:
        return getattr(self, self._SECTIONS[vendor])

    def profiles(self) -> Dict[Vendor, VendorProfile]:
        """Configured vendor profiles, in enum order."""
        result: Dict[Vendor, VendorProfile] = {}
        for vendor in Vendor:
            profile = self.section(vendor)
            if profile is not None:
                result[vendor] = profile
        return result


def _profile_key_map(profile: VendorProfile) -> Dict[str, str]:
    """Map accepted key spellings (field name or JSON alias) to attribute names."""
    mapping: Dict[str, str] = {}
    for name, field in type(profile).model_fields.items():
        mapping[name.lower()] = name
        if field.alias:
            mapping[field.alias.lower()] = name
    # Uniform accessors that are not fields on every profile.
    for extra in ("download_path", "executable"):
        mapping.setdefault(extra, extra)
    mapping.setdefault("downloadpath", "download_path")
    return mapping


def bundled_config_path() -> Path:
    """Read-only default configuration shipped inside the package."""
    return Path(str(files("driverpack.resources") / CONFIG_FILE_NAME))


def config_candidates() -> List[Path]:
    """Locations searched for config.json, in priority order."""
    return [user_config_path(), bundled_config_path()]


def resolve_config_path(candidates: Optional[Sequence[Path]] = None) -> Path:
    """Return the first existing candidate.

    When nothing exists the first (user) candidate is returned so that the
    subsequent load error names the location the user is expected to create.
    """
    paths = [Path(p) for p in (candidates if candidates is not None else config_candidates())]
    if not paths:
        raise ConfigError("No configuration locations to search.")
    for candidate in paths:
        if candidate.is_file():
            return candidate
    return paths[0]


def load_config(path: Union[str, Path]) -> DriverPackConfig:
    """Read and validate a configuration document."""
    config_path = Path(path)
    try:
        # utf-8-sig: editors on Windows like to prepend a BOM.
        text = config_path.read_text(encoding="utf-8-sig")
    except FileNotFoundError as exc:
        raise ConfigError(
            f"Configuration file not found: {config_path}", path=str(config_path)
        ) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(
            f"Cannot read configuration file {config_path}: {exc}", path=str(config_path)
        ) from exc

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(
            f"Malformed configuration file {config_path}: {exc}", path=str(config_path)
        ) from exc

    if not isinstance(data, dict):
        raise ConfigError(
            f"Configuration file {config_path} must contain a JSON object.",
            path=str(config_path),
        )

    try:
        config = DriverPackConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid configuration file {config_path}: {exc}", path=str(config_path)
        ) from exc

    logger.debug(
        "[config] Loaded configuration",
        extra={
            "path": str(config_path),
            "vendors": [vendor.value for vendor in config.profiles()],
        },
    )
    return config


def save_config(config: DriverPackConfig, path: Union[str, Path]) -> Path:
    """Write a configuration document using the on-disk (PascalCase) schema."""
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        config.model_dump_json(indent=2, by_alias=True, exclude_none=True), encoding="utf-8"
    )
    logger.debug(
        "[config] Saved configuration",
        extra={"path": str(config_path), "vendors": [v.value for v in config.profiles()]},
    )
    return config_path


def default_config() -> DriverPackConfig:
    """The default values shipped with the application."""
    return load_config(bundled_config_path())


class ConfigStore:
    """Holds the live configuration snapshot and resolves vendor settings.

    Every load replaces the snapshot wholesale. A run takes one snapshot
    reference via ``resolve_profile`` and is unaffected by later reloads.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        candidates: Optional[Sequence[Path]] = None,
    ) -> None:
        self._path: Optional[Path] = Path(path) if path is not None else None
        # Without an explicit path every load re-resolves the candidates.
        self._pinned = path is not None
        self._candidates = list(candidates) if candidates is not None else None
        self._snapshot: Optional[DriverPackConfig] = None
        self._swap_lock = threading.Lock()
        self._watchers: List["ConfigWatcher"] = []

    @property
    def path(self) -> Optional[Path]:
        """The file the current snapshot was (or will be) loaded from."""
        return self._path

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> DriverPackConfig:
        config = self._snapshot
        if config is None:
            raise ConfigError("Configuration has not been loaded.", path=str(self._path or ""))
        return config

    @property
    def pinned(self) -> bool:
        """True once the store is bound to one file instead of the candidate list."""
        return self._pinned

    def candidate_paths(self) -> List[Path]:
        candidates = self._candidates if self._candidates is not None else config_candidates()
        return [Path(p) for p in candidates]

    def load(self, path: Optional[Union[str, Path]] = None) -> DriverPackConfig:
        """Load a configuration file and make it the live snapshot.

        Passing ``path`` binds the store to that file. Otherwise an unbound
        store searches its candidates again, so a user file created after
        startup takes over from the bundled default.

        On failure the previous snapshot stays live and ConfigError propagates.
        """
        if path is not None:
            target = Path(path)
        elif self._pinned and self._path is not None:
            target = self._path
        else:
            target = resolve_config_path(self.candidate_paths())

        config = load_config(target)
        with self._swap_lock:
            self._snapshot = config
            self._path = target
            if path is not None:
                self._pinned = True
        logger.info("[config] Configuration active", extra={"path": str(target)})
        return config

    def reload(self) -> DriverPackConfig:
        """Re-read the bound file, or re-resolve the candidates when unbound."""
        return self.load()

    def profile(self, vendor: Union[Vendor, str]) -> VendorProfile:
        """Profile for ``vendor``; ConfigNotFoundError when the section is missing."""
        resolved = coerce_vendor(vendor)
        profile = self.snapshot.section(resolved)
        if profile is None:
            raise ConfigNotFoundError(
                f"Configuration section '{resolved.value}' not found in {self._path}.",
                vendor=resolved.value,
            )
        return profile

    def get(self, vendor: Union[Vendor, str], key: str) -> Any:
        """Look up one setting; unknown vendors and keys are errors, never defaults."""
        profile = self.profile(vendor)
        attribute = _profile_key_map(profile).get(key.strip().lower())
        if attribute is None:
            raise ConfigNotFoundError(
                f"Configuration key '{key}' not found in section '{profile.vendor.value}'.",
                vendor=profile.vendor.value,
                key=key,
            )
        return getattr(profile, attribute)

    def resolve_profile(self, vendor: Union[Vendor, str]) -> VendorProfile:
        """Profile that is complete enough to run: script name and network path set."""
        profile = self.profile(vendor)
        for attribute, label in (
            ("script_name", "DriverScriptName"),
            ("network_path", "NetworkPath"),
        ):
            if not str(getattr(profile, attribute)).strip():
                raise ConfigNotFoundError(
                    f"Configuration key '{label}' is empty in section '{profile.vendor.value}'.",
                    vendor=profile.vendor.value,
                    key=label,
                )
        return profile

    def watch(
        self,
        on_change: Optional[Callable[[DriverPackConfig], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        *,
        path: Optional[Union[str, Path]] = None,
        poll_interval: float = 0.5,
        settle_delay: float = 0.5,
    ) -> "ConfigWatcher":
        """Start hot-reloading this store when its configuration changes.

        An unbound store watches its first candidate (the per-user file), even
        while it does not exist yet, and re-resolves on every change.
        """
        from driverpack.core.config_watch import ConfigWatcher

        resolve = False
        if path is not None:
            watch_path = Path(path)
        elif self._pinned and self._path is not None:
            watch_path = self._path
        else:
            candidates = self.candidate_paths()
            if not candidates:
                raise ConfigError("No configuration locations to watch.")
            watch_path = candidates[0]
            resolve = True
        watcher = ConfigWatcher(
            self,
            watch_path,
            resolve=resolve,
            on_change=on_change,
            on_error=on_error,
            poll_interval=poll_interval,
            settle_delay=settle_delay,
        )
        watcher.start()
        self._watchers.append(watcher)
        return watcher

    def close(self) -> None:
        """Stop every watcher started through ``watch``."""
        watchers, self._watchers = self._watchers, []
        for watcher in watchers:
            watcher.stop()


__all__ = [
    "Vendor",
    "coerce_vendor",
    "HPProfile",
    "LenovoProfile",
    "DellProfile",
    "VendorProfile",
    "DriverPackConfig",
    "bundled_config_path",
    "config_candidates",
    "resolve_config_path",
    "load_config",
    "save_config",
    "default_config",
    "ConfigStore",
]

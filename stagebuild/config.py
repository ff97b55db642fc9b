"""Tool configuration: ``stagebuild.toml`` in the workspace."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
import os

from core.archive import resolve_archive_format
from core.config_loader import find_config_file, load_config_file

from .backends import BACKENDS
from .console import Console
from .packages import PackageManagerRegistry

CONFIG_STEM = "stagebuild"
CONFIG_ENV = "STAGEBUILD_CONFIG"

_GLOBAL_KEYS = {"images_dir", "cache_dir", "backend", "package_manager", "log_level", "export_format"}


@dataclass(slots=True)
class GlobalConfig:
    images_dir: str = "images"
    cache_dir: str | None = None
    backend: str = "chroot"
    package_manager: str = "apt"
    log_level: str = "info"
    export_format: str = "tar.zst"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        global_section = data.get("global", {}) if isinstance(data, Mapping) else {}
        if not isinstance(global_section, Mapping):
            raise TypeError("[global] must be a table")
        unknown = {str(key) for key in global_section if str(key) not in _GLOBAL_KEYS}
        if unknown:
            raise ValueError(f"[global] contains unknown keys: {', '.join(sorted(unknown))}")

        config = cls(
            images_dir=str(global_section.get("images_dir", "images")),
            cache_dir=str(global_section.get("cache_dir")) if global_section.get("cache_dir") else None,
            backend=str(global_section.get("backend", "chroot")).lower(),
            package_manager=str(global_section.get("package_manager", "apt")).lower(),
            log_level=str(global_section.get("log_level", "info")).lower(),
            export_format=str(global_section.get("export_format", "tar.zst")),
        )
        if config.backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{config.backend}'. Choose one of: {', '.join(BACKENDS)}")
        if config.log_level not in Console.LEVELS:
            raise ValueError(f"Unknown log level '{config.log_level}'. Choose one of: {', '.join(Console.LEVELS)}")
        resolve_archive_format("", config.export_format)
        return config


@dataclass(slots=True)
class Configuration:
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    package_managers: PackageManagerRegistry = field(default_factory=PackageManagerRegistry.with_builtins)
    path: Path | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, path: Path | None = None) -> "Configuration":
        global_config = GlobalConfig.from_mapping(data)
        registry = PackageManagerRegistry.with_builtins()
        section = data.get("package_managers")
        if isinstance(section, Mapping):
            registry.merge_from_mapping(section)
        errors = registry.validate()
        if errors:
            raise ValueError("; ".join(errors))
        registry.require(global_config.package_manager)
        return cls(global_config=global_config, package_managers=registry, path=path)

    def resolve_path(self, value: str, workspace: Path) -> Path:
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        base = self.path.parent if self.path is not None else workspace
        return base / path


def locate_config(
    workspace: Path,
    *,
    explicit: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Path | None:
    """Return the configuration file to load, if any.

    Order: ``explicit`` (``--config``), ``$STAGEBUILD_CONFIG``, then
    ``stagebuild.<toml|json|yaml>`` in ``workspace``. A file named explicitly
    must exist.
    """

    env = os.environ if environ is None else environ
    candidate: Path | None = explicit
    if candidate is None and env.get(CONFIG_ENV):
        candidate = Path(env[CONFIG_ENV]).expanduser()
    if candidate is not None:
        if not candidate.is_absolute():
            candidate = workspace / candidate
        if not candidate.is_file():
            raise FileNotFoundError(f"Configuration file '{candidate}' does not exist")
        return candidate
    return find_config_file(workspace, CONFIG_STEM)


def load_configuration(
    workspace: Path,
    *,
    explicit: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Configuration:
    path = locate_config(workspace, explicit=explicit, environ=environ)
    if path is None:
        return Configuration()
    return Configuration.from_mapping(load_config_file(path), path=path)


__all__ = [
    "CONFIG_ENV",
    "CONFIG_STEM",
    "Configuration",
    "GlobalConfig",
    "load_configuration",
    "locate_config",
]

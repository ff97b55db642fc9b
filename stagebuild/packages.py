"""Package manager definitions and registry utilities."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from core.config_loader import normalize_string_list


def _to_str_dict(mapping: Mapping[str, Any]) -> Dict[str, str]:
    return {str(key): str(value) for key, value in mapping.items()}


@dataclass(slots=True)
class PackageManagerDefinition:
    """How one package ecosystem installs packages and where it caches indexes.

    ``install`` is the argv prefix the package names are appended to.
    ``cache_paths`` are image directories whose contents are purged when an
    install asks for cleanup; the directories themselves are kept.
    ``root_options`` are inserted after the program name when the command
    runs on the host instead of inside the image; ``{root}`` is replaced by
    the materialized image root.
    """

    name: str
    description: str | None = None
    update: List[str] = field(default_factory=list)
    install: List[str] = field(default_factory=list)
    cache_paths: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    root_options: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "PackageManagerDefinition":
        if not isinstance(data, Mapping):
            raise TypeError(f"Package manager '{name}' definition must be a mapping")

        allowed_keys = {"description", "update", "install", "cache_paths", "environment", "root_options"}
        unknown = {str(key) for key in data.keys() if str(key) not in allowed_keys}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ValueError(f"Package manager '{name}' contains unknown keys: {joined}")

        environment: Dict[str, str] = {}
        env_section = data.get("environment")
        if isinstance(env_section, Mapping):
            environment = _to_str_dict(env_section)

        description = data.get("description")
        return cls(
            name=name,
            description=str(description) if description is not None else None,
            update=normalize_string_list(data.get("update"), field_name=f"{name}.update"),
            install=normalize_string_list(data.get("install"), field_name=f"{name}.install"),
            cache_paths=normalize_string_list(data.get("cache_paths"), field_name=f"{name}.cache_paths"),
            environment=environment,
            root_options=normalize_string_list(data.get("root_options"), field_name=f"{name}.root_options"),
        )

    def merge(self, other: "PackageManagerDefinition") -> "PackageManagerDefinition":
        environment = dict(self.environment)
        environment.update(other.environment)
        return PackageManagerDefinition(
            name=self.name,
            description=other.description or self.description,
            update=list(other.update or self.update),
            install=list(other.install or self.install),
            cache_paths=list(other.cache_paths or self.cache_paths),
            environment=environment,
            root_options=list(other.root_options or self.root_options),
        )

    def clone(self) -> "PackageManagerDefinition":
        return PackageManagerDefinition(
            name=self.name,
            description=self.description,
            update=list(self.update),
            install=list(self.install),
            cache_paths=list(self.cache_paths),
            environment=dict(self.environment),
            root_options=list(self.root_options),
        )

    def install_command(self, packages: Iterable[str]) -> List[str]:
        return [*self.install, *packages]

    def commands(self, packages: Iterable[str]) -> List[List[str]]:
        commands: List[List[str]] = [list(self.update)] if self.update else []
        commands.append(self.install_command(packages))
        return commands

    def rooted(self, argv: Sequence[str], root: Path) -> List[str]:
        """Return ``argv`` retargeted at the image tree below ``root``."""

        if not argv:
            return []
        options = [option.replace("{root}", str(root)) for option in self.root_options]
        return [argv[0], *options, *argv[1:]]

    def fingerprint(self) -> Dict[str, Any]:
        return {
            "update": list(self.update),
            "install": list(self.install),
            "cache_paths": list(self.cache_paths),
            "environment": dict(sorted(self.environment.items())),
            "root_options": list(self.root_options),
        }

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.install:
            errors.append(f"Package manager '{self.name}' must define an install command")
        return errors


def _build_builtin_definitions() -> Dict[str, PackageManagerDefinition]:
    raw: Dict[str, Mapping[str, Any]] = {
        "apt": {
            "description": "Debian/Ubuntu APT",
            "update": ["apt-get", "update"],
            "install": ["apt-get", "install", "-y", "--no-install-recommends"],
            "cache_paths": ["/var/lib/apt/lists", "/var/cache/apt/archives"],
            "environment": {"DEBIAN_FRONTEND": "noninteractive"},
            "root_options": ["-o", "Dir={root}", "-o", "DPkg::Options::=--root={root}"],
        },
        "apk": {
            "description": "Alpine apk-tools",
            "update": ["apk", "update"],
            "install": ["apk", "add"],
            "cache_paths": ["/var/cache/apk"],
            "root_options": ["--root", "{root}"],
        },
        "dnf": {
            "description": "Fedora/RHEL DNF",
            "update": ["dnf", "makecache"],
            "install": ["dnf", "install", "-y"],
            "cache_paths": ["/var/cache/dnf"],
            "root_options": ["--installroot", "{root}"],
        },
    }

    definitions: Dict[str, PackageManagerDefinition] = {}
    for name, data in raw.items():
        definitions[name] = PackageManagerDefinition.from_mapping(name, data)
    return definitions


class PackageManagerRegistry:
    def __init__(self, definitions: Mapping[str, PackageManagerDefinition] | None = None) -> None:
        self._definitions: Dict[str, PackageManagerDefinition] = {}
        if definitions:
            for name, definition in definitions.items():
                self._definitions[name] = definition.clone()

    @classmethod
    def with_builtins(cls) -> "PackageManagerRegistry":
        return cls(_build_builtin_definitions())

    def merge(self, definitions: Mapping[str, PackageManagerDefinition]) -> None:
        for name, definition in definitions.items():
            existing = self._definitions.get(name)
            if existing:
                self._definitions[name] = existing.merge(definition)
            else:
                self._definitions[name] = definition.clone()

    def merge_from_mapping(self, mapping: Mapping[str, Any]) -> None:
        if not mapping:
            return
        section = mapping.get("package_managers")
        candidates = section if isinstance(section, Mapping) else mapping
        parsed: Dict[str, PackageManagerDefinition] = {}
        for raw_name, raw_value in candidates.items():
            name = str(raw_name).strip().lower()
            if name and isinstance(raw_value, Mapping):
                parsed[name] = PackageManagerDefinition.from_mapping(name, raw_value)
        if parsed:
            self.merge(parsed)

    def get(self, name: str) -> PackageManagerDefinition | None:
        definition = self._definitions.get(name.lower())
        return definition.clone() if definition else None

    def require(self, name: str) -> PackageManagerDefinition:
        definition = self.get(name)
        if definition is None:
            available = ", ".join(sorted(self.available()))
            raise ValueError(f"Unknown package manager '{name}'. Available: {available}")
        return definition

    def available(self) -> Iterable[str]:
        return self._definitions.keys()

    def validate(self) -> list[str]:
        errors: list[str] = []
        for definition in self._definitions.values():
            errors.extend(definition.validate())
        return errors


BUILTIN_PACKAGE_MANAGERS = _build_builtin_definitions()

__all__ = [
    "BUILTIN_PACKAGE_MANAGERS",
    "PackageManagerDefinition",
    "PackageManagerRegistry",
]

"""Shared helpers for locating and loading configuration and manifest mappings."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

import json
import tomllib

import yaml


ConfigLoader = Callable[[Any], Mapping[str, Any]]


FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".toml": lambda stream: tomllib.load(stream),
    ".json": lambda stream: json.load(stream),
    ".yaml": lambda stream: yaml.safe_load(stream),
    ".yml": lambda stream: yaml.safe_load(stream),
}
"""Mapping of file suffixes to loader callables."""


def is_config_file(path: Path) -> bool:
    """Return whether ``path`` has a suffix handled by :data:`FILE_LOADERS`."""

    return path.suffix.lower() in FILE_LOADERS


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Load and decode a configuration mapping from ``path``."""

    suffix = path.suffix.lower()
    loader = FILE_LOADERS.get(suffix)
    if loader is None:
        supported = ", ".join(sorted(FILE_LOADERS)) or "<none>"
        raise ValueError(
            f"Unsupported configuration file extension: {suffix}. Supported: {supported}"
        )

    mode = "rb" if suffix == ".toml" else "r"
    kwargs: Dict[str, Any] = {}
    if mode == "r":
        kwargs["encoding"] = "utf-8"

    with path.open(mode, **kwargs) as handle:
        data = loader(handle)

    if not isinstance(data, Mapping):
        raise TypeError(f"Configuration file '{path}' must contain a mapping at the root")

    return data


def find_config_file(directory: Path, stem: str, *, suffixes: Iterable[str] | None = None) -> Path | None:
    """Return the single ``<stem>.<suffix>`` file in ``directory``, if any.

    Having the same stem in more than one format is ambiguous and rejected.
    """

    allowed = [suffix.lower() for suffix in (suffixes or FILE_LOADERS.keys())]
    found: List[Path] = []
    for suffix in allowed:
        candidate = directory / f"{stem}{suffix}"
        if candidate.is_file():
            found.append(candidate)

    if len(found) > 1:
        names = "', '".join(path.name for path in found)
        raise ValueError(
            f"Multiple configuration files found for '{stem}': '{names}'. "
            "Only one format per configuration entry is allowed."
        )
    return found[0] if found else None


def normalize_string_list(value: Any, *, field_name: str | None = None) -> List[str]:
    """Coerce ``value`` into a list of trimmed strings."""

    if value is None:
        return []

    if isinstance(value, (str, bytes)):
        text = str(value).strip()
        return [text] if text else []

    if isinstance(value, Sequence):
        items: List[str] = []
        for item in value:
            if not isinstance(item, (str, bytes)):
                label = f"{field_name} " if field_name else ""
                raise TypeError(f"{label}entries must be strings")
            text = str(item).strip()
            if text:
                items.append(text)
        return items

    label = f"{field_name} " if field_name else ""
    raise TypeError(f"{label}must be a string or sequence of strings")


__all__ = [
    "ConfigLoader",
    "FILE_LOADERS",
    "find_config_file",
    "is_config_file",
    "load_config_file",
    "normalize_string_list",
]

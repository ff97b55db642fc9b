"""Locate and load manifests in either supported form."""
from __future__ import annotations

from pathlib import Path
from typing import Mapping

from core.config_loader import find_config_file, is_config_file, load_config_file

from .buildfile import parse_buildfile
from .manifest import Manifest

MANIFEST_STEM = "stages"
BUILDFILE_NAMES = ("Stagefile", "Dockerfile")


def find_manifest(directory: Path) -> Path | None:
    """Return the manifest in ``directory``: ``stages.<toml|json|yaml>`` first, then a build file."""

    structured = find_config_file(directory, MANIFEST_STEM)
    if structured is not None:
        return structured
    for name in BUILDFILE_NAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_manifest(path: Path, *, args: Mapping[str, str] | None = None) -> Manifest:
    """Load ``path`` as a structured manifest or, for any other suffix, a build file."""

    if is_config_file(path):
        return Manifest.from_mapping(load_config_file(path), args=args, source=str(path))
    return parse_buildfile(path.read_text(encoding="utf-8"), args=args, source=str(path))


__all__ = ["BUILDFILE_NAMES", "MANIFEST_STEM", "find_manifest", "load_manifest"]

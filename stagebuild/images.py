"""Local base image store.

Images live below ``images_dir`` as either an unpacked tree::

    <images_dir>/<name>/<tag>/rootfs/...

or a packed archive next to the tag directory::

    <images_dir>/<name>/<tag>.tar.zst

An optional ``<images_dir>/<name>/<tag>/image.toml`` (or ``.json``/``.yaml``)
carries metadata such as the image's ``package_manager``. ``scratch`` is the
built-in empty image.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

from core.archive import FORMAT_SUFFIXES, ArchiveManager
from core.config_loader import find_config_file, load_config_file

from .console import Console
from .errors import ImageNotFound
from .snapshot import Snapshot
from .users import user_names

SCRATCH = "scratch"
DEFAULT_TAG = "latest"


def parse_reference(reference: str) -> tuple[str, str]:
    """Split ``name[:tag]`` and reject references that leave the image store."""

    text = reference.strip()
    name, tag = text, DEFAULT_TAG
    colon = text.rfind(":")
    if colon > text.rfind("/"):
        name, tag = text[:colon], text[colon + 1:]
    if not name or not tag:
        raise ValueError(f"Invalid image reference '{reference}'")
    parts = [*name.split("/"), tag]
    if name.startswith("/") or any(part in {"", ".", ".."} for part in parts):
        raise ValueError(f"Invalid image reference '{reference}'")
    return name, tag


@dataclass(frozen=True)
class BaseImage:
    reference: str
    snapshot: Snapshot
    package_manager: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def users(self) -> frozenset[str]:
        return frozenset(user_names(self.snapshot))


class BaseImageResolver:
    def __init__(
        self,
        images_dir: Path,
        *,
        console: Console | None = None,
        archive_manager: ArchiveManager | None = None,
    ) -> None:
        self.images_dir = images_dir
        self._console = console or Console()
        self._archives = archive_manager or ArchiveManager(self._console)
        self._resolved: Dict[str, BaseImage] = {}

    def resolve(self, reference: str) -> BaseImage:
        cached = self._resolved.get(reference)
        if cached is not None:
            return cached

        if reference.strip() == SCRATCH:
            image = BaseImage(reference=reference, snapshot=Snapshot.empty())
        else:
            image = self._load(reference)
        self._resolved[reference] = image
        return image

    def users(self, reference: str) -> frozenset[str]:
        return self.resolve(reference).users

    def _load(self, reference: str) -> BaseImage:
        name, tag = parse_reference(reference)
        image_dir = self.images_dir / name / tag
        rootfs = image_dir / "rootfs"
        searched: List[str] = [str(rootfs)]

        snapshot: Snapshot | None = None
        if rootfs.is_dir():
            self._console.debug(f"Loading base image {reference} from {rootfs}")
            snapshot = Snapshot.capture(rootfs)
        else:
            for suffix in FORMAT_SUFFIXES.values():
                archive = self.images_dir / name / f"{tag}{suffix}"
                searched.append(str(archive))
                if archive.is_file():
                    self._console.debug(f"Loading base image {reference} from {archive}")
                    snapshot = Snapshot.from_members(self._archives.read_archive(archive))
                    break

        if snapshot is None:
            raise ImageNotFound(reference, searched)

        metadata: Dict[str, Any] = {}
        if image_dir.is_dir():
            metadata_file = find_config_file(image_dir, "image")
            if metadata_file is not None:
                metadata = dict(load_config_file(metadata_file))
        package_manager = metadata.get("package_manager")
        return BaseImage(
            reference=reference,
            snapshot=snapshot,
            package_manager=str(package_manager) if package_manager else None,
            metadata=metadata,
        )


__all__ = ["BaseImage", "BaseImageResolver", "DEFAULT_TAG", "SCRATCH", "parse_reference"]

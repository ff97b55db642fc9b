"""Write a built image to disk as a rootfs archive plus ``image.json``."""
from __future__ import annotations

from pathlib import Path
import json

from core.archive import FORMAT_SUFFIXES, ArchiveManager, resolve_archive_format

from .assembler import Image
from .console import Console

IMAGE_CONFIG = "image.json"


class ImageExporter:
    def __init__(self, console: Console, *, archive_manager: ArchiveManager | None = None) -> None:
        self._console = console
        self._archives = archive_manager or ArchiveManager(console)

    def export(self, image: Image, output_dir: Path, *, format_hint: str = "tar.zst") -> tuple[Path, Path]:
        archive_format = resolve_archive_format("", format_hint)
        rootfs = output_dir / f"rootfs{FORMAT_SUFFIXES[archive_format]}"
        config_path = output_dir / IMAGE_CONFIG

        self._archives.write_archive(image.snapshot.to_members(), rootfs, format_hint=archive_format)
        if self._console.dry_run:
            self._console.dry(f"Would write image config {config_path}")
            return rootfs, config_path

        config = image.config()
        config["rootfs"] = rootfs.name
        output_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps(config, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        self._console.info(f"Exported {image.tag or image.digest} to {output_dir}")
        return rootfs, config_path


__all__ = ["IMAGE_CONFIG", "ImageExporter"]

"""Archive utilities for writing and reading filesystem trees as tarballs."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol, runtime_checkable
import gzip
import io
import lzma
import os
import shutil
import tarfile
import tempfile

import zstandard as zstd

_SUFFIX_FORMATS: list[tuple[str, str]] = [
    (".tar.zst", "zst"),
    (".tzst", "zst"),
    (".tar.gz", "gztar"),
    (".tgz", "gztar"),
    (".tar.xz", "xztar"),
    (".txz", "xztar"),
    (".tar", "tar"),
]

_FORMAT_ALIASES: dict[str, str] = {
    "zst": "zst",
    "tar.zst": "zst",
    "tzst": "zst",
    "gztar": "gztar",
    "gz": "gztar",
    "tar.gz": "gztar",
    "tgz": "gztar",
    "xztar": "xztar",
    "xz": "xztar",
    "tar.xz": "xztar",
    "txz": "xztar",
    "tar": "tar",
}

FORMAT_SUFFIXES: dict[str, str] = {
    "zst": ".tar.zst",
    "gztar": ".tar.gz",
    "xztar": ".tar.xz",
    "tar": ".tar",
}
"""Canonical file suffix for each archive format."""


@runtime_checkable
class ArchiveConsole(Protocol):
    """Minimal console interface required by :class:`ArchiveManager`."""

    dry_run: bool

    def info(self, message: str) -> None:
        ...

    def error(self, message: str) -> None:
        ...

    def dry(self, message: str) -> None:
        ...


@dataclass(frozen=True, slots=True)
class ArchiveMember:
    """One filesystem entry stored in (or read from) an archive."""

    path: str
    kind: str
    data: bytes = b""
    mode: int = 0o644
    owner: str = "root"
    link_target: str | None = None


def resolve_archive_format(path: Path | str, format_hint: str | None = None) -> str:
    """Return the archive format for ``path``, honouring an explicit hint."""

    if format_hint:
        normalized = format_hint.strip().lower().lstrip(".")
        if normalized in _FORMAT_ALIASES:
            return _FORMAT_ALIASES[normalized]
        raise ValueError(f"Unsupported archive format hint '{format_hint}'")

    filename = Path(path).name.lower()
    for suffix, fmt in sorted(_SUFFIX_FORMATS, key=lambda item: len(item[0]), reverse=True):
        if filename.endswith(suffix):
            return fmt

    raise ValueError(
        "Unable to determine archive format from target path. "
        "Provide an explicit format_hint or use a supported suffix."
    )


class ArchiveManager:
    """Create and read reproducible tar archives of filesystem trees.

    Members are written in the order given with a zero mtime, so identical
    input always yields byte-identical tar streams.
    """

    def __init__(self, console: ArchiveConsole, *, compression_level: int = 19) -> None:
        self._console = console
        self._compression_level = compression_level

    @staticmethod
    def _zstd_thread_count(source_size: int) -> int:
        cpu_count = os.cpu_count() or 1
        if cpu_count <= 1:
            return 1

        size_mb = max(1, source_size) / (1024 * 1024)
        desired = 1
        if size_mb >= 32:
            desired = 2
        if size_mb >= 256:
            desired = 4
        if size_mb >= 1024:
            desired = 8
        return max(1, min(desired, cpu_count))

    def _zstd_compression_params(self, source_size: int) -> zstd.ZstdCompressionParameters:
        size = max(1, source_size)
        window_log = max(10, min(27, (size - 1).bit_length()))
        params_kwargs: dict[str, Any] = {
            "compression_level": self._compression_level,
            "threads": self._zstd_thread_count(size),
            "write_checksum": True,
            "write_content_size": True,
            "window_log": window_log,
        }
        return zstd.ZstdCompressionParameters(**params_kwargs)

    def write_archive(
        self,
        members: Iterable[ArchiveMember],
        target_path: Path | str,
        *,
        format_hint: str | None = None,
        overwrite: bool = True,
    ) -> Path:
        """Write ``members`` into an archive at ``target_path``.

        The format is inferred from the suffix of ``target_path`` unless
        ``format_hint`` names one explicitly. When ``overwrite`` is ``False``
        an existing target raises :class:`FileExistsError`.
        """

        target = Path(target_path).expanduser()
        archive_format = resolve_archive_format(target, format_hint)

        if self._console.dry_run:
            self._emit_dry(f"Would write archive {target}")
            return target

        if target.exists() and not overwrite:
            raise FileExistsError(f"Archive target '{target}' already exists")

        target.parent.mkdir(parents=True, exist_ok=True)
        temp_tar = self._create_pax_tar(members=members, temp_dir=target.parent)

        try:
            if archive_format == "zst":
                params = self._zstd_compression_params(temp_tar.stat().st_size)
                compressor = zstd.ZstdCompressor(compression_params=params)
                with temp_tar.open("rb") as src, target.open("wb") as dst:
                    compressor.copy_stream(src, dst)
            elif archive_format == "gztar":
                with temp_tar.open("rb") as src, target.open("wb") as raw:
                    with gzip.GzipFile(filename="", fileobj=raw, mode="wb", compresslevel=9, mtime=0) as dst:
                        shutil.copyfileobj(src, dst)
            elif archive_format == "xztar":
                with temp_tar.open("rb") as src, lzma.open(target, "wb", check=lzma.CHECK_CRC64) as dst:
                    shutil.copyfileobj(src, dst)
            elif archive_format == "tar":
                shutil.copyfile(temp_tar, target)
            else:
                raise RuntimeError(f"Unsupported archive format '{archive_format}'")
        finally:
            temp_tar.unlink(missing_ok=True)

        return target

    def read_archive(
        self,
        archive_path: Path | str,
        *,
        format_hint: str | None = None,
    ) -> Iterator[ArchiveMember]:
        """Yield the members stored in ``archive_path``.

        Device nodes, FIFOs and hard links are skipped.
        """

        archive = Path(archive_path).expanduser()
        if not archive.exists():
            raise FileNotFoundError(f"Archive '{archive}' does not exist")

        archive_format = resolve_archive_format(archive, format_hint)
        if archive_format == "zst":
            dctx = zstd.ZstdDecompressor()
            with archive.open("rb") as ifh, dctx.stream_reader(ifh) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    yield from self._iter_members(tar)
            return

        modes = {"gztar": "r:gz", "xztar": "r:xz", "tar": "r:"}
        with tarfile.open(archive, modes[archive_format]) as tar:
            yield from self._iter_members(tar)

    @staticmethod
    def _iter_members(tar: tarfile.TarFile) -> Iterator[ArchiveMember]:
        for info in tar:
            path = info.name
            while path.startswith("./"):
                path = path[2:]
            path = path.strip("/")
            if not path or path == ".":
                continue
            owner = info.uname or ("root" if info.uid == 0 else str(info.uid))
            if info.isdir():
                yield ArchiveMember(path=path, kind="dir", mode=info.mode, owner=owner)
            elif info.issym():
                yield ArchiveMember(
                    path=path, kind="symlink", mode=info.mode, owner=owner, link_target=info.linkname
                )
            elif info.isfile():
                handle = tar.extractfile(info)
                data = handle.read() if handle is not None else b""
                yield ArchiveMember(path=path, kind="file", data=data, mode=info.mode, owner=owner)

    def _emit_dry(self, message: str) -> None:
        dry_method = getattr(self._console, "dry", None)
        if callable(dry_method):
            dry_method(message)
            return
        if getattr(self._console, "dry_run", False):
            self._console.info(f"[dry-run] {message}")

    @staticmethod
    def _tar_info(member: ArchiveMember) -> tarfile.TarInfo:
        info = tarfile.TarInfo(name=member.path)
        info.mtime = 0
        info.mode = member.mode
        info.uname = member.owner
        info.gname = member.owner
        info.uid = 0
        info.gid = 0
        if member.kind == "dir":
            info.type = tarfile.DIRTYPE
        elif member.kind == "symlink":
            info.type = tarfile.SYMTYPE
            info.linkname = member.link_target or ""
        else:
            info.type = tarfile.REGTYPE
            info.size = len(member.data)
        return info

    def _create_pax_tar(self, *, members: Iterable[ArchiveMember], temp_dir: Path) -> Path:
        with tempfile.NamedTemporaryFile(dir=temp_dir, suffix=".tar", delete=False) as temp_handle:
            temp_path = Path(temp_handle.name)

        try:
            with tarfile.open(temp_path, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for member in members:
                    info = self._tar_info(member)
                    payload = io.BytesIO(member.data) if member.kind == "file" else None
                    tar.addfile(info, payload)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        return temp_path


__all__ = [
    "ArchiveConsole",
    "ArchiveManager",
    "ArchiveMember",
    "FORMAT_SUFFIXES",
    "resolve_archive_format",
]

"""Immutable filesystem snapshots.

A :class:`Snapshot` maps normalized paths (posix, relative to the image root,
no leading slash) to :class:`Entry` values. Every change returns a new
snapshot; an existing one is never modified, so a stage can hand its final
snapshot to other stages without any aliasing of mutable state.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping
import hashlib
import os
import posixpath
import stat

from core.archive import ArchiveMember

FILE = "file"
DIRECTORY = "dir"
SYMLINK = "symlink"
MAX_SYMLINK_HOPS = 40


def normalize_path(path: str, workdir: str = "/") -> str:
    """Resolve ``path`` against ``workdir`` and return the snapshot key.

    The image root is the empty string. ``..`` never escapes the root.
    """

    joined = posixpath.join("/", workdir or "/", path)
    normalized = posixpath.normpath(joined)
    return normalized.lstrip("/")


def absolute(path: str) -> str:
    return "/" + path.lstrip("/")


@dataclass(frozen=True, slots=True)
class Entry:
    kind: str
    data: bytes = b""
    mode: int = 0o644
    owner: str = "root"
    target: str | None = None

    @classmethod
    def file(cls, data: bytes, *, mode: int = 0o644, owner: str = "root") -> "Entry":
        return cls(kind=FILE, data=data, mode=mode, owner=owner)

    @classmethod
    def directory(cls, *, mode: int = 0o755, owner: str = "root") -> "Entry":
        return cls(kind=DIRECTORY, mode=mode, owner=owner)

    @classmethod
    def symlink(cls, target: str, *, owner: str = "root") -> "Entry":
        return cls(kind=SYMLINK, mode=0o777, owner=owner, target=target)

    @property
    def is_dir(self) -> bool:
        return self.kind == DIRECTORY

    def chown(self, owner: str) -> "Entry":
        return self if owner == self.owner else replace(self, owner=owner)

    def fingerprint(self) -> str:
        content = hashlib.sha256(self.data).hexdigest() if self.kind == FILE else ""
        return f"{self.kind}:{self.mode:o}:{self.owner}:{self.target or ''}:{content}"


class Snapshot:
    """Immutable mapping of image paths to entries."""

    __slots__ = ("_entries", "_digest")

    def __init__(self, entries: Mapping[str, Entry] | None = None) -> None:
        normalized: Dict[str, Entry] = {}
        for path, entry in (entries or {}).items():
            key = normalize_path(path)
            if key:
                normalized[key] = entry
        _add_missing_parents(normalized)
        self._entries: Mapping[str, Entry] = MappingProxyType(dict(sorted(normalized.items())))
        self._digest: str | None = None

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls()

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_path(path) in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return self.digest == other.digest

    def __hash__(self) -> int:
        return hash(self.digest)

    def __repr__(self) -> str:
        return f"Snapshot(entries={len(self)}, digest={self.digest[:19]})"

    def get(self, path: str) -> Entry | None:
        return self._entries.get(normalize_path(path))

    def read(self, path: str) -> bytes:
        entry = self.get(path)
        if entry is None or entry.kind != FILE:
            raise FileNotFoundError(absolute(normalize_path(path)))
        return entry.data

    def items(self) -> Iterable[tuple[str, Entry]]:
        return self._entries.items()

    def resolve(self, path: str, *, follow: bool = False) -> str:
        """Return the key ``path`` names once symlinks in the snapshot are followed.

        Links in parent components are always followed; the final component
        only when ``follow`` is set. Link targets never escape the root.
        """

        pending = [part for part in normalize_path(path).split("/") if part]
        resolved = ""
        hops = 0
        while pending:
            part = pending.pop(0)
            candidate = posixpath.join(resolved, part) if resolved else part
            entry = self._entries.get(candidate)
            if entry is None or entry.kind != SYMLINK or not (pending or follow):
                resolved = candidate
                continue
            hops += 1
            if hops > MAX_SYMLINK_HOPS:
                raise ValueError(f"Too many levels of symbolic links in {absolute(normalize_path(path))}")
            target = normalize_path(entry.target or "", absolute(resolved))
            pending = [piece for piece in target.split("/") if piece] + pending
            resolved = ""
        return resolved

    def is_dir(self, path: str) -> bool:
        key = normalize_path(path)
        if not key:
            return True
        entry = self._entries.get(key)
        return entry is not None and entry.is_dir

    @property
    def digest(self) -> str:
        if self._digest is None:
            hasher = hashlib.sha256()
            for path, entry in self._entries.items():
                hasher.update(path.encode("utf-8"))
                hasher.update(b"\0")
                hasher.update(entry.fingerprint().encode("utf-8"))
                hasher.update(b"\n")
            self._digest = f"sha256:{hasher.hexdigest()}"
        return self._digest

    def with_entries(self, updates: Mapping[str, Entry]) -> "Snapshot":
        """Return a copy with ``updates`` applied.

        A non-directory entry replaces whatever was at its path, including
        the subtree of a directory previously stored there.
        """

        merged: Dict[str, Entry] = dict(self._entries)
        for path, entry in updates.items():
            key = normalize_path(path)
            if not key:
                continue
            existing = merged.get(key)
            if existing is not None and existing.is_dir and not entry.is_dir:
                _drop_subtree(merged, key, keep_root=False)
            merged[key] = entry
        return Snapshot(merged)

    def without(self, path: str, *, keep_root: bool = False) -> "Snapshot":
        """Return a copy with ``path`` and everything below it removed."""

        merged: Dict[str, Entry] = dict(self._entries)
        _drop_subtree(merged, normalize_path(path), keep_root=keep_root)
        return Snapshot(merged)

    def subtree(self, path: str) -> Dict[str, Entry]:
        """Return ``path`` and its descendants keyed relative to ``path``.

        The entry for ``path`` itself is stored under the empty key.
        """

        key = normalize_path(path)
        if not key:
            result = {"": Entry.directory()}
            result.update(self._entries)
            return result
        entry = self._entries.get(key)
        if entry is None:
            return {}
        result = {"": entry}
        if entry.is_dir:
            prefix = key + "/"
            for candidate, value in self._entries.items():
                if candidate.startswith(prefix):
                    result[candidate[len(prefix):]] = value
        return result

    def to_members(self) -> Iterator[ArchiveMember]:
        for path, entry in self._entries.items():
            yield ArchiveMember(
                path=path,
                kind=entry.kind,
                data=entry.data,
                mode=entry.mode,
                owner=entry.owner,
                link_target=entry.target,
            )

    @classmethod
    def from_members(cls, members: Iterable[ArchiveMember]) -> "Snapshot":
        entries: Dict[str, Entry] = {}
        for member in members:
            entries[member.path] = Entry(
                kind=member.kind,
                data=member.data,
                mode=member.mode & 0o7777,
                owner=member.owner,
                target=member.link_target,
            )
        return cls(entries)

    def materialize(self, root: Path) -> None:
        """Write the snapshot below ``root`` on the host filesystem.

        Directory modes are applied last so read-only directories can still
        be populated.
        """

        root.mkdir(parents=True, exist_ok=True)
        real_root = os.path.realpath(root)
        directories: list[tuple[Path, int]] = []
        for path, entry in self._entries.items():
            target = root / path
            parent = os.path.realpath(target.parent)
            if parent != real_root and not parent.startswith(real_root + os.sep):
                raise ValueError(f"Path {absolute(path)} escapes the image root through a symlink")
            if entry.kind == DIRECTORY:
                target.mkdir(parents=True, exist_ok=True)
                directories.append((target, entry.mode))
            elif entry.kind == SYMLINK:
                target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(entry.target or "", target)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(entry.data)
                target.chmod(entry.mode)
        for directory, mode in reversed(directories):
            directory.chmod(mode | stat.S_IRWXU)

    @classmethod
    def capture(cls, root: Path, *, previous: "Snapshot | None" = None, owner: str = "root") -> "Snapshot":
        """Read the tree below ``root`` back into a snapshot.

        Paths already present in ``previous`` keep their owner; new paths are
        owned by ``owner``. Sockets, FIFOs and device nodes are ignored.
        """

        entries: Dict[str, Entry] = {}

        def owner_for(key: str) -> str:
            if previous is not None:
                existing = previous.get(key)
                if existing is not None:
                    return existing.owner
            return owner

        def directory_mode(key: str, mode: int) -> int:
            # materialize() adds u+rwx to every directory
            if previous is not None:
                existing = previous.get(key)
                if existing is not None and existing.is_dir and existing.mode | stat.S_IRWXU == mode:
                    return existing.mode
            return mode

        for dirpath, dirnames, filenames in os.walk(root, topdown=True, followlinks=False):
            dirnames.sort()
            current = Path(dirpath)
            for name in [*dirnames, *sorted(filenames)]:
                host_path = current / name
                key = host_path.relative_to(root).as_posix()
                info = host_path.lstat()
                if stat.S_ISLNK(info.st_mode):
                    entries[key] = Entry.symlink(os.readlink(host_path), owner=owner_for(key))
                elif stat.S_ISDIR(info.st_mode):
                    entries[key] = Entry.directory(
                        mode=directory_mode(key, stat.S_IMODE(info.st_mode)), owner=owner_for(key)
                    )
                elif stat.S_ISREG(info.st_mode):
                    entries[key] = Entry.file(
                        host_path.read_bytes(), mode=stat.S_IMODE(info.st_mode), owner=owner_for(key)
                    )
        return cls(entries)


def _add_missing_parents(entries: Dict[str, Entry]) -> None:
    for path in list(entries):
        parent = posixpath.dirname(path)
        while parent and parent not in entries:
            entries[parent] = Entry.directory()
            parent = posixpath.dirname(parent)


def _drop_subtree(entries: Dict[str, Entry], key: str, *, keep_root: bool) -> None:
    if not key:
        entries.clear()
        return
    prefix = key + "/"
    for candidate in [path for path in entries if path.startswith(prefix)]:
        del entries[candidate]
    if not keep_root:
        entries.pop(key, None)


__all__ = [
    "DIRECTORY",
    "Entry",
    "FILE",
    "SYMLINK",
    "Snapshot",
    "absolute",
    "normalize_path",
]

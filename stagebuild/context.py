"""Read-only access to the host build context."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Sequence
import fnmatch
import os
import posixpath
import stat

from .errors import SourceNotFound
from .promoter import Artifact
from .snapshot import Entry, normalize_path

IGNORE_FILE = ".stageignore"
_GLOB_CHARS = set("*?[")


def read_ignore_file(root: Path) -> List[str]:
    path = root / IGNORE_FILE
    if not path.is_file():
        return []
    patterns: List[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line.strip("/"))
    return patterns


class BuildContext:
    """Directory on the host that ``CopySources`` reads from.

    Paths matching a pattern from ``.stageignore`` (or ``ignore``) are never
    copied; an ignored directory hides its whole subtree.
    """

    def __init__(self, root: Path, *, ignore: Sequence[str] | None = None) -> None:
        self.root = root.resolve()
        self._ignore = list(ignore) if ignore is not None else read_ignore_file(self.root)

    def is_ignored(self, relative: str) -> bool:
        if not relative:
            return False
        parts = relative.split("/")
        for depth in range(1, len(parts) + 1):
            prefix = "/".join(parts[:depth])
            if any(fnmatch.fnmatchcase(prefix, pattern) for pattern in self._ignore):
                return True
        return False

    def collect(self, source: str) -> List[Artifact]:
        """Return the artifacts named by ``source`` (a path or glob).

        Raises :class:`SourceNotFound` when nothing matches.
        """

        collapsed = posixpath.normpath(source.lstrip("/") or ".")
        if collapsed == ".." or collapsed.startswith("../"):
            raise SourceNotFound(source, context=str(self.root))

        relative = normalize_path(source)
        if _GLOB_CHARS.intersection(relative):
            matches = sorted(self.root.glob(relative))
            candidates = [path.relative_to(self.root).as_posix() for path in matches]
        else:
            candidates = [relative] if (self.root / relative).exists() or not relative else []

        artifacts = [
            self._artifact(candidate)
            for candidate in candidates
            if not self.is_ignored(candidate)
        ]
        if not artifacts:
            raise SourceNotFound(source, context=str(self.root))
        return artifacts

    def _artifact(self, relative: str) -> Artifact:
        host_path = self.root / relative if relative else self.root
        name = host_path.name if relative else ""
        entries: Dict[str, Entry] = {"": self._entry(host_path)}
        if entries[""].is_dir:
            for child in self._walk(host_path):
                child_relative = child.relative_to(self.root).as_posix()
                if self.is_ignored(child_relative):
                    continue
                entries[child.relative_to(host_path).as_posix()] = self._entry(child)
        return Artifact(name=name, entries=entries)

    def _walk(self, directory: Path) -> Iterable[Path]:
        for dirpath, dirnames, filenames in os.walk(directory, topdown=True, followlinks=False):
            current = Path(dirpath)
            base = current.relative_to(self.root).as_posix() if current != self.root else ""
            dirnames[:] = sorted(
                name for name in dirnames if not self.is_ignored(f"{base}/{name}".lstrip("/"))
            )
            for name in dirnames:
                yield current / name
            for name in sorted(filenames):
                yield current / name

    @staticmethod
    def _entry(path: Path) -> Entry:
        info = path.lstat()
        mode = stat.S_IMODE(info.st_mode)
        if stat.S_ISLNK(info.st_mode):
            return Entry.symlink(os.readlink(path))
        if stat.S_ISDIR(info.st_mode):
            return Entry.directory(mode=mode)
        return Entry.file(path.read_bytes(), mode=mode)


__all__ = ["BuildContext", "IGNORE_FILE", "read_ignore_file"]

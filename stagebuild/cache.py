"""Digest-keyed cache of command and package-install layers."""
from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping
import hashlib
import json

from core.archive import ArchiveManager

from .console import Console
from .manifest import Operation
from .snapshot import Snapshot


class LayerCache:
    """Map ``(parent snapshot, operation, user, workdir)`` to the resulting snapshot.

    Without a ``directory`` the cache lives for one process. With one, every
    layer is also stored as ``<directory>/<key[:2]>/<key>.tar.zst``.
    """

    SUFFIX = ".tar.zst"

    def __init__(
        self,
        directory: Path | None = None,
        *,
        console: Console | None = None,
        archive_manager: ArchiveManager | None = None,
    ) -> None:
        self.directory = directory
        self._console = console or Console()
        self._archives = archive_manager or ArchiveManager(self._console)
        self._layers: Dict[str, Snapshot] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(
        parent: str,
        operation: Operation,
        *,
        user: str,
        workdir: str,
        extra: Mapping[str, Any] | None = None,
    ) -> str:
        payload = {
            "parent": parent,
            "operation": {"kind": operation.kind, **asdict(operation)},
            "user": user,
            "workdir": workdir,
            "extra": dict(extra or {}),
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def _path(self, key: str) -> Path | None:
        if self.directory is None:
            return None
        return self.directory / key[:2] / f"{key}{self.SUFFIX}"

    def get(self, key: str) -> Snapshot | None:
        snapshot = self._layers.get(key)
        if snapshot is None:
            path = self._path(key)
            if path is not None and path.is_file():
                snapshot = Snapshot.from_members(self._archives.read_archive(path))
                self._layers[key] = snapshot
        if snapshot is None:
            self.misses += 1
            return None
        self.hits += 1
        return snapshot

    def put(self, key: str, snapshot: Snapshot) -> None:
        self._layers[key] = snapshot
        path = self._path(key)
        if path is not None:
            self._archives.write_archive(snapshot.to_members(), path)

    def __len__(self) -> int:
        return len(self._layers)


__all__ = ["LayerCache"]

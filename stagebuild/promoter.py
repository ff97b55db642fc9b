"""Artifact promotion between stages."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping
import posixpath

from .errors import PathNotFound, StageNotYetBuilt, UnknownStage
from .manifest import CrossStageReference, Manifest
from .snapshot import Entry, Snapshot, normalize_path


@dataclass(frozen=True, slots=True)
class Artifact:
    """A file or directory tree lifted out of a snapshot or the build context.

    ``entries`` is keyed relative to the artifact; the artifact's own entry
    sits under the empty key.
    """

    name: str
    entries: Mapping[str, Entry]

    @property
    def is_dir(self) -> bool:
        return self.entries[""].is_dir


class ArtifactPromoter:
    """Resolve :class:`CrossStageReference` values against completed stages.

    Only stages declared before the referencing stage may be read; anything
    else is rejected before a single byte is copied.
    """

    def __init__(self, manifest: Manifest) -> None:
        self._manifest = manifest

    def promote(self, ref: CrossStageReference, completed: Mapping[str, Snapshot]) -> Artifact:
        source_index = self._manifest.stage_index(ref.source_stage)
        if source_index is None:
            raise UnknownStage(ref.source_stage)

        dest_index = self._manifest.stage_index(ref.dest_stage)
        if dest_index is None:
            raise UnknownStage(ref.dest_stage)

        source_stage = self._manifest.stages[source_index]
        dest_label = self._manifest.stages[dest_index].label
        if source_index >= dest_index:
            raise StageNotYetBuilt(ref.source_stage, referenced_from=dest_label)

        snapshot = completed.get(source_stage.key)
        if snapshot is None:
            raise StageNotYetBuilt(ref.source_stage, referenced_from=dest_label)

        path = normalize_path(ref.source_path)
        entries = snapshot.subtree(path)
        if not entries:
            raise PathNotFound(source_stage.key, path)

        # Entries are frozen and their payloads are immutable bytes, so the
        # fresh mapping shares no mutable state with the source snapshot.
        return Artifact(name=posixpath.basename(path), entries=dict(entries))


__all__ = ["Artifact", "ArtifactPromoter"]

"""Assemble a manifest's stages into the final image."""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List

from .console import Console
from .errors import BuildError, ValidationFailed
from .executor import StageExecutor, StageResult
from .images import BaseImage, BaseImageResolver
from .manifest import Manifest
from .promoter import ArtifactPromoter
from .snapshot import Snapshot
from .validation import PipelineValidator


@dataclass(frozen=True)
class Image:
    """The deliverable: the last stage's snapshot plus its runtime config."""

    snapshot: Snapshot
    entrypoint: tuple[str, ...] | None
    user: str
    workdir: str
    tag: str | None = None
    stages: tuple[tuple[str, str], ...] = ()

    @property
    def digest(self) -> str:
        return self.snapshot.digest

    def config(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "digest": self.digest,
            "entrypoint": list(self.entrypoint) if self.entrypoint is not None else None,
            "user": self.user,
            "workdir": self.workdir,
            "stages": [{"stage": key, "digest": digest} for key, digest in self.stages],
        }


class ImageAssembler:
    def __init__(
        self,
        executor: StageExecutor,
        resolver: BaseImageResolver,
        *,
        validator: PipelineValidator | None = None,
        console: Console | None = None,
    ) -> None:
        self._executor = executor
        self._resolver = resolver
        self._validator = validator or PipelineValidator()
        self._console = console or Console()

    def build(self, manifest: Manifest, *, tag: str | None = None) -> Image:
        """Build every stage in declaration order and return the final image.

        Base images are resolved and the manifest validated before the first
        operation runs; any failure afterwards aborts the build without an
        image.
        """

        bases = self._resolve_bases(manifest)
        self.check(manifest, bases=bases)

        promoter = ArtifactPromoter(manifest)
        completed: Dict[str, Snapshot] = {}
        results: List[StageResult] = []
        for stage in manifest.stages:
            base = bases[stage.base]
            self._console.info(f"Building stage {stage.label} from {stage.base}")
            result = self._executor.execute(
                stage,
                base.snapshot,
                completed=MappingProxyType(completed),
                promoter=promoter,
                package_manager=base.package_manager,
            )
            completed[stage.key] = result.snapshot
            results.append(result)

        final = results[-1]
        image = Image(
            snapshot=final.snapshot,
            entrypoint=final.entrypoint,
            user=final.user,
            workdir=final.workdir,
            tag=tag,
            stages=tuple((result.stage.key, result.snapshot.digest) for result in results),
        )
        self._console.info(f"Built image {tag or '<untagged>'} {image.digest}")
        return image

    def check(self, manifest: Manifest, *, bases: Dict[str, BaseImage] | None = None) -> None:
        """Report warnings and raise :class:`ValidationFailed` on errors."""

        base_users = {reference: image.users for reference, image in (bases or {}).items()}
        findings = self._validator.validate(manifest, base_users=base_users if bases is not None else None)
        errors = [finding for finding in findings if finding.is_error]
        for finding in findings:
            if not finding.is_error:
                self._console.warn(finding.format())
        if errors:
            raise ValidationFailed(errors)

    def _resolve_bases(self, manifest: Manifest) -> Dict[str, BaseImage]:
        bases: Dict[str, BaseImage] = {}
        for stage in manifest.stages:
            if stage.base in bases:
                continue
            try:
                bases[stage.base] = self._resolver.resolve(stage.base)
            except BuildError as exc:
                raise exc.locate(stage.label)
        return bases


__all__ = ["Image", "ImageAssembler"]

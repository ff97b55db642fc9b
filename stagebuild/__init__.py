"""Multi-stage image builder: stages, snapshots, artifact promotion and privilege tracking."""
from __future__ import annotations

from .assembler import Image, ImageAssembler
from .backends import ChrootCommandBackend, CommandBackend, CommandRequest, HostCommandBackend, make_backend
from .cache import LayerCache
from .console import Console
from .context import BuildContext
from .errors import (
    BackendUnsupported,
    BuildError,
    CommandFailed,
    ImageNotFound,
    LayerError,
    ManifestError,
    PathNotFound,
    PermissionDenied,
    SourceNotFound,
    StageNotYetBuilt,
    UnknownStage,
    UnknownUser,
    ValidationFailed,
)
from .executor import PrivilegeState, StageExecutor, StageResult
from .images import BaseImage, BaseImageResolver
from .loader import load_manifest
from .manifest import (
    CopySources,
    CreateUser,
    CrossStageReference,
    InstallPackages,
    Manifest,
    RunCommand,
    SetUser,
    SetWorkdir,
    Stage,
)
from .packages import PackageManagerDefinition, PackageManagerRegistry
from .promoter import Artifact, ArtifactPromoter
from .snapshot import Entry, Snapshot
from .validation import Finding, PipelineValidator, Severity


def main(argv=None) -> int:
    from .cli import main as cli_main

    return cli_main(argv)


__all__ = [
    "Artifact",
    "ArtifactPromoter",
    "BackendUnsupported",
    "BaseImage",
    "BaseImageResolver",
    "BuildContext",
    "BuildError",
    "ChrootCommandBackend",
    "CommandBackend",
    "CommandFailed",
    "CommandRequest",
    "Console",
    "CopySources",
    "CreateUser",
    "CrossStageReference",
    "Entry",
    "Finding",
    "HostCommandBackend",
    "Image",
    "ImageAssembler",
    "ImageNotFound",
    "InstallPackages",
    "LayerCache",
    "LayerError",
    "Manifest",
    "ManifestError",
    "PackageManagerDefinition",
    "PackageManagerRegistry",
    "PathNotFound",
    "PermissionDenied",
    "PipelineValidator",
    "PrivilegeState",
    "RunCommand",
    "SetUser",
    "SetWorkdir",
    "Severity",
    "Snapshot",
    "SourceNotFound",
    "Stage",
    "StageExecutor",
    "StageNotYetBuilt",
    "StageResult",
    "UnknownStage",
    "UnknownUser",
    "ValidationFailed",
    "load_manifest",
    "main",
    "make_backend",
]

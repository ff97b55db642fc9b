"""Error taxonomy for manifest loading, validation and execution."""
from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from core.command_runner import CommandResult

if TYPE_CHECKING:  # pragma: no cover
    from .validation import Finding


class ManifestError(ValueError):
    """Raised when a manifest cannot be parsed into stages and operations."""

    def __init__(self, message: str, *, source: str | None = None, line: int | None = None):
        location = ""
        if source and line is not None:
            location = f"{source}:{line}: "
        elif source:
            location = f"{source}: "
        elif line is not None:
            location = f"line {line}: "
        super().__init__(f"{location}{message}")
        self.source = source
        self.line = line


class BuildError(RuntimeError):
    """Base class for every failure raised while building an image.

    Execution errors are located at a stage and operation index once they
    leave the stage executor; the location prefixes the message.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.stage: str | None = None
        self.operation: int | None = None
        self.operation_name: str | None = None

    def locate(self, stage: str, operation: int | None = None, name: str | None = None) -> "BuildError":
        if self.stage is None:
            self.stage = stage
            self.operation = operation
            self.operation_name = name
        return self

    def __str__(self) -> str:
        if self.stage is None:
            return self.message
        where = f"stage {self.stage}"
        if self.operation is not None:
            where = f"{where}, operation #{self.operation}"
            if self.operation_name:
                where = f"{where} ({self.operation_name})"
        return f"{where}: {self.message}"


class SourceNotFound(BuildError):
    def __init__(self, source: str, *, context: str | None = None):
        where = f" in build context '{context}'" if context else ""
        super().__init__(f"Source '{source}' not found{where}")
        self.source = source


class CommandFailed(BuildError):
    def __init__(self, exit_code: int, command: Sequence[str], *, result: CommandResult | None = None):
        if result is not None:
            detail = result.describe()
        else:
            detail = f"exit code {exit_code}: {' '.join(command)}"
        super().__init__(f"Command failed with {detail}")
        self.exit_code = exit_code
        self.command = tuple(command)
        self.result = result


class PermissionDenied(BuildError):
    def __init__(self, action: str, user: str):
        super().__init__(f"Permission denied: {action} requires root but the active user is '{user}'")
        self.action = action
        self.user = user


class UnknownUser(BuildError):
    def __init__(self, user: str):
        super().__init__(f"Unable to find user '{user}': no matching entries in passwd file")
        self.user = user


class UnknownStage(BuildError):
    def __init__(self, name: str):
        super().__init__(f"Stage '{name}' is not declared in the manifest")
        self.name = name


class StageNotYetBuilt(BuildError):
    def __init__(self, name: str, *, referenced_from: str | None = None):
        origin = f" when stage {referenced_from} runs" if referenced_from else ""
        super().__init__(f"Stage '{name}' has not been built yet{origin}")
        self.name = name


class PathNotFound(BuildError):
    def __init__(self, stage: str, path: str):
        super().__init__(f"Path '/{path.lstrip('/')}' not found in stage '{stage}'")
        self.source_stage = stage
        self.path = path


class ImageNotFound(BuildError):
    def __init__(self, reference: str, searched: Sequence[str] = ()):
        detail = f". Searched: {', '.join(searched)}" if searched else ""
        super().__init__(f"Base image '{reference}' not found{detail}")
        self.reference = reference


class BackendUnsupported(BuildError):
    def __init__(self, backend: str, reason: str):
        super().__init__(f"The {backend} backend cannot run this command: {reason}")
        self.backend = backend


class LayerError(BuildError):
    """The image tree could not be written to or read back from disk."""

    def __init__(self, action: str, error: Exception):
        super().__init__(f"Unable to {action} the image tree: {error}")
        self.error = error


class ValidationFailed(BuildError):
    def __init__(self, findings: Sequence["Finding"]):
        count = len(findings)
        noun = "finding" if count == 1 else "findings"
        super().__init__(f"Manifest validation failed with {count} {noun}")
        self.findings = list(findings)


__all__ = [
    "BackendUnsupported",
    "BuildError",
    "CommandFailed",
    "ImageNotFound",
    "LayerError",
    "ManifestError",
    "PathNotFound",
    "PermissionDenied",
    "SourceNotFound",
    "StageNotYetBuilt",
    "UnknownStage",
    "UnknownUser",
    "ValidationFailed",
]

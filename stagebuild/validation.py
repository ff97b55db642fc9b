"""Static manifest checks run before any stage executes."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Collection, List, Mapping

from .manifest import CreateUser, InstallPackages, Manifest, RunCommand, SetUser, Stage
from .users import ROOT_USER


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True, slots=True)
class Finding:
    severity: Severity
    code: str
    message: str
    stage: str | None = None
    operation: int | None = None

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def format(self) -> str:
        where = ""
        if self.stage is not None:
            where = f"stage {self.stage}"
            if self.operation is not None:
                where = f"{where}, operation #{self.operation}"
            where = f" {where}:"
        return f"{self.severity.value}[{self.code}]{where} {self.message}"


def _is_numeric_user(name: str) -> bool:
    return name.split(":", 1)[0].isdigit()


def _is_root(name: str) -> bool:
    head = name.split(":", 1)[0]
    return head in {ROOT_USER, "0"}


class PipelineValidator:
    """Collect :class:`Finding` values for a manifest.

    Errors block the build; warnings flag orderings that are likely to fail or
    to bloat the final image.
    """

    def validate(
        self,
        manifest: Manifest,
        *,
        base_users: Mapping[str, Collection[str]] | None = None,
    ) -> List[Finding]:
        """Return every finding for ``manifest``; an empty list means clean.

        ``base_users`` maps a base image reference to the accounts it ships.
        Without it, users that are neither created in the stage nor root can
        only be reported as unverified.
        """

        findings: List[Finding] = []
        if not manifest.stages:
            findings.append(Finding(Severity.ERROR, "empty-manifest", "Manifest declares no stages"))
            return findings

        self._check_stage_names(manifest, findings)
        self._check_references(manifest, findings)
        last = len(manifest.stages) - 1
        for stage in manifest.stages:
            known = None if base_users is None else base_users.get(stage.base)
            self._check_stage(stage, known, findings)
            if stage.entrypoint is not None and stage.index != last:
                findings.append(
                    Finding(
                        Severity.WARNING,
                        "discarded-entrypoint",
                        "Entrypoint of a non-final stage is discarded",
                        stage=stage.label,
                    )
                )
        return findings

    @staticmethod
    def _check_stage_names(manifest: Manifest, findings: List[Finding]) -> None:
        counts = Counter(stage.name for stage in manifest.stages if stage.name)
        for name, count in sorted(counts.items()):
            if count > 1:
                findings.append(
                    Finding(
                        Severity.ERROR,
                        "duplicate-stage",
                        f"Stage name '{name}' is declared {count} times",
                        stage=f"'{name}'",
                    )
                )
        # unnamed stages are keyed by their index
        for stage in manifest.stages:
            if stage.name and stage.name.isdigit():
                findings.append(
                    Finding(
                        Severity.ERROR,
                        "numeric-stage-name",
                        f"Stage name '{stage.name}' is all digits and would shadow a stage index",
                        stage=stage.label,
                    )
                )

    @staticmethod
    def _check_references(manifest: Manifest, findings: List[Finding]) -> None:
        for stage, position, ref in manifest.cross_stage_references():
            source_index = manifest.stage_index(ref.source_stage)
            if source_index is None:
                code, message = "unknown-stage", f"Copy from undeclared stage '{ref.source_stage}'"
            elif source_index == stage.index:
                code, message = "self-reference", f"Stage copies '{ref.source_path}' from itself"
            elif source_index > stage.index:
                code = "forward-reference"
                message = f"Copy from stage '{ref.source_stage}' which is declared later"
            else:
                continue
            findings.append(Finding(Severity.ERROR, code, message, stage=stage.label, operation=position))

    @staticmethod
    def _check_stage(stage: Stage, base_users: Collection[str] | None, findings: List[Finding]) -> None:
        created: set[str] = set()
        current = ROOT_USER
        for position, operation in enumerate(stage.operations):
            privileged = _is_root(current)

            if isinstance(operation, CreateUser):
                created.add(operation.name)
                if not privileged:
                    findings.append(_after_drop(stage, position, "CreateUser", current))

            elif isinstance(operation, SetUser):
                name = operation.name
                head = name.split(":", 1)[0]
                if not (_is_root(name) or _is_numeric_user(name) or head in created):
                    if base_users is None:
                        findings.append(
                            Finding(
                                Severity.WARNING,
                                "unverified-user",
                                f"User '{head}' is not created in this stage; assuming the base image provides it",
                                stage=stage.label,
                                operation=position,
                            )
                        )
                    elif head not in base_users:
                        findings.append(
                            Finding(
                                Severity.ERROR,
                                "unknown-user",
                                f"User '{head}' is neither created earlier in this stage nor present in base image '{stage.base}'",
                                stage=stage.label,
                                operation=position,
                            )
                        )
                current = name

            elif isinstance(operation, InstallPackages):
                if not privileged:
                    findings.append(_after_drop(stage, position, "InstallPackages", current))
                if not operation.packages:
                    findings.append(
                        Finding(
                            Severity.WARNING,
                            "empty-package-set",
                            "InstallPackages declares no packages and does nothing",
                            stage=stage.label,
                            operation=position,
                        )
                    )
                elif not operation.cleanup:
                    findings.append(
                        Finding(
                            Severity.WARNING,
                            "missing-cache-cleanup",
                            "InstallPackages leaves the package-index cache in the image",
                            stage=stage.label,
                            operation=position,
                        )
                    )

            elif isinstance(operation, RunCommand) and operation.privileged and not privileged:
                findings.append(_after_drop(stage, position, "privileged RunCommand", current))


def _after_drop(stage: Stage, position: int, action: str, user: str) -> Finding:
    return Finding(
        Severity.WARNING,
        "privileged-after-user-drop",
        f"{action} runs after switching to non-root user '{user}' and will fail with permission denied",
        stage=stage.label,
        operation=position,
    )


__all__ = ["Finding", "PipelineValidator", "Severity"]

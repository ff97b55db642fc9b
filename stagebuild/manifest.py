"""Manifest data model: stages, operations and cross-stage references."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, List, Mapping, Sequence, Union
import shlex

from core.config_loader import normalize_string_list
from core.template import TemplateError, TemplateResolver, extract_placeholders

from .errors import ManifestError

SHELL = ("/bin/sh", "-c")


@dataclass(frozen=True, slots=True)
class SetWorkdir:
    kind: ClassVar[str] = "workdir"

    path: str

    def describe(self) -> str:
        return f"WORKDIR {self.path}"


@dataclass(frozen=True, slots=True)
class CopySources:
    kind: ClassVar[str] = "copy"

    sources: tuple[str, ...]
    dest: str
    from_stage: str | None = None

    def describe(self) -> str:
        origin = f"--from={self.from_stage} " if self.from_stage is not None else ""
        return f"COPY {origin}{' '.join(self.sources)} {self.dest}"


@dataclass(frozen=True, slots=True)
class RunCommand:
    kind: ClassVar[str] = "run"

    argv: tuple[str, ...]
    privileged: bool = False

    def describe(self) -> str:
        if self.argv[:2] == SHELL and len(self.argv) == 3:
            return f"RUN {self.argv[2]}"
        return f"RUN {shlex.join(self.argv)}"


@dataclass(frozen=True, slots=True)
class InstallPackages:
    kind: ClassVar[str] = "install"

    packages: tuple[str, ...]
    cleanup: bool = False

    def describe(self) -> str:
        suffix = " (purge index cache)" if self.cleanup else ""
        return f"INSTALL {' '.join(self.packages) or '<none>'}{suffix}"


@dataclass(frozen=True, slots=True)
class CreateUser:
    kind: ClassVar[str] = "useradd"

    name: str
    shell: str = "/bin/sh"
    home: bool = True

    def describe(self) -> str:
        home = " with home" if self.home else ""
        return f"USERADD {self.name} ({self.shell}){home}"


@dataclass(frozen=True, slots=True)
class SetUser:
    kind: ClassVar[str] = "user"

    name: str

    def describe(self) -> str:
        return f"USER {self.name}"


Operation = Union[SetWorkdir, CopySources, RunCommand, InstallPackages, CreateUser, SetUser]


@dataclass(frozen=True, slots=True)
class CrossStageReference:
    source_stage: str
    source_path: str
    dest_stage: str
    dest_path: str


@dataclass(frozen=True, slots=True)
class Stage:
    base: str
    operations: tuple[Operation, ...] = ()
    name: str | None = None
    entrypoint: tuple[str, ...] | None = None
    index: int = 0

    @property
    def key(self) -> str:
        """Name other stages use to refer to this one."""
        return self.name if self.name else str(self.index)

    @property
    def label(self) -> str:
        return f"'{self.name}'" if self.name else f"#{self.index}"


@dataclass(frozen=True, slots=True)
class Manifest:
    stages: tuple[Stage, ...]
    args: Mapping[str, str] = field(default_factory=dict)
    source: str | None = None

    @property
    def final_stage(self) -> Stage:
        if not self.stages:
            raise ManifestError("Manifest declares no stages", source=self.source)
        return self.stages[-1]

    def stage_index(self, reference: str) -> int | None:
        """Resolve a stage name (or zero-based index) to its position."""

        for stage in self.stages:
            if stage.name is not None and stage.name == reference:
                return stage.index
        if reference.isdigit() and int(reference) < len(self.stages):
            return int(reference)
        return None

    def cross_stage_references(self) -> Iterator[tuple[Stage, int, CrossStageReference]]:
        """Yield every cross-stage copy as ``(stage, operation index, reference)``."""

        for stage in self.stages:
            for index, operation in enumerate(stage.operations):
                if isinstance(operation, CopySources) and operation.from_stage is not None:
                    for source in operation.sources:
                        yield stage, index, CrossStageReference(
                            source_stage=operation.from_stage,
                            source_path=source,
                            dest_stage=stage.key,
                            dest_path=operation.dest,
                        )

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        args: Mapping[str, str] | None = None,
        source: str | None = None,
    ) -> "Manifest":
        declared = data.get("args", {})
        if not isinstance(declared, Mapping):
            raise ManifestError("'args' must be a table of build arguments", source=source)
        build_args: Dict[str, str] = {str(key): str(value) for key, value in declared.items()}
        build_args.update({str(key): str(value) for key, value in (args or {}).items()})

        raw_stages = data.get("stages", data.get("stage"))
        if not isinstance(raw_stages, Sequence) or isinstance(raw_stages, (str, bytes)):
            raise ManifestError("Manifest must contain a 'stages' array", source=source)

        for placeholder in sorted(extract_placeholders(raw_stages)):
            name = placeholder[len("args."):] if placeholder.startswith("args.") else None
            if name is None or name not in build_args:
                raise ManifestError(f"Unknown build argument '{{{{{placeholder}}}}}'", source=source)

        resolver = TemplateResolver({"args": build_args})
        try:
            resolved = resolver.resolve(list(raw_stages))
        except TemplateError as exc:
            raise ManifestError(str(exc), source=source) from exc

        stages: List[Stage] = []
        for index, raw_stage in enumerate(resolved):
            if not isinstance(raw_stage, Mapping):
                raise ManifestError(f"Stage #{index} must be a table", source=source)
            try:
                stages.append(_parse_stage(raw_stage, index=index))
            except (TypeError, ValueError) as exc:
                if isinstance(exc, ManifestError):
                    raise
                raise ManifestError(f"Stage #{index}: {exc}", source=source) from exc

        return cls(stages=tuple(stages), args=build_args, source=source)


_STAGE_KEYS = {"name", "base", "from", "operations", "entrypoint"}

_OPERATION_FIELDS: Dict[str, tuple[str, set[str]]] = {
    "workdir": ("path", set()),
    "copy": ("sources", {"dest", "from"}),
    "run": ("argv", {"command", "privileged"}),
    "install": ("packages", {"cleanup"}),
    "useradd": ("name", {"shell", "home"}),
    "user": ("name", set()),
}


def _parse_stage(data: Mapping[str, Any], *, index: int) -> Stage:
    unknown = {str(key) for key in data if str(key) not in _STAGE_KEYS}
    if unknown:
        raise ValueError(f"unknown keys: {', '.join(sorted(unknown))}")

    base = data.get("base", data.get("from"))
    if not isinstance(base, str) or not base.strip():
        raise ValueError("'base' image reference is required")

    name = data.get("name")
    if name is not None and not isinstance(name, str):
        raise TypeError("'name' must be a string")

    raw_operations = data.get("operations", [])
    if not isinstance(raw_operations, Sequence) or isinstance(raw_operations, (str, bytes)):
        raise TypeError("'operations' must be an array of tables")

    operations = tuple(_parse_operation(raw, position=position) for position, raw in enumerate(raw_operations))
    return Stage(
        base=base.strip(),
        operations=operations,
        name=name.strip() or None if name else None,
        entrypoint=_parse_entrypoint(data.get("entrypoint")),
        index=index,
    )


def _parse_entrypoint(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        parts = shlex.split(value)
        if not parts:
            raise ValueError("'entrypoint' must not be empty")
        return tuple(parts)
    parts = normalize_string_list(value, field_name="entrypoint")
    if not parts:
        raise ValueError("'entrypoint' must not be empty")
    return tuple(parts)


def _operation_kind(data: Mapping[str, Any]) -> tuple[str, Any]:
    explicit = data.get("op")
    if explicit is not None:
        kind = str(explicit).strip().lower()
        if kind not in _OPERATION_FIELDS:
            raise ValueError(f"unknown operation '{explicit}'")
        primary_key = _OPERATION_FIELDS[kind][0]
        primary = data.get(primary_key)
        if kind == "run" and primary is None:
            primary = data.get("command")
        return kind, primary

    candidates = [key for key in data if key in _OPERATION_FIELDS]
    if len(candidates) != 1:
        raise ValueError(
            "operation must set 'op' or exactly one of: " + ", ".join(sorted(_OPERATION_FIELDS))
        )
    kind = str(candidates[0])
    return kind, data[kind]


def _parse_operation(data: Any, *, position: int) -> Operation:
    if not isinstance(data, Mapping):
        raise TypeError(f"operation #{position} must be a table")

    try:
        kind, primary = _operation_kind(data)
        primary_key, optional = _OPERATION_FIELDS[kind]
        allowed = {"op", kind, primary_key, *optional}
        unknown = {str(key) for key in data if str(key) not in allowed}
        if unknown:
            raise ValueError(f"unknown keys for '{kind}': {', '.join(sorted(unknown))}")
        return _build_operation(kind, primary, data)
    except (TypeError, ValueError) as exc:
        raise type(exc)(f"operation #{position}: {exc}") from exc


def _build_operation(kind: str, primary: Any, data: Mapping[str, Any]) -> Operation:
    if kind == "workdir":
        if not isinstance(primary, str) or not primary.strip():
            raise ValueError("'workdir' requires a path")
        return SetWorkdir(path=primary.strip())

    if kind == "copy":
        sources = normalize_string_list(primary, field_name="copy sources")
        if not sources:
            raise ValueError("'copy' requires at least one source")
        dest = data.get("dest")
        if not isinstance(dest, str) or not dest.strip():
            raise ValueError("'copy' requires a 'dest'")
        from_stage = data.get("from")
        if from_stage is not None:
            from_stage = str(from_stage).strip()
            if not from_stage:
                raise ValueError("'from' must name a stage")
        return CopySources(sources=tuple(sources), dest=dest.strip(), from_stage=from_stage)

    if kind == "run":
        if isinstance(primary, str):
            if not primary.strip():
                raise ValueError("'run' command must not be empty")
            argv: tuple[str, ...] = (*SHELL, primary.strip())
        else:
            argv = tuple(normalize_string_list(primary, field_name="run argv"))
            if not argv:
                raise ValueError("'run' requires a command")
        return RunCommand(argv=argv, privileged=bool(data.get("privileged", False)))

    if kind == "install":
        packages = normalize_string_list(primary, field_name="install packages")
        return InstallPackages(packages=tuple(packages), cleanup=bool(data.get("cleanup", False)))

    if kind == "useradd":
        if not isinstance(primary, str) or not primary.strip():
            raise ValueError("'useradd' requires a user name")
        shell = data.get("shell", "/bin/sh")
        return CreateUser(name=primary.strip(), shell=str(shell), home=bool(data.get("home", True)))

    if not isinstance(primary, str) or not primary.strip():
        raise ValueError("'user' requires a user name")
    return SetUser(name=primary.strip())


__all__ = [
    "CopySources",
    "CreateUser",
    "CrossStageReference",
    "InstallPackages",
    "Manifest",
    "Operation",
    "RunCommand",
    "SHELL",
    "SetUser",
    "SetWorkdir",
    "Stage",
]

"""Parser for the textual multi-stage build file form.

Supported instructions: ``ARG``, ``FROM``, ``WORKDIR``, ``COPY``, ``RUN``,
``USER``, ``CMD`` and ``ENTRYPOINT``. A few well-known ``RUN`` shapes are
lifted into declarative operations so they can be validated statically:

* ``useradd [-m] [-s SHELL] NAME`` becomes :class:`CreateUser`;
* ``apt-get``/``apk`` install chains become :class:`InstallPackages`, with
  the index-cache purge detected from ``rm -rf /var/lib/apt/lists/*``,
  ``apt-get clean`` or ``apk add --no-cache``.

Any other ``RUN`` stays an opaque :class:`RunCommand`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping
import json
import re
import shlex

from .errors import ManifestError
from .manifest import (
    SHELL,
    CopySources,
    CreateUser,
    InstallPackages,
    Manifest,
    Operation,
    RunCommand,
    SetUser,
    SetWorkdir,
    Stage,
)

_VARIABLE_PATTERN = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")

_APT_CACHE_PURGES = {
    ("rm", "-rf", "/var/lib/apt/lists/*"),
    ("rm", "-fr", "/var/lib/apt/lists/*"),
    ("rm", "-rf", "/var/lib/apt/lists"),
    ("apt-get", "clean"),
}
_APK_CACHE_PURGES = {
    ("rm", "-rf", "/var/cache/apk/*"),
    ("rm", "-fr", "/var/cache/apk/*"),
}
_INSTALL_FLAGS = {"-y", "--yes", "-q", "-qq", "--quiet", "--no-install-recommends", "--no-cache", "--update"}


@dataclass
class _StageDraft:
    base: str
    name: str | None
    line: int
    operations: List[Operation] = field(default_factory=list)
    entrypoint: tuple[str, ...] | None = None
    command: tuple[str, ...] | None = None

    def finish(self, index: int) -> Stage:
        entrypoint: tuple[str, ...] | None = None
        if self.entrypoint is not None:
            entrypoint = self.entrypoint + (self.command or ())
        elif self.command is not None:
            entrypoint = self.command
        return Stage(
            base=self.base,
            operations=tuple(self.operations),
            name=self.name,
            entrypoint=entrypoint,
            index=index,
        )


def _logical_lines(text: str) -> List[tuple[int, str]]:
    """Join continuation lines and drop comments, keeping first line numbers."""

    lines: List[tuple[int, str]] = []
    buffer: List[str] = []
    start = 0
    for number, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not buffer and (not stripped or stripped.startswith("#")):
            continue
        if buffer and stripped.startswith("#"):
            continue
        if not buffer:
            start = number
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        lines.append((start, " ".join(part for part in buffer if part)))
        buffer = []
    if buffer:
        lines.append((start, " ".join(part for part in buffer if part)))
    return lines


def expand_variables(text: str, variables: Mapping[str, str]) -> str:
    """Expand ``$NAME`` and ``${NAME}`` from ``variables``; unknown names are kept."""

    def replacement(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        return variables.get(name, match.group(0))

    return _VARIABLE_PATTERN.sub(replacement, text)


def _json_array(payload: str) -> tuple[str, ...] | None:
    if not payload.startswith("["):
        return None
    try:
        value = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        return None
    return tuple(value)


def _command_form(payload: str) -> tuple[str, ...]:
    exec_form = _json_array(payload)
    if exec_form is not None:
        return exec_form
    return (*SHELL, payload)


def _split_chain(command: str) -> List[List[str]] | None:
    """Split ``a && b && c`` into argv lists; ``None`` for anything more complex."""

    try:
        tokens = shlex.split(command, posix=True)
    except ValueError:
        return None
    segments: List[List[str]] = [[]]
    for token in tokens:
        if token == "&&":
            segments.append([])
        elif any(char in token for char in ";|&<>`$()") and token not in {"/var/lib/apt/lists/*", "/var/cache/apk/*"}:
            return None
        else:
            segments[-1].append(token)
    if any(not segment for segment in segments):
        return None
    return segments


def _parse_useradd(segments: List[List[str]]) -> CreateUser | None:
    if len(segments) != 1 or segments[0][0] != "useradd":
        return None
    argv = segments[0][1:]
    shell = "/bin/sh"
    home = False
    name: str | None = None
    index = 0
    while index < len(argv):
        token = argv[index]
        if token in {"--create-home"}:
            home = True
        elif token in {"--shell"}:
            index += 1
            if index >= len(argv):
                return None
            shell = argv[index]
        elif token.startswith("--"):
            return None
        elif token.startswith("-") and len(token) > 1:
            # Clustered short flags, e.g. -ms /bin/bash
            for position, flag in enumerate(token[1:]):
                if flag == "m":
                    home = True
                elif flag == "s":
                    if position != len(token) - 2:
                        return None
                    index += 1
                    if index >= len(argv):
                        return None
                    shell = argv[index]
                else:
                    return None
        else:
            if name is not None:
                return None
            name = token
        index += 1
    if name is None:
        return None
    return CreateUser(name=name, shell=shell, home=home)


def _parse_install(segments: List[List[str]]) -> InstallPackages | None:
    packages: List[str] = []
    cleanup = False
    installs = 0
    for segment in segments:
        head = tuple(segment)
        if head in _APT_CACHE_PURGES or head in _APK_CACHE_PURGES:
            cleanup = True
            continue
        if head in {("apt-get", "update"), ("apt", "update"), ("apk", "update")}:
            continue
        if segment[:2] in (["apt-get", "install"], ["apt", "install"]) or segment[:2] == ["apk", "add"]:
            installs += 1
            for token in segment[2:]:
                if token == "--no-cache":
                    cleanup = True
                elif token in _INSTALL_FLAGS:
                    continue
                elif token.startswith("-"):
                    return None
                else:
                    packages.append(token)
            continue
        return None
    if installs != 1:
        return None
    return InstallPackages(packages=tuple(packages), cleanup=cleanup)


def _parse_run(payload: str) -> Operation:
    exec_form = _json_array(payload)
    if exec_form is not None:
        if not exec_form:
            raise ValueError("RUN requires a command")
        return RunCommand(argv=exec_form)

    segments = _split_chain(payload)
    if segments:
        lifted = _parse_useradd(segments) or _parse_install(segments)
        if lifted is not None:
            return lifted
    return RunCommand(argv=(*SHELL, payload))


def _parse_copy(payload: str) -> CopySources:
    exec_form = _json_array(payload)
    tokens = list(exec_form) if exec_form is not None else shlex.split(payload)
    from_stage: str | None = None
    while tokens and tokens[0].startswith("--"):
        flag = tokens.pop(0)
        if flag.startswith("--from="):
            from_stage = flag[len("--from="):]
            if not from_stage:
                raise ValueError("--from requires a stage name")
        else:
            raise ValueError(f"unsupported COPY flag '{flag}'")
    if len(tokens) < 2:
        raise ValueError("COPY requires at least one source and a destination")
    return CopySources(sources=tuple(tokens[:-1]), dest=tokens[-1], from_stage=from_stage)


def parse_buildfile(
    text: str,
    *,
    args: Mapping[str, str] | None = None,
    source: str | None = None,
) -> Manifest:
    """Parse a build file into a :class:`Manifest`.

    ``args`` overrides ``ARG`` defaults, mirroring ``--build-arg``.
    """

    overrides: Dict[str, str] = dict(args or {})
    variables: Dict[str, str] = {}
    drafts: List[_StageDraft] = []

    for line, instruction_line in _logical_lines(text):
        keyword, _, payload = instruction_line.partition(" ")
        keyword = keyword.upper()
        payload = payload.strip()

        try:
            if keyword == "ARG":
                name, has_default, default = payload.partition("=")
                name = name.strip()
                if not name:
                    raise ValueError("ARG requires a name")
                if name in overrides:
                    variables[name] = overrides[name]
                elif has_default:
                    variables[name] = expand_variables(default.strip().strip('"'), variables)
                continue

            if keyword == "FROM":
                parts = expand_variables(payload, variables).split()
                if len(parts) == 1:
                    drafts.append(_StageDraft(base=parts[0], name=None, line=line))
                elif len(parts) == 3 and parts[1].lower() == "as":
                    drafts.append(_StageDraft(base=parts[0], name=parts[2], line=line))
                else:
                    raise ValueError("expected 'FROM <image> [AS <name>]'")
                continue

            if not drafts:
                raise ValueError(f"{keyword} appears before the first FROM")
            draft = drafts[-1]
            expanded = expand_variables(payload, variables)
            if not expanded:
                raise ValueError(f"{keyword} requires an argument")

            if keyword == "WORKDIR":
                draft.operations.append(SetWorkdir(path=expanded))
            elif keyword == "COPY":
                draft.operations.append(_parse_copy(expanded))
            elif keyword == "RUN":
                draft.operations.append(_parse_run(expanded))
            elif keyword == "USER":
                draft.operations.append(SetUser(name=expanded))
            elif keyword == "CMD":
                draft.command = _command_form(expanded)
            elif keyword == "ENTRYPOINT":
                draft.entrypoint = _command_form(expanded)
            else:
                raise ValueError(f"unsupported instruction '{keyword}'")
        except ValueError as exc:
            raise ManifestError(str(exc), source=source, line=line) from exc

    if not drafts:
        raise ManifestError("build file declares no FROM instruction", source=source)

    stages = tuple(draft.finish(index) for index, draft in enumerate(drafts))
    return Manifest(stages=stages, args=dict(variables), source=source)


def format_buildfile(manifest: Manifest) -> str:
    """Render ``manifest`` back into build-file text."""

    lines: List[str] = []
    for name, value in manifest.args.items():
        lines.append(f"ARG {name}={value}")
    for stage in manifest.stages:
        if lines:
            lines.append("")
        header = f"FROM {stage.base}"
        if stage.name:
            header = f"{header} AS {stage.name}"
        lines.append(header)
        for operation in stage.operations:
            lines.append(_format_operation(operation))
        if stage.entrypoint is not None:
            lines.append(f"ENTRYPOINT {json.dumps(list(stage.entrypoint))}")
    return "\n".join(lines) + "\n"


def _format_operation(operation: Operation) -> str:
    if isinstance(operation, InstallPackages):
        command = f"apt-get update && apt-get install -y {' '.join(operation.packages)}"
        if operation.cleanup:
            command = f"{command} && rm -rf /var/lib/apt/lists/*"
        return f"RUN {command}"
    if isinstance(operation, CreateUser):
        flags = "-ms" if operation.home else "-s"
        return f"RUN useradd {flags} {operation.shell} {operation.name}"
    if isinstance(operation, RunCommand) and not (operation.argv[:2] == SHELL and len(operation.argv) == 3):
        return f"RUN {json.dumps(list(operation.argv))}"
    return operation.describe()


__all__ = ["expand_variables", "format_buildfile", "parse_buildfile"]

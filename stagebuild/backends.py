"""Command backends that run opaque argv inside a materialized image root."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Set
import os
import pwd

from core.command_runner import CommandResult, CommandRunner

from .errors import BackendUnsupported
from .snapshot import absolute, normalize_path


@dataclass(frozen=True, slots=True)
class CommandRequest:
    argv: tuple[str, ...]
    root: Path
    workdir: str = "/"
    user: str = "root"
    environment: Mapping[str, str] = field(default_factory=dict)
    label: str | None = None

    @property
    def host_workdir(self) -> Path:
        return self.root / normalize_path(self.workdir)


class CommandBackend:
    name = "abstract"
    isolated = False
    """Whether commands see the image root as ``/`` (otherwise they see the host)."""

    def __init__(self, runner: CommandRunner, *, stream: bool = False) -> None:
        self.runner = runner
        self.stream = stream

    def run(self, request: CommandRequest) -> CommandResult:  # pragma: no cover - interface
        raise NotImplementedError

    @staticmethod
    def _prepare_workdir(request: CommandRequest) -> Path:
        workdir = request.host_workdir
        workdir.mkdir(parents=True, exist_ok=True)
        return workdir


class HostCommandBackend(CommandBackend):
    """Run commands directly on the host with the image root as working tree.

    The command starts in the stage's working directory below the root and
    sees ``STAGE_ROOT``, ``STAGE_USER`` and ``STAGE_WORKDIR``. Nothing is
    isolated: absolute paths name host files. Every command runs as the
    invoking user, which stands in for the image's root account; a request
    for any other account is refused.
    """

    name = "host"

    def run(self, request: CommandRequest) -> CommandResult:
        user = request.user.split(":", 1)[0]
        if user not in {"root", "0"} | _invoking_users():
            raise BackendUnsupported(
                self.name,
                f"it runs as the invoking user and cannot switch to '{request.user}'; use the chroot backend",
            )
        cwd = self._prepare_workdir(request)
        env: Dict[str, str] = dict(request.environment)
        env.update(
            {
                "STAGE_ROOT": str(request.root),
                "STAGE_USER": request.user,
                "STAGE_WORKDIR": absolute(normalize_path(request.workdir)),
            }
        )
        return self.runner.run(request.argv, cwd=cwd, env=env, note=request.label, stream=self.stream)


class ChrootCommandBackend(CommandBackend):
    """Run commands through ``chroot --userspec`` into the image root (needs root)."""

    name = "chroot"
    isolated = True

    def run(self, request: CommandRequest) -> CommandResult:
        self._prepare_workdir(request)
        command: List[str] = [
            "chroot",
            f"--userspec={request.user}",
            str(request.root),
            "env",
            "-C",
            absolute(normalize_path(request.workdir)),
        ]
        command.extend(f"{key}={value}" for key, value in sorted(request.environment.items()))
        command.extend(request.argv)
        return self.runner.run(command, note=request.label, stream=self.stream)


def _invoking_users() -> Set[str]:
    uid = os.geteuid()
    names = {str(uid)}
    try:
        names.add(pwd.getpwuid(uid).pw_name)
    except KeyError:
        pass
    return names


BACKENDS: Dict[str, type[CommandBackend]] = {
    HostCommandBackend.name: HostCommandBackend,
    ChrootCommandBackend.name: ChrootCommandBackend,
}


def make_backend(name: str, runner: CommandRunner, *, stream: bool = False) -> CommandBackend:
    backend_cls = BACKENDS.get(name.strip().lower())
    if backend_cls is None:
        raise ValueError(f"Unknown command backend '{name}'. Choose one of: {', '.join(BACKENDS)}")
    return backend_cls(runner, stream=stream)


__all__ = [
    "BACKENDS",
    "ChrootCommandBackend",
    "CommandBackend",
    "CommandRequest",
    "HostCommandBackend",
    "make_backend",
]

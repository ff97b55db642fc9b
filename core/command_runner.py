"""Utilities for executing build commands with optional dry-run support."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Sequence
import os
import shlex
import subprocess


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    streamed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        text = " ".join(shlex.quote(part) for part in self.command)
        if self.streamed or not (self.stdout or self.stderr):
            return f"exit code {self.returncode}: {text}"
        output = (self.stderr or self.stdout).strip()
        return f"exit code {self.returncode}: {text}\n{output}"


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        raise NotImplementedError

    def format_command(self, command: Sequence[str]) -> str:
        return " ".join(shlex.quote(part) for part in command)


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`.

    The call blocks until the process exits. No timeout is applied and a
    non-zero exit status is returned to the caller rather than raised.
    """

    @staticmethod
    def _merge_environment(env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if env is None:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        merged_env = self._merge_environment(env)
        try:
            process = subprocess.run(
                list(command),
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                capture_output=not stream,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            # Mirror the shell's "command not found" status.
            return CommandResult(command=command, returncode=127, stdout="", stderr=str(exc))

        return CommandResult(
            command=command,
            returncode=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
            streamed=stream,
        )


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    note: str | None
    stream: bool


CommandHandler = Callable[[RecordedCommand], "int | None"]
"""Callable simulating a program; returns the exit status (``None`` means 0)."""


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them.

    ``handlers`` maps a program name (the first argv element) to a callable
    that may simulate the program's side effects and exit status.
    """

    def __init__(self, handlers: Mapping[str, CommandHandler] | None = None) -> None:
        self.commands: List[RecordedCommand] = []
        self._handlers: Dict[str, CommandHandler] = dict(handlers or {})

    def register(self, program: str, handler: CommandHandler) -> None:
        self._handlers[program] = handler

    @staticmethod
    def _record_entry(
        *,
        command: Sequence[str],
        cwd: Path | None,
        env: Mapping[str, str] | None,
        note: str | None,
        stream: bool,
    ) -> RecordedCommand:
        return RecordedCommand(
            command=list(command),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else {},
            note=note,
            stream=stream,
        )

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        record = self._record_entry(command=command, cwd=cwd, env=env, note=note, stream=stream)
        self.commands.append(record)

        returncode = 0
        handler = self._handlers.get(record.command[0]) if record.command else None
        if handler is not None:
            status = handler(record)
            returncode = int(status) if status is not None else 0
        return CommandResult(command=command, returncode=returncode, stdout="", stderr="")

    def iter_commands(self) -> Iterable[RecordedCommand]:
        return iter(self.commands)

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterable[str]:
        default_cwd = str(workspace) if workspace else None
        for record in self.commands:
            cmd = self.format_command(record.command)
            cwd = record.cwd or default_cwd
            note = record.note
            parts: List[str] = ["[dry-run]"]
            if note:
                parts.append(note)
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(cmd)
            yield " ".join(parts)


__all__ = [
    "CommandHandler",
    "CommandResult",
    "CommandRunner",
    "RecordedCommand",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
]

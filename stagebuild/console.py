"""Console output handler shared by the pipeline components."""
from __future__ import annotations

import sys

from core.archive import ArchiveConsole


class Console(ArchiveConsole):
    """Simple console output handler with configurable log level.

    Levels: none < error < warn < info < debug
    Default: 'none' (no output)
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "warn": 2,
        "info": 3,
        "debug": 4,
    }

    def __init__(self, level: str = "none", dry_run: bool = False):
        if level not in self.LEVELS:
            choices = ", ".join(self.LEVELS)
            raise ValueError(f"Unknown log level '{level}'. Choose one of: {choices}")
        self.level_name = level
        self.level = self.LEVELS[level]
        self.dry_run = dry_run

    def enabled(self, level: str) -> bool:
        return self.level >= self.LEVELS[level]

    def info(self, message: str) -> None:
        if self.enabled("info"):
            print(f"[INFO] {message}")

    def warn(self, message: str) -> None:
        if self.enabled("warn"):
            print(f"[WARN] {message}", file=sys.stderr)

    def error(self, message: str) -> None:
        if self.enabled("error"):
            print(f"[ERROR] {message}", file=sys.stderr)

    def dry(self, message: str) -> None:
        if self.dry_run:
            print(f"[DRY] {message}")

    def debug(self, message: str) -> None:
        if self.enabled("debug"):
            print(f"[DEBUG] {message}")


__all__ = ["Console"]

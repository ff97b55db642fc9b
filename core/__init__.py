"""Shared core utilities for command execution, archives, configuration and templating."""

from .archive import ArchiveConsole, ArchiveManager, ArchiveMember, resolve_archive_format
from .template import TemplateError, TemplateResolver, extract_placeholders
from .command_runner import (
    CommandResult,
    CommandRunner,
    RecordedCommand,
    RecordingCommandRunner,
    SubprocessCommandRunner,
)
from .config_loader import (
    ConfigLoader,
    FILE_LOADERS,
    find_config_file,
    is_config_file,
    load_config_file,
    normalize_string_list,
)

__all__ = [
    "TemplateError",
    "TemplateResolver",
    "extract_placeholders",
    "ArchiveConsole",
    "ArchiveManager",
    "ArchiveMember",
    "resolve_archive_format",
    "CommandResult",
    "CommandRunner",
    "RecordedCommand",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
    "ConfigLoader",
    "FILE_LOADERS",
    "find_config_file",
    "is_config_file",
    "load_config_file",
    "normalize_string_list",
]

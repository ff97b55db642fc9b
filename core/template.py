"""Placeholder resolution for build arguments."""
from __future__ import annotations

from typing import Any, Dict, Mapping
import re


_PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")
_SINGLE_PLACEHOLDER_PATTERN = re.compile(r"^\s*\{\{([^{}]+)\}\}\s*$")


class TemplateError(ValueError):
    """Raised when template placeholders cannot be resolved."""


class TemplateResolver:
    """Resolve ``{{dotted.path}}`` placeholders against a nested context mapping.

    Values found in the context are themselves resolved, so one argument may
    refer to another. Cycles are reported as :class:`TemplateError`.
    """

    def __init__(self, context: Mapping[str, Any]) -> None:
        self._context = context
        self._cache: Dict[str, Any] = {}

    def resolve(self, value: Any) -> Any:
        return self._resolve_value(value, stack=[])

    def _resolve_value(self, value: Any, *, stack: list[str]) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value, stack=stack)
        if isinstance(value, Mapping):
            return {key: self._resolve_value(item, stack=stack) for key, item in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(item, stack=stack) for item in value]
        if isinstance(value, tuple):
            return tuple(self._resolve_value(item, stack=stack) for item in value)
        return value

    def _resolve_string(self, value: str, *, stack: list[str]) -> Any:
        single = _SINGLE_PLACEHOLDER_PATTERN.match(value)
        if single:
            return self._resolve_path(single.group(1).strip(), stack=stack)

        def replacement(match: re.Match[str]) -> str:
            resolved = self._resolve_path(match.group(1).strip(), stack=stack)
            return str(resolved)

        return _PLACEHOLDER_PATTERN.sub(replacement, value)

    def _resolve_path(self, path: str, *, stack: list[str]) -> Any:
        if path in self._cache:
            return self._cache[path]
        if path in stack:
            cycle = " -> ".join([*stack[stack.index(path):], path])
            raise TemplateError(f"Circular placeholder reference: {cycle}")

        raw = self._lookup_raw(path)
        resolved = self._resolve_value(raw, stack=[*stack, path])
        self._cache[path] = resolved
        return resolved

    def _lookup_raw(self, path: str) -> Any:
        current: Any = self._context
        for part in path.split("."):
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            else:
                raise TemplateError(f"Unknown placeholder '{{{{{path}}}}}'")
        return current


def extract_placeholders(value: Any) -> set[str]:
    """Return every placeholder path referenced anywhere in ``value``."""

    found: set[str] = set()

    def _collect(obj: Any) -> None:
        if isinstance(obj, str):
            for match in _PLACEHOLDER_PATTERN.finditer(obj):
                found.add(match.group(1).strip())
        elif isinstance(obj, Mapping):
            for item in obj.values():
                _collect(item)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _collect(item)

    _collect(value)
    return found


__all__ = [
    "TemplateError",
    "TemplateResolver",
    "extract_placeholders",
]

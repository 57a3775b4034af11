"""Ignore patterns for file synchronization.

This module provides:
- IgnorePatterns: Glob matching against paths relative to a sync root
- glob_to_regex: Compile one glob into a regular expression
- DEFAULT_IGNORE_PATTERNS: Common patterns to ignore

Glob rules: ``*`` matches within one path segment, ``**`` matches across
segments (``**/`` also matches no directory at all) and ``?`` matches one
character other than ``/``. A pattern matches a path when it matches the
whole relative path, any ancestor directory of it, or its base name, so
``node_modules`` ignores everything below a ``node_modules`` directory.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path

# Default ignore patterns (similar to common .gitignore entries)
DEFAULT_IGNORE_PATTERNS = [
    ".git",
    ".DS_Store",
    "Thumbs.db",
    "*.tmp",
    "*.temp",
    "~*",
    "*.swp",
    "*.swo",
]


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a glob to an anchored regular expression."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif char == "*":
            parts.append("[^/]*")
            i += 1
        elif char == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(char))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


def matches_pattern(path: str, patterns: Iterable[str]) -> bool:
    """Whether ``path`` (forward slashes) matches any glob in ``patterns``."""
    return any(glob_to_regex(pattern).match(path) for pattern in patterns)


class IgnorePatterns:
    """Handles ignore pattern matching for paths relative to a sync root."""

    def __init__(self, patterns: Iterable[str] | None = None, defaults: bool = True) -> None:
        """Initialize with patterns.

        Args:
            patterns: Glob patterns, typically ``EndpointConfig.ignore``.
            defaults: Include DEFAULT_IGNORE_PATTERNS.
        """
        self._patterns = list(DEFAULT_IGNORE_PATTERNS) if defaults else []
        if patterns:
            self._patterns.extend(p.rstrip("/") for p in patterns if p.strip())

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def matches(self, relative_path: str) -> bool:
        """Check a forward-slash path relative to the sync root.

        Returns:
            True if the path, one of its ancestors, or its base name matches.
        """
        relative_path = relative_path.replace("\\", "/").strip("/")
        if not relative_path or not self._patterns:
            return False

        segments = relative_path.split("/")
        candidates = ["/".join(segments[: i + 1]) for i in range(len(segments))]
        candidates.append(segments[-1])
        return any(matches_pattern(candidate, self._patterns) for candidate in candidates)

    def should_ignore(self, path: Path, base_path: Path) -> bool:
        """Check a local path below ``base_path``.

        Symlinks are always ignored. Paths outside the base are never ignored.
        """
        if path.is_symlink():
            return True
        try:
            rel_path = path.relative_to(base_path)
        except ValueError:
            return False
        return self.matches(rel_path.as_posix())

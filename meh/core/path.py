"""
Knowledge paths — Hierarchical addresses for facts

    @products/alpha/api/timeout
    @users/kasia/preferences
    @readme

A path starts with a root segment carrying the '@' marker, followed by any
number of '/'-separated segments. Depth is unbounded. Leading and trailing
slashes are tolerated and stripped.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..errors import InvalidPath


ROOT_MARKER = "@"
SEPARATOR = "/"

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_@-]+$")


@dataclass(frozen=True)
class KnowledgePath:
    """Parsed, normalized path. Immutable."""
    segments: Tuple[str, ...]

    @classmethod
    def parse(cls, raw: str) -> 'KnowledgePath':
        """
        Parse a fact path.

        Raises:
            InvalidPath: empty input, a root segment without '@',
                         or characters outside [A-Za-z0-9_@-]
        """
        if raw is None:
            raise InvalidPath("Path cannot be empty", operation="parse_path")

        normalized = raw.strip().strip(SEPARATOR)
        if not normalized:
            raise InvalidPath("Path cannot be empty", operation="parse_path", target=raw)

        segments = tuple(s for s in normalized.split(SEPARATOR) if s)
        for segment in segments:
            if not _SEGMENT_RE.match(segment):
                raise InvalidPath(
                    f"Invalid characters in path segment '{segment}' "
                    "(allowed: letters, digits, '-', '_', '@')",
                    operation="parse_path",
                    target=raw,
                )

        if not segments[0].startswith(ROOT_MARKER) or segments[0] == ROOT_MARKER:
            raise InvalidPath(
                f"Path must start with a root segment like '@name': {raw}",
                operation="parse_path",
                target=raw,
            )

        return cls(segments=segments)

    @classmethod
    def try_parse(cls, raw: Optional[str]) -> Optional['KnowledgePath']:
        """parse(), returning None for a missing or malformed path."""
        if not raw:
            return None
        try:
            return cls.parse(raw)
        except InvalidPath:
            return None

    @property
    def name(self) -> str:
        """Last segment, used as the default fact title."""
        return self.segments[-1]

    def is_within(self, prefix: Optional['KnowledgePath']) -> bool:
        """Segment-aware prefix test: @a contains @a/b but not @ab."""
        if prefix is None:
            return True
        return self.segments[:len(prefix.segments)] == prefix.segments

    def __str__(self) -> str:
        return SEPARATOR.join(self.segments)


def normalize_path(raw: str) -> str:
    """Parse and return the canonical string form."""
    return str(KnowledgePath.parse(raw))


def normalize_prefix(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a browse/search prefix.

    Empty, '/', and '@' all mean the whole tree and return None.
    """
    if raw is None:
        return None
    stripped = raw.strip().strip(SEPARATOR)
    if stripped in ("", ROOT_MARKER):
        return None
    return normalize_path(stripped)


def prefix_clause(column: str, prefix: Optional[str]) -> Tuple[str, List[str]]:
    """
    SQL fragment matching `column` at or below `prefix`.

    Uses substr() instead of LIKE so '_' in paths is not a wildcard.
    """
    if prefix is None:
        return "1 = 1", []
    below = prefix + SEPARATOR
    return (
        f"({column} = ? OR substr({column}, 1, {len(below)}) = ?)",
        [prefix, below],
    )


def child_of(path: str, prefix: Optional[str]) -> Optional[str]:
    """
    Immediate child of `prefix` on the way to `path`.

    child_of("@a/b/c", "@a") -> "@a/b"
    child_of("@a/b/c", None) -> "@a"
    child_of("@a", "@a") -> None
    """
    segments = path.split(SEPARATOR)
    if prefix is None:
        return segments[0]
    depth = len(prefix.split(SEPARATOR))
    if len(segments) <= depth:
        return None
    return SEPARATOR.join(segments[:depth + 1])

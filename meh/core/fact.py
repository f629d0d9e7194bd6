"""
Fact — The immutable unit of knowledge

A fact's content never changes once written. Edits are new facts linked by
relation:
- correction: new fact with `supersedes` pointing at the replaced one
- extension: new fact with `extends` pointing at its parent
- vote: extension carrying +1/-1; +1 votes count as confirmations

The only in-place changes are the status transition (active -> superseded,
active -> deprecated) and its `updated_at` stamp.
"""

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..errors import InvalidPath


DISPLAY_PREFIX = "meh-"
SUMMARY_MAX_CHARS = 150

_TAG_RE = re.compile(r"^[a-z0-9_.:-]+$")


class Status(Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    DEPRECATED = "deprecated"


class AuthorKind(Enum):
    HUMAN = "human"
    AGENT = "agent"
    SYSTEM = "system"


class FactType(Enum):
    FACT = "fact"
    CORRECTION = "correction"
    EXTENSION = "extension"
    VOTE = "vote"


@dataclass
class Fact:
    id: str
    path: str
    title: str
    content: str
    summary: str = ""
    tags: List[str] = field(default_factory=list)
    author_kind: AuthorKind = AuthorKind.HUMAN
    author_id: str = ""
    source: str = "local"
    fact_type: FactType = FactType.FACT
    status: Status = Status.ACTIVE
    supersedes: Optional[str] = None
    extends: Optional[str] = None
    vote: Optional[int] = None
    deprecation_reason: Optional[str] = None
    created_at: str = field(default_factory=lambda: now_iso())
    updated_at: str = ""
    confirmations: int = 0  # derived on read, never stored

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def display_id(self) -> str:
        return DISPLAY_PREFIX + self.id

    @property
    def is_active(self) -> bool:
        return self.status == Status.ACTIVE

    @property
    def is_superseded(self) -> bool:
        return self.status == Status.SUPERSEDED

    @property
    def is_deprecated(self) -> bool:
        return self.status == Status.DEPRECATED

    @property
    def created(self) -> datetime:
        return parse_timestamp(self.created_at)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['author_kind'] = self.author_kind.value
        d['fact_type'] = self.fact_type.value
        d['status'] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'Fact':
        d = dict(d)
        d['author_kind'] = AuthorKind(d.get('author_kind', 'human'))
        d['fact_type'] = FactType(d.get('fact_type', 'fact'))
        d['status'] = Status(d.get('status', 'active'))
        d['tags'] = list(d.get('tags') or [])
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in d.items() if k in known})


# =============================================================================
# Helpers
# =============================================================================

def now_iso() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO form so stored timestamps compare as strings."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def strip_display_prefix(ref: str) -> str:
    """'meh-01HQ...' -> '01HQ...'."""
    ref = ref.strip()
    if ref.lower().startswith(DISPLAY_PREFIX):
        return ref[len(DISPLAY_PREFIX):]
    return ref


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """
    Lowercase, strip, de-duplicate and sort tags.

    Raises:
        InvalidPath: a tag contains characters outside [a-z0-9_.:-]
    """
    result = set()
    for tag in tags or []:
        tag = tag.strip().lower().lstrip('#')
        if not tag:
            continue
        if not _TAG_RE.match(tag):
            raise InvalidPath(f"Invalid tag '{tag}'", operation="normalize_tags", target=tag)
        result.add(tag)
    return sorted(result)


def generate_summary(content: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """
    First sentence when it fits, otherwise a word-boundary cut with '...'.
    """
    text = " ".join(content.split())
    if len(text) <= max_chars:
        sentence_end = _first_sentence_end(text)
        return text[:sentence_end] if sentence_end else text

    sentence_end = _first_sentence_end(text[:max_chars])
    if sentence_end:
        return text[:sentence_end]

    cut = text[:max_chars - 3]
    space = cut.rfind(" ")
    if space > max_chars // 2:
        cut = cut[:space]
    return cut.rstrip(" ,;:") + "..."


def _first_sentence_end(text: str) -> int:
    """Index just past the first '.', '!' or '?' followed by a space, or 0."""
    match = re.search(r"[.!?](\s|$)", text)
    if match:
        return match.start() + 1
    return 0

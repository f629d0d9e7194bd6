"""
Events — What a mutation tells the rest of the system

Every accepted write produces exactly one FactEvent, committed in the same
transaction as the write itself (the facts-db outbox). The notification
engine relays outbox rows into per-session notification logs.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

import xxhash

from .fact import Fact, now_iso


class EventKind(Enum):
    ADDED = "added"
    CORRECTED = "corrected"
    EXTENDED = "extended"
    DEPRECATED = "deprecated"
    VOTED = "voted"
    # Not tied to a fact
    ALERT = "alert"


class Category(Enum):
    FACTS = "facts"
    CI = "ci"
    SECURITY = "security"
    DOCS = "docs"
    SYSTEM = "system"
    CUSTOM = "custom"


class Priority(IntEnum):
    """Higher value = more urgent. Subscriptions filter on a minimum."""
    NORMAL = 0
    HIGH = 1
    CRITICAL = 2

    @classmethod
    def parse(cls, value) -> 'Priority':
        if isinstance(value, Priority):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]


# Corrections and deprecations change what readers already rely on
KIND_PRIORITY = {
    EventKind.ADDED: Priority.NORMAL,
    EventKind.CORRECTED: Priority.HIGH,
    EventKind.EXTENDED: Priority.NORMAL,
    EventKind.DEPRECATED: Priority.HIGH,
    EventKind.VOTED: Priority.NORMAL,
    EventKind.ALERT: Priority.NORMAL,
}

KIND_TITLE_PREFIX = {
    EventKind.ADDED: "New",
    EventKind.CORRECTED: "Corrected",
    EventKind.EXTENDED: "Extended",
    EventKind.DEPRECATED: "Deprecated",
    EventKind.VOTED: "Vote",
}


@dataclass
class FactEvent:
    kind: EventKind
    title: str
    fact_id: Optional[str] = None
    path: Optional[str] = None
    summary: str = ""
    category: Category = Category.FACTS
    priority: Priority = Priority.NORMAL
    created_at: str = field(default_factory=now_iso)
    key: str = ""

    def __post_init__(self):
        if not self.key:
            raw = f"{self.kind.value}:{self.fact_id}:{self.title}:{self.created_at}"
            self.key = xxhash.xxh64(raw.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['kind'] = self.kind.value
        d['category'] = self.category.value
        d['priority'] = int(self.priority)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'FactEvent':
        d = dict(d)
        d['kind'] = EventKind(d['kind'])
        d['category'] = Category(d.get('category') or 'facts')
        d['priority'] = Priority(int(d.get('priority') or 0))
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in d.items() if k in known})


def fact_event(kind: EventKind, fact: Fact, summary: Optional[str] = None, created_at: Optional[str] = None) -> FactEvent:
    """Build the event a fact mutation emits."""
    return FactEvent(
        kind=kind,
        title=f"{KIND_TITLE_PREFIX[kind]}: {fact.title}",
        fact_id=fact.id,
        path=fact.path,
        summary=summary if summary is not None else fact.summary,
        category=Category.FACTS,
        priority=KIND_PRIORITY[kind],
        created_at=created_at or fact.updated_at,
    )

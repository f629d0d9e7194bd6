"""
Source tasks — One knowledge base's share of a federated query

Defines:
- SourceTask: the call to make against one source, with its timeout
- SourceResult: outcome of that call, hits or an error, never both

Design principles:
- Tasks are immutable after creation
- A result always names its source and search-order position so merge
  and failure reporting need nothing else
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import xxhash

from ..core.search import SearchHit


class SourceKind(Enum):
    LOCAL = "local"     # queried in the caller's thread
    REMOTE = "remote"   # queried on the federation thread pool


@dataclass(frozen=True)
class SourceTask:
    """Call `fn()` for one source. Immutable after creation."""
    source: str
    kind: SourceKind
    fn: Callable[[], List[SearchHit]]
    position: int = 0
    timeout: float = 5.0
    id: str = field(default_factory=lambda: _generate_task_id())

    @property
    def is_remote(self) -> bool:
        return self.kind == SourceKind.REMOTE


@dataclass
class SourceResult:
    """Hits from a source, or the error that kept it out of the merge."""
    task_id: str
    source: str
    position: int
    hits: List[SearchHit] = field(default_factory=list)
    error_kind: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.error_kind is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "source": self.source,
            "position": self.position,
            "hits": len(self.hits),
            "error_kind": self.error_kind,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def _generate_task_id() -> str:
    timestamp = datetime.now(timezone.utc).isoformat()
    return xxhash.xxh64(f"{timestamp}:{id(timestamp)}".encode()).hexdigest()[:12]


def run_task(task: SourceTask) -> SourceResult:
    """
    Execute a task, folding any failure into the result.

    Errors with a `kind` (MehError) keep it; anything else is "error".
    """
    started = datetime.now(timezone.utc)
    try:
        hits = task.fn()
        error_kind, error = None, None
    except Exception as e:
        hits = []
        error_kind = getattr(e, "kind", "error")
        error = str(e) or e.__class__.__name__
    duration_ms = (datetime.now(timezone.utc) - started).total_seconds() * 1000
    return SourceResult(
        task_id=task.id,
        source=task.source,
        position=task.position,
        hits=hits,
        error_kind=error_kind,
        error=error,
        duration_ms=round(duration_ms, 2),
    )

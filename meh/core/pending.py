"""
Pending Queue — Mutations captured for human review (pending.db)

Under the `ask` write mode a mutation is stored here instead of reaching
the fact store. Each entry moves pending -> approved | rejected exactly once;
every transition is a conditional UPDATE so two reviewers racing on the same
entry cannot both win.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import orjson
from ulid import ULID

from ..errors import NotFound, AlreadyResolved, AmbiguousReference
from .fact import format_timestamp
from .sqlite import SQLiteStore, RetryPolicy


logger = logging.getLogger(__name__)


PENDING_SCHEMA = """
    CREATE TABLE IF NOT EXISTS pending_writes (
        id TEXT PRIMARY KEY,
        kb TEXT NOT NULL,
        operation TEXT NOT NULL,
        payload TEXT NOT NULL,
        submitted_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        reason TEXT,
        resolved_at TEXT,
        result TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_pending_status ON pending_writes(status, id);
"""


class WriteOperation(Enum):
    ADD = "add"
    CORRECT = "correct"
    EXTEND = "extend"
    DEPRECATE = "deprecate"
    BULK_VOTE = "bulk_vote"


class PendingStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class PendingWrite:
    id: str
    kb: str
    operation: WriteOperation
    payload: Dict[str, Any]
    submitted_at: str
    status: PendingStatus = PendingStatus.PENDING
    reason: Optional[str] = None
    resolved_at: Optional[str] = None
    result: List[str] = field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return self.status == PendingStatus.PENDING

    def describe(self) -> str:
        """One-line summary for listings."""
        p = self.payload
        op = self.operation
        if op == WriteOperation.ADD:
            return f"add {p.get('path')}: {p.get('title') or _snippet(p.get('content', ''))}"
        if op in (WriteOperation.CORRECT, WriteOperation.EXTEND):
            return f"{op.value} {p.get('fact_id')}: {_snippet(p.get('content', ''))}"
        if op == WriteOperation.DEPRECATE:
            return f"deprecate {p.get('fact_id')}: {p.get('reason', '')}"
        votes = p.get('votes', [])
        return f"bulk_vote ({len(votes)} vote{'s' if len(votes) != 1 else ''})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kb": self.kb,
            "operation": self.operation.value,
            "payload": self.payload,
            "submitted_at": self.submitted_at,
            "status": self.status.value,
            "reason": self.reason,
            "resolved_at": self.resolved_at,
            "result": list(self.result),
        }


def _snippet(text: str, length: int = 50) -> str:
    text = " ".join(text.split())
    return text if len(text) <= length else text[:length - 3] + "..."


class PendingQueue(SQLiteStore):
    """SQLite-backed review queue."""

    SCHEMA = PENDING_SCHEMA

    def __init__(
        self,
        path: Path,
        retry: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        super().__init__(path, retry=retry)

    def submit(self, kb: str, operation: WriteOperation, payload: Dict[str, Any]) -> PendingWrite:
        now = self._clock()
        entry = PendingWrite(
            id=str(ULID.from_datetime(now)),
            kb=kb,
            operation=operation,
            payload=payload,
            submitted_at=format_timestamp(now),
        )
        with self.write("pending_submit") as conn:
            conn.execute(
                "INSERT INTO pending_writes (id, kb, operation, payload, submitted_at, status) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (entry.id, entry.kb, entry.operation.value,
                 orjson.dumps(entry.payload).decode(), entry.submitted_at, entry.status.value)
            )
        logger.debug("queued %s for %s as %s", operation.value, kb, entry.id)
        return entry

    def find(self, pending_id: str) -> Optional[PendingWrite]:
        with self.read() as conn:
            row = conn.execute("SELECT * FROM pending_writes WHERE id = ?", (pending_id,)).fetchone()
        return _row_to_pending(row) if row else None

    def get(self, pending_id: str) -> PendingWrite:
        """
        Raises:
            NotFound: unknown id
        """
        entry = self.find(pending_id)
        if entry is None:
            raise NotFound(f"Pending write not found: {pending_id}",
                           operation="pending_get", target=pending_id)
        return entry

    def resolve_id(self, ref: str, min_prefix_length: int = 4) -> str:
        """
        Full id from an exact id or an unambiguous prefix.

        Raises:
            NotFound: nothing matches
            AmbiguousReference: the prefix matches several entries
        """
        ref = ref.strip().upper()
        if self.find(ref) is not None:
            return ref
        if len(ref) >= min_prefix_length:
            with self.read() as conn:
                rows = conn.execute(
                    "SELECT id FROM pending_writes WHERE substr(id, 1, ?) = ? ORDER BY id LIMIT 10",
                    (len(ref), ref)
                ).fetchall()
            ids = [r['id'] for r in rows]
            if len(ids) == 1:
                return ids[0]
            if len(ids) > 1:
                raise AmbiguousReference(
                    f"'{ref}' matches {len(ids)} pending writes",
                    operation="pending_resolve", target=ref, suggestions=ids,
                )
        raise NotFound(f"Pending write not found: {ref}", operation="pending_resolve", target=ref)

    def list(self, status: Optional[PendingStatus] = None, kb: Optional[str] = None) -> List[PendingWrite]:
        """Entries oldest first, optionally filtered."""
        where, params = [], []
        if status is not None:
            where.append("status = ?")
            params.append(status.value)
        if kb is not None:
            where.append("kb = ?")
            params.append(kb)
        sql = "SELECT * FROM pending_writes"
        if where:
            sql += " WHERE " + " AND ".join(where)
        with self.read() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [_row_to_pending(r) for r in rows]

    def count(self, status: PendingStatus = PendingStatus.PENDING) -> int:
        with self.read() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM pending_writes WHERE status = ?", (status.value,)
            ).fetchone()[0]

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def mark_approved(self, pending_id: str, fact_ids: List[str]) -> PendingWrite:
        """
        pending -> approved, recording the created fact ids.

        Raises:
            NotFound: unknown id
            AlreadyResolved: entry is no longer pending
        """
        self._transition(
            pending_id, "pending_approve",
            "status = 'approved', resolved_at = ?, result = ?",
            [self._now(), orjson.dumps(fact_ids).decode()],
        )
        return self.get(pending_id)

    def mark_rejected(self, pending_id: str, reason: Optional[str] = None) -> PendingWrite:
        """
        pending -> rejected.

        Raises:
            NotFound: unknown id
            AlreadyResolved: entry is no longer pending
        """
        self._transition(
            pending_id, "pending_reject",
            "status = 'rejected', resolved_at = ?, reason = ?",
            [self._now(), reason],
        )
        return self.get(pending_id)

    def claim(self, pending_id: str) -> PendingWrite:
        """
        Take an entry out of the pending state before a non-transactional
        replay (remote targets). Pair with record_result() or release().
        """
        self._transition(
            pending_id, "pending_claim",
            "status = 'approved', resolved_at = ?",
            [self._now()],
        )
        return self.get(pending_id)

    def record_result(self, pending_id: str, fact_ids: List[str]) -> PendingWrite:
        with self.write("pending_result") as conn:
            conn.execute(
                "UPDATE pending_writes SET result = ? WHERE id = ?",
                (orjson.dumps(fact_ids).decode(), pending_id)
            )
        return self.get(pending_id)

    def release(self, pending_id: str) -> None:
        """Return a claimed entry to pending after a failed replay."""
        with self.write("pending_release") as conn:
            conn.execute(
                "UPDATE pending_writes SET status = 'pending', resolved_at = NULL "
                "WHERE id = ? AND status = 'approved' AND result IS NULL",
                (pending_id,)
            )

    def _transition(self, pending_id: str, operation: str, assignments: str, params: List) -> None:
        with self.write(operation) as conn:
            cursor = conn.execute(
                f"UPDATE pending_writes SET {assignments} WHERE id = ? AND status = 'pending'",
                params + [pending_id]
            )
            if cursor.rowcount == 1:
                return
            row = conn.execute(
                "SELECT status FROM pending_writes WHERE id = ?", (pending_id,)
            ).fetchone()
        if row is None:
            raise NotFound(f"Pending write not found: {pending_id}",
                           operation=operation, target=pending_id)
        raise AlreadyResolved(
            f"Pending write {pending_id} is already {row['status']}",
            operation=operation, target=pending_id,
        )

    def _now(self) -> str:
        return format_timestamp(self._clock())


def _row_to_pending(row: sqlite3.Row) -> PendingWrite:
    return PendingWrite(
        id=row['id'],
        kb=row['kb'],
        operation=WriteOperation(row['operation']),
        payload=orjson.loads(row['payload']),
        submitted_at=row['submitted_at'],
        status=PendingStatus(row['status']),
        reason=row['reason'],
        resolved_at=row['resolved_at'],
        result=orjson.loads(row['result']) if row['result'] else [],
    )

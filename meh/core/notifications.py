"""
Notifications — Per-session view of what changed

Writes never touch this store directly. Each fact mutation commits a
FactEvent into the facts-db outbox; this store relays outbox rows in
(idempotently, keyed by event key) before any read. A crash can therefore
never leave a committed fact without its notification.

Each session has:
- a read cursor: every notification id <= cursor is read
- individual acks above the cursor (compacted into the cursor when contiguous)
- a subscription filter (categories, path prefixes, minimum priority)
- a one-shot onboarding flag
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import orjson

from .events import Category, EventKind, FactEvent, Priority
from .fact import format_timestamp
from .path import KnowledgePath, normalize_prefix
from .sqlite import SQLiteStore, RetryPolicy
from .storage import FactStore


logger = logging.getLogger(__name__)


NOTIFICATIONS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_key TEXT NOT NULL UNIQUE,
        kind TEXT NOT NULL,
        fact_id TEXT,
        path TEXT,
        title TEXT NOT NULL,
        summary TEXT NOT NULL DEFAULT '',
        category TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_notifications_created ON notifications(created_at);

    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        last_seen_id INTEGER NOT NULL DEFAULT 0,
        subscription TEXT NOT NULL,
        onboarding_shown INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        last_active TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS acks (
        session_id TEXT NOT NULL,
        notification_id INTEGER NOT NULL,
        acked_at TEXT NOT NULL,
        PRIMARY KEY (session_id, notification_id)
    );

    CREATE TABLE IF NOT EXISTS relay_state (
        source TEXT PRIMARY KEY,
        last_seq INTEGER NOT NULL
    );
"""

RELAY_BATCH = 500


@dataclass
class Notification:
    id: int
    kind: EventKind
    title: str
    category: Category
    priority: Priority
    created_at: str
    fact_id: Optional[str] = None
    path: Optional[str] = None
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "category": self.category.value,
            "priority": self.priority.name.lower(),
            "created_at": self.created_at,
            "fact_id": self.fact_id,
            "path": self.path,
            "summary": self.summary,
        }


@dataclass
class Subscription:
    """
    Filter over notifications. Empty categories match every category;
    empty path prefixes match every notification.
    """
    categories: List[Category] = field(default_factory=list)
    path_prefixes: List[str] = field(default_factory=list)
    min_priority: Priority = Priority.NORMAL

    def matches(self, category: Category, priority: Priority, path: Optional[str]) -> bool:
        if priority < self.min_priority:
            return False
        if self.categories and category not in self.categories:
            return False
        if self.path_prefixes:
            target = KnowledgePath.try_parse(path)
            if target is None:
                return False
            return any(target.is_within(KnowledgePath.parse(p)) for p in self.path_prefixes)
        return True

    def matches_notification(self, n: Notification) -> bool:
        return self.matches(n.category, n.priority, n.path)

    def to_json(self) -> str:
        return orjson.dumps({
            "categories": [c.value for c in self.categories],
            "path_prefixes": list(self.path_prefixes),
            "min_priority": int(self.min_priority),
        }).decode()

    @classmethod
    def from_json(cls, raw: str) -> 'Subscription':
        data = orjson.loads(raw) if raw else {}
        return cls(
            categories=[Category(c) for c in data.get("categories", [])],
            path_prefixes=list(data.get("path_prefixes", [])),
            min_priority=Priority(int(data.get("min_priority", 0))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return orjson.loads(self.to_json())


@dataclass
class Session:
    session_id: str
    last_seen_id: int
    subscription: Subscription
    onboarding_shown: bool
    created_at: str
    last_active: str


@dataclass
class AckResult:
    """Which ids an ack applied to; nothing is dropped silently."""
    acknowledged: List[int] = field(default_factory=list)
    ignored: List[int] = field(default_factory=list)  # already read or unknown
    cursor: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"acknowledged": self.acknowledged, "ignored": self.ignored, "cursor": self.cursor}


AckTarget = Union[str, Iterable[int]]


class NotificationStore(SQLiteStore):
    """
    Sessions, notifications and read state (notifications.db).

    Args:
        path: database file
        outboxes: fact stores whose outboxes feed this store
    """

    SCHEMA = NOTIFICATIONS_SCHEMA

    def __init__(
        self,
        path: Path,
        outboxes: Iterable[FactStore] = (),
        retry: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.outboxes = list(outboxes)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        super().__init__(path, retry=retry)

    # -------------------------------------------------------------------------
    # Relay
    # -------------------------------------------------------------------------

    def relay(self) -> int:
        """Copy new outbox events in. Safe to call concurrently or repeatedly."""
        return sum(self._relay_from(store) for store in list(self.outboxes))

    def relayed_seq(self, outbox: FactStore) -> int:
        """Highest outbox sequence already copied in from `outbox`."""
        with self.read() as conn:
            row = conn.execute(
                "SELECT last_seq FROM relay_state WHERE source = ?", (str(outbox.path.resolve()),)
            ).fetchone()
        return row['last_seq'] if row else 0

    def _relay_from(self, outbox: FactStore) -> int:
        source = str(outbox.path.resolve())
        relayed = 0
        while True:
            with self.read() as conn:
                row = conn.execute(
                    "SELECT last_seq FROM relay_state WHERE source = ?", (source,)
                ).fetchone()
            last_seq = row['last_seq'] if row else 0

            batch = outbox.outbox_since(last_seq, limit=RELAY_BATCH)
            if not batch:
                break

            with self.write("relay") as conn:
                for _, event in batch:
                    relayed += self._insert_event(conn, event)
                conn.execute(
                    """
                    INSERT INTO relay_state (source, last_seq) VALUES (?, ?)
                    ON CONFLICT(source) DO UPDATE SET last_seq = MAX(last_seq, excluded.last_seq)
                    """,
                    (source, batch[-1][0])
                )
            if len(batch) < RELAY_BATCH:
                break
        if relayed:
            logger.debug("relayed %d events from %s", relayed, source)
        return relayed

    def emit(self, event: FactEvent) -> None:
        """Record an event not tied to a fact write (CI, security, system)."""
        with self.write("emit") as conn:
            self._insert_event(conn, event)

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def session(self, session_id: str) -> Session:
        """Get or create a session. Creation starts with an empty read cursor."""
        with self.write("session") as conn:
            return self._ensure_session(conn, session_id)

    def subscribe(
        self,
        session_id: str,
        categories: Optional[Iterable[Any]] = None,
        path_prefixes: Optional[Iterable[str]] = None,
        min_priority: Any = Priority.NORMAL,
    ) -> Subscription:
        """
        Replace the session's filter.

        Raises:
            InvalidPath: a path prefix is malformed
            ValueError: unknown category or priority
        """
        prefixes = []
        for raw in path_prefixes or []:
            normalized = normalize_prefix(raw)
            if normalized:
                prefixes.append(normalized)
        subscription = Subscription(
            categories=[c if isinstance(c, Category) else Category(str(c).lower()) for c in categories or []],
            path_prefixes=prefixes,
            min_priority=Priority.parse(min_priority),
        )
        with self.write("subscribe") as conn:
            self._ensure_session(conn, session_id)
            conn.execute(
                "UPDATE sessions SET subscription = ?, last_active = ? WHERE session_id = ?",
                (subscription.to_json(), self._now(), session_id)
            )
        return subscription

    def claim_onboarding(self, session_id: str) -> bool:
        """True exactly once per session: the first caller wins."""
        with self.write("claim_onboarding") as conn:
            self._ensure_session(conn, session_id)
            cursor = conn.execute(
                "UPDATE sessions SET onboarding_shown = 1 WHERE session_id = ? AND onboarding_shown = 0",
                (session_id,)
            )
            return cursor.rowcount == 1

    def cleanup_sessions(self, idle_days: int) -> int:
        cutoff = format_timestamp(self._clock() - timedelta(days=idle_days))
        with self.write("cleanup_sessions") as conn:
            conn.execute(
                "DELETE FROM acks WHERE session_id IN (SELECT session_id FROM sessions WHERE last_active < ?)",
                (cutoff,)
            )
            return conn.execute("DELETE FROM sessions WHERE last_active < ?", (cutoff,)).rowcount

    # -------------------------------------------------------------------------
    # Reading & acknowledging
    # -------------------------------------------------------------------------

    def get_pending(self, session_id: str, limit: Optional[int] = None) -> List[Notification]:
        """Unread notifications matching the session's subscription, oldest first."""
        self.relay()
        with self.write("get_pending") as conn:
            session = self._ensure_session(conn, session_id)
            conn.execute(
                "UPDATE sessions SET last_active = ? WHERE session_id = ?",
                (self._now(), session_id)
            )
            unread = self._unread(conn, session)
        if limit is not None:
            unread = unread[:max(0, limit)]
        return unread

    def unread_count(self, session_id: str) -> int:
        self.relay()
        with self.write("unread_count") as conn:
            session = self._ensure_session(conn, session_id)
            return len(self._unread(conn, session))

    def ack(self, session_id: str, ids: AckTarget) -> AckResult:
        """
        Mark notifications read. Idempotent: re-acking is reported in
        `ignored`, never raised.

        Args:
            ids: notification ids, or "all"
        """
        self.relay()
        result = AckResult()
        with self.write("ack") as conn:
            session = self._ensure_session(conn, session_id)
            now = self._now()

            if isinstance(ids, str):
                if ids != "all":
                    raise ValueError(f"ack expects notification ids or 'all', got {ids!r}")
                result.acknowledged = [n.id for n in self._unread(conn, session)]
                newest = conn.execute("SELECT COALESCE(MAX(id), 0) FROM notifications").fetchone()[0]
                cursor = max(session.last_seen_id, newest)
                conn.execute("DELETE FROM acks WHERE session_id = ?", (session_id,))
            else:
                for nid in _unique_ints(ids):
                    if nid <= session.last_seen_id or not self._exists(conn, nid):
                        result.ignored.append(nid)
                        continue
                    inserted = conn.execute(
                        "INSERT OR IGNORE INTO acks (session_id, notification_id, acked_at) VALUES (?, ?, ?)",
                        (session_id, nid, now)
                    ).rowcount
                    (result.acknowledged if inserted else result.ignored).append(nid)
                cursor = self._compact(conn, session)

            conn.execute(
                "UPDATE sessions SET last_seen_id = ?, last_active = ? WHERE session_id = ?",
                (cursor, now, session_id)
            )
            result.cursor = cursor
        return result

    def clear_old(self, older_than_days: int) -> int:
        """Delete notifications older than the given age. Returns count removed."""
        cutoff = format_timestamp(self._clock() - timedelta(days=older_than_days))
        with self.write("clear_old") as conn:
            conn.execute(
                "DELETE FROM acks WHERE notification_id IN (SELECT id FROM notifications WHERE created_at < ?)",
                (cutoff,)
            )
            return conn.execute("DELETE FROM notifications WHERE created_at < ?", (cutoff,)).rowcount

    def count(self) -> int:
        with self.read() as conn:
            return conn.execute("SELECT COUNT(*) FROM notifications").fetchone()[0]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _now(self) -> str:
        return format_timestamp(self._clock())

    def _insert_event(self, conn: sqlite3.Connection, event: FactEvent) -> int:
        return conn.execute(
            """
            INSERT OR IGNORE INTO notifications
                (event_key, kind, fact_id, path, title, summary, category, priority, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (event.key, event.kind.value, event.fact_id, event.path, event.title,
             event.summary, event.category.value, int(event.priority), event.created_at)
        ).rowcount

    def _ensure_session(self, conn: sqlite3.Connection, session_id: str) -> Session:
        row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        if row is None:
            now = self._now()
            conn.execute(
                "INSERT INTO sessions (session_id, last_seen_id, subscription, onboarding_shown, "
                "created_at, last_active) VALUES (?, 0, ?, 0, ?, ?)",
                (session_id, Subscription().to_json(), now, now)
            )
            row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        return Session(
            session_id=row['session_id'],
            last_seen_id=row['last_seen_id'],
            subscription=Subscription.from_json(row['subscription']),
            onboarding_shown=bool(row['onboarding_shown']),
            created_at=row['created_at'],
            last_active=row['last_active'],
        )

    def _unread(self, conn: sqlite3.Connection, session: Session) -> List[Notification]:
        rows = conn.execute(
            """
            SELECT * FROM notifications n
            WHERE n.id > ?
              AND NOT EXISTS (SELECT 1 FROM acks a
                              WHERE a.session_id = ? AND a.notification_id = n.id)
            ORDER BY n.id
            """,
            (session.last_seen_id, session.session_id)
        ).fetchall()
        notifications = [_row_to_notification(r) for r in rows]
        return [n for n in notifications if session.subscription.matches_notification(n)]

    def _exists(self, conn: sqlite3.Connection, nid: int) -> bool:
        return conn.execute("SELECT 1 FROM notifications WHERE id = ?", (nid,)).fetchone() is not None

    def _compact(self, conn: sqlite3.Connection, session: Session) -> int:
        """
        Advance the cursor over acked or filtered-out notifications and
        drop the acks it now covers.
        """
        acked = {
            r['notification_id'] for r in conn.execute(
                "SELECT notification_id FROM acks WHERE session_id = ?", (session.session_id,)
            )
        }
        cursor = session.last_seen_id
        rows = conn.execute(
            "SELECT id, category, priority, path FROM notifications WHERE id > ? ORDER BY id",
            (cursor,)
        )
        for row in rows:
            in_log = session.subscription.matches(
                Category(row['category']), Priority(row['priority']), row['path']
            )
            if row['id'] in acked or not in_log:
                cursor = row['id']
                continue
            break
        conn.execute(
            "DELETE FROM acks WHERE session_id = ? AND notification_id <= ?",
            (session.session_id, cursor)
        )
        return cursor


def _unique_ints(values: Iterable) -> List[int]:
    seen: List[int] = []
    for value in values:
        nid = int(value)
        if nid not in seen:
            seen.append(nid)
    return seen


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row['id'],
        kind=EventKind(row['kind']),
        title=row['title'],
        category=Category(row['category']),
        priority=Priority(row['priority']),
        created_at=row['created_at'],
        fact_id=row['fact_id'],
        path=row['path'],
        summary=row['summary'] or "",
    )

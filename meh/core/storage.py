"""
Fact Store — Append-only ledger of facts and their version chains

Source of truth for one knowledge base (facts.db).

Invariants:
- Fact content is never updated; the only in-place change is a status
  transition active -> superseded | deprecated (plus updated_at)
- A fact has at most one successor (unique index on `supersedes`),
  so every chain is a singly-linked list
- Every mutation writes its FactEvent to `outbox` in the same transaction
- A write carrying an apply token lands at most once (`applied_writes`)

Layout:
- facts: arena keyed by ULID; chains are back-links via `supersedes`
- facts_fts: FTS5 index over title, content, tags, path (trigger-maintained)
- fact_tags: tag index for intersection filters
- outbox: events waiting to be relayed to the notifications store
- applied_writes: apply tokens of replayed pending writes (revoked = rejected
  before it ever landed)
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import orjson
from ulid import ULID

from ..errors import NotFound, AlreadySuperseded, AlreadyResolved
from ..utils.cursor import encode_cursor, decode_cursor
from .events import EventKind, FactEvent, fact_event
from .fact import (
    Fact, Status, AuthorKind, FactType,
    format_timestamp, generate_summary, normalize_tags, SUMMARY_MAX_CHARS,
)
from .path import KnowledgePath, normalize_prefix, prefix_clause, child_of
from .sqlite import SQLiteStore, RetryPolicy


logger = logging.getLogger(__name__)


FACTS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS facts (
        id TEXT PRIMARY KEY,
        path TEXT NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        summary TEXT NOT NULL DEFAULT '',
        tags TEXT NOT NULL DEFAULT '[]',
        author_kind TEXT NOT NULL,
        author_id TEXT NOT NULL DEFAULT '',
        source TEXT NOT NULL DEFAULT 'local',
        fact_type TEXT NOT NULL DEFAULT 'fact',
        status TEXT NOT NULL DEFAULT 'active',
        supersedes TEXT,
        extends TEXT,
        vote INTEGER,
        deprecation_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_facts_path ON facts(path, id);
    CREATE INDEX IF NOT EXISTS idx_facts_status ON facts(status, updated_at);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_facts_supersedes
        ON facts(supersedes) WHERE supersedes IS NOT NULL;
    CREATE INDEX IF NOT EXISTS idx_facts_extends
        ON facts(extends) WHERE extends IS NOT NULL;

    CREATE TABLE IF NOT EXISTS fact_tags (
        fact_id TEXT NOT NULL,
        tag TEXT NOT NULL,
        PRIMARY KEY (fact_id, tag)
    );
    CREATE INDEX IF NOT EXISTS idx_fact_tags_tag ON fact_tags(tag);

    CREATE VIRTUAL TABLE IF NOT EXISTS facts_fts USING fts5(
        fact_id UNINDEXED, title, content, tags, path
    );

    CREATE TRIGGER IF NOT EXISTS trg_facts_insert AFTER INSERT ON facts
    BEGIN
        INSERT INTO facts_fts (fact_id, title, content, tags, path)
        VALUES (NEW.id, NEW.title, NEW.content, NEW.tags, NEW.path);
    END;

    CREATE TRIGGER IF NOT EXISTS trg_facts_delete AFTER DELETE ON facts
    BEGIN
        DELETE FROM facts_fts WHERE fact_id = OLD.id;
        DELETE FROM fact_tags WHERE fact_id = OLD.id;
    END;

    CREATE TABLE IF NOT EXISTS outbox (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        event_key TEXT NOT NULL UNIQUE,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS applied_writes (
        token TEXT PRIMARY KEY,
        fact_ids TEXT NOT NULL,
        applied_at TEXT NOT NULL,
        revoked INTEGER NOT NULL DEFAULT 0
    );
"""

# Confirmations are derived: +1 votes extending the fact
SELECT_FACT = """
    SELECT f.*,
           (SELECT COUNT(*) FROM facts v
             WHERE v.extends = f.id AND v.fact_type = 'vote' AND v.vote > 0) AS confirmations
    FROM facts f
"""


@dataclass
class Vote:
    """One entry of a bulk vote."""
    fact_id: str
    vote: int           # +1 or -1
    reason: str = ""

    @property
    def label(self) -> str:
        return "+1" if self.vote > 0 else "-1"


def parse_vote(value) -> int:
    """'+1' | 'up' | 1 -> 1, '-1' | 'down' | -1 -> -1."""
    text = str(value).strip().lower()
    if text in ("+1", "1", "up", "yes", "agree"):
        return 1
    if text in ("-1", "down", "no", "disagree"):
        return -1
    raise ValueError(f"Invalid vote '{value}'. Use +1 or -1")


@dataclass
class PathEntry:
    """One immediate child in a browse listing."""
    path: str
    fact_count: int = 0      # non-superseded facts at or below this path
    has_fact: bool = False   # a fact lives exactly here
    has_children: bool = False

    def to_dict(self) -> Dict:
        return {
            "path": self.path,
            "fact_count": self.fact_count,
            "has_fact": self.has_fact,
            "has_children": self.has_children,
        }


@dataclass
class PathPage:
    entries: List[PathEntry]
    next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


@dataclass
class FactPage:
    facts: List[Fact]
    next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


@dataclass
class GcCandidate:
    id: str
    path: str
    status: str
    updated_at: str

    def to_dict(self) -> Dict:
        return {"id": self.id, "path": self.path, "status": self.status, "updated_at": self.updated_at}


@dataclass
class GcReport:
    dry_run: bool
    cutoff: str
    candidates: List[GcCandidate] = field(default_factory=list)
    removed: int = 0
    outbox_removed: int = 0
    notifications_removed: int = 0
    sessions_removed: int = 0

    def to_dict(self) -> Dict:
        return {
            "dry_run": self.dry_run,
            "cutoff": self.cutoff,
            "candidates": [c.to_dict() for c in self.candidates],
            "removed": self.removed,
            "outbox_removed": self.outbox_removed,
            "notifications_removed": self.notifications_removed,
            "sessions_removed": self.sessions_removed,
        }


@dataclass
class StoreStats:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_type: Dict[str, int] = field(default_factory=dict)
    by_root: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
            "by_root": dict(self.by_root),
        }


class FactStore(SQLiteStore):
    """
    SQLite ledger of facts.

    All mutations accept `apply_token`: when set, the token is recorded in
    the same transaction and a second write with the same token fails with
    AlreadyResolved instead of applying twice.
    """

    SCHEMA = FACTS_SCHEMA

    def __init__(
        self,
        path: Path,
        retry: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        summary_max_chars: int = SUMMARY_MAX_CHARS,
    ):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.summary_max_chars = summary_max_chars
        super().__init__(path, retry=retry)

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Mutations
    # =========================================================================

    def create(
        self,
        path: str,
        content: str,
        tags: Optional[Iterable[str]] = None,
        author_kind: AuthorKind = AuthorKind.HUMAN,
        title: Optional[str] = None,
        author_id: str = "",
        apply_token: Optional[str] = None,
    ) -> Fact:
        """
        Add a new fact.

        Raises:
            InvalidPath: path empty or malformed, or a tag is malformed
        """
        parsed = KnowledgePath.parse(path)
        normalized_tags = normalize_tags(tags)

        with self.write("create") as conn:
            fact = self._insert(conn, Fact(
                id="",
                path=str(parsed),
                title=(title or parsed.name).strip(),
                content=content,
                tags=normalized_tags,
                author_kind=author_kind,
                author_id=author_id,
            ))
            self._emit(conn, fact_event(EventKind.ADDED, fact))
            self._record_token(conn, apply_token, [fact.id], "create")
        return fact

    def correct(
        self,
        fact_id: str,
        content: str,
        title: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        author_kind: AuthorKind = AuthorKind.HUMAN,
        author_id: str = "",
        apply_token: Optional[str] = None,
    ) -> Fact:
        """
        Replace the current head of a chain.

        Raises:
            NotFound: unknown id
            AlreadySuperseded: target is superseded or deprecated
        """
        normalized_tags = normalize_tags(tags) if tags is not None else None

        with self.write("correct") as conn:
            target = self._require(conn, fact_id, "correct")
            self._require_active(target, "correct")

            now = format_timestamp(self.now())
            cursor = conn.execute(
                "UPDATE facts SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (Status.SUPERSEDED.value, now, target.id, Status.ACTIVE.value)
            )
            if cursor.rowcount != 1:
                raise AlreadySuperseded(
                    f"Fact {target.display_id} changed state during correction",
                    operation="correct", target=target.id,
                )

            fact = self._insert(conn, Fact(
                id="",
                path=target.path,
                title=(title or target.title).strip(),
                content=content,
                tags=normalized_tags if normalized_tags is not None else list(target.tags),
                author_kind=author_kind,
                author_id=author_id,
                fact_type=FactType.CORRECTION,
                supersedes=target.id,
                extends=target.extends,
            ))
            self._emit(conn, fact_event(EventKind.CORRECTED, fact))
            self._record_token(conn, apply_token, [fact.id], "correct")
        return fact

    def extend(
        self,
        fact_id: str,
        content: str,
        title: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        author_kind: AuthorKind = AuthorKind.HUMAN,
        author_id: str = "",
        apply_token: Optional[str] = None,
    ) -> Fact:
        """
        Annotate a fact without replacing it. Works on any status.

        Raises:
            NotFound: unknown id
        """
        normalized_tags = normalize_tags(tags) if tags is not None else None

        with self.write("extend") as conn:
            target = self._require(conn, fact_id, "extend")
            fact = self._insert(conn, Fact(
                id="",
                path=target.path,
                title=(title or f"{target.title} (extension)").strip(),
                content=content,
                tags=normalized_tags if normalized_tags is not None else list(target.tags),
                author_kind=author_kind,
                author_id=author_id,
                fact_type=FactType.EXTENSION,
                extends=target.id,
            ))
            self._emit(conn, fact_event(EventKind.EXTENDED, fact))
            self._record_token(conn, apply_token, [fact.id], "extend")
        return fact

    def deprecate(
        self,
        fact_id: str,
        reason: str,
        apply_token: Optional[str] = None,
    ) -> Fact:
        """
        Mark an active fact deprecated in place. Content is retained.

        Raises:
            NotFound: unknown id
            AlreadySuperseded: fact is already superseded or deprecated
        """
        with self.write("deprecate") as conn:
            target = self._require(conn, fact_id, "deprecate")
            self._require_active(target, "deprecate")

            now = format_timestamp(self.now())
            conn.execute(
                "UPDATE facts SET status = ?, deprecation_reason = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (Status.DEPRECATED.value, reason, now, target.id, Status.ACTIVE.value)
            )
            fact = self._get(conn, target.id)
            self._emit(conn, fact_event(EventKind.DEPRECATED, fact, summary=reason))
            self._record_token(conn, apply_token, [fact.id], "deprecate")
        return fact

    def bulk_vote(
        self,
        votes: List[Vote],
        author_kind: AuthorKind = AuthorKind.AGENT,
        author_id: str = "",
        apply_token: Optional[str] = None,
    ) -> List[Fact]:
        """
        Record votes as vote facts extending their targets.

        All-or-nothing: an unknown target aborts the whole batch.

        Raises:
            NotFound: any target id is unknown
        """
        created: List[Fact] = []
        with self.write("bulk_vote") as conn:
            for vote in votes:
                target = self._require(conn, vote.fact_id, "bulk_vote")
                reason = vote.reason.strip() or "no reason given"
                fact = self._insert(conn, Fact(
                    id="",
                    path=target.path,
                    title=f"Vote: {target.title}",
                    content=f"## Vote\n{vote.label} - {reason}",
                    tags=list(target.tags),
                    author_kind=author_kind,
                    author_id=author_id,
                    fact_type=FactType.VOTE,
                    extends=target.id,
                    vote=1 if vote.vote > 0 else -1,
                ))
                self._emit(conn, fact_event(EventKind.VOTED, fact, summary=f"{vote.label} {reason}"))
                created.append(fact)
            self._record_token(conn, apply_token, [f.id for f in created], "bulk_vote")
        return created

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, fact_id: str) -> Fact:
        """
        Raises:
            NotFound: unknown id
        """
        with self.read() as conn:
            return self._require(conn, fact_id, "get")

    def find(self, fact_id: str) -> Optional[Fact]:
        with self.read() as conn:
            return self._get(conn, fact_id)

    def resolve_path(self, path: str) -> Optional[Fact]:
        """Current head at an exact path (extensions and votes ignored)."""
        normalized = str(KnowledgePath.parse(path))
        with self.read() as conn:
            row = conn.execute(
                SELECT_FACT + """
                WHERE f.path = ? AND f.extends IS NULL AND f.status != 'superseded'
                ORDER BY (f.status = 'active') DESC, f.id DESC
                LIMIT 1
                """,
                (normalized,)
            ).fetchone()
        return _row_to_fact(row) if row else None

    def ids_with_prefix(self, prefix: str, limit: int = 10) -> List[str]:
        """Fact ids starting with prefix (ULIDs are uppercase Crockford base32)."""
        cleaned = "".join(c for c in prefix.upper() if c.isalnum())
        if not cleaned:
            return []
        with self.read() as conn:
            rows = conn.execute(
                "SELECT id FROM facts WHERE substr(id, 1, ?) = ? ORDER BY id LIMIT ?",
                (len(cleaned), cleaned, limit)
            ).fetchall()
        return [r['id'] for r in rows]

    def all_paths(self) -> List[str]:
        with self.read() as conn:
            rows = conn.execute(
                "SELECT DISTINCT path FROM facts WHERE status != 'superseded' ORDER BY path"
            ).fetchall()
        return [r['path'] for r in rows]

    def history(self, fact_id: str) -> List[Fact]:
        """
        Whole version chain containing fact_id, oldest first.

        Raises:
            NotFound: unknown id
        """
        with self.read() as conn:
            start = self._require(conn, fact_id, "history")
            chain = [start]
            seen = {start.id}

            current = start
            while current.supersedes and current.supersedes not in seen:
                previous = self._get(conn, current.supersedes)
                if previous is None:
                    break  # reclaimed by gc
                chain.insert(0, previous)
                seen.add(previous.id)
                current = previous

            current = start
            while True:
                row = conn.execute(
                    SELECT_FACT + " WHERE f.supersedes = ?", (current.id,)
                ).fetchone()
                if row is None or row['id'] in seen:
                    break
                current = _row_to_fact(row)
                chain.append(current)
                seen.add(current.id)
        return chain

    def extensions(self, fact_id: str, include_votes: bool = True) -> List[Fact]:
        sql = SELECT_FACT + " WHERE f.extends = ?"
        if not include_votes:
            sql += " AND f.fact_type != 'vote'"
        with self.read() as conn:
            rows = conn.execute(sql + " ORDER BY f.id", (fact_id,)).fetchall()
        return [_row_to_fact(r) for r in rows]

    def list_children(
        self,
        path_prefix: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> PathPage:
        """
        Immediate child paths under a prefix, in lexicographic order.

        Args:
            path_prefix: '@a/b' style prefix; None, '' or '@' for the roots
            cursor: resume token from a previous page
            limit: max entries per page
        """
        prefix = normalize_prefix(path_prefix)
        after = decode_cursor(cursor, required=("path",))
        after_path = after["path"] if after else None
        clause, params = prefix_clause("path", prefix)

        with self.read() as conn:
            rows = conn.execute(
                f"""
                SELECT path, COUNT(*) AS n FROM facts
                WHERE status != 'superseded' AND fact_type != 'vote' AND {clause}
                GROUP BY path
                """,
                params
            ).fetchall()

        entries: Dict[str, PathEntry] = {}
        for row in rows:
            child = child_of(row['path'], prefix)
            if child is None:
                continue
            entry = entries.setdefault(child, PathEntry(path=child))
            entry.fact_count += row['n']
            if row['path'] == child:
                entry.has_fact = True
            else:
                entry.has_children = True

        ordered = [entries[k] for k in sorted(entries) if after_path is None or k > after_path]
        page = ordered[:max(1, limit)]
        next_cursor = None
        if len(ordered) > len(page):
            next_cursor = encode_cursor({"path": page[-1].path})
        return PathPage(entries=page, next_cursor=next_cursor)

    def list_facts(
        self,
        path_prefix: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> FactPage:
        """Non-superseded facts under a prefix ordered by (path, id)."""
        prefix = normalize_prefix(path_prefix)
        after = decode_cursor(cursor, required=("path", "id"))
        clause, params = prefix_clause("f.path", prefix)
        limit = max(1, limit)

        sql = SELECT_FACT + f"""
            WHERE f.status != 'superseded' AND f.fact_type != 'vote' AND {clause}
        """
        if after:
            sql += " AND (f.path, f.id) > (?, ?)"
            params = params + [after["path"], after["id"]]
        sql += " ORDER BY f.path, f.id LIMIT ?"
        params = params + [limit + 1]

        with self.read() as conn:
            rows = conn.execute(sql, params).fetchall()

        facts = [_row_to_fact(r) for r in rows[:limit]]
        next_cursor = None
        if len(rows) > limit:
            last = facts[-1]
            next_cursor = encode_cursor({"path": last.path, "id": last.id})
        return FactPage(facts=facts, next_cursor=next_cursor)

    def candidates(
        self,
        conn: sqlite3.Connection,
        fts_query: Optional[str],
        path_prefix: Optional[str],
        tags: List[str],
        statuses: List[str],
        weights: Tuple[float, ...],
    ) -> List[Tuple[Fact, float]]:
        """
        Facts passing the structured filters, with FTS relevance.

        Relevance is -bm25 (higher is better) or 0.0 without a text query.
        Used by search on a connection it owns.
        """
        where = ["f.fact_type != 'vote'"]
        params: List = []

        placeholders = ", ".join("?" for _ in statuses)
        where.append(f"f.status IN ({placeholders})")
        params.extend(statuses)

        clause, clause_params = prefix_clause("f.path", path_prefix)
        where.append(clause)
        params.extend(clause_params)

        if tags:
            tag_marks = ", ".join("?" for _ in tags)
            where.append(
                f"f.id IN (SELECT fact_id FROM fact_tags WHERE tag IN ({tag_marks}) "
                f"GROUP BY fact_id HAVING COUNT(DISTINCT tag) = ?)"
            )
            params.extend(tags)
            params.append(len(tags))

        if fts_query:
            weight_args = ", ".join(str(float(w)) for w in weights)
            sql = f"""
                SELECT ranked.*, -m.score AS relevance FROM (
                    {SELECT_FACT} WHERE {' AND '.join(where)}
                ) AS ranked
                JOIN (
                    SELECT fact_id, bm25(facts_fts, {weight_args}) AS score
                    FROM facts_fts WHERE facts_fts MATCH ?
                ) AS m ON m.fact_id = ranked.id
            """
            rows = conn.execute(sql, params + [fts_query]).fetchall()
        else:
            sql = f"{SELECT_FACT} WHERE {' AND '.join(where)}"
            rows = conn.execute(sql, params).fetchall()

        return [
            (_row_to_fact(r), float(r['relevance']) if fts_query else 0.0)
            for r in rows
        ]

    # =========================================================================
    # Maintenance
    # =========================================================================

    def gc(self, retention_days: int = 30, dry_run: bool = False,
           relayed_seq: Optional[int] = None) -> GcReport:
        """
        Reclaim deprecated/superseded facts whose status changed before the
        retention cutoff.

        With `relayed_seq`, outbox rows up to that sequence that are also
        older than the cutoff are dropped (they already live in the
        notifications store). Unrelayed rows are never touched.

        Dry run reads through a read-only connection and mutates nothing.
        Otherwise the candidate set is selected and deleted in one transaction.
        """
        cutoff = format_timestamp(self.now() - timedelta(days=retention_days))
        sql = """
            SELECT id, path, status, updated_at FROM facts
            WHERE status IN ('deprecated', 'superseded') AND updated_at < ?
            ORDER BY id
        """
        report = GcReport(dry_run=dry_run, cutoff=cutoff)

        if dry_run:
            with self.read(readonly=True) as conn:
                rows = conn.execute(sql, (cutoff,)).fetchall()
            report.candidates = [_row_to_candidate(r) for r in rows]
            return report

        with self.write("gc") as conn:
            rows = conn.execute(sql, (cutoff,)).fetchall()
            report.candidates = [_row_to_candidate(r) for r in rows]
            ids = [c.id for c in report.candidates]
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                marks = ", ".join("?" for _ in chunk)
                conn.execute(f"DELETE FROM facts WHERE id IN ({marks})", chunk)
            report.removed = len(ids)
            if relayed_seq:
                report.outbox_removed = conn.execute(
                    "DELETE FROM outbox WHERE seq <= ? AND created_at < ?", (relayed_seq, cutoff)
                ).rowcount

        logger.info("gc removed %d facts and %d outbox rows older than %s",
                    report.removed, report.outbox_removed, cutoff)
        return report

    def stats(self) -> StoreStats:
        stats = StoreStats()
        with self.read() as conn:
            stats.total = conn.execute("SELECT COUNT(*) FROM facts").fetchone()[0]
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM facts GROUP BY status"):
                stats.by_status[row['status']] = row['n']
            for row in conn.execute("SELECT fact_type, COUNT(*) AS n FROM facts GROUP BY fact_type"):
                stats.by_type[row['fact_type']] = row['n']
            for row in conn.execute("""
                SELECT CASE WHEN instr(path, '/') > 0
                            THEN substr(path, 1, instr(path, '/') - 1)
                            ELSE path END AS root,
                       COUNT(*) AS n
                FROM facts GROUP BY root ORDER BY root
            """):
                stats.by_root[row['root']] = row['n']
        for status in Status:
            stats.by_status.setdefault(status.value, 0)
        return stats

    # =========================================================================
    # Outbox
    # =========================================================================

    def outbox_since(self, seq: int, limit: int = 500) -> List[Tuple[int, FactEvent]]:
        """Committed events after `seq`, oldest first."""
        with self.read() as conn:
            rows = conn.execute(
                "SELECT seq, payload FROM outbox WHERE seq > ? ORDER BY seq LIMIT ?",
                (seq, limit)
            ).fetchall()
        return [(r['seq'], FactEvent.from_dict(orjson.loads(r['payload']))) for r in rows]

    def applied_facts(self, token: str) -> Optional[List[str]]:
        """Fact ids created by a replayed write, or None if the token is unused or revoked."""
        with self.read() as conn:
            row = conn.execute(
                "SELECT fact_ids FROM applied_writes WHERE token = ? AND revoked = 0", (token,)
            ).fetchone()
        return orjson.loads(row['fact_ids']) if row else None

    def revoke_token(self, token: str) -> Optional[List[str]]:
        """
        Burn an apply token so no later write can land under it.

        Returns the fact ids when a write already landed under the token
        (nothing is revoked then), otherwise None.
        """
        with self.write("revoke") as conn:
            row = conn.execute(
                "SELECT fact_ids, revoked FROM applied_writes WHERE token = ?", (token,)
            ).fetchone()
            if row is not None:
                return None if row['revoked'] else orjson.loads(row['fact_ids'])
            conn.execute(
                "INSERT INTO applied_writes (token, fact_ids, applied_at, revoked) VALUES (?, '[]', ?, 1)",
                (token, format_timestamp(self.now()))
            )
        logger.debug("revoked apply token %s", token)
        return None

    # =========================================================================
    # Internals
    # =========================================================================

    def _get(self, conn: sqlite3.Connection, fact_id: str) -> Optional[Fact]:
        row = conn.execute(SELECT_FACT + " WHERE f.id = ?", (fact_id,)).fetchone()
        return _row_to_fact(row) if row else None

    def _require(self, conn: sqlite3.Connection, fact_id: str, operation: str) -> Fact:
        fact = self._get(conn, fact_id)
        if fact is None:
            raise NotFound(f"Fact not found: {fact_id}", operation=operation, target=fact_id)
        return fact

    def _require_active(self, fact: Fact, operation: str) -> None:
        if fact.is_active:
            return
        if fact.is_superseded:
            message = f"Fact {fact.display_id} is superseded; {operation} the current version instead"
        else:
            message = f"Fact {fact.display_id} is deprecated and cannot be changed by {operation}"
        raise AlreadySuperseded(message, operation=operation, target=fact.id)

    def _next_id(self, conn: sqlite3.Connection, now: datetime) -> str:
        """ULID strictly greater than any id in the store (writers are serialized)."""
        candidate = ULID.from_datetime(now)
        row = conn.execute("SELECT MAX(id) FROM facts").fetchone()
        if row[0]:
            last = ULID.from_str(row[0])
            if int(candidate) <= int(last):
                candidate = ULID.from_int(int(last) + 1)
        return str(candidate)

    def _insert(self, conn: sqlite3.Connection, fact: Fact) -> Fact:
        now = self.now()
        fact.id = self._next_id(conn, now)
        fact.created_at = format_timestamp(now)
        fact.updated_at = fact.created_at
        fact.summary = generate_summary(fact.content, self.summary_max_chars)

        conn.execute(
            """
            INSERT INTO facts (id, path, title, content, summary, tags, author_kind, author_id,
                               source, fact_type, status, supersedes, extends, vote,
                               deprecation_reason, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fact.id, fact.path, fact.title, fact.content, fact.summary,
                orjson.dumps(fact.tags).decode(), fact.author_kind.value, fact.author_id,
                fact.source, fact.fact_type.value, fact.status.value, fact.supersedes,
                fact.extends, fact.vote, fact.deprecation_reason,
                fact.created_at, fact.updated_at,
            )
        )
        conn.executemany(
            "INSERT INTO fact_tags (fact_id, tag) VALUES (?, ?)",
            [(fact.id, tag) for tag in fact.tags]
        )
        return fact

    def _emit(self, conn: sqlite3.Connection, event: FactEvent) -> None:
        conn.execute(
            "INSERT INTO outbox (event_key, payload, created_at) VALUES (?, ?, ?)",
            (event.key, orjson.dumps(event.to_dict()).decode(), event.created_at)
        )

    def _record_token(
        self,
        conn: sqlite3.Connection,
        token: Optional[str],
        fact_ids: List[str],
        operation: str,
    ) -> None:
        if not token:
            return
        try:
            conn.execute(
                "INSERT INTO applied_writes (token, fact_ids, applied_at) VALUES (?, ?, ?)",
                (token, orjson.dumps(fact_ids).decode(), format_timestamp(self.now()))
            )
        except sqlite3.IntegrityError as e:
            raise AlreadyResolved(
                f"Write {token} was already applied or revoked",
                operation=operation, target=token,
            ) from e


def _row_to_fact(row: sqlite3.Row) -> Fact:
    keys = row.keys()
    return Fact(
        id=row['id'],
        path=row['path'],
        title=row['title'],
        content=row['content'],
        summary=row['summary'] or "",
        tags=orjson.loads(row['tags']) if row['tags'] else [],
        author_kind=AuthorKind(row['author_kind']),
        author_id=row['author_id'] or "",
        source=row['source'] or "local",
        fact_type=FactType(row['fact_type']),
        status=Status(row['status']),
        supersedes=row['supersedes'],
        extends=row['extends'],
        vote=row['vote'],
        deprecation_reason=row['deprecation_reason'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        confirmations=row['confirmations'] if 'confirmations' in keys else 0,
    )


def _row_to_candidate(row: sqlite3.Row) -> GcCandidate:
    return GcCandidate(id=row['id'], path=row['path'], status=row['status'], updated_at=row['updated_at'])

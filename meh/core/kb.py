"""
KnowledgeBase — Every logical meh operation over one data directory

Owns the three stores of a data directory:

    facts.db          facts, FTS index, outbox, applied write tokens
    notifications.db  notifications, sessions, acks
    pending.db        writes waiting for review

plus lazily opened stores for other configured sqlite KBs and clients for
remote KBs. Handles are safe to share across threads: each operation opens
its own connection.

Writes go through the WriteGate (allow / deny / ask). Reads go straight to
the search engine or the store. The CLI is a thin layer over this class.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..config import Config, ConfigManager, KbConfig, ServerConfig
from ..errors import InvalidPath, NotFound
from ..federation.coordinator import FederatedCoordinator, FederatedResponse, LocalSource, RemoteSource
from ..federation.remote import RemoteClient, RemoteWriteTarget
from .events import FactEvent
from .fact import Fact, AuthorKind, FactType, strip_display_prefix
from .notifications import NotificationStore, Notification, Subscription, AckResult
from .pending import PendingQueue, PendingStatus, PendingWrite, WriteOperation
from .policy import WriteGate, WriteMode, WriteOutcome, LocalTarget, WriteTarget
from .resolver import FactResolver
from .search import SearchEngine, SearchQuery, SearchResponse, DetailLevel
from .storage import FactStore, Vote, PathPage, FactPage, GcReport, StoreStats
from .trust import TrustCalculator


logger = logging.getLogger(__name__)


@dataclass
class FactDetail:
    """A fact with everything `get` reports about it."""
    fact: Fact
    trust: float
    history: List[Fact] = field(default_factory=list)
    extensions: List[Fact] = field(default_factory=list)
    votes_up: int = 0
    votes_down: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = self.fact.to_dict()
        data["display_id"] = self.fact.display_id
        data["trust"] = self.trust
        data["history"] = [{"id": f.display_id, "status": f.status.value, "created_at": f.created_at}
                           for f in self.history]
        data["extensions"] = [{"id": f.display_id, "title": f.title, "summary": f.summary}
                              for f in self.extensions]
        data["votes"] = {"up": self.votes_up, "down": self.votes_down}
        return data


@dataclass
class KbStats:
    kb: str
    facts: StoreStats
    pending: int = 0
    notifications: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kb": self.kb,
            **self.facts.to_dict(),
            "pending": self.pending,
            "notifications": self.notifications,
        }


RemoteFactory = Callable[[ServerConfig, str], RemoteClient]


class KnowledgeBase:
    """
    Args:
        data_dir: directory holding facts.db, notifications.db, pending.db
        config: loaded configuration (defaults when omitted)
        project_dir: base for relative paths of other sqlite KBs
        clock: injectable "now" for stores and trust
        remote_factory: builds a RemoteClient from (server, slug)
    """

    def __init__(
        self,
        data_dir: Path,
        config: Optional[Config] = None,
        project_dir: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
        remote_factory: Optional[RemoteFactory] = None,
    ):
        self.data_dir = Path(data_dir)
        self.config = config or Config()
        self.project_dir = Path(project_dir) if project_dir else self.data_dir.parent
        self.name = self.config.kbs.primary
        self._clock = clock
        self._remote_factory = remote_factory

        retry = self.config.core.retry_policy
        self.store = FactStore(
            self.data_dir / "facts.db", retry=retry, clock=clock,
            summary_max_chars=self.config.core.summary_max_chars,
        )
        self._stores: Dict[str, FactStore] = {self.name: self.store}
        self._remotes: Dict[str, RemoteClient] = {}
        self._lock = threading.Lock()

        self.queue = PendingQueue(self.data_dir / "pending.db", retry=retry, clock=clock)
        self.notifications = NotificationStore(
            self.data_dir / "notifications.db", outboxes=[self.store], retry=retry, clock=clock,
        )
        self.trust = TrustCalculator(self.config.trust)
        self.engine = SearchEngine(self.store, self.trust)
        self.resolver = FactResolver(self.store)
        self.gate = self._build_gate()

    @classmethod
    def open(cls, project_dir: Optional[Path] = None, data_dir: Optional[Path] = None,
             **kwargs) -> 'KnowledgeBase':
        """Load configuration for a project and open its primary KB."""
        manager = ConfigManager(project_dir, data_dir=data_dir)
        config = manager.load()
        return cls(manager.data_dir, config=config, project_dir=manager.project_dir, **kwargs)

    def now(self) -> datetime:
        return self.store.now()

    # =========================================================================
    # Wiring
    # =========================================================================

    def kb_config(self, kb: Optional[str] = None) -> KbConfig:
        name = kb or self.name
        entry = self.config.kbs.get(name)
        if entry is None:
            if name == self.name:
                return KbConfig(name=name)
            raise NotFound(
                f"Unknown knowledge base '{name}'", operation="kb", target=name,
                suggestions=[e.name for e in self.config.kbs.entries],
            )
        return entry

    def store_for(self, kb: Optional[str] = None) -> FactStore:
        """FactStore of a sqlite KB, opened on first use."""
        name = kb or self.name
        with self._lock:
            if name in self._stores:
                return self._stores[name]
            entry = self.kb_config(name)
            if entry.is_remote:
                raise NotFound(f"Knowledge base '{name}' is remote and has no local store",
                               operation="store", target=name)
            base = Path(entry.path) if entry.path else Path(name)
            if not base.is_absolute():
                base = self.project_dir / base
            store = FactStore(
                base / "facts.db", retry=self.config.core.retry_policy, clock=self._clock,
                summary_max_chars=self.config.core.summary_max_chars,
            )
            self._stores[name] = store
            self.notifications.outboxes.append(store)
            return store

    def remote_for(self, kb: str) -> RemoteClient:
        """RemoteClient of a remote KB, built on first use."""
        with self._lock:
            if kb in self._remotes:
                return self._remotes[kb]
            entry = self.kb_config(kb)
            server = self.config.server(entry.server or "")
            if not entry.is_remote or server is None:
                raise NotFound(f"No remote server configured for '{kb}'", operation="remote", target=kb)
            if self._remote_factory is not None:
                client = self._remote_factory(server, entry.slug)
            else:
                client = RemoteClient(server, entry.slug)
            self._remotes[kb] = client
            return client

    def _build_gate(self) -> WriteGate:
        targets: Dict[str, WriteTarget] = {self.name: LocalTarget(self.name, self.store)}
        modes: Dict[str, WriteMode] = {self.name: WriteMode(self.kb_config().write)}
        for entry in self.config.kbs.entries:
            modes[entry.name] = WriteMode(entry.write)
            if entry.name not in targets:
                targets[entry.name] = _LazyTarget(self, entry)
        return WriteGate(self.queue, targets, modes)

    # =========================================================================
    # Writes
    # =========================================================================

    def add(
        self,
        path: str,
        content: str,
        tags: Optional[Iterable[str]] = None,
        title: Optional[str] = None,
        author_kind: Union[str, AuthorKind] = AuthorKind.HUMAN,
        author_id: str = "",
        kb: Optional[str] = None,
    ) -> WriteOutcome:
        payload = {
            "path": path, "content": content, "title": title,
            "tags": list(tags) if tags is not None else None,
            "author_kind": _author(author_kind), "author_id": author_id,
        }
        return self.gate.submit(kb or self.name, WriteOperation.ADD, payload)

    def correct(
        self,
        ref: str,
        content: str,
        title: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        author_kind: Union[str, AuthorKind] = AuthorKind.HUMAN,
        author_id: str = "",
        kb: Optional[str] = None,
    ) -> WriteOutcome:
        kb = kb or self.name
        payload = {
            "fact_id": self._target_id(ref, kb, "correct"), "content": content, "title": title,
            "tags": list(tags) if tags is not None else None,
            "author_kind": _author(author_kind), "author_id": author_id,
        }
        return self.gate.submit(kb, WriteOperation.CORRECT, payload)

    def extend(
        self,
        ref: str,
        content: str,
        title: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        author_kind: Union[str, AuthorKind] = AuthorKind.HUMAN,
        author_id: str = "",
        kb: Optional[str] = None,
    ) -> WriteOutcome:
        kb = kb or self.name
        payload = {
            "fact_id": self._target_id(ref, kb, "extend"), "content": content, "title": title,
            "tags": list(tags) if tags is not None else None,
            "author_kind": _author(author_kind), "author_id": author_id,
        }
        return self.gate.submit(kb, WriteOperation.EXTEND, payload)

    def deprecate(self, ref: str, reason: str = "", kb: Optional[str] = None) -> WriteOutcome:
        kb = kb or self.name
        payload = {"fact_id": self._target_id(ref, kb, "deprecate"), "reason": reason}
        return self.gate.submit(kb, WriteOperation.DEPRECATE, payload)

    def bulk_vote(
        self,
        votes: Iterable[Union[Vote, Dict[str, Any]]],
        author_kind: Union[str, AuthorKind] = AuthorKind.AGENT,
        author_id: str = "",
        kb: Optional[str] = None,
    ) -> WriteOutcome:
        """
        Vote on several facts at once. The batch applies atomically (local
        KBs) or is queued as a single pending write.
        """
        kb = kb or self.name
        items = []
        for vote in votes:
            if isinstance(vote, Vote):
                vote = {"fact_id": vote.fact_id, "vote": vote.vote, "reason": vote.reason}
            items.append({
                "fact_id": self._target_id(vote["fact_id"], kb, "bulk_vote"),
                "vote": vote["vote"],
                "reason": vote.get("reason", ""),
            })
        payload = {"votes": items, "author_kind": _author(author_kind), "author_id": author_id}
        return self.gate.submit(kb, WriteOperation.BULK_VOTE, payload)

    def _target_id(self, ref: str, kb: str, operation: str) -> str:
        """Full fact id for a write target; remote refs pass through."""
        if self.kb_config(kb).is_remote:
            return strip_display_prefix(ref)
        if kb == self.name:
            return self.resolver.require(ref, operation).id
        return FactResolver(self.store_for(kb)).require(ref, operation).id

    # =========================================================================
    # Reads
    # =========================================================================

    def build_query(
        self,
        text: Optional[str] = None,
        path_prefix: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        min_trust: Optional[float] = None,
        active_only: bool = False,
        include_history: bool = False,
        detail: Union[int, str, DetailLevel] = DetailLevel.L2,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        token_budget: Optional[int] = None,
    ) -> SearchQuery:
        """SearchQuery with limit and budget defaulted from config (budget 0 = none)."""
        budget = token_budget if token_budget is not None else self.config.search.token_budget
        return SearchQuery(
            text=text,
            path_prefix=path_prefix,
            tags=list(tags or []),
            min_trust=min_trust,
            active_only=active_only,
            include_history=include_history,
            detail=DetailLevel.parse(detail),
            cursor=cursor,
            limit=limit or self.config.search.default_limit,
            token_budget=budget or None,
        )

    def search(self, text: Optional[str] = None, session_id: Optional[str] = None,
               **options) -> SearchResponse:
        """
        Search the primary KB.

        With a session id, the session's first search also carries the
        onboarding fact (once), and every response reports unread
        notifications.
        """
        response = self.engine.search(self.build_query(text, **options), now=self.now())
        if session_id:
            if self.notifications.claim_onboarding(session_id):
                response.onboarding = self.onboarding_fact()
            response.unread_notifications = self.notifications.unread_count(session_id)
        return response

    def onboarding_fact(self) -> Optional[Fact]:
        """Current fact at '@readme/<kb>' or else '@readme'."""
        base = self.config.core.onboarding_path
        for path in (f"{base}/{self.name}", base):
            try:
                fact = self.store.resolve_path(path)
            except InvalidPath:
                continue
            if fact is not None:
                return fact
        return None

    def get(self, ref: str, kb: Optional[str] = None) -> FactDetail:
        """
        Fact by id, id prefix, or path, with chain, extensions and votes.

        Raises:
            NotFound: nothing matches (with suggestions)
            AmbiguousReference: id prefix matches several facts
        """
        kb = kb or self.name
        if self.kb_config(kb).is_remote:
            remote = self.remote_for(kb).get_fact(strip_display_prefix(ref))
            fact = remote.to_fact(source=kb)
            return FactDetail(fact=fact, trust=self.trust.federated(remote.trust_score))

        store = self.store_for(kb)
        resolver = self.resolver if kb == self.name else FactResolver(store)
        fact = resolver.require(ref, "get")
        children = store.extensions(fact.id)
        votes = [f for f in children if f.fact_type == FactType.VOTE]
        return FactDetail(
            fact=fact,
            trust=self.trust.score(fact, self.now()),
            history=store.history(fact.id),
            extensions=[f for f in children if f.fact_type != FactType.VOTE],
            votes_up=sum(1 for v in votes if (v.vote or 0) > 0),
            votes_down=sum(1 for v in votes if (v.vote or 0) < 0),
        )

    def browse(
        self,
        path_prefix: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
        tree: bool = False,
    ) -> Union[PathPage, FactPage]:
        """Immediate children (ls), or every fact beneath the prefix (tree)."""
        if tree:
            return self.store.list_facts(path_prefix, cursor=cursor, limit=limit)
        return self.store.list_children(path_prefix, cursor=cursor, limit=limit)

    def federated_search(self, text: Optional[str] = None, sources: Optional[List[str]] = None,
                         **options) -> FederatedResponse:
        """
        Search every configured KB in search order, merging the results.

        Remote sources that fail or time out are reported in the response's
        PartialFailure manifest; they never fail the query.
        """
        names = sources or self.config.kbs.effective_search_order
        federation_sources = []
        for name in names:
            entry = self.kb_config(name)
            if entry.is_remote:
                federation_sources.append(RemoteSource(name, self.remote_for(name), self.trust))
            else:
                engine = self.engine if name == self.name else SearchEngine(self.store_for(name), self.trust)
                federation_sources.append(LocalSource(name, engine, origin=entry.effective_origin))

        search = self.config.search
        coordinator = FederatedCoordinator(
            federation_sources,
            max_workers=search.max_workers,
            timeout=search.federated_timeout_secs,
            deadline=search.federated_deadline_secs,
        )
        return coordinator.search(self.build_query(text, **options), now=self.now())

    # =========================================================================
    # Notifications
    # =========================================================================

    def notifications_get(self, session_id: str, limit: Optional[int] = None) -> List[Notification]:
        return self.notifications.get_pending(session_id, limit=limit)

    def notifications_ack(self, session_id: str, ids: Union[str, Iterable[int]]) -> AckResult:
        return self.notifications.ack(session_id, ids)

    def notifications_subscribe(
        self,
        session_id: str,
        categories: Optional[Iterable[str]] = None,
        path_prefixes: Optional[Iterable[str]] = None,
        min_priority: Union[int, str] = 0,
    ) -> Subscription:
        return self.notifications.subscribe(session_id, categories, path_prefixes, min_priority)

    def notify(self, event: FactEvent) -> None:
        """Publish a notification not tied to a fact write."""
        self.notifications.emit(event)

    # =========================================================================
    # Pending writes
    # =========================================================================

    def pending_list(self, status: Optional[Union[str, PendingStatus]] = None) -> List[PendingWrite]:
        if isinstance(status, str):
            status = PendingStatus(status)
        return self.queue.list(status=status)

    def pending_approve(self, ref: str) -> WriteOutcome:
        return self.gate.approve(self.queue.resolve_id(ref))

    def pending_reject(self, ref: str, reason: Optional[str] = None) -> PendingWrite:
        return self.gate.reject(self.queue.resolve_id(ref), reason)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def gc(self, dry_run: bool = False, retention_days: Optional[int] = None) -> GcReport:
        """
        Reclaim deprecated/superseded facts past retention. A real run also
        drops relayed outbox rows, notifications and idle sessions older
        than the same threshold.
        """
        days = retention_days if retention_days is not None else self.config.core.gc_retention_days
        if dry_run:
            return self.store.gc(retention_days=days, dry_run=True)

        self.notifications.relay()
        report = self.store.gc(retention_days=days, relayed_seq=self.notifications.relayed_seq(self.store))
        report.notifications_removed = self.notifications.clear_old(days)
        report.sessions_removed = self.notifications.cleanup_sessions(days)
        return report

    def stats(self) -> KbStats:
        return KbStats(
            kb=self.name,
            facts=self.store.stats(),
            pending=self.queue.count(PendingStatus.PENDING),
            notifications=self.notifications.count(),
        )


class _LazyTarget(WriteTarget):
    """Defers opening a secondary store or remote client until a write needs it."""

    def __init__(self, kb: KnowledgeBase, entry: KbConfig):
        super().__init__(entry.name)
        self._kb = kb
        self._entry = entry
        self._target: Optional[WriteTarget] = None
        self.transactional = not entry.is_remote

    def resolve(self) -> WriteTarget:
        if self._target is None:
            if self._entry.is_remote:
                self._target = RemoteWriteTarget(self.name, self._kb.remote_for(self.name))
            else:
                self._target = LocalTarget(self.name, self._kb.store_for(self.name))
        return self._target

    def apply(self, operation, payload, apply_token=None):
        return self.resolve().apply(operation, payload, apply_token=apply_token)

    def applied(self, apply_token):
        return self.resolve().applied(apply_token)

    def revoke(self, apply_token):
        return self.resolve().revoke(apply_token)


def _author(value: Union[str, AuthorKind]) -> str:
    return value.value if isinstance(value, AuthorKind) else AuthorKind(value).value

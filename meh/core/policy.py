"""
Write Policy — Route each mutation by its knowledge base's write mode

    allow  apply now, return the created/updated facts
    deny   raise WriteForbidden, change nothing
    ask    queue a PendingWrite, return its id

Approving a queued write replays the captured operation once. Local
targets replay in a single transaction carrying the pending id as apply
token, so a second replay can never land. Remote targets cannot join that
transaction; the queue entry is claimed first and released if the send
fails.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import AlreadyResolved, NotFound, WriteForbidden
from .fact import Fact, AuthorKind, normalize_tags
from .path import normalize_path
from .pending import PendingQueue, PendingWrite, WriteOperation
from .storage import FactStore, Vote, parse_vote


logger = logging.getLogger(__name__)


class WriteMode(Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass
class WriteOutcome:
    """What happened to a write request."""
    kb: str
    operation: WriteOperation
    applied: bool
    facts: List[Fact] = field(default_factory=list)
    pending: Optional[PendingWrite] = None

    @property
    def queued(self) -> bool:
        return not self.applied and self.pending is not None

    @property
    def fact(self) -> Optional[Fact]:
        return self.facts[0] if self.facts else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kb": self.kb,
            "operation": self.operation.value,
            "applied": self.applied,
            "facts": [f.to_dict() for f in self.facts],
            "pending": self.pending.to_dict() if self.pending else None,
        }


# =============================================================================
# Payload validation
# =============================================================================

_REQUIRED = {
    WriteOperation.ADD: ("path", "content"),
    WriteOperation.CORRECT: ("fact_id", "content"),
    WriteOperation.EXTEND: ("fact_id", "content"),
    WriteOperation.DEPRECATE: ("fact_id",),
    WriteOperation.BULK_VOTE: ("votes",),
}


def validate_payload(operation: WriteOperation, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalized copy of a write payload.

    Paths and tags are checked here so a malformed request fails before it
    is queued, not when a reviewer approves it.

    Raises:
        InvalidPath: malformed path or tag
        ValueError: missing field or bad vote value
    """
    data = dict(payload)
    missing = [k for k in _REQUIRED[operation] if data.get(k) in (None, "", [])]
    if missing:
        raise ValueError(f"{operation.value} requires: {', '.join(missing)}")

    if "path" in data:
        data["path"] = normalize_path(data["path"])
    if data.get("tags") is not None:
        data["tags"] = normalize_tags(data["tags"])
    if "author_kind" in data:
        data["author_kind"] = AuthorKind(data["author_kind"]).value
    if operation == WriteOperation.DEPRECATE:
        data["reason"] = (data.get("reason") or "").strip()
    if operation == WriteOperation.BULK_VOTE:
        data["votes"] = [
            {"fact_id": v["fact_id"], "vote": parse_vote(v["vote"]), "reason": v.get("reason") or ""}
            for v in data["votes"]
        ]
    return data


# =============================================================================
# Targets
# =============================================================================

class WriteTarget:
    """Somewhere a write can land."""

    # True when apply() honors apply_token atomically
    transactional = False

    def __init__(self, name: str):
        self.name = name

    def apply(self, operation: WriteOperation, payload: Dict[str, Any],
              apply_token: Optional[str] = None) -> List[Fact]:
        raise NotImplementedError

    def applied(self, apply_token: str) -> Optional[List[Fact]]:
        """Facts written under a token, or None when it was never used."""
        return None

    def revoke(self, apply_token: str) -> Optional[List[Fact]]:
        """
        Make sure nothing lands under a token. Returns the facts when a
        write already landed under it, otherwise None.
        """
        return None


class LocalTarget(WriteTarget):
    """A sqlite FactStore."""

    transactional = True

    def __init__(self, name: str, store: FactStore):
        super().__init__(name)
        self.store = store

    def apply(self, operation: WriteOperation, payload: Dict[str, Any],
              apply_token: Optional[str] = None) -> List[Fact]:
        p = payload
        author = AuthorKind(p.get("author_kind", AuthorKind.HUMAN.value))
        author_id = p.get("author_id", "")

        if operation == WriteOperation.ADD:
            return [self.store.create(
                p["path"], p["content"], tags=p.get("tags"), author_kind=author,
                title=p.get("title"), author_id=author_id, apply_token=apply_token,
            )]
        if operation == WriteOperation.CORRECT:
            return [self.store.correct(
                p["fact_id"], p["content"], title=p.get("title"), tags=p.get("tags"),
                author_kind=author, author_id=author_id, apply_token=apply_token,
            )]
        if operation == WriteOperation.EXTEND:
            return [self.store.extend(
                p["fact_id"], p["content"], title=p.get("title"), tags=p.get("tags"),
                author_kind=author, author_id=author_id, apply_token=apply_token,
            )]
        if operation == WriteOperation.DEPRECATE:
            return [self.store.deprecate(p["fact_id"], p.get("reason", ""), apply_token=apply_token)]
        if operation == WriteOperation.BULK_VOTE:
            votes = [Vote(fact_id=v["fact_id"], vote=v["vote"], reason=v.get("reason", "")) for v in p["votes"]]
            return self.store.bulk_vote(
                votes, author_kind=AuthorKind(p.get("author_kind", AuthorKind.AGENT.value)),
                author_id=author_id, apply_token=apply_token,
            )
        raise ValueError(f"Unsupported operation: {operation}")

    def applied(self, apply_token: str) -> Optional[List[Fact]]:
        ids = self.store.applied_facts(apply_token)
        if ids is None:
            return None
        return [f for f in (self.store.find(i) for i in ids) if f is not None]

    def revoke(self, apply_token: str) -> Optional[List[Fact]]:
        ids = self.store.revoke_token(apply_token)
        if ids is None:
            return None
        return [f for f in (self.store.find(i) for i in ids) if f is not None]


# =============================================================================
# Gate
# =============================================================================

class WriteGate:
    """
    Applies, refuses, or queues writes per knowledge base.

    Args:
        queue: pending queue shared by every target
        targets: write targets by kb name
        modes: write mode by kb name (missing names default to allow)
    """

    def __init__(self, queue: PendingQueue, targets: Dict[str, WriteTarget],
                 modes: Optional[Dict[str, WriteMode]] = None):
        self.queue = queue
        self.targets = targets
        self.modes = dict(modes or {})

    def target(self, kb: str) -> WriteTarget:
        if kb not in self.targets:
            raise NotFound(
                f"Unknown knowledge base '{kb}'", operation="write", target=kb,
                suggestions=sorted(self.targets),
            )
        return self.targets[kb]

    def mode(self, kb: str) -> WriteMode:
        self.target(kb)
        return self.modes.get(kb, WriteMode.ALLOW)

    def submit(self, kb: str, operation: WriteOperation, payload: Dict[str, Any]) -> WriteOutcome:
        """
        Raises:
            WriteForbidden: kb write mode is deny
            InvalidPath / NotFound / AlreadySuperseded: from the target
        """
        mode = self.mode(kb)
        if mode == WriteMode.DENY:
            raise WriteForbidden(
                f"Knowledge base '{kb}' does not accept writes (write: deny)",
                operation=operation.value, target=kb,
            )

        data = validate_payload(operation, payload)
        if mode == WriteMode.ASK:
            entry = self.queue.submit(kb, operation, data)
            return WriteOutcome(kb=kb, operation=operation, applied=False, pending=entry)

        facts = self.target(kb).apply(operation, data)
        return WriteOutcome(kb=kb, operation=operation, applied=True, facts=facts)

    def approve(self, pending_id: str) -> WriteOutcome:
        """
        Replay a queued write exactly once.

        A failed replay propagates and leaves the entry pending.

        Raises:
            NotFound: unknown pending id
            AlreadyResolved: entry already approved or rejected
        """
        entry = self.queue.get(pending_id)
        if not entry.is_pending:
            raise AlreadyResolved(
                f"Pending write {entry.id} is already {entry.status.value}",
                operation="pending_approve", target=entry.id,
            )
        target = self.target(entry.kb)

        if target.transactional:
            facts = self._replay_once(target, entry)
            entry = self.queue.mark_approved(entry.id, [f.id for f in facts])
        else:
            self.queue.claim(entry.id)
            try:
                facts = target.apply(entry.operation, entry.payload)
            except Exception:
                self.queue.release(entry.id)
                raise
            entry = self.queue.record_result(entry.id, [f.id for f in facts])

        logger.info("approved %s %s on %s -> %s", entry.operation.value, entry.id,
                    entry.kb, ", ".join(f.id for f in facts) or "-")
        return WriteOutcome(kb=entry.kb, operation=entry.operation, applied=True,
                            facts=facts, pending=entry)

    def reject(self, pending_id: str, reason: Optional[str] = None) -> PendingWrite:
        """
        Reject a queued write. For local targets the apply token is revoked
        first, so an approval still in flight can no longer land. When the
        write had already landed, the approval is recorded instead.

        Raises:
            NotFound: unknown pending id
            AlreadyResolved: entry already approved or rejected, or its
                write already landed
        """
        entry = self.queue.get(pending_id)
        if entry.is_pending and entry.kb in self.targets:
            landed = self.targets[entry.kb].revoke(entry.id)
            if landed is not None:
                self.queue.mark_approved(entry.id, [f.id for f in landed])
                logger.warning("reject of %s found its write already applied; recorded as approved",
                               entry.id)
                raise AlreadyResolved(
                    f"Pending write {entry.id} was already applied; recorded as approved",
                    operation="pending_reject", target=entry.id,
                )
        entry = self.queue.mark_rejected(pending_id, reason)
        logger.info("rejected %s %s on %s", entry.operation.value, entry.id, entry.kb)
        return entry

    def _replay_once(self, target: WriteTarget, entry: PendingWrite) -> List[Fact]:
        try:
            return target.apply(entry.operation, entry.payload, apply_token=entry.id)
        except AlreadyResolved:
            # The write landed earlier but the queue was never updated.
            facts = target.applied(entry.id)
            if facts is None:
                raise
            return facts

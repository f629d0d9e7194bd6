"""
Tests for WriteGate and PendingQueue — allow / deny / ask

These tests validate:
- allow applies immediately, deny changes nothing
- ask queues a validated payload and touches no fact
- approve replays a queued write exactly once
- a write that landed before its queue update is recovered, not repeated
- reject, prefix lookup, and remote targets (claim / release)
"""

from unittest.mock import Mock

import pytest

from meh.core.pending import PendingStatus, WriteOperation
from meh.core.policy import LocalTarget, validate_payload
from meh.errors import (
    AlreadyResolved, AlreadySuperseded, AmbiguousReference, InvalidPath, NotFound, RemoteError, Timeout,
    WriteForbidden,
)


@pytest.fixture
def ask(meh_factory):
    meh_factory.configure(write="ask")
    return meh_factory


class TestModes:
    """The three write modes."""

    def test_allow(self, meh_factory):
        outcome = meh_factory.kb.add("@project/db", "We use SQLite.")
        assert outcome.applied
        assert not outcome.queued
        assert outcome.fact.path == "@project/db"

    def test_deny(self, meh_factory):
        meh_factory.configure(write="deny")
        with pytest.raises(WriteForbidden):
            meh_factory.kb.add("@project/db", "We use SQLite.")
        assert meh_factory.kb.store.stats().total == 0
        assert meh_factory.kb.queue.count() == 0

    def test_ask_queues(self, ask):
        outcome = ask.kb.add("@project/db", "We use SQLite.", tags=["Database"])
        assert outcome.queued
        assert outcome.facts == []
        assert outcome.pending.operation == WriteOperation.ADD
        assert outcome.pending.payload["tags"] == ["database"]
        assert ask.kb.store.stats().total == 0
        assert ask.kb.notifications_get("s1") == []

    def test_unknown_kb(self, meh_factory):
        with pytest.raises(NotFound):
            meh_factory.kb.add("@project/db", "x", kb="elsewhere")


class TestValidation:
    """Payloads are checked before they are queued."""

    def test_missing_content(self, ask):
        with pytest.raises(ValueError):
            ask.kb.add("@project/db", "")
        assert ask.kb.queue.count() == 0

    def test_bad_path(self, ask):
        with pytest.raises(InvalidPath):
            ask.kb.add("project/db", "no root marker")
        assert ask.kb.queue.count() == 0

    def test_vote_values_normalized(self):
        data = validate_payload(WriteOperation.BULK_VOTE,
                                {"votes": [{"fact_id": "A", "vote": "up"}, {"fact_id": "B", "vote": "-1"}]})
        assert [v["vote"] for v in data["votes"]] == [1, -1]

    def test_bad_vote(self):
        with pytest.raises(ValueError):
            validate_payload(WriteOperation.BULK_VOTE, {"votes": [{"fact_id": "A", "vote": "maybe"}]})

    def test_ref_resolved_when_queued(self, ask):
        fact = ask.add_fact("@project/db/pool", "Pool size 20.")
        outcome = ask.kb.correct("@project/db/pool", "Pool size 50.")
        assert outcome.pending.payload["fact_id"] == fact.id


class TestApprove:
    """Replaying queued writes."""

    def test_approve_applies_once(self, ask):
        pending = ask.kb.add("@project/db", "We use SQLite.").pending
        outcome = ask.kb.pending_approve(pending.id)
        assert outcome.applied
        assert outcome.pending.status == PendingStatus.APPROVED
        assert outcome.pending.result == [outcome.fact.id]

        with pytest.raises(AlreadyResolved):
            ask.kb.pending_approve(pending.id)
        assert ask.kb.store.stats().total == 1

    def test_approved_write_notifies(self, ask):
        pending = ask.kb.add("@project/db", "We use SQLite.").pending
        ask.kb.pending_approve(pending.id)
        assert [n.path for n in ask.kb.notifications_get("s1")] == ["@project/db"]

    def test_approve_by_prefix(self, ask):
        pending = ask.kb.add("@project/db", "We use SQLite.").pending
        outcome = ask.kb.pending_approve(pending.id[:12].lower())
        assert outcome.pending.id == pending.id

    def test_ambiguous_prefix(self, ask):
        ask.kb.add("@project/a", "first")
        ask.kb.add("@project/b", "second")
        with pytest.raises(AmbiguousReference):
            ask.kb.pending_approve(ask.kb.pending_list()[0].id[:4])

    def test_unknown_id(self, ask):
        with pytest.raises(NotFound):
            ask.kb.pending_approve("01ZZZZZZZZZZZZZZZZZZZZZZZZ")

    def test_recovers_write_that_already_landed(self, ask):
        pending = ask.kb.add("@project/db", "We use SQLite.").pending
        landed = LocalTarget(ask.kb.name, ask.kb.store).apply(
            pending.operation, pending.payload, apply_token=pending.id
        )
        outcome = ask.kb.pending_approve(pending.id)
        assert [f.id for f in outcome.facts] == [landed[0].id]
        assert ask.kb.store.stats().total == 1
        assert ask.kb.queue.get(pending.id).status == PendingStatus.APPROVED

    def test_failed_replay_stays_pending(self, ask):
        fact = ask.add_fact("@project/db", "We use SQLite.")
        pending = ask.kb.correct(fact.id, "We use PostgreSQL.").pending
        ask.kb.store.correct(fact.id, "We use MySQL.")
        with pytest.raises(AlreadySuperseded):
            ask.kb.pending_approve(pending.id)
        assert ask.kb.queue.get(pending.id).is_pending

    def test_bulk_vote_approved_as_one(self, ask):
        a = ask.add_fact("@project/a", "first")
        b = ask.add_fact("@project/b", "second")
        pending = ask.kb.bulk_vote([{"fact_id": a.id, "vote": "+1"},
                                    {"fact_id": b.id, "vote": "-1"}]).pending
        outcome = ask.kb.pending_approve(pending.id)
        assert len(outcome.facts) == 2
        assert ask.kb.get(a.id).votes_up == 1
        assert ask.kb.get(b.id).votes_down == 1


class TestReject:
    """Rejecting queued writes."""

    def test_reject(self, ask):
        pending = ask.kb.add("@project/db", "We use SQLite.").pending
        entry = ask.kb.pending_reject(pending.id, "duplicate")
        assert entry.status == PendingStatus.REJECTED
        assert entry.reason == "duplicate"
        assert ask.kb.store.stats().total == 0

    def test_rejected_cannot_be_approved(self, ask):
        pending = ask.kb.add("@project/db", "We use SQLite.").pending
        ask.kb.pending_reject(pending.id)
        with pytest.raises(AlreadyResolved):
            ask.kb.pending_approve(pending.id)

    def test_reject_after_unrecorded_approval(self, ask, monkeypatch):
        pending = ask.kb.add("@project/db", "Queued content.").pending
        mark_approved = ask.kb.queue.mark_approved
        monkeypatch.setattr(ask.kb.queue, "mark_approved", Mock(side_effect=Timeout("pending.db busy")))
        with pytest.raises(Timeout):
            ask.kb.pending_approve(pending.id)
        monkeypatch.setattr(ask.kb.queue, "mark_approved", mark_approved)

        with pytest.raises(AlreadyResolved):
            ask.kb.pending_reject(pending.id)
        entry = ask.kb.queue.get(pending.id)
        assert entry.status == PendingStatus.APPROVED
        assert entry.result == [ask.kb.store.resolve_path("@project/db").id]

    def test_reject_revokes_replay(self, ask):
        pending = ask.kb.add("@project/db", "Queued content.").pending
        ask.kb.pending_reject(pending.id)
        with pytest.raises(AlreadyResolved):
            LocalTarget(ask.kb.name, ask.kb.store).apply(
                pending.operation, pending.payload, apply_token=pending.id
            )
        assert ask.kb.store.stats().total == 0
        assert ask.kb.store.applied_facts(pending.id) is None

    def test_list_by_status(self, ask):
        first = ask.kb.add("@project/a", "first").pending
        ask.kb.add("@project/b", "second")
        ask.kb.pending_reject(first.id)
        assert [p.id for p in ask.kb.pending_list("rejected")] == [first.id]
        assert len(ask.kb.pending_list("pending")) == 1
        assert len(ask.kb.pending_list()) == 2


class TestOtherTargets:
    """Secondary sqlite and remote knowledge bases."""

    def test_secondary_sqlite(self, meh_factory):
        meh_factory.add_local_kb("team", write="ask")
        pending = meh_factory.kb.add("@team/oncall", "Rotation is weekly.", kb="team").pending
        assert pending.kb == "team"
        meh_factory.kb.pending_approve(pending.id)
        assert meh_factory.kb.store_for("team").resolve_path("@team/oncall") is not None
        assert meh_factory.kb.store.stats().total == 0

    def test_remote_write(self, meh_factory):
        client = meh_factory.add_remote("shared")
        client.add_fact.return_value = {"id": "01REMOTEFACT", "created_at": "2026-01-15T12:00:00+00:00"}
        outcome = meh_factory.kb.add("@shared/tips", "Use WAL mode.", kb="shared")
        client.add_fact.assert_called_once_with("@shared/tips", "Use WAL mode.", title=None, tags=None)
        assert outcome.fact.id == "01REMOTEFACT"
        assert outcome.fact.source == "shared"

    def test_remote_failure_released(self, meh_factory):
        client = meh_factory.add_remote("shared", write="ask")
        client.add_fact.side_effect = RemoteError("hub unreachable")
        pending = meh_factory.kb.add("@shared/tips", "Use WAL mode.", kb="shared").pending
        with pytest.raises(RemoteError):
            meh_factory.kb.pending_approve(pending.id)
        assert meh_factory.kb.queue.get(pending.id).is_pending

        client.add_fact.side_effect = None
        client.add_fact.return_value = {"id": "01REMOTEFACT"}
        outcome = meh_factory.kb.pending_approve(pending.id)
        assert outcome.pending.result == ["01REMOTEFACT"]

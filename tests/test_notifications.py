"""
Tests for NotificationStore — outbox relay, sessions, acks, subscriptions

These tests validate:
- Every committed write surfaces exactly one notification
- Relay is idempotent
- Acks are idempotent and compact into the read cursor
- Subscription filters (category, path prefix, priority)
- One-shot onboarding and retention cleanup
"""

import pytest

from meh.core.events import Category, EventKind, FactEvent, Priority
from meh.core.fact import format_timestamp
from meh.core.notifications import Subscription
from meh.errors import InvalidPath


@pytest.fixture
def store(meh_env):
    return meh_env.kb.notifications


def unread_ids(store, session="s1"):
    return [n.id for n in store.get_pending(session)]


class TestRelay:
    """Outbox rows become notifications."""

    def test_one_notification_per_write(self, meh_env, store):
        pending = store.get_pending("s1")
        assert len(pending) == 5
        assert all(n.kind == EventKind.ADDED for n in pending)
        assert pending[0].fact_id == meh_env.facts["readme"].id
        assert pending[0].title == "New: Read me first"

    def test_relay_is_idempotent(self, store):
        store.get_pending("s1")
        assert store.relay() == 0
        assert store.count() == 5

    def test_later_writes_relayed(self, meh_env, store):
        store.get_pending("s1")
        meh_env.kb.store.deprecate(meh_env.facts["pool"].id, "replaced by pgbouncer")
        latest = store.get_pending("s1")[-1]
        assert latest.kind == EventKind.DEPRECATED
        assert latest.priority == Priority.HIGH

    def test_emit_alert(self, store):
        store.emit(FactEvent(kind=EventKind.ALERT, title="Build broken", category=Category.CI,
                             priority=Priority.CRITICAL))
        latest = store.get_pending("s1")[-1]
        assert latest.category == Category.CI
        assert latest.fact_id is None

    def test_sessions_are_independent(self, store):
        store.ack("s1", "all")
        assert unread_ids(store, "s1") == []
        assert len(unread_ids(store, "s2")) == 5


class TestAck:
    """Acknowledging notifications."""

    def test_ack_contiguous_advances_cursor(self, store):
        result = store.ack("s1", [1, 2])
        assert result.acknowledged == [1, 2]
        assert result.cursor == 2
        assert unread_ids(store) == [3, 4, 5]

    def test_ack_gap_keeps_cursor(self, store):
        result = store.ack("s1", [3])
        assert result.cursor == 0
        assert unread_ids(store) == [1, 2, 4, 5]

    def test_gap_filled_compacts(self, store):
        store.ack("s1", [2, 3])
        result = store.ack("s1", [1])
        assert result.cursor == 3

    def test_ack_is_idempotent(self, store):
        store.ack("s1", [1])
        again = store.ack("s1", [1, 2])
        assert again.ignored == [1]
        assert again.acknowledged == [2]

    def test_unknown_ids_ignored(self, store):
        store.get_pending("s1")
        result = store.ack("s1", [99, "4", 4])
        assert result.ignored == [99]
        assert result.acknowledged == [4]

    def test_ack_all(self, store):
        result = store.ack("s1", "all")
        assert result.acknowledged == [1, 2, 3, 4, 5]
        assert result.cursor == 5
        assert store.unread_count("s1") == 0

    def test_ack_rejects_other_strings(self, store):
        with pytest.raises(ValueError):
            store.ack("s1", "some")


class TestSubscription:
    """Per-session filters."""

    def test_matches(self):
        sub = Subscription(categories=[Category.FACTS], path_prefixes=["@project"],
                           min_priority=Priority.HIGH)
        assert sub.matches(Category.FACTS, Priority.CRITICAL, "@project/db")
        assert not sub.matches(Category.FACTS, Priority.NORMAL, "@project/db")
        assert not sub.matches(Category.CI, Priority.HIGH, "@project/db")
        assert not sub.matches(Category.FACTS, Priority.HIGH, "@projects")
        assert not sub.matches(Category.FACTS, Priority.HIGH, None)
        assert not sub.matches(Category.FACTS, Priority.HIGH, "not a path")

    def test_empty_matches_everything(self):
        assert Subscription().matches(Category.SYSTEM, Priority.NORMAL, None)

    def test_json_roundtrip(self):
        sub = Subscription(categories=[Category.CI], path_prefixes=["@ci"], min_priority=Priority.HIGH)
        assert Subscription.from_json(sub.to_json()) == sub

    def test_path_filter(self, meh_env, store):
        store.subscribe("s1", path_prefixes=["@project/db"])
        pending = store.get_pending("s1")
        assert {n.fact_id for n in pending} == {meh_env.facts["engine"].id, meh_env.facts["pool"].id}

    def test_priority_filter(self, meh_env, store):
        store.subscribe("s1", min_priority="high")
        meh_env.kb.store.correct(meh_env.facts["engine"].id, "The database engine is PostgreSQL 17.")
        pending = store.get_pending("s1")
        assert [n.kind for n in pending] == [EventKind.CORRECTED]

    def test_category_filter(self, store):
        store.subscribe("s1", categories=["ci"])
        store.emit(FactEvent(kind=EventKind.ALERT, title="Deploy finished", category=Category.CI))
        assert [n.title for n in store.get_pending("s1")] == ["Deploy finished"]

    def test_filtered_notifications_skipped_by_compaction(self, store):
        store.subscribe("s1", path_prefixes=["@project/db"])
        assert store.ack("s1", [2]).cursor == 2
        assert store.ack("s1", [3]).cursor == 5

    def test_invalid_category(self, store):
        with pytest.raises(ValueError):
            store.subscribe("s1", categories=["weather"])

    def test_invalid_prefix(self, store):
        with pytest.raises(InvalidPath):
            store.subscribe("s1", path_prefixes=["project"])


class TestSessions:
    """Onboarding and retention."""

    def test_onboarding_claimed_once(self, store):
        assert store.claim_onboarding("s1")
        assert not store.claim_onboarding("s1")
        assert store.claim_onboarding("s2")

    def test_clear_old(self, meh_env, store):
        store.relay()
        meh_env.clock.advance(days=40)
        store.emit(FactEvent(kind=EventKind.ALERT, title="fresh",
                             created_at=format_timestamp(meh_env.clock())))
        assert store.clear_old(30) == 5
        assert store.count() == 1

    def test_cleanup_idle_sessions(self, meh_env, store):
        store.session("idle")
        meh_env.clock.advance(days=40)
        store.session("busy")
        assert store.cleanup_sessions(30) == 1

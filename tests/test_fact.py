"""
Tests for the Fact model and its helpers

These tests validate:
- Summary generation (first sentence, word-boundary cut)
- Tag normalization and rejection
- Display ids ('meh-' prefix) and timestamp round trip
"""

from datetime import datetime, timezone

import pytest

from meh.core.fact import (
    Fact, Status, AuthorKind, FactType,
    generate_summary, normalize_tags, strip_display_prefix,
    format_timestamp, parse_timestamp,
)
from meh.errors import InvalidPath


class TestSummary:
    """generate_summary()."""

    def test_short_single_sentence(self):
        assert generate_summary("Short fact") == "Short fact"

    def test_first_sentence(self):
        assert generate_summary("First sentence. Second sentence.") == "First sentence."

    def test_whitespace_collapsed(self):
        assert generate_summary("Line one\n\n  still line one") == "Line one still line one"

    def test_long_text_cut_at_word(self):
        text = "word " * 100
        summary = generate_summary(text, max_chars=50)
        assert summary.endswith("...")
        assert len(summary) <= 50
        assert "wor..." not in summary

    def test_sentence_within_limit_preferred(self):
        text = "Short one. " + "x" * 300
        assert generate_summary(text, max_chars=150) == "Short one."


class TestTags:
    """normalize_tags()."""

    def test_lowercase_dedupe_sorted(self):
        assert normalize_tags(["Infra", "database", "#infra", " db "]) == ["database", "db", "infra"]

    def test_empty(self):
        assert normalize_tags(None) == []
        assert normalize_tags(["", "  "]) == []

    def test_allowed_punctuation(self):
        assert normalize_tags(["lang:python", "v1.2", "a_b-c"]) == ["a_b-c", "lang:python", "v1.2"]

    def test_invalid(self):
        with pytest.raises(InvalidPath):
            normalize_tags(["has space"])


class TestFact:
    """Fact dataclass behavior."""

    def test_display_id(self):
        fact = Fact(id="01ABC", path="@a", title="t", content="c")
        assert fact.display_id == "meh-01ABC"

    def test_strip_display_prefix(self):
        assert strip_display_prefix("meh-01ABC") == "01ABC"
        assert strip_display_prefix("MEH-01ABC") == "01ABC"
        assert strip_display_prefix("01ABC") == "01ABC"

    def test_updated_at_defaults_to_created(self):
        fact = Fact(id="1", path="@a", title="t", content="c", created_at="2026-01-01T00:00:00.000000+00:00")
        assert fact.updated_at == fact.created_at

    def test_status_helpers(self):
        fact = Fact(id="1", path="@a", title="t", content="c", status=Status.DEPRECATED)
        assert fact.is_deprecated
        assert not fact.is_active
        assert not fact.is_superseded

    def test_dict_round_trip_keeps_enums(self):
        fact = Fact(id="1", path="@a", title="t", content="c", tags=["x"],
                    author_kind=AuthorKind.AGENT, fact_type=FactType.EXTENSION, extends="0")
        data = fact.to_dict()
        assert data["author_kind"] == "agent"
        assert data["fact_type"] == "extension"
        restored = Fact.from_dict({**data, "unknown_field": 1})
        assert restored == fact


class TestTimestamps:
    """Fixed-width UTC timestamps."""

    def test_naive_is_utc(self):
        naive = datetime(2026, 1, 1, 12, 0, 0)
        assert format_timestamp(naive) == "2026-01-01T12:00:00.000000+00:00"

    def test_round_trip(self):
        now = datetime(2026, 3, 4, 5, 6, 7, 890, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(now)) == now

    def test_lexicographic_order_matches_time(self):
        early = format_timestamp(datetime(2026, 1, 1, tzinfo=timezone.utc))
        late = format_timestamp(datetime(2026, 1, 1, 0, 0, 1, tzinfo=timezone.utc))
        assert early < late

"""
Tests for SearchEngine — ranked, filtered, paginated, budgeted

These tests validate:
- Full-text relevance with path, tag, status and trust filters
- Superseded facts hidden unless history is requested
- Deterministic ranking: relevance, trust, then newest id
- Keyset cursors: pages never repeat or skip
- Token budget truncation and detail levels L0-L3
"""

import pytest

from meh.core.fact import Fact, AuthorKind
from meh.core.search import (
    SearchEngine, SearchQuery, SearchHit, DetailLevel,
    rank, truncate_to_budget, build_fts_query,
)
from meh.errors import InvalidPath


@pytest.fixture
def engine(meh_env):
    return meh_env.kb.engine


def ids(hits):
    return [h.fact.id for h in hits]


# =============================================================================
# Query building
# =============================================================================

class TestFtsQuery:
    """Free text becomes a quoted OR query."""

    def test_words_quoted(self):
        assert build_fts_query("database pool") == '"database" OR "pool"'

    def test_syntax_characters_dropped(self):
        assert build_fts_query('foo" OR (bar*') == '"foo" OR "OR" OR "bar"'

    def test_empty(self):
        assert build_fts_query(None) is None
        assert build_fts_query("  ?! ") is None

    @pytest.mark.parametrize("raw,expected", [
        (2, DetailLevel.L2), ("3", DetailLevel.L3), ("L0", DetailLevel.L0), ("l1", DetailLevel.L1),
    ])
    def test_detail_parse(self, raw, expected):
        assert DetailLevel.parse(raw) == expected

    def test_detail_parse_invalid(self):
        with pytest.raises(ValueError):
            DetailLevel.parse("L9")


# =============================================================================
# Filters
# =============================================================================

class TestFilters:
    """Structured filters narrow the candidate set."""

    def test_text_match(self, meh_env, engine):
        response = engine.search(SearchQuery(text="database"))
        assert ids(response.hits)[0] == meh_env.facts["engine"].id
        assert set(ids(response.hits)) == {meh_env.facts["engine"].id, meh_env.facts["pool"].id}

    def test_no_match(self, engine):
        response = engine.search(SearchQuery(text="kubernetes"))
        assert response.hits == []
        assert response.total == 0

    def test_unsafe_text_does_not_raise(self, engine):
        engine.search(SearchQuery(text='"unbalanced (quote* NEAR'))

    def test_path_prefix(self, meh_env, engine):
        response = engine.search(SearchQuery(path_prefix="@project/db"))
        assert set(ids(response.hits)) == {meh_env.facts["engine"].id, meh_env.facts["pool"].id}

    def test_path_prefix_is_segment_aware(self, meh_env, engine):
        meh_env.add_fact("@projectx", "sibling root")
        response = engine.search(SearchQuery(path_prefix="@project"))
        assert all(h.fact.path.startswith("@project/") for h in response.hits)

    def test_tags_intersect(self, meh_env, engine):
        response = engine.search(SearchQuery(tags=["database", "infra"]))
        assert ids(response.hits) == [meh_env.facts["engine"].id]

    def test_invalid_tag(self, engine):
        with pytest.raises(InvalidPath):
            engine.search(SearchQuery(tags=["bad tag"]))

    def test_invalid_prefix(self, engine):
        with pytest.raises(InvalidPath):
            engine.search(SearchQuery(path_prefix="no-root"))

    def test_superseded_hidden(self, meh_env, engine):
        old = meh_env.facts["pool"]
        new = meh_env.kb.store.correct(old.id, "Connection pool size is 50 per worker.")
        hits = engine.search(SearchQuery(text="pool")).hits
        assert ids(hits) == [new.id]

    def test_include_history(self, meh_env, engine):
        old = meh_env.facts["pool"]
        new = meh_env.kb.store.correct(old.id, "Connection pool size is 50 per worker.")
        hits = engine.search(SearchQuery(text="pool", include_history=True)).hits
        assert set(ids(hits)) == {old.id, new.id}

    def test_active_only_hides_deprecated(self, meh_env, engine):
        fact = meh_env.facts["timeout"]
        meh_env.kb.store.deprecate(fact.id, "moved to gateway config")
        assert fact.id in ids(engine.search(SearchQuery(text="timeout")).hits)
        assert fact.id not in ids(engine.search(SearchQuery(text="timeout", active_only=True)).hits)

    def test_min_trust(self, meh_env, engine):
        agent_fact = meh_env.add_fact("@project/db/replicas", "Two read replicas.",
                                      author_kind=AuthorKind.AGENT)
        hits = engine.search(SearchQuery(path_prefix="@project/db", min_trust=0.6)).hits
        assert agent_fact.id not in ids(hits)
        assert len(hits) == 2

    def test_votes_never_returned(self, meh_env, engine):
        meh_env.kb.bulk_vote([{"fact_id": meh_env.facts["engine"].id, "vote": "+1", "reason": "database ok"}])
        hits = engine.search(SearchQuery(text="database")).hits
        assert all(h.fact.fact_type.value != "vote" for h in hits)


# =============================================================================
# Ranking and pagination
# =============================================================================

def hit(fact_id, relevance, trust):
    return SearchHit(fact=Fact(id=fact_id, path="@p", title="t", content="c"),
                     relevance=relevance, trust=trust)


class TestRanking:
    """rank() ordering."""

    def test_relevance_then_trust_then_newest(self):
        hits = [hit("A", 1.0, 0.5), hit("B", 2.0, 0.1), hit("C", 1.0, 0.9), hit("D", 1.0, 0.5)]
        assert ids(rank(hits)) == ["B", "C", "D", "A"]

    def test_confirmed_fact_ranks_higher(self, meh_env, engine):
        pool = meh_env.facts["pool"]
        meh_env.kb.bulk_vote([{"fact_id": pool.id, "vote": 1}])
        hits = engine.search(SearchQuery(path_prefix="@project/db")).hits
        assert ids(hits)[0] == pool.id
        assert hits[0].trust > hits[1].trust


class TestPagination:
    """Cursor pages are stable and complete."""

    def test_pages_cover_everything_once(self, engine):
        everything = ids(engine.search(SearchQuery(limit=100)).hits)
        seen, cursor = [], None
        while True:
            response = engine.search(SearchQuery(limit=2, cursor=cursor))
            seen.extend(ids(response.hits))
            cursor = response.next_cursor
            if cursor is None:
                break
        assert seen == everything
        assert len(everything) == 5

    def test_total_counts_all_matches(self, engine):
        response = engine.search(SearchQuery(limit=2))
        assert response.total == 5
        assert len(response.hits) == 2

    def test_malformed_cursor(self, engine):
        with pytest.raises(InvalidPath):
            engine.search(SearchQuery(cursor="%%%"))


# =============================================================================
# Budget and detail
# =============================================================================

class TestBudget:
    """Token budget truncation."""

    def test_tight_budget_keeps_first_hit(self, engine):
        response = engine.search(SearchQuery(token_budget=1, detail=DetailLevel.L3))
        assert len(response.hits) == 1
        assert response.truncated

    def test_no_budget(self, engine):
        response = engine.search(SearchQuery(token_budget=None))
        assert not response.truncated
        assert len(response.hits) == 5

    def test_truncate_helper(self):
        hits = [hit(str(i), 1.0, 0.5) for i in range(10)]
        kept, truncated = truncate_to_budget(hits, 40, DetailLevel.L1)
        assert 1 <= len(kept) < 10
        assert truncated

    def test_truncated_page_resumes_after_last_kept(self, engine):
        first = engine.search(SearchQuery(token_budget=1, limit=5))
        second = engine.search(SearchQuery(cursor=first.next_cursor, limit=5))
        assert ids(first.hits)[0] not in ids(second.hits)
        assert len(first.hits) + len(second.hits) == 5


class TestDetailLevels:
    """to_dict() shape per level."""

    def test_levels(self, meh_env):
        h = SearchHit(fact=meh_env.facts["engine"], relevance=1.0, trust=0.8)
        assert set(h.to_dict(DetailLevel.L0)) == {"id", "path"}
        assert set(h.to_dict(DetailLevel.L1)) == {"id", "path", "title", "trust", "source"}
        assert "summary" in h.to_dict(DetailLevel.L2)
        l3 = h.to_dict(DetailLevel.L3)
        assert l3["content"] == "The database engine is PostgreSQL 16."
        assert l3["tags"] == ["database", "infra"]

    def test_ids_displayed_with_prefix(self, meh_env):
        h = SearchHit(fact=meh_env.facts["engine"], relevance=1.0, trust=0.8)
        assert h.to_dict(DetailLevel.L0)["id"].startswith("meh-")

    def test_response_dict(self, engine):
        data = engine.search(SearchQuery(limit=1, detail=DetailLevel.L0)).to_dict()
        assert data["total"] == 5
        assert data["next_cursor"]
        assert set(data["results"][0]) == {"id", "path"}

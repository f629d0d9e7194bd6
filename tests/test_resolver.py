"""
Tests for FactResolver — ids, id prefixes and paths to facts

These tests validate:
- Exact ids with or without the display prefix
- Unique prefixes resolve, shared prefixes are ambiguous
- Paths resolve to the current head of their chain
- Misses carry "did you mean" suggestions
"""

import pytest

from meh.core.resolver import FactResolver, ResolveStatus, format_resolve_error
from meh.errors import AmbiguousReference, NotFound


@pytest.fixture
def resolver(meh_env):
    return FactResolver(meh_env.kb.store)


class TestResolve:

    def test_exact_id(self, meh_env, resolver):
        fact = meh_env.facts["engine"]
        assert resolver.resolve(fact.id).fact.id == fact.id

    def test_display_id_any_case(self, meh_env, resolver):
        fact = meh_env.facts["engine"]
        assert resolver.resolve(fact.display_id.lower()).fact.id == fact.id

    def test_unique_prefix(self, meh_env, resolver):
        meh_env.clock.advance(days=3)
        fact = meh_env.add_fact("@project/db/backup", "Nightly dumps.")
        # The timestamp part alone tells it apart from the sample facts
        assert resolver.resolve(fact.id[:10]).fact.id == fact.id

    def test_shared_prefix_ambiguous(self, meh_env, resolver):
        # Sample facts were all written at the same instant
        result = resolver.resolve(meh_env.facts["readme"].id[:6])
        assert result.status == ResolveStatus.AMBIGUOUS
        assert len(result.candidates) == 5

    def test_short_prefix_not_searched(self, meh_env, resolver):
        assert resolver.resolve(meh_env.facts["engine"].id[:3]).status == ResolveStatus.NOT_FOUND

    def test_path_resolves_head(self, meh_env, resolver):
        old = meh_env.facts["pool"]
        new = meh_env.kb.store.correct(old.id, "Pool size 50.")
        assert resolver.resolve("@project/db/pool").fact.id == new.id

    def test_invalid_path_not_found(self, resolver):
        assert resolver.resolve("@bad path!").status == ResolveStatus.NOT_FOUND


class TestRequire:

    def test_found(self, meh_env, resolver):
        assert resolver.require("@readme").id == meh_env.facts["readme"].id

    def test_not_found_suggests_paths(self, resolver):
        with pytest.raises(NotFound) as info:
            resolver.require("@project/db/engin")
        assert "@project/db/engine" in info.value.suggestions

    def test_ambiguous_lists_candidates(self, meh_env, resolver):
        prefix = meh_env.facts["readme"].id[:6]
        with pytest.raises(AmbiguousReference) as info:
            resolver.require(prefix, "get")
        assert info.value.operation == "get"
        assert all(s.startswith("meh-") for s in info.value.suggestions)

    def test_format_error(self, resolver):
        with pytest.raises(NotFound) as info:
            resolver.require("@project/db/engin")
        text = format_resolve_error(info.value)
        assert text.splitlines()[0] == "No fact matches '@project/db/engin'"
        assert "Did you mean:" in text

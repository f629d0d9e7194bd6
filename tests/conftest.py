"""
Shared pytest fixtures for the meh test suite.

Every fixture builds real SQLite stores under tmp_path through
MehTestFactory; only remote servers are mocked.

Usage in tests:
    def test_something(meh_factory):
        fact = meh_factory.add_fact("@project/db", "We use SQLite.")
        assert meh_factory.kb.get(fact.id).fact.path == "@project/db"

    def test_with_data(meh_env):
        # meh_env comes pre-populated with sample facts
        response = meh_env.kb.search("database")
"""

import pytest

from meh.config import ConfigManager
from tests.factories import MehTestFactory


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep the developer's ~/.meh and MEH_* variables out of every test."""
    for name in ("MEH_DATA_DIR", "MEH_PRIMARY_KB", "MEH_SESSION", "MEH_SEARCH_LIMIT",
                 "MEH_TOKEN_BUDGET", "MEH_PROJECT_PATH", "MEH_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(ConfigManager, "USER_CONFIG_FILE", tmp_path / "home" / ".meh" / "config.yaml")


@pytest.fixture
def meh_factory(tmp_path):
    """
    Empty MehTestFactory.

    Use this when you need fine-grained control over test data or
    configuration (call configure()/add_remote() before touching .kb).
    """
    return MehTestFactory(tmp_path)


@pytest.fixture
def meh_env(tmp_path):
    """
    MehTestFactory with sample data:
    - @readme onboarding fact
    - three @project facts (db engine, db pool, api timeout)
    - one @users fact
    """
    factory = MehTestFactory(tmp_path)
    factory.create_sample_kb()
    return factory


@pytest.fixture
def clock(meh_factory):
    """The factory's controllable clock."""
    return meh_factory.clock

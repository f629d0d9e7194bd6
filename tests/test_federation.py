"""
Tests for federated search — coordinator, merge, remote client

These tests validate:
- Per-source relevance normalization and the merged order
- Duplicates keep their first source in search order
- Failing or slow remotes land in PartialFailure, never fail the query
- RemoteClient request shape and error mapping
- ServerClient knowledge base management
- RemoteWriteTarget payloads
"""

import time
from unittest.mock import Mock

import pytest
import requests

from meh.config import ServerConfig
from meh.core.fact import Fact
from meh.core.pending import WriteOperation
from meh.core.search import SearchHit
from meh.errors import InvalidPath, NotFound, RemoteError, Timeout
from meh.federation.coordinator import merge, normalize_relevance
from meh.federation.remote import RemoteClient, RemoteWriteTarget, ServerClient
from meh.federation.task import SourceKind, SourceResult, SourceTask, run_task


SHARED_DB = {
    "id": "meh-01JREMOTEDB0000000000000A",
    "path": "@shared/db",
    "title": "Shared database notes",
    "summary": "Every service talks to the shared database through pgbouncer.",
    "trust_score": 0.9,
    "relevance": 4.0,
}


def hit(fact_id, relevance, trust=0.5, source="local"):
    return SearchHit(fact=Fact(id=fact_id, path="@p", title="t", content="c"),
                     relevance=relevance, trust=trust, source=source)


def ids(hits):
    return [h.fact.id for h in hits]


# =============================================================================
# Merge
# =============================================================================

class TestNormalize:

    def test_min_max(self):
        assert normalize_relevance([hit("A", 3.0), hit("B", 2.0), hit("C", 1.0)]) == [1.0, 0.5, 0.0]

    def test_all_equal(self):
        assert normalize_relevance([hit("A", 7.0), hit("B", 7.0)]) == [1.0, 1.0]

    def test_missing_scores_use_rank(self):
        assert normalize_relevance([hit("A", float("nan")), hit("B", 1.0)]) == [1.0, 0.5]

    def test_empty(self):
        assert normalize_relevance([]) == []


class TestMerge:

    def test_duplicate_keeps_first_source(self):
        first = SourceResult(task_id="1", source="local", position=0, hits=[hit("A", 1.0, source="local")])
        second = SourceResult(task_id="2", source="team", position=1,
                              hits=[hit("A", 9.0, source="team"), hit("B", 1.0, source="team")])
        merged = merge([second, first])
        assert sorted(ids(merged)) == ["A", "B"]
        assert [h.source for h in merged if h.fact.id == "A"] == ["local"]

    def test_order_relevance_trust_id(self):
        result = SourceResult(task_id="1", source="local", position=0, hits=[
            hit("A", 1.0, trust=0.5), hit("C", 1.0, trust=0.5), hit("B", 1.0, trust=0.9), hit("D", 0.0),
        ])
        assert ids(merge([result])) == ["B", "C", "A", "D"]


# =============================================================================
# Tasks
# =============================================================================

class TestRunTask:

    def test_success(self):
        task = SourceTask(source="local", kind=SourceKind.LOCAL, fn=lambda: [hit("A", 1.0)])
        result = run_task(task)
        assert result.success
        assert ids(result.hits) == ["A"]

    def test_meh_error_keeps_kind(self):
        def fail():
            raise Timeout("too slow")
        result = run_task(SourceTask(source="hub", kind=SourceKind.REMOTE, fn=fail, position=2))
        assert not result.success
        assert result.error_kind == "timeout"
        assert result.position == 2

    def test_other_error(self):
        def fail():
            raise KeyError("boom")
        assert run_task(SourceTask(source="hub", kind=SourceKind.REMOTE, fn=fail)).error_kind == "error"


# =============================================================================
# Coordinator (through KnowledgeBase)
# =============================================================================

class TestFederatedSearch:

    def test_local_and_remote_merged(self, meh_env):
        meh_env.add_remote("shared", results=[SHARED_DB])
        response = meh_env.kb.federated_search("database")
        assert not response.failures
        assert response.sources == ["local", "shared"]
        assert ids(response.hits) == [
            meh_env.facts["engine"].id, "01JREMOTEDB0000000000000A", meh_env.facts["pool"].id,
        ]
        remote = response.hits[1]
        assert remote.source == "shared"
        assert remote.trust == pytest.approx(0.72)

    def test_remote_receives_query(self, meh_env):
        client = meh_env.add_remote("shared", results=[SHARED_DB])
        meh_env.kb.federated_search("database", path_prefix="@shared", limit=7)
        args, kwargs = client.search.call_args
        assert args == ("database",)
        assert kwargs["limit"] == 7
        assert kwargs["path_prefix"] == "@shared"

    def test_remote_failure_is_partial(self, meh_env):
        client = meh_env.add_remote("shared")
        client.search.side_effect = RemoteError("hub answered 502")
        response = meh_env.kb.federated_search("database")
        assert response.failures.sources == ["shared"]
        assert response.failures.failures[0].kind == "remote_error"
        assert len(response.hits) == 2
        assert response.to_dict()["partial_failure"]["kind"] == "partial_failure"

    def test_slow_remote_times_out(self, meh_env):
        meh_env.configure(federated_deadline_secs=0.05)
        client = meh_env.add_remote("shared", results=[SHARED_DB])
        client.search.side_effect = lambda *args, **kwargs: time.sleep(0.5) or []
        response = meh_env.kb.federated_search("database")
        assert response.failures.failures[0].kind == "timeout"
        assert "shared" not in response.sources

    def test_remote_filters(self, meh_env):
        deprecated = dict(SHARED_DB, id="01JREMOTEOLD000000000000AA", status="deprecated")
        meh_env.add_remote("shared", results=[SHARED_DB, deprecated])
        hits = meh_env.kb.federated_search("database", active_only=True, sources=["shared"]).hits
        assert ids(hits) == ["01JREMOTEDB0000000000000A"]
        assert meh_env.kb.federated_search("database", min_trust=0.75, sources=["shared"]).hits == []

    def test_remote_superseded_hidden_without_history(self, meh_env):
        old = dict(SHARED_DB, id="01JREMOTEOLD000000000000AA", status="superseded")
        meh_env.add_remote("shared", results=[SHARED_DB, old])
        hits = meh_env.kb.federated_search("database", sources=["shared"]).hits
        assert ids(hits) == ["01JREMOTEDB0000000000000A"]
        history = meh_env.kb.federated_search("database", include_history=True, sources=["shared"]).hits
        assert sorted(ids(history)) == ["01JREMOTEDB0000000000000A", "01JREMOTEOLD000000000000AA"]

    def test_remote_tag_filter(self, meh_env):
        tagged = dict(SHARED_DB, tags=["Database", "infra"])
        untagged = dict(SHARED_DB, id="01JREMOTENOTAG00000000000A", tags=[])
        client = meh_env.add_remote("shared", results=[tagged, untagged])
        response = meh_env.kb.federated_search("database", tags=["database"])
        assert client.search.call_args[1]["tags"] == ["database"]
        assert "01JREMOTENOTAG00000000000A" not in ids(response.hits)
        assert "01JREMOTEDB0000000000000A" in ids(response.hits)
        assert all("database" in h.fact.tags for h in response.hits if h.source == "local")

    def test_remote_prefix_filter(self, meh_env):
        outside = dict(SHARED_DB, id="01JREMOTEOUTSIDE000000000A", path="@sharedteam/db")
        meh_env.add_remote("shared", results=[SHARED_DB, outside])
        hits = meh_env.kb.federated_search("database", path_prefix="@shared/", sources=["shared"]).hits
        assert ids(hits) == ["01JREMOTEDB0000000000000A"]

    def test_secondary_origin_trust(self, meh_factory):
        meh_factory.add_local_kb("company", origin="company")
        meh_factory.kb.add("@handbook/leave", "Leave requests go through HR.", kb="company")
        hits = meh_factory.kb.federated_search("leave").hits
        assert hits[0].source == "company"
        assert hits[0].trust == pytest.approx(0.76)

    def test_invalid_prefix_fails_fast(self, meh_env):
        client = meh_env.add_remote("shared")
        with pytest.raises(InvalidPath):
            meh_env.kb.federated_search("database", path_prefix="no-root")
        client.search.assert_not_called()

    def test_cursor_refused(self, meh_env):
        client = meh_env.add_remote("shared")
        cursor = meh_env.kb.search(limit=1).next_cursor
        with pytest.raises(ValueError, match="single page"):
            meh_env.kb.federated_search(cursor=cursor)
        client.search.assert_not_called()

    def test_unknown_source(self, meh_env):
        with pytest.raises(NotFound):
            meh_env.kb.federated_search("database", sources=["nowhere"])


# =============================================================================
# RemoteClient
# =============================================================================

def response(status=200, payload=None, text=""):
    r = Mock()
    r.status_code = status
    r.text = text
    r.content = b"" if payload is None else b"x"
    r.json.return_value = payload
    if status >= 400:
        r.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return r


@pytest.fixture
def server():
    return ServerConfig(name="hub", url="https://hub.example/", timeout_secs=3.0)


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


class TestRemoteClient:

    def test_search_request(self, server, session, monkeypatch):
        monkeypatch.setenv("MEH_API_KEY", "secret")
        session.request.return_value = response(payload={"results": [SHARED_DB]})
        client = RemoteClient(server, "shared", session=session)

        results = client.search("database", limit=5, path_prefix="@shared")

        args, kwargs = session.request.call_args
        assert args == ("GET", "https://hub.example/api/v1/kbs/shared/search")
        assert kwargs["headers"]["X-API-Key"] == "secret"
        assert kwargs["params"] == {"q": "database", "limit": 5, "path": "@shared"}
        assert kwargs["timeout"] == 3.0
        assert results[0].id == "01JREMOTEDB0000000000000A"
        assert results[0].relevance == 4.0

    def test_search_sends_tags(self, server, session):
        session.request.return_value = response(payload=[])
        RemoteClient(server, "shared", session=session).search("x", tags=["api", "database"])
        assert session.request.call_args[1]["params"]["tags"] == "api,database"

    def test_no_key_no_header(self, server, session):
        session.request.return_value = response(payload=[])
        RemoteClient(server, "shared", session=session).search("x")
        assert "X-API-Key" not in session.request.call_args[1]["headers"]

    def test_bare_list_results(self, server, session):
        session.request.return_value = response(payload=[SHARED_DB])
        assert len(RemoteClient(server, "shared", session=session).search("x")) == 1

    def test_404(self, server, session):
        session.request.return_value = response(status=404)
        with pytest.raises(NotFound):
            RemoteClient(server, "shared", session=session).get_fact("01ABC")

    def test_server_error(self, server, session):
        session.request.return_value = response(status=500, text="database locked")
        with pytest.raises(RemoteError) as info:
            RemoteClient(server, "shared", session=session).search("x")
        assert info.value.status_code == 500
        assert "database locked" in info.value.message

    def test_timeout(self, server, session):
        session.request.side_effect = requests.Timeout("read timed out")
        with pytest.raises(Timeout):
            RemoteClient(server, "shared", session=session).search("x", timeout=0.5)

    def test_unreachable(self, server, session):
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(RemoteError):
            RemoteClient(server, "shared", session=session).health()

    def test_empty_body(self, server, session):
        session.request.return_value = response(payload=None)
        assert RemoteClient(server, "shared", session=session).health() == {}

    def test_get_fact_unwraps(self, server, session):
        session.request.return_value = response(payload={"fact": SHARED_DB})
        fact = RemoteClient(server, "shared", session=session).get_fact("01JREMOTEDB0000000000000A")
        assert fact.path == "@shared/db"
        assert fact.to_fact(source="shared").content == SHARED_DB["summary"]


class TestServerClient:
    """Knowledge base management on a server."""

    def test_list_kbs(self, server, session):
        session.request.return_value = response(payload={"knowledge_bases": [
            {"id": 7, "slug": "team-notes", "name": "Team Notes", "visibility": "private"},
        ]})
        kbs = ServerClient(server, session=session).list_kbs()
        assert session.request.call_args[0] == ("GET", "https://hub.example/api/v1/kbs")
        assert [kb.slug for kb in kbs] == ["team-notes"]
        assert kbs[0].id == "7"
        assert kbs[0].visibility == "private"

    def test_list_bare(self, server, session):
        session.request.return_value = response(payload=[{"slug": "a", "name": "A"}])
        assert ServerClient(server, session=session).list_kbs()[0].name == "A"

    def test_create_payload(self, server, session):
        session.request.return_value = response(payload={"slug": "team-notes", "name": "Team Notes"})
        kb = ServerClient(server, session=session).create_kb("team-notes", "Team Notes", visibility="private")
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://hub.example/api/v1/kbs")
        assert kwargs["json"] == {"slug": "team-notes", "name": "Team Notes", "visibility": "private"}
        assert kb.slug == "team-notes"

    def test_delete(self, server, session):
        session.request.return_value = response(payload=None)
        ServerClient(server, session=session).delete_kb("team-notes")
        assert session.request.call_args[0] == ("DELETE", "https://hub.example/api/v1/kbs/team-notes")

    def test_missing_kb(self, server, session):
        session.request.return_value = response(status=404)
        with pytest.raises(NotFound) as info:
            ServerClient(server, session=session).get_kb("ghost")
        assert info.value.target == "hub"


class TestRemoteWriteTarget:

    def test_correct(self):
        client = Mock(spec=RemoteClient)
        client.correct_fact.return_value = {"id": "01NEWREMOTE"}
        facts = RemoteWriteTarget("shared", client).apply(
            WriteOperation.CORRECT, {"fact_id": "01OLD", "content": "new text"}
        )
        client.correct_fact.assert_called_once_with("01OLD", "new text")
        assert facts[0].id == "01NEWREMOTE"

    def test_bulk_vote_signs(self):
        client = Mock(spec=RemoteClient)
        client.bulk_vote.return_value = {"failed": 0}
        RemoteWriteTarget("shared", client).apply(
            WriteOperation.BULK_VOTE, {"votes": [{"fact_id": "A", "vote": 1}, {"fact_id": "B", "vote": -1}]}
        )
        sent = client.bulk_vote.call_args[0][0]
        assert [v["vote"] for v in sent] == ["+1", "-1"]

    def test_bulk_vote_partial_failure(self):
        client = Mock(spec=RemoteClient)
        client.bulk_vote.return_value = {"failed": 1, "errors": ["B: not found"]}
        with pytest.raises(RemoteError):
            RemoteWriteTarget("shared", client).apply(
                WriteOperation.BULK_VOTE, {"votes": [{"fact_id": "A", "vote": 1}, {"fact_id": "B", "vote": -1}]}
            )

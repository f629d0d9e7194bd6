"""
Remote client — HTTP access to meh servers and the knowledge bases they host

Blocking requests; the federated coordinator supplies concurrency.
The API key is read from the environment variable the server config names
and sent as X-API-Key.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from ..config import ServerConfig
from ..errors import NotFound, RemoteError, Timeout
from ..core.fact import Fact, AuthorKind, Status, strip_display_prefix
from ..core.pending import WriteOperation
from ..core.policy import WriteTarget


logger = logging.getLogger(__name__)

USER_AGENT = "meh/0.1"


@dataclass
class RemoteFact:
    """A fact as a remote server reports it."""
    id: str
    path: str
    title: str
    summary: str = ""
    content: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    trust_score: float = 0.0
    status: str = "active"
    created_at: Optional[str] = None
    relevance: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RemoteFact':
        return cls(
            id=strip_display_prefix(str(data.get("id", ""))).upper(),
            path=data.get("path", ""),
            title=data.get("title") or "",
            summary=data.get("summary") or "",
            content=data.get("content"),
            tags=list(data.get("tags") or []),
            trust_score=float(data.get("trust_score") or 0.0),
            status=data.get("status") or "active",
            created_at=data.get("created_at"),
            relevance=float(data["relevance"]) if data.get("relevance") is not None else None,
        )

    def to_fact(self, source: str) -> Fact:
        kwargs = {}
        if self.created_at:
            kwargs["created_at"] = self.created_at
        try:
            status = Status(self.status)
        except ValueError:
            status = Status.ACTIVE
        return Fact(
            id=self.id,
            path=self.path,
            title=self.title,
            content=self.content if self.content is not None else self.summary,
            summary=self.summary,
            tags=list(self.tags),
            author_kind=AuthorKind.AGENT,
            source=source,
            status=status,
            **kwargs,
        )


@dataclass
class RemoteKb:
    """A knowledge base as a server lists it."""
    slug: str
    name: str
    id: str = ""
    description: str = ""
    visibility: str = "public"
    owner_id: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RemoteKb':
        return cls(
            slug=str(data.get("slug", "")),
            name=data.get("name") or "",
            id=str(data.get("id") or ""),
            description=data.get("description") or "",
            visibility=data.get("visibility") or "public",
            owner_id=str(data.get("owner_id") or ""),
            created_at=data.get("created_at") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "id": self.id,
            "description": self.description,
            "visibility": self.visibility,
            "owner_id": self.owner_id,
            "created_at": self.created_at,
        }


class ServerClient:
    """
    Client for one meh server: health and knowledge base management.

    Args:
        server: server settings (url, key env var, timeout)
        session: requests session to reuse (tests pass a mock)
    """

    def __init__(self, server: ServerConfig, session: Optional[requests.Session] = None):
        self.server = server
        self.session = session or requests.Session()

    @property
    def api_url(self) -> str:
        return f"{self.server.url.rstrip('/')}/api/v1"

    @property
    def label(self) -> str:
        return self.server.name

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        key = self.server.api_key
        if key:
            headers["X-API-Key"] = key
        return headers

    def _request(
        self,
        method: str,
        url: str,
        operation: str,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> Any:
        timeout = timeout if timeout is not None else self.server.timeout_secs
        target = self.label
        try:
            r = self.session.request(method, url, headers=self._headers(), timeout=timeout, **kwargs)
        except requests.Timeout as e:
            raise Timeout(f"{target} did not answer within {timeout}s",
                          operation=operation, target=target) from e
        except requests.RequestException as e:
            raise RemoteError(f"{target} unreachable: {e}", operation=operation, target=target) from e

        if r.status_code == 404:
            raise NotFound(f"Not found on {target}: {url}", operation=operation, target=target)
        try:
            r.raise_for_status()
        except requests.HTTPError as e:
            body = (r.text or "")[:200]
            raise RemoteError(
                f"Remote API error ({r.status_code}) from {target}: {body}",
                operation=operation, target=target, status_code=r.status_code,
            ) from e

        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise RemoteError(f"Invalid JSON from {target}", operation=operation, target=target) from e

    def health(self) -> Dict[str, Any]:
        return self._request("GET", f"{self.api_url}/health", "health") or {}

    # -------------------------------------------------------------------------
    # Knowledge bases
    # -------------------------------------------------------------------------

    def list_kbs(self) -> List[RemoteKb]:
        data = self._request("GET", f"{self.api_url}/kbs", "list_kbs")
        items = data.get("knowledge_bases", []) if isinstance(data, dict) else (data or [])
        return [RemoteKb.from_dict(kb) for kb in items]

    def get_kb(self, slug: str) -> RemoteKb:
        data = self._request("GET", f"{self.api_url}/kbs/{slug}", "get_kb")
        return RemoteKb.from_dict(data or {"slug": slug})

    def create_kb(self, slug: str, name: str, description: Optional[str] = None,
                  visibility: str = "public") -> RemoteKb:
        payload: Dict[str, Any] = {"slug": slug, "name": name, "visibility": visibility}
        if description:
            payload["description"] = description
        data = self._request("POST", f"{self.api_url}/kbs", "create_kb", json=payload)
        return RemoteKb.from_dict(data or payload)

    def delete_kb(self, slug: str) -> None:
        self._request("DELETE", f"{self.api_url}/kbs/{slug}", "delete_kb")


class RemoteClient(ServerClient):
    """
    Client for one knowledge base on a remote server.

    Args:
        server: server settings (url, key env var, timeout)
        slug: knowledge base slug on that server
        session: requests session to reuse (tests pass a mock)
    """

    def __init__(self, server: ServerConfig, slug: str, session: Optional[requests.Session] = None):
        super().__init__(server, session=session)
        self.slug = slug

    @property
    def base_url(self) -> str:
        return f"{self.api_url}/kbs/{self.slug}"

    @property
    def label(self) -> str:
        return f"{self.server.name}/{self.slug}"

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def search(
        self,
        query: str,
        limit: int = 20,
        path_prefix: Optional[str] = None,
        tags: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ) -> List[RemoteFact]:
        params: Dict[str, Any] = {"q": query, "limit": limit}
        if path_prefix:
            params["path"] = path_prefix
        if tags:
            params["tags"] = ",".join(tags)
        data = self._request("GET", f"{self.base_url}/search", "search", timeout=timeout, params=params)
        results = data.get("results", []) if isinstance(data, dict) else (data or [])
        logger.debug("remote %s/%s returned %d results", self.server.name, self.slug, len(results))
        return [RemoteFact.from_dict(r) for r in results]

    def get_fact(self, fact_id: str) -> RemoteFact:
        data = self._request("GET", f"{self.base_url}/facts/{fact_id}", "get")
        if isinstance(data, dict) and "fact" in data:
            data = data["fact"]
        return RemoteFact.from_dict(data or {})

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def add_fact(self, path: str, content: str, title: Optional[str] = None,
                 tags: Optional[List[str]] = None) -> Dict[str, Any]:
        payload = {"path": path, "title": title, "content": content, "tags": list(tags or [])}
        return self._request("POST", f"{self.base_url}/facts", "add", json=payload) or {}

    def correct_fact(self, fact_id: str, content: str) -> Dict[str, Any]:
        return self._request("POST", f"{self.base_url}/facts/{fact_id}/correct", "correct",
                             json={"new_content": content}) or {}

    def extend_fact(self, fact_id: str, content: str) -> Dict[str, Any]:
        return self._request("POST", f"{self.base_url}/facts/{fact_id}/extend", "extend",
                             json={"extension": content}) or {}

    def deprecate_fact(self, fact_id: str, reason: str) -> Dict[str, Any]:
        return self._request("POST", f"{self.base_url}/facts/{fact_id}/deprecate", "deprecate",
                             json={"reason": reason or "Deprecated"}) or {}

    def bulk_vote(self, votes: List[Dict[str, Any]]) -> Dict[str, Any]:
        """votes: [{fact_id, vote: "+1"|"-1", reason}]"""
        return self._request("POST", f"{self.base_url}/votes", "bulk_vote", json={"votes": votes}) or {}


class RemoteWriteTarget(WriteTarget):
    """Writes to a remote knowledge base. Not transactional with the queue."""

    def __init__(self, name: str, client: RemoteClient):
        super().__init__(name)
        self.client = client

    def apply(self, operation: WriteOperation, payload: Dict[str, Any],
              apply_token: Optional[str] = None) -> List[Fact]:
        p = payload
        if operation == WriteOperation.ADD:
            response = self.client.add_fact(p["path"], p["content"], title=p.get("title"), tags=p.get("tags"))
        elif operation == WriteOperation.CORRECT:
            response = self.client.correct_fact(p["fact_id"], p["content"])
        elif operation == WriteOperation.EXTEND:
            response = self.client.extend_fact(p["fact_id"], p["content"])
        elif operation == WriteOperation.DEPRECATE:
            response = self.client.deprecate_fact(p["fact_id"], p.get("reason", ""))
        elif operation == WriteOperation.BULK_VOTE:
            votes = [
                {"fact_id": v["fact_id"], "vote": "+1" if v["vote"] > 0 else "-1", "reason": v.get("reason") or None}
                for v in p["votes"]
            ]
            response = self.client.bulk_vote(votes)
            if response.get("failed"):
                raise RemoteError(
                    f"{response['failed']} of {len(votes)} votes failed on {self.name}: "
                    f"{'; '.join(response.get('errors') or [])}",
                    operation="bulk_vote", target=self.name,
                )
            return []
        else:
            raise ValueError(f"Unsupported operation: {operation}")

        if not response.get("id"):
            return []
        data = {"path": p.get("path", ""), "title": p.get("title") or "", "content": p.get("content"), **response}
        return [RemoteFact.from_dict(data).to_fact(source=self.name)]

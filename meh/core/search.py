"""
Search — Full-text plus structured filters over the fact store

Ranking (highest first):
  1. Text relevance (FTS5 bm25, title > tags > path > content)
  2. Trust score (computed at read time)
  3. Recency (ULID, newest first)

Results are paginated with an opaque cursor holding the sort key of the
last hit, and optionally cut to an approximate token budget. The budget
drops whole hits from the tail; it never trims a fact's text.

Detail levels:
  L0  id + path
  L1  + title, trust, source
  L2  + summary
  L3  + content, tags, status, links
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

import orjson

from ..utils.cursor import encode_cursor, decode_cursor
from .fact import Fact, Status, normalize_tags
from .path import normalize_prefix
from .storage import FactStore
from .trust import TrustCalculator


logger = logging.getLogger(__name__)


DEFAULT_LIMIT = 20

# bm25 column weights: fact_id (unindexed), title, content, tags, path
BM25_WEIGHTS = (0.0, 10.0, 1.0, 5.0, 2.0)


class DetailLevel(IntEnum):
    L0 = 0
    L1 = 1
    L2 = 2
    L3 = 3

    @classmethod
    def parse(cls, value) -> 'DetailLevel':
        """Accepts 2, '2', 'L2', 'l2'."""
        if isinstance(value, DetailLevel):
            return value
        text = str(value).strip().upper().lstrip("L")
        return cls(int(text))


def estimate_tokens(text: str) -> int:
    """Rough token estimate (1 token ≈ 4 characters for English)."""
    return len(text) // 4


def build_fts_query(text: Optional[str]) -> Optional[str]:
    """
    Turn free text into an FTS5 OR-query of quoted terms.

    Quoting keeps FTS syntax characters in user input from being parsed.
    """
    if not text:
        return None
    words = re.findall(r"\w+", text)
    if not words:
        return None
    return " OR ".join(f'"{w}"' for w in words)


@dataclass
class SearchQuery:
    text: Optional[str] = None
    path_prefix: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    min_trust: Optional[float] = None
    active_only: bool = False
    include_history: bool = False
    detail: DetailLevel = DetailLevel.L2
    cursor: Optional[str] = None
    limit: int = DEFAULT_LIMIT
    token_budget: Optional[int] = None

    def statuses(self) -> List[str]:
        statuses = [Status.ACTIVE.value]
        if not self.active_only:
            statuses.append(Status.DEPRECATED.value)
        if self.include_history:
            statuses.append(Status.SUPERSEDED.value)
        return statuses


@dataclass
class SearchHit:
    fact: Fact
    relevance: float
    trust: float
    source: str = "local"

    def cursor_key(self) -> Dict[str, Any]:
        return {"r": self.relevance, "t": self.trust, "id": self.fact.id}

    def to_dict(self, detail: DetailLevel = DetailLevel.L2) -> Dict[str, Any]:
        fact = self.fact
        data: Dict[str, Any] = {"id": fact.display_id, "path": fact.path}
        if detail >= DetailLevel.L1:
            data["title"] = fact.title
            data["trust"] = round(self.trust, 2)
            data["source"] = self.source
        if detail >= DetailLevel.L2:
            data["summary"] = fact.summary
        if detail >= DetailLevel.L3:
            data.update({
                "content": fact.content,
                "tags": list(fact.tags),
                "status": fact.status.value,
                "fact_type": fact.fact_type.value,
                "author_kind": fact.author_kind.value,
                "created_at": fact.created_at,
                "supersedes": fact.supersedes,
                "extends": fact.extends,
                "deprecation_reason": fact.deprecation_reason,
                "confirmations": fact.confirmations,
                "relevance": self.relevance,
            })
        return data

    def token_cost(self, detail: DetailLevel) -> int:
        return estimate_tokens(orjson.dumps(self.to_dict(detail)).decode())


@dataclass
class SearchResponse:
    hits: List[SearchHit]
    detail: DetailLevel = DetailLevel.L2
    next_cursor: Optional[str] = None
    truncated: bool = False
    total: int = 0
    onboarding: Optional[Fact] = None
    unread_notifications: int = 0

    @property
    def facts(self) -> List[Fact]:
        return [h.fact for h in self.hits]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "results": [h.to_dict(self.detail) for h in self.hits],
            "total": self.total,
            "next_cursor": self.next_cursor,
            "truncated": self.truncated,
            "unread_notifications": self.unread_notifications,
        }
        if self.onboarding is not None:
            data["onboarding"] = {
                "id": self.onboarding.display_id,
                "path": self.onboarding.path,
                "title": self.onboarding.title,
                "content": self.onboarding.content,
            }
        return data


def rank(hits: List[SearchHit]) -> List[SearchHit]:
    """Relevance desc, trust desc, id desc (two stable passes)."""
    ordered = sorted(hits, key=lambda h: h.fact.id, reverse=True)
    ordered.sort(key=lambda h: (-h.relevance, -h.trust))
    return ordered


def comes_after(hit: SearchHit, key: Dict[str, Any]) -> bool:
    """True when `hit` sorts strictly after the cursor key."""
    if hit.relevance != key["r"]:
        return hit.relevance < key["r"]
    if hit.trust != key["t"]:
        return hit.trust < key["t"]
    return hit.fact.id < key["id"]


def truncate_to_budget(
    hits: List[SearchHit],
    budget: Optional[int],
    detail: DetailLevel,
) -> Tuple[List[SearchHit], bool]:
    """
    Keep leading hits while their estimated size fits the budget.

    The first hit is always kept so a tight budget still answers.
    Returns (kept, truncated).
    """
    if not budget or budget <= 0:
        return hits, False
    kept: List[SearchHit] = []
    used = 0
    for hit in hits:
        cost = hit.token_cost(detail)
        if kept and used + cost > budget:
            return kept, True
        kept.append(hit)
        used += cost
    return kept, False


def paginate(
    ranked: List[SearchHit],
    cursor: Optional[str],
    limit: int,
    budget: Optional[int],
    detail: DetailLevel,
) -> Tuple[List[SearchHit], Optional[str], bool]:
    """
    Slice a ranked list after `cursor`, then apply limit and budget.

    Returns (page, next_cursor, truncated_by_budget).
    """
    key = decode_cursor(cursor, required=("r", "t", "id"))
    remaining = [h for h in ranked if comes_after(h, key)] if key else ranked

    limit = max(1, limit)
    page = remaining[:limit]
    page, truncated = truncate_to_budget(page, budget, detail)

    next_cursor = None
    if page and len(remaining) > len(page):
        next_cursor = encode_cursor(page[-1].cursor_key())
    return page, next_cursor, truncated


class SearchEngine:
    """Evaluates SearchQuery against one FactStore."""

    def __init__(self, store: FactStore, trust: Optional[TrustCalculator] = None,
                 weights: Tuple[float, ...] = BM25_WEIGHTS):
        self.store = store
        self.trust = trust or TrustCalculator()
        self.weights = weights

    def ranked(self, query: SearchQuery, now: Optional[datetime] = None) -> List[SearchHit]:
        """Every matching hit in rank order (no pagination)."""
        now = now or self.store.now()
        fts_query = build_fts_query(query.text)
        prefix = normalize_prefix(query.path_prefix)
        tags = normalize_tags(query.tags)

        with self.store.read() as conn:
            pairs = self.store.candidates(
                conn, fts_query, prefix, tags, query.statuses(), self.weights
            )

        hits = [
            SearchHit(fact=fact, relevance=round(relevance, 6), trust=self.trust.score(fact, now))
            for fact, relevance in pairs
        ]
        if query.min_trust is not None:
            hits = [h for h in hits if h.trust >= query.min_trust]

        logger.debug("search %r matched %d facts", query.text, len(hits))
        return rank(hits)

    def search(self, query: SearchQuery, now: Optional[datetime] = None) -> SearchResponse:
        hits = self.ranked(query, now=now)
        page, next_cursor, truncated = paginate(
            hits, query.cursor, query.limit, query.token_budget, query.detail
        )
        return SearchResponse(
            hits=page,
            detail=query.detail,
            next_cursor=next_cursor,
            truncated=truncated,
            total=len(hits),
        )

"""
Federated Query Coordinator — One query, many knowledge bases

Fan-out:
- local (sqlite) sources run synchronously in the caller's thread
- remote sources run concurrently on a thread pool, each with its own
  timeout, all under one overall deadline
- a remote still running at the deadline is abandoned, not cancelled mid-call

Merge:
- relevance is min-max normalized per source (remote hits without a score
  use their rank position), so scores from different stores compare
- ordered by relevance, trust, recency (ULID), then search-order position
- a fact id seen in several sources keeps its first source in search order

Failures never fail the query: each lands in the PartialFailure manifest.

Results are one page of at most `limit` hits; there is no resume cursor.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, Future, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..errors import PartialFailure
from ..core.fact import normalize_tags
from ..core.path import KnowledgePath, normalize_prefix
from ..core.search import (
    SearchEngine, SearchHit, SearchQuery, DetailLevel, truncate_to_budget,
)
from ..core.trust import TrustCalculator
from .remote import RemoteClient
from .task import SourceTask, SourceKind, SourceResult, run_task


logger = logging.getLogger(__name__)


# =============================================================================
# Sources
# =============================================================================

class Source:
    """A knowledge base that can answer a search."""

    kind = SourceKind.LOCAL

    def __init__(self, name: str):
        self.name = name

    def search(self, query: SearchQuery, limit: int, timeout: float, now: datetime) -> List[SearchHit]:
        raise NotImplementedError


class LocalSource(Source):
    """A sqlite knowledge base."""

    def __init__(self, name: str, engine: SearchEngine, origin: str = "local"):
        super().__init__(name)
        self.engine = engine
        self.origin = origin

    def search(self, query: SearchQuery, limit: int, timeout: float, now: datetime) -> List[SearchHit]:
        hits = self.engine.ranked(replace(query, cursor=None), now=now)[:limit]
        for hit in hits:
            hit.source = self.name
            if self.origin != hit.fact.source:
                hit.trust = self.engine.trust.score(hit.fact, now, origin=self.origin)
        return hits


class RemoteSource(Source):
    """A knowledge base on a meh server."""

    kind = SourceKind.REMOTE

    def __init__(self, name: str, client: RemoteClient, trust: Optional[TrustCalculator] = None):
        super().__init__(name)
        self.client = client
        self.trust = trust or TrustCalculator()

    @property
    def timeout(self) -> float:
        return self.client.server.timeout_secs

    def search(self, query: SearchQuery, limit: int, timeout: float, now: datetime) -> List[SearchHit]:
        required = set(normalize_tags(query.tags))
        statuses = set(query.statuses())
        prefix = normalize_prefix(query.path_prefix)
        scope = KnowledgePath.parse(prefix) if prefix else None
        results = self.client.search(
            query.text or "", limit=limit, path_prefix=query.path_prefix,
            tags=sorted(required), timeout=timeout,
        )
        hits = []
        for remote in results:
            # The server may ignore filters it does not support
            fact = remote.to_fact(source=self.name)
            if scope is not None:
                path = KnowledgePath.try_parse(remote.path)
                if path is None or not path.is_within(scope):
                    continue
            if fact.status.value not in statuses:
                continue
            if not required <= {t.strip().lower().lstrip('#') for t in remote.tags}:
                continue
            trust = self.trust.federated(remote.trust_score)
            if query.min_trust is not None and trust < query.min_trust:
                continue
            hits.append(SearchHit(
                fact=fact,
                relevance=remote.relevance if remote.relevance is not None else float("nan"),
                trust=trust,
                source=self.name,
            ))
        return hits


# =============================================================================
# Response
# =============================================================================

@dataclass
class FederatedResponse:
    hits: List[SearchHit]
    detail: DetailLevel = DetailLevel.L2
    truncated: bool = False
    total: int = 0
    failures: PartialFailure = field(default_factory=PartialFailure)
    results: List[SourceResult] = field(default_factory=list)

    @property
    def sources(self) -> List[str]:
        """Sources that answered."""
        return [r.source for r in self.results if r.success]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "results": [h.to_dict(self.detail) for h in self.hits],
            "total": self.total,
            "truncated": self.truncated,
            "sources": self.sources,
        }
        if self.failures:
            data["partial_failure"] = self.failures.to_dict()
        return data


# =============================================================================
# Coordinator
# =============================================================================

class FederatedCoordinator:
    """
    Args:
        sources: in search order (earlier wins ties and duplicates)
        max_workers: remote calls in flight at once
        timeout: per-remote cap in seconds (a server's own timeout may be lower)
        deadline: overall wait for remote sources, in seconds
    """

    def __init__(self, sources: List[Source], max_workers: int = 4,
                 timeout: float = 5.0, deadline: float = 10.0):
        self.sources = sources
        self.max_workers = max_workers
        self.timeout = timeout
        self.deadline = deadline

    def search(self, query: SearchQuery, now: Optional[datetime] = None) -> FederatedResponse:
        """
        Raises:
            InvalidPath: malformed prefix or tag (before any fan-out)
            ValueError: a cursor was given
        """
        # Query errors are the caller's, not a source failure
        if query.cursor:
            raise ValueError("Federated search returns a single page; cursors are not supported")
        normalize_prefix(query.path_prefix)
        normalize_tags(query.tags)

        now = now or datetime.now(timezone.utc)
        tasks = self._tasks(query, now)
        results = self._run(tasks)

        failures = PartialFailure()
        for result in results:
            if not result.success:
                failures.add(result.source, result.error_kind, result.error)
                logger.warning("federated source %s failed (%s): %s",
                               result.source, result.error_kind, result.error)

        merged = merge([r for r in results if r.success])
        page = merged[:max(1, query.limit)]
        page, truncated = truncate_to_budget(page, query.token_budget, query.detail)
        return FederatedResponse(
            hits=page,
            detail=query.detail,
            truncated=truncated,
            total=len(merged),
            failures=failures,
            results=results,
        )

    def _tasks(self, query: SearchQuery, now: datetime) -> List[SourceTask]:
        limit = max(1, query.limit)
        tasks = []
        for position, source in enumerate(self.sources):
            timeout = self.timeout
            if source.kind == SourceKind.REMOTE:
                timeout = min(getattr(source, "timeout", timeout), self.timeout)
            tasks.append(SourceTask(
                source=source.name,
                kind=source.kind,
                fn=lambda s=source, t=timeout: s.search(query, limit, t, now),
                position=position,
                timeout=timeout,
            ))
        return tasks

    def _run(self, tasks: List[SourceTask]) -> List[SourceResult]:
        remote = [t for t in tasks if t.is_remote]
        results: List[SourceResult] = []

        executor = None
        futures: Dict[Future, SourceTask] = {}
        started = time.monotonic()
        if remote:
            executor = ThreadPoolExecutor(
                max_workers=max(1, min(self.max_workers, len(remote))),
                thread_name_prefix="meh-federation-",
            )
            futures = {executor.submit(run_task, t): t for t in remote}

        try:
            for task in tasks:
                if not task.is_remote:
                    results.append(run_task(task))

            if futures:
                remaining = max(0.0, self.deadline - (time.monotonic() - started))
                done, not_done = wait(futures, timeout=remaining)
                for future in done:
                    results.append(future.result())
                for future in not_done:
                    task = futures[future]
                    future.cancel()
                    results.append(SourceResult(
                        task_id=task.id,
                        source=task.source,
                        position=task.position,
                        error_kind="timeout",
                        error=f"no answer within the {self.deadline}s federated deadline",
                    ))
        finally:
            if executor is not None:
                executor.shutdown(wait=False, cancel_futures=True)

        results.sort(key=lambda r: r.position)
        return results


def normalize_relevance(hits: List[SearchHit]) -> List[float]:
    """
    Min-max scale a source's relevance into [0, 1].

    Hits without a score (NaN) are scored by rank position instead.
    """
    if not hits:
        return []
    scores = [h.relevance for h in hits]
    if any(s != s for s in scores):  # NaN present
        n = len(hits)
        return [1.0 - (i / n) for i in range(n)]
    low, high = min(scores), max(scores)
    if high == low:
        return [1.0] * len(scores)
    return [round((s - low) / (high - low), 6) for s in scores]


def merge(results: List[SourceResult]) -> List[SearchHit]:
    """Normalize, de-duplicate by fact id (first source wins) and rank."""
    seen = set()
    merged = []
    positions: Dict[int, int] = {}
    for result in sorted(results, key=lambda r: r.position):
        for hit, score in zip(result.hits, normalize_relevance(result.hits)):
            if hit.fact.id in seen:
                continue
            seen.add(hit.fact.id)
            normalized = SearchHit(fact=hit.fact, relevance=score, trust=hit.trust, source=hit.source)
            positions[id(normalized)] = result.position
            merged.append(normalized)

    merged.sort(key=lambda h: positions[id(h)])
    merged.sort(key=lambda h: h.fact.id, reverse=True)
    merged.sort(key=lambda h: (-h.relevance, -h.trust))
    return merged

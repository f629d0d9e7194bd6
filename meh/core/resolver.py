"""
Reference Resolver — Turn what a user typed into a fact

Accepts:
- Full id (exact match), with or without the 'meh-' display prefix
- Id prefix (4+ characters)
- Path ('@...'), resolving to the current head at that path

Misses carry "did you mean" suggestions (rapidfuzz over known paths) so
the error itself tells the user what to try next.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from rapidfuzz import process, fuzz

from ..errors import NotFound, AmbiguousReference, InvalidPath
from .fact import Fact, strip_display_prefix
from .path import ROOT_MARKER
from .storage import FactStore


class ResolveStatus(Enum):
    """Resolution outcome."""
    FOUND = "found"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"


@dataclass
class ResolveResult:
    """Result of reference resolution."""
    status: ResolveStatus
    fact: Optional[Fact] = None
    candidates: List[str] = field(default_factory=list)
    query: str = ""


class FactResolver:
    """
    Resolution strategies (in order):
    1. Path, when the reference starts with '@'
    2. Exact id
    3. Id prefix (4+ chars)
    """

    def __init__(self, store: FactStore, min_prefix_length: int = 4, max_suggestions: int = 5):
        self.store = store
        self.min_prefix_length = min_prefix_length
        self.max_suggestions = max_suggestions

    def resolve(self, query: str) -> ResolveResult:
        query = query.strip()

        if query.startswith(ROOT_MARKER):
            try:
                fact = self.store.resolve_path(query)
            except InvalidPath:
                fact = None
            if fact:
                return ResolveResult(status=ResolveStatus.FOUND, fact=fact, query=query)
            return ResolveResult(
                status=ResolveStatus.NOT_FOUND,
                candidates=self.suggest_paths(query),
                query=query,
            )

        ref = strip_display_prefix(query).upper()
        fact = self.store.find(ref)
        if fact:
            return ResolveResult(status=ResolveStatus.FOUND, fact=fact, query=query)

        if len(ref) >= self.min_prefix_length:
            matches = self.store.ids_with_prefix(ref, limit=10)
            if len(matches) == 1:
                return ResolveResult(
                    status=ResolveStatus.FOUND, fact=self.store.find(matches[0]), query=query
                )
            if len(matches) > 1:
                return ResolveResult(status=ResolveStatus.AMBIGUOUS, candidates=matches, query=query)

        return ResolveResult(status=ResolveStatus.NOT_FOUND, query=query)

    def require(self, query: str, operation: str = "resolve") -> Fact:
        """
        Like resolve(), raising on anything but a single match.

        Raises:
            NotFound: nothing matches (suggestions attached)
            AmbiguousReference: prefix matches several facts
        """
        result = self.resolve(query)
        if result.status == ResolveStatus.FOUND:
            return result.fact
        if result.status == ResolveStatus.AMBIGUOUS:
            raise AmbiguousReference(
                f"'{query}' matches {len(result.candidates)} facts; use more characters",
                operation=operation, target=query,
                suggestions=[f"meh-{c}" for c in result.candidates],
            )
        raise NotFound(
            f"No fact matches '{query}'",
            operation=operation, target=query, suggestions=result.candidates,
        )

    def suggest_paths(self, query: str) -> List[str]:
        """Known paths closest to `query`."""
        paths = self.store.all_paths()
        if not paths:
            return []
        matches = process.extract(
            query, paths, scorer=fuzz.WRatio, limit=self.max_suggestions, score_cutoff=60
        )
        return [m[0] for m in matches]


def format_resolve_error(error: NotFound) -> str:
    """Error message plus suggestions, for CLI display."""
    lines = [error.message]
    if error.suggestions:
        label = "Candidates" if isinstance(error, AmbiguousReference) else "Did you mean"
        lines.append(f"{label}:")
        lines.extend(f"  {s}" for s in error.suggestions)
    return "\n".join(lines)

"""
Errors — The failure vocabulary shared by every meh operation

Each error carries the attempted operation and its target (id, path, or
knowledge base name) so callers can act on it without parsing messages.

Kinds:
- NotFound: unknown id or path (with fuzzy suggestions)
- InvalidPath: malformed path, tag, or resume token
- AlreadySuperseded: fact no longer in the state the operation requires
- AlreadyResolved: pending item already approved/rejected, or write already applied
- WriteForbidden: target knowledge base has write mode 'deny'
- Timeout: remote source or storage busy-wait exceeded
- RemoteError: remote knowledge base unreachable or answered with an error

PartialFailure is not raised. It is a manifest returned next to federated
results naming every source that was excluded from the merge.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class MehError(Exception):
    """Base class for all meh errors."""

    kind = "error"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        target: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.target = target

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "operation": self.operation,
            "target": self.target,
        }


class NotFound(MehError):
    """Unknown id or path."""

    kind = "not_found"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        target: Optional[str] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message, operation=operation, target=target)
        self.suggestions = list(suggestions or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["suggestions"] = self.suggestions
        return data


class AmbiguousReference(NotFound):
    """An id prefix matched more than one fact."""

    kind = "ambiguous"


class InvalidPath(MehError):
    kind = "invalid_path"


class AlreadySuperseded(MehError):
    kind = "already_superseded"


class AlreadyResolved(MehError):
    kind = "already_resolved"


class WriteForbidden(MehError):
    kind = "write_forbidden"


class Timeout(MehError):
    kind = "timeout"


class RemoteError(MehError):
    """A remote knowledge base answered with an error or could not be reached."""

    kind = "remote_error"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        target: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, operation=operation, target=target)
        self.status_code = status_code


@dataclass
class SourceFailure:
    """One federated source excluded from a merge."""
    source: str
    kind: str       # "timeout" | "error" | "config"
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"source": self.source, "kind": self.kind, "message": self.message}


@dataclass
class PartialFailure:
    """
    Manifest of sources that failed during a federated query.

    Falsy when every source answered.
    """
    failures: List[SourceFailure] = field(default_factory=list)

    kind = "partial_failure"

    def add(self, source: str, kind: str, message: str) -> None:
        self.failures.append(SourceFailure(source=source, kind=kind, message=message))

    @property
    def sources(self) -> List[str]:
        return [f.source for f in self.failures]

    def __bool__(self) -> bool:
        return bool(self.failures)

    def __len__(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "failures": [f.to_dict() for f in self.failures],
        }

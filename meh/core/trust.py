"""
Trust Scoring — Confidence in [0, 1] derived at read time

    trust = clamp(base(author) * origin(source)
                  - age_decay(now - created_at)
                  + confirmation_boost(confirmations), 0, 1)

then scaled down for deprecated/superseded facts. Nothing here is stored
and nothing reads the clock: `now` is always supplied by the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from .fact import Fact, AuthorKind, Status, parse_timestamp


@dataclass
class TrustConfig:
    """Tunable constants. Defaults mirror the `trust:` config section."""
    author_base: Dict[str, float] = field(default_factory=lambda: {
        "human": 0.8,
        "agent": 0.5,
        "system": 0.6,
    })
    origin_factor: Dict[str, float] = field(default_factory=lambda: {
        "local": 1.0,
        "company": 0.95,
        "remote": 0.8,
        "global": 0.7,
    })
    unknown_origin_factor: float = 0.7
    grace_days: float = 90.0
    decay_per_day: float = 0.005
    confirmation_step: float = 0.1
    confirmation_cap: float = 0.5
    deprecated_factor: float = 0.5
    superseded_factor: float = 0.3

    def validate(self) -> Optional[str]:
        """Validate config. Returns error message or None if valid."""
        for name, value in self.author_base.items():
            if not 0.0 <= value <= 1.0:
                return f"trust.author_base.{name} must be within [0, 1], got {value}"
        for name, value in self.origin_factor.items():
            if value < 0.0:
                return f"trust.origin_factor.{name} must be >= 0, got {value}"
        if self.grace_days < 0 or self.decay_per_day < 0:
            return "trust.grace_days and trust.decay_per_day must be >= 0"
        if self.confirmation_step < 0 or self.confirmation_cap < 0:
            return "trust.confirmation_step and trust.confirmation_cap must be >= 0"
        return None

    @classmethod
    def from_dict(cls, data: Dict) -> 'TrustConfig':
        defaults = cls()
        return cls(
            author_base={**defaults.author_base, **(data.get("author_base") or {})},
            origin_factor={**defaults.origin_factor, **(data.get("origin_factor") or {})},
            unknown_origin_factor=float(data.get("unknown_origin_factor", defaults.unknown_origin_factor)),
            grace_days=float(data.get("grace_days", defaults.grace_days)),
            decay_per_day=float(data.get("decay_per_day", defaults.decay_per_day)),
            confirmation_step=float(data.get("confirmation_step", defaults.confirmation_step)),
            confirmation_cap=float(data.get("confirmation_cap", defaults.confirmation_cap)),
            deprecated_factor=float(data.get("deprecated_factor", defaults.deprecated_factor)),
            superseded_factor=float(data.get("superseded_factor", defaults.superseded_factor)),
        )

    def to_dict(self) -> Dict:
        return {
            "author_base": dict(self.author_base),
            "origin_factor": dict(self.origin_factor),
            "unknown_origin_factor": self.unknown_origin_factor,
            "grace_days": self.grace_days,
            "decay_per_day": self.decay_per_day,
            "confirmation_step": self.confirmation_step,
            "confirmation_cap": self.confirmation_cap,
            "deprecated_factor": self.deprecated_factor,
            "superseded_factor": self.superseded_factor,
        }


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class TrustCalculator:
    """Stateless apart from its constants; safe to share."""

    def __init__(self, config: Optional[TrustConfig] = None):
        self.config = config or TrustConfig()

    def base(self, author_kind: AuthorKind) -> float:
        return self.config.author_base.get(author_kind.value, self.config.author_base["agent"])

    def origin(self, source: str) -> float:
        return self.config.origin_factor.get(source, self.config.unknown_origin_factor)

    def age_decay(self, age_days: float) -> float:
        if age_days <= self.config.grace_days:
            return 0.0
        return (age_days - self.config.grace_days) * self.config.decay_per_day

    def confirmation_boost(self, confirmations: int) -> float:
        if confirmations <= 0:
            return 0.0
        return min(confirmations * self.config.confirmation_step, self.config.confirmation_cap)

    def score_parts(
        self,
        author_kind: AuthorKind,
        source: str,
        created_at: datetime,
        confirmations: int,
        now: datetime,
        status: Status = Status.ACTIVE,
    ) -> float:
        age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
        raw = (
            self.base(author_kind) * self.origin(source)
            - self.age_decay(age_days)
            + self.confirmation_boost(confirmations)
        )
        if status == Status.DEPRECATED:
            raw *= self.config.deprecated_factor
        elif status == Status.SUPERSEDED:
            raw *= self.config.superseded_factor
        return round(clamp(raw), 6)

    def score(self, fact: Fact, now: datetime, origin: Optional[str] = None) -> float:
        """
        Trust for a fact as seen at `now`.

        Args:
            fact: Fact with `confirmations` already populated
            now: Evaluation time (timezone-aware)
            origin: Override the fact's own source label (e.g. "remote")
        """
        return self.score_parts(
            author_kind=fact.author_kind,
            source=origin or fact.source,
            created_at=parse_timestamp(fact.created_at),
            confirmations=fact.confirmations,
            now=now,
            status=fact.status,
        )

    def federated(self, reported: float) -> float:
        """Discount a score reported by a remote store."""
        return round(clamp(reported * self.origin("remote")), 6)

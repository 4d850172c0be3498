"""Record types for tracked queries, observations and pairwise deltas."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

# AI answer panel tri-state. parse_error is a distinct state, not "unknown".
AI_STATUS_PRESENT = "present"
AI_STATUS_ABSENT = "absent"
AI_STATUS_PARSE_ERROR = "parse_error"
AI_STATUSES = (AI_STATUS_PRESENT, AI_STATUS_ABSENT, AI_STATUS_PARSE_ERROR)


@dataclass(frozen=True)
class TrackedQuery:
    """A (query, locale, device) combination a tenant has asked us to observe."""

    id: str
    tenant_id: str
    query: str
    locale: str
    device: str  # "desktop" or "mobile"
    is_primary: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.query, self.locale, self.device)


@dataclass(frozen=True)
class Observation:
    """One immutable SERP capture for a tracked query's key."""

    id: str
    tenant_id: str
    query: str
    locale: str
    device: str
    captured_at: datetime
    raw_payload: Any
    ai_status: str = AI_STATUS_ABSENT
    ai_text: Optional[str] = None
    valid_at: Optional[datetime] = None  # None = same as captured_at
    source: str = "unknown"

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.query, self.locale, self.device)

    def sort_key(self) -> Tuple[datetime, str]:
        """Ledger order: captured_at ASC, id ASC."""
        return (self.captured_at, self.id)


@dataclass
class Delta:
    """Difference between two time-adjacent observations of the same key."""

    from_id: str
    to_id: str
    from_captured_at: datetime
    to_captured_at: datetime
    # url -> (rank_from, rank_to); only URLs with a non-null rank on at least
    # one side. A missing side is None.
    url_ranks: Dict[str, Tuple[Optional[float], Optional[float]]] = field(default_factory=dict)
    # url -> |rank_from - rank_to| for URLs ranked on both sides
    rank_shifts: Dict[str, float] = field(default_factory=dict)
    from_features: Tuple[str, ...] = ()
    to_features: Tuple[str, ...] = ()
    feature_churn: int = 0
    ai_flipped: bool = False
    parse_warning: bool = False

    @property
    def average_shift(self) -> float:
        if not self.rank_shifts:
            return 0.0
        return sum(self.rank_shifts.values()) / len(self.rank_shifts)

    @property
    def max_shift(self) -> float:
        if not self.rank_shifts:
            return 0
        return max(self.rank_shifts.values())

    def present_on_both(self, url: str) -> bool:
        return url in self.rank_shifts

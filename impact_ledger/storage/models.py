"""
Data models for storage layer.

Defines ledger entities. Monetary amounts are stored as integers in units
of 1e-8 and trees in units of 1e-6 so that increments and sums are exact;
the models below expose them as Decimal.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

MONEY_DECIMALS = 8
TREES_DECIMALS = 6


def to_units(value: Decimal, decimals: int) -> int:
    """Convert a Decimal amount into integer storage units."""
    return int(Decimal(value).scaleb(decimals).to_integral_value())


def from_units(units: Optional[int], decimals: int) -> Decimal:
    """Convert integer storage units back into a Decimal amount."""
    return Decimal(units or 0).scaleb(-decimals)


class EventStatus(Enum):
    """Lifecycle of a usage event."""
    DRAFT = "draft"  # Tokens computed, nothing written
    PERSISTED = "persisted"  # Event row exists, aggregates not yet updated
    AGGREGATED = "aggregated"  # Session, user and global aggregates updated
    MILESTONE_CHECKED = "milestone_checked"  # Terminal


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one AI interaction and its impact.

    Financial columns are written once and never recomputed, so a later
    change of rates does not alter historical figures.
    """
    id: str
    user_id: str
    session_id: str
    model: str
    input_tokens: int
    output_tokens: int
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    donation: Decimal
    trees: Decimal
    rates_version: str
    created_at: datetime
    response_time_ms: Optional[int] = None
    status: EventStatus = EventStatus.DRAFT

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class SessionAggregate:
    """Per-conversation counters."""
    id: str
    user_id: str
    conversation_key: str
    title: Optional[str]
    message_count: int
    total_tokens: int
    total_cost: Decimal
    total_trees: Decimal
    last_applied_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class UserAggregate:
    """Per-user lifetime counters and preferences."""
    id: str
    email: str
    full_name: Optional[str]
    total_queries: int
    total_input_tokens: int
    total_output_tokens: int
    total_cost: Decimal
    total_donated: Decimal
    trees_planted: Decimal
    preferred_model: str
    selected_charity: str
    last_applied_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    # Bumped on every change to the totals; orders snapshots of this row
    revision: int = 0


@dataclass(frozen=True)
class GlobalAggregate:
    """Singleton counters across all users."""
    total_users: int
    total_queries: int
    total_trees: Decimal
    trees_this_week: Decimal
    total_donated: Decimal
    updated_at: datetime


@dataclass(frozen=True)
class Milestone:
    """A tree threshold a user has crossed; recorded at most once."""
    user_id: str
    threshold: int
    achieved_at: datetime

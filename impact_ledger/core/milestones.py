"""
Milestone detection for cumulative tree totals.

Thresholds are compared against whole trees only, so a total of 4.99
has not reached the 5-tree milestone.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional, Tuple

MILESTONE_TABLE_VERSION = 1


@dataclass(frozen=True)
class MilestoneDefinition:
    """One tree-count threshold and the copy shown when it is crossed."""
    trees: int
    message: str
    description: str


MILESTONE_TABLE: Tuple[MilestoneDefinition, ...] = (
    MilestoneDefinition(1, "Amazing! You planted your first tree!",
                        "Your questions are making a real difference"),
    MilestoneDefinition(5, "You're growing a grove!",
                        "5 trees will absorb 125kg of CO2 over their lifetime"),
    MilestoneDefinition(25, "Forest guardian!",
                        "25 trees provide oxygen for 2 people for a year"),
    MilestoneDefinition(100, "Forest legend!",
                        "100 trees create habitat for countless wildlife"),
    MilestoneDefinition(500, "Woodland architect!",
                        "500 trees restore a small woodland"),
    MilestoneDefinition(1000, "Thousand-tree champion!",
                        "1000 trees are a forest in the making"),
)

MILESTONE_THRESHOLDS: Tuple[int, ...] = tuple(m.trees for m in MILESTONE_TABLE)


@dataclass(frozen=True)
class MilestoneProgress:
    """Distance from a total to the next threshold."""
    current_trees: Decimal
    next_milestone: Optional[MilestoneDefinition]
    trees_remaining: Decimal


def _whole(total) -> int:
    return int(Decimal(total).to_integral_value(rounding=ROUND_FLOOR))


def check_milestone(previous_total, new_total) -> Optional[MilestoneDefinition]:
    """Return the first threshold crossed between two totals, if any."""
    crossed = crossed_milestones(previous_total, new_total)
    return crossed[0] if crossed else None


def crossed_milestones(previous_total, new_total) -> List[MilestoneDefinition]:
    """Return every threshold T with floor(previous) < T <= floor(new).

    A single large event may cross several thresholds at once; all of
    them are returned in ascending order.
    """
    previous_whole = _whole(previous_total)
    new_whole = _whole(new_total)
    if new_whole <= previous_whole:
        return []
    return [
        milestone for milestone in MILESTONE_TABLE
        if previous_whole < milestone.trees <= new_whole
    ]


def reached_milestones(total) -> List[MilestoneDefinition]:
    """Return every threshold a total has reached."""
    whole = _whole(total)
    return [milestone for milestone in MILESTONE_TABLE if milestone.trees <= whole]


def next_milestone(total) -> MilestoneProgress:
    """Describe progress from a total to the next unreached threshold."""
    total = Decimal(total)
    whole = _whole(total)
    for milestone in MILESTONE_TABLE:
        if milestone.trees > whole:
            return MilestoneProgress(
                current_trees=total,
                next_milestone=milestone,
                trees_remaining=Decimal(milestone.trees) - total
            )
    return MilestoneProgress(
        current_trees=total,
        next_milestone=None,
        trees_remaining=Decimal("0")
    )


def milestone_table() -> dict:
    """Versioned threshold table for clients rendering progress."""
    return {
        "version": MILESTONE_TABLE_VERSION,
        "milestones": [
            {"trees": m.trees, "message": m.message, "description": m.description}
            for m in MILESTONE_TABLE
        ],
    }

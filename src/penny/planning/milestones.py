"""
Milestones - linear weekly schedules for savings goals
"""

import math
import uuid
from datetime import datetime, timedelta
from typing import List

from penny.core.models import Goal, Milestone

WEEKS_PER_MONTH = 4
DAYS_PER_MONTH = 30


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def generate_milestones(target_amount: float, months: float) -> List[Milestone]:
    """
    Build a linear (not compounding) weekly schedule.

    weeks = months * 4 and milestone i targets round(target / weeks * i).
    When the weekly step is under one unit the targets are kept to cents so
    they stay strictly increasing. The final milestone is the goal target.

    Args:
        target_amount: Goal amount
        months: Timeframe in months

    Returns:
        Milestones for weeks 1..weeks; empty for non-positive inputs
    """
    weeks = int(round(months * WEEKS_PER_MONTH))
    if weeks <= 0 or target_amount <= 0:
        return []

    weekly_target = target_amount / weeks
    digits = 0 if weekly_target >= 1 else 2

    milestones = [
        Milestone(week=i, target_amount=_round_half_up(weekly_target * i, digits))
        for i in range(1, weeks + 1)
    ]
    milestones[-1].target_amount = target_amount
    return milestones


def build_goal(name: str, target_amount: float, timeframe_months: float, priority: str,
               now: datetime) -> Goal:
    """Create a pending goal with its milestone schedule and deadline."""
    return Goal(
        id=f"goal_{uuid.uuid4().hex[:12]}",
        name=name,
        target_amount=target_amount,
        current_amount=0.0,
        deadline=now + timedelta(days=timeframe_months * DAYS_PER_MONTH),
        priority=priority,
        status="pending",
        milestones=generate_milestones(target_amount, timeframe_months),
    )


def milestone_due_date(created_at: datetime, milestone: Milestone) -> datetime:
    """Scheduled start of a milestone's week, counted from agent creation."""
    return created_at + timedelta(days=(milestone.week - 1) * 7)

"""
Derived statistics over the receipt log.

Everything here is a pure function of the receipts, the bounties and a time
filter, evaluated against an explicit ``now`` so results are reproducible.
"""

import math
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta
from typing import Dict, List, Literal, Mapping, Optional, Sequence

from .date_keys import parse_receipt_date, extract_hour
from .models import (
    Receipt, Bounty, SELF_USER,
    BountyWindow, ConceptPerformance, LeaderboardEntry, ActionCount,
    HourlyAmount, FlowPoint, DashboardSummary, DashboardStats,
)

TimeFilter = Literal["all", "24h"]
TIME_FILTERS = ("all", "24h")

BOUNTY_WINDOW = timedelta(hours=24)
LEADERBOARD_SIZE = 10
TIME_OF_DAY_ACTIONS = frozenset({"like", "tip"})


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves toward +infinity (-2.5 -> -2)."""
    return math.floor(value + 0.5)


def round_tenths(value: float) -> float:
    """Round to one decimal place, halves away from zero (0.25 -> 0.3)."""
    return float(Decimal(value).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def filter_receipts(
    receipts: Sequence[Receipt],
    time_filter: TimeFilter = "all",
    now: Optional[datetime] = None,
) -> List[Receipt]:
    """Apply a time filter.

    ``"all"`` keeps everything. ``"24h"`` keeps receipts whose parsed time is
    within the last 24 hours; receipts with unparsable timestamps are dropped.
    """
    if time_filter not in TIME_FILTERS:
        raise ValueError(f"Unknown time filter: {time_filter!r}")
    if time_filter == "all":
        return list(receipts)

    now = now or datetime.now()
    kept = []
    for receipt in receipts:
        parsed = parse_receipt_date(receipt.timestamp, now)
        if parsed is None:
            continue
        hours_diff = (now - parsed).total_seconds() / 3600
        if 0 <= hours_diff <= 24:
            kept.append(receipt)
    return kept


def compute_roi(earned: int, bounty_amount: int) -> int:
    """Percentage return of a bounty; 0 when the bounty cost nothing."""
    if bounty_amount <= 0:
        return 0
    return round_half_away((earned - bounty_amount) / bounty_amount * 100)


def compute_bounty_window(
    concept: str,
    bounty: Bounty,
    receipts: Sequence[Receipt],
    now: Optional[datetime] = None,
) -> BountyWindow:
    """Income a concept earned in the 24 hours after a bounty was placed."""
    bounty_time = parse_receipt_date(bounty.timestamp, now)
    if bounty_time is None:
        return BountyWindow(amount=bounty.amount, timestamp=bounty.timestamp, earned=0, roi=-100)

    window_end = bounty_time + BOUNTY_WINDOW
    earned = 0
    for receipt in receipts:
        if receipt.concept != concept:
            continue
        receipt_time = parse_receipt_date(receipt.timestamp, now)
        if receipt_time is not None and bounty_time <= receipt_time <= window_end:
            earned += receipt.amount

    return BountyWindow(
        amount=bounty.amount,
        timestamp=bounty.timestamp,
        earned=earned,
        roi=compute_roi(earned, bounty.amount),
    )


def compute_concept_performance(
    receipts: Sequence[Receipt],
    bounties: Mapping[str, Sequence[Bounty]],
    now: Optional[datetime] = None,
) -> List[ConceptPerformance]:
    """Income, usage and bounty ROI per concept, best net income first."""
    income_by_concept: Dict[str, int] = {}
    for receipt in receipts:
        if receipt.concept:
            income_by_concept[receipt.concept] = income_by_concept.get(receipt.concept, 0) + receipt.amount

    concepts = []
    for name, income in income_by_concept.items():
        concept_bounties = list(bounties.get(name) or [])
        windows = [compute_bounty_window(name, b, receipts, now) for b in concept_bounties]

        bounty_cost = sum(b.amount for b in concept_bounties)
        bounty_earnings = sum(w.earned for w in windows)
        net_income = income - bounty_cost
        avg_roi = round_half_up(sum(w.roi for w in windows) / len(windows)) if windows else 0

        concept_receipts = [r for r in receipts if r.concept == name]
        uses = len(concept_receipts)
        paid_uses = sum(1 for r in concept_receipts if r.amount > 0)

        concepts.append(ConceptPerformance(
            name=name,
            income=income,
            uses=uses,
            paid_uses=paid_uses,
            free_uses=uses - paid_uses,
            avg_per_use=round_tenths(income / uses) if uses else 0.0,
            bounty_cost=bounty_cost,
            bounty_earnings=bounty_earnings,
            bounty_windows=windows,
            net_income=net_income,
            avg_roi=avg_roi,
            profitable=net_income > 0,
        ))

    concepts.sort(key=lambda c: c.net_income, reverse=True)
    return concepts


def _top(totals: Dict[str, int]) -> List[LeaderboardEntry]:
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [LeaderboardEntry(name=name, value=value) for name, value in ranked[:LEADERBOARD_SIZE]]


def compute_user_leaderboards(receipts: Sequence[Receipt]):
    """Top users by interaction count and by clout, excluding yourself.

    Returns:
        (top_by_count, top_by_value)
    """
    counts: Dict[str, int] = {}
    values: Dict[str, int] = {}
    for receipt in receipts:
        if receipt.user == SELF_USER:
            continue
        counts[receipt.user] = counts.get(receipt.user, 0) + 1
        values[receipt.user] = values.get(receipt.user, 0) + receipt.amount
    return _top(counts), _top(values)


def compute_action_breakdown(receipts: Sequence[Receipt]) -> List[ActionCount]:
    counts: Dict[str, int] = {}
    for receipt in receipts:
        counts[receipt.action] = counts.get(receipt.action, 0) + 1
    return [ActionCount(name=name, value=value) for name, value in counts.items()]


def compute_time_of_day(receipts: Sequence[Receipt]) -> List[HourlyAmount]:
    """Clout from likes and tips summed per hour of day."""
    by_hour: Dict[int, int] = {}
    for receipt in receipts:
        if receipt.action not in TIME_OF_DAY_ACTIONS:
            continue
        hour = extract_hour(receipt.timestamp)
        if hour is None:
            continue
        by_hour[hour] = by_hour.get(hour, 0) + receipt.amount

    return [
        HourlyAmount(hour=hour, label=f"{hour}:00", amount=amount)
        for hour, amount in sorted(by_hour.items())
    ]


def compute_cumulative_flow(receipts: Sequence[Receipt]) -> List[FlowPoint]:
    """Running clout total in chronological order.

    The log is held newest-first, so it is reversed before accumulating.
    """
    points = []
    total = 0
    for index, receipt in enumerate(reversed(receipts)):
        total += receipt.amount
        points.append(FlowPoint(index=index, amount=receipt.amount, total=total, label=str(index)))
    return points


def compute_summary(
    receipts: Sequence[Receipt],
    untagged_bounties: Sequence[Bounty] = (),
    now: Optional[datetime] = None,
) -> DashboardSummary:
    total = sum(r.amount for r in receipts)
    dates = [d for d in (parse_receipt_date(r.timestamp, now) for r in receipts) if d is not None]
    return DashboardSummary(
        receipt_count=len(receipts),
        total_amount=total,
        average_amount=round_tenths(total / len(receipts)) if receipts else 0.0,
        oldest=min(dates) if dates else None,
        newest=max(dates) if dates else None,
        untagged_bounty_count=len(untagged_bounties),
        untagged_bounty_total=sum(b.amount for b in untagged_bounties),
    )


def compute_dashboard(
    receipts: Sequence[Receipt],
    bounties: Mapping[str, Sequence[Bounty]],
    untagged_bounties: Sequence[Bounty] = (),
    time_filter: TimeFilter = "all",
    now: Optional[datetime] = None,
) -> DashboardStats:
    """Compute every dashboard statistic from scratch."""
    now = now or datetime.now()
    filtered = filter_receipts(receipts, time_filter, now)
    top_by_count, top_by_value = compute_user_leaderboards(filtered)

    return DashboardStats(
        time_filter=time_filter,
        summary=compute_summary(filtered, untagged_bounties, now),
        concepts=compute_concept_performance(filtered, bounties, now),
        top_users_by_count=top_by_count,
        top_users_by_value=top_by_value,
        actions=compute_action_breakdown(filtered),
        time_of_day=compute_time_of_day(filtered),
        cumulative_flow=compute_cumulative_flow(filtered),
    )

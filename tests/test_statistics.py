"""
Unit tests for the statistics engine.

All tests use a fixed reference time so the 24-hour window and year
inference are deterministic.
"""

import pytest
from datetime import datetime

from receiptflow.statistics import (
    round_half_away,
    round_half_up,
    round_tenths,
    filter_receipts,
    compute_roi,
    compute_bounty_window,
    compute_concept_performance,
    compute_user_leaderboards,
    compute_action_breakdown,
    compute_time_of_day,
    compute_cumulative_flow,
    compute_summary,
    compute_dashboard,
)

from conftest import make_receipt, make_bounty, NOW


class TestRounding:

    @pytest.mark.parametrize("value,expected", [(2.5, 3), (-2.5, -3), (2.4, 2), (-2.6, -3), (0.0, 0)])
    def test_round_half_away(self, value, expected):
        assert round_half_away(value) == expected

    @pytest.mark.parametrize("value,expected", [(2.5, 3), (-2.5, -2), (-2.6, -3), (1.2, 1)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    @pytest.mark.parametrize("value,expected", [(0.25, 0.3), (-0.25, -0.3), (7.5, 7.5), (3.04, 3.0), (2 / 3, 0.7)])
    def test_round_tenths(self, value, expected):
        assert round_tenths(value) == expected


class TestTimeFilter:
    """Test the "all" and "24h" filters."""

    def test_all_keeps_everything(self):
        receipts = [make_receipt("nonsense"), make_receipt("Jan 1 1:00 PM")]
        assert filter_receipts(receipts, "all", NOW) == receipts

    def test_24h_window(self):
        recent = make_receipt("Oct 19 12:30 PM")
        edge = make_receipt("Oct 19 12:00 PM")
        old = make_receipt("Oct 18 11:59 AM")
        unparsable = make_receipt("sometime")

        kept = filter_receipts([recent, edge, old, unparsable], "24h", NOW)
        assert kept == [recent, edge]

    def test_unknown_filter_rejected(self):
        with pytest.raises(ValueError):
            filter_receipts([], "week", NOW)


class TestRoi:
    """Test bounty return calculations."""

    def test_roi_values(self):
        assert compute_roi(150, 100) == 50
        assert compute_roi(0, 100) == -100
        assert compute_roi(100, 0) == 0

    def test_roi_rounds_half_away_from_zero(self):
        assert compute_roi(1, 8) == -88  # -87.5
        assert compute_roi(3, 2) == 50

    def test_bounty_window_sums_concept_income_within_24h(self):
        bounty = make_bounty("Oct 18 9:00 AM", amount=100)
        receipts = [
            make_receipt("Oct 18 10:00 AM", concept="cats", amount=100),
            make_receipt("Oct 19 9:00 AM", concept="cats", amount=50),   # inclusive end
            make_receipt("Oct 19 9:01 AM", concept="cats", amount=1000), # past the window
            make_receipt("Oct 18 8:59 AM", concept="cats", amount=1000), # before the bounty
            make_receipt("Oct 18 10:00 AM", concept="dogs", amount=1000),
        ]

        window = compute_bounty_window("cats", bounty, receipts, NOW)
        assert window.earned == 150
        assert window.roi == 50

    def test_unparsable_bounty_time(self):
        window = compute_bounty_window("cats", make_bounty("whenever", 100), [make_receipt(concept="cats")], NOW)
        assert window.earned == 0
        assert window.roi == -100


class TestConceptPerformance:

    def test_income_uses_and_net(self):
        receipts = [
            make_receipt("Oct 18 10:00 AM", concept="cats", amount=100),
            make_receipt("Oct 18 11:00 AM", concept="cats", amount=0),
            make_receipt("Oct 18 11:30 AM", concept="cats", amount=50),
            make_receipt("Oct 18 12:00 PM", concept="dogs", amount=20),
            make_receipt("Oct 18 12:30 PM", concept=None, amount=999),
        ]
        bounties = {"cats": [make_bounty("Oct 18 9:00 AM", 100)], "dogs": [make_bounty("Oct 18 9:00 AM", 40)]}

        concepts = compute_concept_performance(receipts, bounties, NOW)
        by_name = {c.name: c for c in concepts}

        cats = by_name["cats"]
        assert cats.income == 150
        assert cats.uses == 3
        assert cats.paid_uses == 2
        assert cats.free_uses == 1
        assert cats.avg_per_use == 50.0
        assert cats.bounty_cost == 100
        assert cats.bounty_earnings == 150
        assert cats.net_income == 50
        assert cats.avg_roi == 50
        assert cats.profitable

        dogs = by_name["dogs"]
        assert dogs.net_income == -20
        assert not dogs.profitable

        assert [c.name for c in concepts] == ["cats", "dogs"]

    def test_concept_without_bounties(self):
        concepts = compute_concept_performance([make_receipt(concept="cats", amount=5)], {}, NOW)
        assert concepts[0].avg_roi == 0
        assert concepts[0].bounty_windows == []

    def test_bounties_for_absent_concepts_ignored(self):
        concepts = compute_concept_performance([], {"cats": [make_bounty()]}, NOW)
        assert concepts == []


class TestLeaderboardsAndBreakdowns:

    def test_leaderboards_exclude_self(self):
        receipts = [
            make_receipt(user="bob", amount=5),
            make_receipt(user="you", amount=500),
            make_receipt(user="carol", amount=50),
            make_receipt(user="bob", amount=5),
        ]
        by_count, by_value = compute_user_leaderboards(receipts)
        assert [(e.name, e.value) for e in by_count] == [("bob", 2), ("carol", 1)]
        assert [(e.name, e.value) for e in by_value] == [("carol", 50), ("bob", 10)]

    def test_leaderboard_top_ten_with_stable_ties(self):
        receipts = [make_receipt(user=f"user{i}") for i in range(12)]
        by_count, _ = compute_user_leaderboards(receipts)
        assert len(by_count) == 10
        assert by_count[0].name == "user0"

    def test_action_breakdown_first_seen_order(self):
        receipts = [make_receipt(action="tip"), make_receipt(action="like"), make_receipt(action="tip")]
        assert [(a.name, a.value) for a in compute_action_breakdown(receipts)] == [("tip", 2), ("like", 1)]

    def test_time_of_day_likes_and_tips_only(self):
        receipts = [
            make_receipt("Oct 18 1:15 PM", action="like", amount=5),
            make_receipt("Oct 18 1:45 PM", action="tip", amount=10),
            make_receipt("Oct 18 9:00 AM", action="like", amount=1),
            make_receipt("Oct 18 1:00 PM", action="use", amount=100),
        ]
        hours = compute_time_of_day(receipts)
        assert [(h.hour, h.label, h.amount) for h in hours] == [(9, "9:00", 1), (13, "13:00", 15)]


class TestCumulativeFlow:

    def test_running_total_in_chronological_order(self):
        """The log is newest-first; [20, -5, 10] held becomes [10, 5, 25] over time."""
        receipts = [make_receipt(amount=20), make_receipt(amount=-5), make_receipt(amount=10)]
        flow = compute_cumulative_flow(receipts)
        assert [p.amount for p in flow] == [10, -5, 20]
        assert [p.total for p in flow] == [10, 5, 25]
        assert [p.index for p in flow] == [0, 1, 2]

    def test_empty(self):
        assert compute_cumulative_flow([]) == []


class TestDashboard:

    def test_summary(self):
        receipts = [make_receipt("Oct 18 1:00 PM", amount=10), make_receipt("Oct 19 1:00 PM", amount=5)]
        summary = compute_summary(receipts, [make_bounty(amount=30)], NOW)
        assert summary.receipt_count == 2
        assert summary.total_amount == 15
        assert summary.average_amount == 7.5
        assert summary.oldest == datetime(2024, 10, 18, 13, 0)
        assert summary.newest == datetime(2024, 10, 19, 13, 0)
        assert summary.untagged_bounty_total == 30

    def test_dashboard_applies_filter_everywhere(self):
        receipts = [
            make_receipt("Oct 19 6:00 PM", user="bob", concept="cats", amount=10),
            make_receipt("Oct 1 6:00 PM", user="carol", concept="dogs", amount=99),
        ]
        stats = compute_dashboard(receipts, {}, [], "24h", NOW)

        assert stats.time_filter == "24h"
        assert stats.summary.receipt_count == 1
        assert [c.name for c in stats.concepts] == ["cats"]
        assert [e.name for e in stats.top_users_by_count] == ["bob"]
        assert len(stats.cumulative_flow) == 1

    def test_averages_round_halves_away_from_zero(self):
        receipts = [make_receipt(concept="cats", amount=1)] + [make_receipt(concept="cats", amount=0)] * 3
        assert compute_summary(receipts, [], NOW).average_amount == 0.3
        assert compute_concept_performance(receipts, {}, NOW)[0].avg_per_use == 0.3

    def test_empty_log(self):
        stats = compute_dashboard([], {}, [], "all", NOW)
        assert stats.summary.receipt_count == 0
        assert stats.summary.average_amount == 0.0
        assert stats.concepts == []

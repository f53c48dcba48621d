"""Tests for priority scoring: recency curve, adjustments, recalculation."""
from __future__ import annotations

import pytest

from biosignal import scorer
from biosignal.roster import RosterEntry
from biosignal.schemas import ScoreBreakdown


class TestRecency:
    @pytest.mark.parametrize("days,expected", [
        (0, 25), (1, 22), (2, 19), (4, 13), (5, 10), (7, 10),
        (8, 10), (10, 11), (13, 12), (16, 13), (52, 25), (400, 25),
    ])
    def test_two_piece_curve(self, days, expected):
        assert scorer.recency(days) == expected

    def test_negative_days_treated_as_zero(self):
        assert scorer.recency(-3) == 25

    def test_never_leaves_bounds(self):
        assert all(10 <= scorer.recency(d) <= 25 for d in range(0, 200))


class TestStrength:
    def test_known_kinds(self):
        assert scorer.base_strength("phase_transition") > scorer.base_strength("new_ind")
        assert scorer.base_strength("transaction") == 27
        assert scorer.base_strength("partnership") == 28

    def test_unknown_kind_defaults(self):
        assert scorer.base_strength("mystery") == 15

    @pytest.mark.parametrize("days_posted,expected", [(0, 15), (29, 15), (30, 17), (59, 17), (60, 18), (365, 18)])
    def test_stale_posting_boost(self, days_posted, expected):
        assert scorer.base_strength("stale_posting", {"days_posted": days_posted}) == expected

    def test_pre_hiring(self):
        assert scorer.pre_hiring_adjust(27, has_active_postings=False) == 42
        assert scorer.pre_hiring_adjust(27, has_active_postings=True) == 12
        assert scorer.pre_hiring_adjust(15, has_active_postings=True) == 5


class TestInitialBreakdown:
    def test_components(self):
        entry = RosterEntry.build("Moderna", priority_rank=1)
        bd = scorer.initial_breakdown("phase_transition", "active_client", past_client=entry)
        assert bd.components() == {
            "signal_strength": 30, "recency": 25, "relationship_warmth": 25,
            "actionability": 0, "past_client_boost": 15,
        }
        assert scorer.total(bd) == 95

    def test_total_is_capped(self):
        entry = RosterEntry.build("Moderna", priority_rank=1)
        bd = scorer.initial_breakdown(
            "phase_transition", "active_client", past_client=entry, has_active_postings=False,
        )
        assert bd.signal_strength == 45
        assert scorer.total(bd) == scorer.SCORE_CAP

    def test_unknown_warmth_scores_zero(self):
        bd = scorer.initial_breakdown("new_award", None)
        assert bd.relationship_warmth == 0
        assert scorer.total(bd) == 45


class TestRecalculate:
    def test_refreshes_recency_only(self):
        stored = {"signal_strength": 22, "recency": 25, "relationship_warmth": 10,
                  "actionability": 0, "past_client_boost": 0}
        bd, score = scorer.recalculate(stored, {}, 10)
        assert bd.recency == 11
        assert bd.signal_strength == 22
        assert score == 22 + 11 + 10

    def test_legacy_boost_read_from_detail(self):
        stored = {"signal_strength": 20, "recency": 25, "relationship_warmth": 0, "actionability": 0}
        detail = {"past_client": {"name": "Biogen", "priority_rank": 9, "boost_score": 13}}
        bd, score = scorer.recalculate(stored, detail, 10)
        assert bd.past_client_boost == 13
        assert score == 20 + 11 + 13

    def test_stored_boost_wins_over_detail(self):
        stored = {"signal_strength": 20, "past_client_boost": 15}
        detail = {"past_client": {"boost_score": 8}}
        bd, _ = scorer.recalculate(stored, detail, 0)
        assert bd.past_client_boost == 15

    def test_job_posting_shape(self):
        bd, score = scorer.recalculate({"base": 15, "days_posted_boost": 3}, {}, 0)
        assert bd.signal_strength == 18
        assert score == 18 + 25

    def test_missing_breakdown_defaults_strength(self):
        bd, score = scorer.recalculate(None, None, 5)
        assert bd.signal_strength == 15
        assert score == 25

    def test_extension_keys_survive(self):
        stored = {"signal_strength": 20, "analyst_override": "keep"}
        bd, _ = scorer.recalculate(stored, {}, 1)
        assert bd.model_dump()["analyst_override"] == "keep"

    def test_stable_across_repeated_sweeps(self):
        stored = {"signal_strength": 30, "recency": 25, "relationship_warmth": 18}
        first, s1 = scorer.recalculate(stored, {}, 9)
        second, s2 = scorer.recalculate(first.model_dump(), {}, 9)
        assert s1 == s2
        assert first.components() == second.components()

    def test_never_exceeds_cap(self):
        stored = {"signal_strength": 60, "relationship_warmth": 25, "past_client_boost": 15}
        for days in range(0, 60):
            assert scorer.recalculate(stored, {}, days)[1] <= scorer.SCORE_CAP


def test_breakdown_requires_strength():
    with pytest.raises(ValueError):
        ScoreBreakdown()

"""Priority scoring for signals.

A score is the capped sum of named components kept in a
:class:`~biosignal.schemas.ScoreBreakdown`. Strength, warmth, actionability
and the past-client boost are fixed when the signal is created; recency is
recomputed on every sweep from the number of days the signal has waited.
"""
from __future__ import annotations

from typing import Any

from biosignal.roster import RosterEntry
from biosignal.schemas import ScoreBreakdown, as_int

SCORE_CAP = 100
MAX_RECENCY = 25
RECENCY_FLOOR = 10
FRESH_DAYS = 7
DEFAULT_STRENGTH = 15

SIGNAL_STRENGTH: dict[str, int] = {
    # clinical trials
    "phase_transition": 30,
    "site_activation": 25,
    "new_ind": 22,
    "trial_completion": 20,
    # grants and filings
    "new_award": 20,
    "renewal": 20,
    "transaction": 27,
    "partnership": 28,
    "funding_round": 28,
    # hiring
    "target_posting": 25,
    "competitor_posting": 15,
    "stale_posting": 15,
}

WARMTH_BONUS: dict[str, int] = {
    "active_client": 25,
    "past_client": 18,
    "in_pipeline": 10,
    "new_prospect": 0,
}

PRE_HIRING_BONUS = 15
PRE_HIRING_FLOOR = 5

STALE_POSTING_CAP = 20


def recency(days: int) -> int:
    """Linear decay to a floor of 10 over the first week, then a slow climb back to 25."""
    days = max(0, days)
    if days <= FRESH_DAYS:
        return max(MAX_RECENCY - 3 * days, RECENCY_FLOOR)
    return min(RECENCY_FLOOR + (days - FRESH_DAYS) // 3, MAX_RECENCY)


def days_posted_boost(days_posted: int) -> int:
    if days_posted >= 60:
        return 3
    if days_posted >= 30:
        return 2
    return 0


def base_strength(kind: str, detail: dict[str, Any] | None = None) -> int:
    strength = SIGNAL_STRENGTH.get(kind, DEFAULT_STRENGTH)
    if kind == "stale_posting" and detail:
        boost = days_posted_boost(as_int(detail.get("days_posted")))
        strength = min(strength + boost, STALE_POSTING_CAP)
    return strength


def pre_hiring_adjust(strength: int, has_active_postings: bool) -> int:
    """No visible hiring yet makes a funding or deal event an earlier, stronger lead."""
    if has_active_postings:
        return max(PRE_HIRING_FLOOR, strength - PRE_HIRING_BONUS)
    return strength + PRE_HIRING_BONUS


def warmth_bonus(warmth: str | None) -> int:
    return WARMTH_BONUS.get(warmth or "new_prospect", 0)


def total(breakdown: ScoreBreakdown) -> int:
    return min(sum(breakdown.components().values()), SCORE_CAP)


def initial_breakdown(
    kind: str,
    warmth: str | None,
    *,
    detail: dict[str, Any] | None = None,
    past_client: RosterEntry | None = None,
    has_active_postings: bool | None = None,
) -> ScoreBreakdown:
    """Breakdown for a signal being created now (zero days in queue).

    ``has_active_postings`` is ``None`` when the collector does not ask for the
    pre-hiring adjustment.
    """
    strength = base_strength(kind, detail)
    if has_active_postings is not None:
        strength = pre_hiring_adjust(strength, has_active_postings)
    return ScoreBreakdown(
        signal_strength=strength,
        recency=MAX_RECENCY,
        relationship_warmth=warmth_bonus(warmth),
        actionability=0,
        past_client_boost=past_client.boost_score if past_client else 0,
    )


def _legacy_boost(detail: dict[str, Any] | None) -> int:
    note = (detail or {}).get("past_client")
    if isinstance(note, dict):
        return as_int(note.get("boost_score"))
    return 0


def recalculate(
    stored: dict[str, Any] | None, detail: dict[str, Any] | None, days_in_queue: int,
) -> tuple[ScoreBreakdown, int]:
    """Refresh recency on a stored breakdown and return it with the new total.

    Records written before the boost had its own component carry it only in
    the detail's ``past_client`` note.
    """
    breakdown = ScoreBreakdown.from_stored(stored, DEFAULT_STRENGTH)
    if not (stored or {}).get("past_client_boost"):
        breakdown.past_client_boost = _legacy_boost(detail)
    breakdown.recency = recency(days_in_queue)
    return breakdown, total(breakdown)

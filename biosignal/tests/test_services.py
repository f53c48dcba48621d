"""Tests for admission, the daily sweep, roster maintenance and signal views."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from biosignal.dedup import dedup_transactions
from biosignal.models import (
    Base, Company, DismissalRule, ExcludedCompany, JobPosting, PastClient, Signal,
)
from biosignal.resolver import identity_key
from biosignal.schemas import CandidateEvent, SignalUpdate
from biosignal.services import (
    SKIP_ACADEMIC, SKIP_DISMISSED, SKIP_DUPLICATE, SKIP_EXCLUDED, SKIP_UNRESOLVABLE, RunContext,
    admit_event, carry_forward, compute_stats, count_active, has_active_postings, query_signals,
    record_company_size, recompute_scores, run_sweep, update_signal,
)
from biosignal.utils import json_parse

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)


@pytest.fixture()
def session():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    sess = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)()
    try:
        yield sess
    finally:
        sess.close()


def _event(company="Acme Therapeutics, Inc., Boston, MA", kind="new_award", key="award-1", **kw):
    return CandidateEvent(raw_company_name=company, kind=kind, dedup_key=key, **kw)


def _admit(session, event, ctx=None):
    ctx = ctx or RunContext.load(session, now=NOW)
    return admit_event(session, event, ctx), ctx


def _signals(session) -> list[Signal]:
    return session.execute(select(Signal).order_by(Signal.id)).scalars().all()


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_same_award_twice_is_stored_once(self, session):
        ctx = RunContext.load(session, now=NOW)
        first = admit_event(session, _event(summary="NIH award"), ctx)
        second = admit_event(session, _event(summary="NIH award"), ctx)

        assert first.admitted is True
        assert second.admitted is False
        assert second.reason == SKIP_DUPLICATE
        assert second.company_id == first.company_id
        assert ctx.admitted == 1
        assert ctx.skipped[SKIP_DUPLICATE] == 1

        company = session.get(Company, first.company_id)
        assert company.name == "Acme Therapeutics, Inc."
        [signal] = _signals(session)
        assert signal.status == "new"
        assert signal.priority_score == 45
        assert json_parse(signal.score_breakdown_json)["recency"] == 25
        assert signal.first_detected_at is not None

    def test_deal_reported_from_both_sides_is_collapsed(self, session):
        ctx = RunContext.load(session, now=NOW)
        admit_event(session, _event(
            "Beta Biosciences Inc", "transaction", "8k-beta-0301",
            detail={"company_name": "Beta Biosciences Inc", "counterparty_name": "Gamma Pharma",
                    "deal_value": "$400M", "filing_url": "https://sec.gov/beta"},
        ), ctx)
        admit_event(session, _event(
            "Gamma Pharma", "transaction", "8k-gamma-0302",
            detail={"company_name": "Gamma Pharma", "counterparty_name": "Beta Biosciences"},
            detected_at=NOW + timedelta(days=1),
        ), ctx)
        assert len(_signals(session)) == 2

        result = dedup_transactions(session)
        assert result.deleted == 1
        [survivor] = _signals(session)
        assert json_parse(survivor.detail_json)["deal_value"] == "$400M"
        assert dedup_transactions(session).deleted == 0


# ---------------------------------------------------------------------------
# Admission outcomes
# ---------------------------------------------------------------------------


class TestAdmission:
    @pytest.mark.parametrize("name", ["", "   ", "Inc."])
    def test_unresolvable_name(self, session, name):
        result, ctx = _admit(session, _event(company=name))
        assert result.reason == SKIP_UNRESOLVABLE
        assert ctx.skipped[SKIP_UNRESOLVABLE] == 1
        assert _signals(session) == []

    def test_excluded_company(self, session):
        session.add(ExcludedCompany(name="Roche", name_key="roche", reason="size"))
        session.commit()
        result, _ = _admit(session, _event(company="Roche Holding AG"))
        assert result.admitted is False
        assert result.reason == SKIP_EXCLUDED
        assert result.company_id is None
        assert session.execute(select(func.count(Company.id))).scalar_one() == 0

    def test_excluded_known_company_reports_its_id(self, session):
        roche = Company(name="Roche Holding AG", name_key="roche holding")
        session.add_all([roche, ExcludedCompany(name="Roche", name_key="roche", reason="size")])
        session.commit()
        result, _ = _admit(session, _event(company="Roche Holding AG, Basel, Switzerland"))
        assert result.reason == SKIP_EXCLUDED
        assert result.company_id == roche.id

    def test_past_client_overrides_exclusion(self, session):
        session.add_all([
            PastClient(name="Pfizer", name_key="pfizer", priority_rank=1),
            ExcludedCompany(name="Pfizer", name_key="pfizer", reason="size"),
        ])
        session.commit()
        result, _ = _admit(session, _event(company="Pfizer Inc.", kind="phase_transition"))
        assert result.admitted is True
        [signal] = _signals(session)
        assert json_parse(signal.detail_json)["past_client"] == {
            "name": "Pfizer", "priority_rank": 1, "boost_score": 15,
        }
        assert json_parse(signal.score_breakdown_json)["past_client_boost"] == 15
        assert signal.priority_score == 30 + 25 + 0 + 15

    def test_warmth_feeds_score(self, session):
        session.add(Company(name="Biogen", name_key="biogen", relationship_warmth="active_client"))
        session.commit()
        _admit(session, _event(company="Biogen Inc", kind="renewal"))
        [signal] = _signals(session)
        assert signal.priority_score == 20 + 25 + 25

    def test_dismissal_rule(self, session):
        session.add(DismissalRule(signal_kind="target_posting", rule_type="role_title", rule_value="Lab Technician"))
        session.commit()
        result, _ = _admit(session, _event(
            kind="target_posting", key="https://jobs/1", detail={"role_title": " lab technician"},
        ))
        assert result.reason == SKIP_DISMISSED

        other, _ = _admit(session, _event(
            kind="target_posting", key="https://jobs/2", detail={"role_title": "Director, Clinical Ops"},
        ))
        assert other.admitted is True

    def test_dismissal_rule_by_company(self, session):
        session.add(DismissalRule(signal_kind="new_award", rule_type="company", rule_value="acme"))
        session.commit()
        result, _ = _admit(session, _event())
        assert result.reason == SKIP_DISMISSED

    def test_explicit_detection_time_is_kept(self, session):
        when = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        _admit(session, _event(detected_at=when))
        [signal] = _signals(session)
        assert signal.first_detected_at.replace(tzinfo=UTC) == when

    def test_lost_insert_race_counts_as_duplicate(self, session):
        ctx = RunContext.load(session, now=NOW)
        admit_event(session, _event(), ctx)
        with patch("biosignal.services.signal_exists", return_value=False):
            result = admit_event(session, _event(), ctx)
        assert result.reason == SKIP_DUPLICATE
        assert len(_signals(session)) == 1

    def test_different_kind_same_key_is_new(self, session):
        ctx = RunContext.load(session, now=NOW)
        admit_event(session, _event(kind="new_award"), ctx)
        result = admit_event(session, _event(kind="renewal"), ctx)
        assert result.admitted is True


class TestAcademicSponsors:
    @pytest.mark.parametrize("name", [
        "Dana-Farber Cancer Institute",
        "Massachusetts General Hospital",
        "University of Pennsylvania",
        "Mayo Clinic",
    ])
    def test_dropped_before_resolution(self, session, name):
        result, ctx = _admit(session, _event(company=name, kind="phase_transition", key="nct-1"))
        assert result.reason == SKIP_ACADEMIC
        assert result.company_id is None
        assert ctx.skipped[SKIP_ACADEMIC] == 1
        assert session.execute(select(func.count(Company.id))).scalar_one() == 0

    def test_past_client_is_kept(self, session):
        session.add(PastClient(name="Memorial Therapeutics", name_key="memorial therapeutics", priority_rank=3))
        session.commit()
        result, _ = _admit(session, _event(company="Memorial Therapeutics Inc"))
        assert result.admitted is True

    def test_filter_can_be_disabled(self, session):
        ctx = RunContext.load(session, now=NOW, academic_filter=False)
        result = admit_event(session, _event(company="Stanford University"), ctx)
        assert result.admitted is True


class TestPreHiring:
    def test_no_postings_boosts_strength(self, session):
        result, _ = _admit(session, _event(
            company="Beta Biosciences Inc", kind="funding_round", key="series-b", pre_hiring_check=True,
        ))
        assert result.admitted
        [signal] = _signals(session)
        detail = json_parse(signal.detail_json)
        assert detail["has_active_jobs"] is False
        assert detail["pre_hiring_signal"] is True
        assert json_parse(signal.score_breakdown_json)["signal_strength"] == 28 + 15

    def test_active_postings_lower_strength(self, session):
        session.add(JobPosting(company_name="Beta Biosciences Careers", title="Scientist"))
        session.commit()
        _admit(session, _event(
            company="Beta Biosciences Inc", kind="funding_round", key="series-b", pre_hiring_check=True,
        ))
        [signal] = _signals(session)
        detail = json_parse(signal.detail_json)
        assert detail["has_active_jobs"] is True
        assert detail["pre_hiring_signal"] is False
        assert json_parse(signal.score_breakdown_json)["signal_strength"] == 28 - 15

    def test_inactive_postings_are_ignored(self, session):
        session.add(JobPosting(company_name="Beta Biosciences", title="Scientist", is_active=False))
        session.commit()
        _admit(session, _event(
            company="Beta Biosciences Inc", kind="funding_round", key="series-b", pre_hiring_check=True,
        ))
        [signal] = _signals(session)
        assert json_parse(signal.detail_json)["has_active_jobs"] is False

    def test_postings_match_whole_words_only(self, session):
        session.add(JobPosting(company_name="Genentech", title="Scientist"))
        session.commit()
        assert has_active_postings(session, "GE Healthcare") is False
        assert has_active_postings(session, "Genentech, Inc.") is True
        assert has_active_postings(session, "Inc.") is False

    def test_check_not_requested(self, session):
        _admit(session, _event(company="Beta Biosciences Inc", kind="funding_round", key="series-b"))
        [signal] = _signals(session)
        assert "has_active_jobs" not in json_parse(signal.detail_json)


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


class TestSweep:
    def _seed(self, session):
        ctx = RunContext.load(session, now=NOW)
        admit_event(session, _event(key="yesterday", detected_at=NOW - timedelta(days=1, hours=5)), ctx)
        admit_event(session, _event(key="early-today", detected_at=datetime(2026, 3, 10, 0, 30, tzinfo=UTC)), ctx)
        admit_event(session, _event(key="old", detected_at=NOW - timedelta(days=10)), ctx)
        return _signals(session)

    def test_carry_forward_only_before_today(self, session):
        self._seed(session)
        assert carry_forward(session, NOW) == 2
        statuses = {s.dedup_key: s.status for s in _signals(session)}
        assert statuses == {"yesterday": "carried_forward", "early-today": "new", "old": "carried_forward"}

    def test_recompute_refreshes_recency(self, session):
        self._seed(session)
        assert recompute_scores(session, NOW) == 3
        by_key = {s.dedup_key: s for s in _signals(session)}
        assert by_key["yesterday"].days_in_queue == 1
        assert json_parse(by_key["yesterday"].score_breakdown_json)["recency"] == 22
        assert by_key["yesterday"].priority_score == 20 + 22
        assert by_key["old"].days_in_queue == 10
        assert by_key["old"].priority_score == 20 + 11
        assert by_key["early-today"].priority_score == 45

    def test_closed_signals_are_left_alone(self, session):
        signals = self._seed(session)
        signals[2].status = "closed"
        session.commit()
        assert recompute_scores(session, NOW) == 2
        assert session.get(Signal, signals[2].id).days_in_queue == 0

    def test_sweep_is_idempotent(self, session):
        self._seed(session)
        first = run_sweep(session, NOW)
        scores = [s.priority_score for s in _signals(session)]
        second = run_sweep(session, NOW)
        assert first.carried_forward == 2
        assert second.carried_forward == 0
        assert second.recomputed == first.recomputed == 3
        assert [s.priority_score for s in _signals(session)] == scores
        assert count_active(session) == 3


# ---------------------------------------------------------------------------
# Roster maintenance
# ---------------------------------------------------------------------------


class TestCompanySize:
    def _row(self, session, name):
        return session.execute(
            select(ExcludedCompany).where(ExcludedCompany.name_key == identity_key(name))
        ).scalars().first()

    def test_lifecycle(self, session):
        name = "Roche Holding AG"
        assert record_company_size(session, name, 100_000).action == "excluded"
        assert self._row(session, name).employee_count == 100_000
        assert record_company_size(session, name, 120_000).action == "refreshed"
        assert self._row(session, name).employee_count == 120_000
        assert record_company_size(session, name, 5_000).action == "reinstated"
        assert self._row(session, name) is None
        assert record_company_size(session, name, 5_000).action == "unchanged"

    def test_threshold_is_inclusive(self, session):
        assert record_company_size(session, "Bigco", 10_001).action == "excluded"
        assert record_company_size(session, "Midco", 10_000).action == "unchanged"
        assert record_company_size(session, "Smallco", 50, threshold=40).action == "excluded"

    def test_past_client_is_protected(self, session):
        session.add_all([
            PastClient(name="Pfizer", name_key="pfizer", priority_rank=1),
            ExcludedCompany(name="Pfizer", name_key="pfizer", reason="manual"),
        ])
        session.commit()
        result = record_company_size(session, "Pfizer", 80_000)
        assert result.action == "protected"
        assert self._row(session, "Pfizer") is None

    def test_manual_exclusion_not_reinstated(self, session):
        session.add(ExcludedCompany(name="Shady Labs", name_key=identity_key("Shady Labs"), reason="manual"))
        session.commit()
        assert record_company_size(session, "Shady Labs", 20).action == "unchanged"
        assert self._row(session, "Shady Labs") is not None

    def test_signals_survive_exclusion(self, session):
        _admit(session, _event(company="Roche Holding AG"))
        record_company_size(session, "Roche Holding AG", 100_000)
        assert len(_signals(session)) == 1

    def test_unresolvable_name(self, session):
        with pytest.raises(ValueError):
            record_company_size(session, "Inc.", 100_000)


# ---------------------------------------------------------------------------
# Signal views and mutations
# ---------------------------------------------------------------------------


class TestUpdateSignal:
    @pytest.fixture()
    def signal(self, session):
        _admit(session, _event())
        return _signals(session)[0]

    def test_claim_and_release(self, session, signal):
        update_signal(session, signal, SignalUpdate(status="claimed", claimed_by=" dana "))
        assert signal.status == "claimed"
        assert signal.claimed_by == "dana"
        update_signal(session, signal, SignalUpdate(status="new"))
        assert signal.status == "new"
        assert signal.claimed_by == ""

    def test_forbidden_transition(self, session, signal):
        with pytest.raises(ValueError, match="Cannot move signal"):
            update_signal(session, signal, SignalUpdate(status="contacted"))

    def test_closed_is_terminal(self, session, signal):
        update_signal(session, signal, SignalUpdate(status="closed"))
        with pytest.raises(ValueError):
            update_signal(session, signal, SignalUpdate(status="claimed"))

    def test_same_status_is_a_no_op(self, session, signal):
        update_signal(session, signal, SignalUpdate(status="new", notes="Call next week"))
        assert signal.status == "new"
        assert json_parse(signal.detail_json)["rep_notes"] == "Call next week"

    def test_unknown_status_rejected_by_schema(self):
        with pytest.raises(ValueError):
            SignalUpdate(status="archived")


class TestViews:
    def _seed(self, session):
        session.add(Company(name="Biogen", name_key="biogen", relationship_warmth="active_client"))
        session.commit()
        ctx = RunContext.load(session, now=NOW)
        admit_event(session, _event(key="a1"), ctx)
        admit_event(session, _event(company="Biogen", kind="phase_transition", key="nct-1"), ctx)
        admit_event(session, _event(company="Gamma Pharma", kind="renewal", key="r1"), ctx)

    def test_ordered_by_score(self, session):
        self._seed(session)
        items, total = query_signals(session)
        assert total == 3
        assert items[0]["company_name"] == "Biogen"
        assert items[0]["relationship_warmth"] == "active_client"
        scores = [i["priority_score"] for i in items]
        assert scores == sorted(scores, reverse=True)

    def test_filters_and_paging(self, session):
        self._seed(session)
        items, total = query_signals(session, search="gamma")
        assert total == 1
        assert items[0]["kind"] == "renewal"
        _, total = query_signals(session, kind="new_award,renewal")
        assert total == 2
        page, total = query_signals(session, page=2, per_page=2)
        assert total == 3
        assert len(page) == 1

    def test_status_filter(self, session):
        self._seed(session)
        first = _signals(session)[0]
        update_signal(session, first, SignalUpdate(status="claimed", claimed_by="lee"))
        _, active = query_signals(session, active_only=True)
        assert active == 2
        items, total = query_signals(session, status="claimed")
        assert total == 1
        assert items[0]["claimed_by"] == "lee"

    def test_stats(self, session):
        self._seed(session)
        session.add(PastClient(name="Moderna", name_key="moderna", priority_rank=1))
        session.commit()
        stats = compute_stats(session)
        assert stats["total_signals"] == 3
        assert stats["active_signals"] == 3
        assert stats["companies"] == session.execute(select(func.count(Company.id))).scalar_one()
        assert stats["past_clients"] == 1
        assert stats["by_kind"] == {"new_award": 1, "phase_transition": 1, "renewal": 1}
        assert stats["by_status"] == {"new": 3}

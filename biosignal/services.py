"""Shared business logic for the BioSignal API, CLI and orchestrator."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from biosignal import scorer
from biosignal.dedup import signal_exists
from biosignal.models import (
    ACTIVE_STATUSES, AgentRun, Company, DismissalRule, ExcludedCompany, JobPosting,
    PastClient, Signal,
)
from biosignal.normalizer import comparison_key, contains_words, display_name
from biosignal.resolver import find_company, identity_key, resolve
from biosignal.roster import Roster, is_academic, load_excluded, load_past_clients
from biosignal.schemas import (
    AdmissionResult, CandidateEvent, CompanySizeResult, SignalUpdate, SweepResult,
)
from biosignal.utils import as_utc, json_parse, start_of_day, to_json, utc_now, whole_days_between

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared constants
# ---------------------------------------------------------------------------

SKIP_UNRESOLVABLE = "unresolvable"
SKIP_EXCLUDED = "excluded"
SKIP_DISMISSED = "dismissed"
SKIP_DUPLICATE = "duplicate"
SKIP_ACADEMIC = "academic"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "new": frozenset({"carried_forward", "claimed", "closed"}),
    "carried_forward": frozenset({"claimed", "closed"}),
    "claimed": frozenset({"new", "contacted", "closed"}),
    "contacted": frozenset({"closed"}),
    "closed": frozenset(),
}

DEFAULT_EXCLUSION_THRESHOLD = 10_001

# ---------------------------------------------------------------------------
# Per-run context
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """Everything one run needs, loaded once and passed explicitly.

    Counters live here rather than at module level so nothing carries over
    between runs.
    """

    past_clients: Roster
    excluded: Roster
    dismissal_rules: dict[str, list[tuple[str, str]]] = field(default_factory=dict)
    now: datetime | None = None
    academic_filter: bool = True
    admitted: int = 0
    skipped: Counter[str] = field(default_factory=Counter)

    @classmethod
    def load(cls, session: Session, now: datetime | None = None, *, academic_filter: bool = True) -> RunContext:
        past_clients = load_past_clients(session)
        return cls(
            past_clients=past_clients,
            excluded=load_excluded(session, past_clients),
            dismissal_rules=load_dismissal_rules(session),
            now=now,
            academic_filter=academic_filter,
        )

    def clock(self) -> datetime:
        return self.now or utc_now()

    def is_academic(self, company_name: str) -> bool:
        """Academic and government sponsors are dropped unless they are past clients."""
        if not self.academic_filter or not is_academic(company_name):
            return False
        return self.past_clients.match(company_name) is None

    def is_dismissed(self, kind: str, company_name: str, detail: dict[str, Any]) -> bool:
        for rule_type, value in self.dismissal_rules.get(kind, ()):
            if rule_type == "company":
                if value in (company_name.casefold(), comparison_key(company_name)):
                    return True
            elif rule_type == "role_title":
                title = detail.get("role_title") or detail.get("title") or ""
                if str(title).strip().casefold() == value:
                    return True
            elif rule_type == "location":
                if str(detail.get("location") or "").strip().casefold() == value:
                    return True
        return False


def load_dismissal_rules(session: Session) -> dict[str, list[tuple[str, str]]]:
    rules: dict[str, list[tuple[str, str]]] = {}
    rows = session.execute(
        select(DismissalRule).where(DismissalRule.auto_exclude.is_(True))
    ).scalars().all()
    for rule in rows:
        rules.setdefault(rule.signal_kind, []).append(
            (rule.rule_type.strip().lower(), rule.rule_value.strip().casefold())
        )
    return rules


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


def has_active_postings(session: Session, company_name: str) -> bool:
    """True when an active posting's employer names this company as whole words."""
    key = identity_key(company_name)
    if not key:
        return False
    first_word = key.split()[0]
    candidates = session.execute(
        select(JobPosting.company_name).where(
            JobPosting.is_active.is_(True),
            func.lower(JobPosting.company_name).contains(first_word, autoescape=True),
        )
    ).scalars()
    return any(contains_words(key, identity_key(employer)) for employer in candidates)


def _skip(ctx: RunContext, reason: str, event: CandidateEvent, company: Company | None = None) -> AdmissionResult:
    ctx.skipped[reason] += 1
    log.debug("Skipped %s event for %r: %s", event.kind, event.raw_company_name, reason)
    return AdmissionResult(admitted=False, reason=reason, company_id=company.id if company else None)


def admit_event(session: Session, event: CandidateEvent, ctx: RunContext) -> AdmissionResult:
    """Resolve, filter, dedup, score and persist one candidate event.

    Excluded and academic organisations are dropped before a company row is
    created for them. The signal is committed before returning, so the next
    event from the same collector sees it in the existence check.
    """
    name = display_name(event.raw_company_name)
    if not identity_key(name):
        return _skip(ctx, SKIP_UNRESOLVABLE, event)
    if ctx.excluded.is_excluded(name):
        return _skip(ctx, SKIP_EXCLUDED, event, find_company(session, name))
    if ctx.is_academic(name):
        return _skip(ctx, SKIP_ACADEMIC, event, find_company(session, name))

    company = resolve(session, name)
    if company is None:
        return _skip(ctx, SKIP_UNRESOLVABLE, event)
    if ctx.is_dismissed(event.kind, company.name, event.detail):
        return _skip(ctx, SKIP_DISMISSED, event, company)
    if signal_exists(session, company.id, event.kind, event.dedup_key):
        return _skip(ctx, SKIP_DUPLICATE, event, company)

    detail = dict(event.detail)
    past = ctx.past_clients.match(company.name)
    if past is not None:
        detail["past_client"] = {
            "name": past.name, "priority_rank": past.priority_rank, "boost_score": past.boost_score,
        }
    postings: bool | None = None
    if event.pre_hiring_check:
        postings = has_active_postings(session, company.name)
        detail["has_active_jobs"] = postings
        detail["pre_hiring_signal"] = not postings

    breakdown = scorer.initial_breakdown(
        event.kind, company.relationship_warmth,
        detail=detail, past_client=past, has_active_postings=postings,
    )
    signal = Signal(
        company_id=company.id,
        kind=event.kind,
        summary=event.summary,
        detail_json=to_json(detail),
        dedup_key=event.dedup_key,
        source_name=event.source_name,
        status="new",
        priority_score=scorer.total(breakdown),
        score_breakdown_json=to_json(breakdown.model_dump()),
        days_in_queue=0,
        first_detected_at=event.detected_at or ctx.clock(),
    )
    session.add(signal)
    try:
        session.commit()
    except IntegrityError:
        # Another writer stored the same identity between check and insert.
        session.rollback()
        return _skip(ctx, SKIP_DUPLICATE, event, company)

    ctx.admitted += 1
    log.debug("Admitted %s signal %d for %s (score %d)", event.kind, signal.id, company.name, signal.priority_score)
    return AdmissionResult(admitted=True, signal_id=signal.id, company_id=company.id)


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


def carry_forward(session: Session, now: datetime | None = None) -> int:
    """Mark ``new`` signals first seen before today as ``carried_forward``."""
    today = start_of_day(now or utc_now())
    stale = session.execute(select(Signal).where(Signal.status == "new")).scalars().all()
    count = 0
    for signal in stale:
        if as_utc(signal.first_detected_at) < today:
            signal.status = "carried_forward"
            count += 1
    session.commit()
    return count


def recompute_scores(session: Session, now: datetime | None = None) -> int:
    now = now or utc_now()
    active = session.execute(select(Signal).where(Signal.status.in_(ACTIVE_STATUSES))).scalars().all()
    for signal in active:
        days = whole_days_between(signal.first_detected_at, now)
        breakdown, score = scorer.recalculate(
            json_parse(signal.score_breakdown_json), json_parse(signal.detail_json), days,
        )
        signal.days_in_queue = days
        signal.score_breakdown_json = to_json(breakdown.model_dump())
        signal.priority_score = score
    session.commit()
    return len(active)


def run_sweep(session: Session, now: datetime | None = None) -> SweepResult:
    now = now or utc_now()
    carried = carry_forward(session, now)
    recomputed = recompute_scores(session, now)
    log.info("Sweep: %d carried forward, %d rescored", carried, recomputed)
    return SweepResult(carried_forward=carried, recomputed=recomputed)


def count_active(session: Session) -> int:
    return session.execute(
        select(func.count(Signal.id)).where(Signal.status.in_(ACTIVE_STATUSES))
    ).scalar_one()


# ---------------------------------------------------------------------------
# Roster maintenance
# ---------------------------------------------------------------------------


def record_company_size(
    session: Session,
    name: str,
    employee_count: int,
    past_clients: Roster | None = None,
    *,
    threshold: int = DEFAULT_EXCLUSION_THRESHOLD,
) -> CompanySizeResult:
    """Exclude oversized companies, reinstate those that shrank.

    Past clients are never excluded. Existing signals are left alone.
    """
    shown = display_name(name)
    key = identity_key(name)
    if not key:
        raise ValueError(f"Cannot record size for unresolvable name {name!r}")
    if past_clients is None:
        past_clients = load_past_clients(session)

    existing = session.execute(
        select(ExcludedCompany).where(ExcludedCompany.name_key == key)
    ).scalars().first()

    if employee_count >= threshold:
        if past_clients.match(shown) is not None:
            if existing is not None:
                session.delete(existing)
            action = "protected"
        elif existing is not None:
            existing.employee_count = employee_count
            existing.last_checked_at = utc_now()
            action = "refreshed"
        else:
            session.add(ExcludedCompany(
                name=shown, name_key=key, employee_count=employee_count,
                reason=f"Employee count {employee_count:,} at or above {threshold:,}",
                last_checked_at=utc_now(),
            ))
            action = "excluded"
    elif existing is not None and existing.employee_count is not None:
        session.delete(existing)
        action = "reinstated"
    else:
        action = "unchanged"
    session.commit()
    log.info("Company size %s (%d): %s", shown, employee_count, action)
    return CompanySizeResult(name=shown, employee_count=employee_count, action=action)


# ---------------------------------------------------------------------------
# Signal views and mutations
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def signal_summary(signal: Signal) -> dict:
    return {
        "id": signal.id, "company_id": signal.company_id,
        "company_name": signal.company.name,
        "relationship_warmth": signal.company.relationship_warmth,
        "kind": signal.kind, "summary": signal.summary,
        "detail": json_parse(signal.detail_json),
        "dedup_key": signal.dedup_key, "source_name": signal.source_name,
        "status": signal.status, "priority_score": signal.priority_score,
        "score_breakdown": json_parse(signal.score_breakdown_json),
        "days_in_queue": signal.days_in_queue,
        "first_detected_at": _iso(signal.first_detected_at),
        "claimed_by": signal.claimed_by or "",
    }


def query_signals(
    session: Session, *, status: str | None = None, kind: str | None = None,
    search: str | None = None, active_only: bool = False, page: int = 1, per_page: int = 100,
) -> tuple[list[dict], int]:
    query = select(Signal).join(Signal.company).options(selectinload(Signal.company))
    if status:
        query = query.where(Signal.status.in_([s.strip() for s in status.split(",")]))
    elif active_only:
        query = query.where(Signal.status.in_(ACTIVE_STATUSES))
    if kind:
        query = query.where(Signal.kind.in_([k.strip() for k in kind.split(",")]))
    if search:
        query = query.where(Company.name.icontains(search.strip(), autoescape=True))
    total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    rows = session.execute(
        query.order_by(Signal.priority_score.desc(), Signal.first_detected_at.desc(), Signal.id.desc())
        .offset((page - 1) * per_page).limit(per_page)
    ).scalars().all()
    return [signal_summary(s) for s in rows], total


def update_signal(session: Session, signal: Signal, update: SignalUpdate) -> Signal:
    """Apply a rep's change; raises ValueError on a transition the lifecycle forbids."""
    if update.status is not None and update.status != signal.status:
        if update.status not in ALLOWED_TRANSITIONS.get(signal.status, frozenset()):
            raise ValueError(f"Cannot move signal from {signal.status} to {update.status}")
        signal.status = update.status
        if update.status == "new":
            signal.claimed_by = ""
    if update.claimed_by is not None:
        signal.claimed_by = update.claimed_by.strip()
    if update.notes is not None:
        detail = json_parse(signal.detail_json)
        detail["rep_notes"] = update.notes
        signal.detail_json = to_json(detail)
    session.commit()
    return signal


def company_summary(company: Company) -> dict:
    return {
        "id": company.id, "name": company.name, "industry": company.industry,
        "relationship_warmth": company.relationship_warmth,
    }


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for name in fields:
        val = updates.get(name)
        if val is not None:
            setattr(obj, name, val)


def run_summary(run: AgentRun) -> dict:
    return {
        "id": run.id, "agent_name": run.agent_name, "status": run.status,
        "started_at": _iso(run.started_at), "completed_at": _iso(run.completed_at),
        "signals_found": run.signals_found,
        "signals_carried_forward": run.signals_carried_forward,
        "detail": json_parse(run.detail_json), "error_message": run.error_message or "",
    }


def list_runs(session: Session, *, agent_name: str | None = None, limit: int = 50) -> list[dict]:
    query = select(AgentRun)
    if agent_name:
        query = query.where(AgentRun.agent_name == agent_name)
    rows = session.execute(query.order_by(AgentRun.id.desc()).limit(limit)).scalars().all()
    return [run_summary(r) for r in rows]


def compute_stats(session: Session) -> dict:
    signals = session.execute(select(Signal.status, Signal.kind)).all()
    by_status: Counter[str] = Counter()
    by_kind: Counter[str] = Counter()
    for status, kind in signals:
        by_status[status] += 1
        by_kind[kind] += 1
    return {
        "total_signals": len(signals),
        "active_signals": sum(by_status[s] for s in ACTIVE_STATUSES),
        "companies": session.execute(select(func.count(Company.id))).scalar_one(),
        "past_clients": session.execute(
            select(func.count(PastClient.id)).where(PastClient.is_active.is_(True))
        ).scalar_one(),
        "excluded_companies": session.execute(select(func.count(ExcludedCompany.id))).scalar_one(),
        "by_status": dict(by_status),
        "by_kind": dict(by_kind),
    }

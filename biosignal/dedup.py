"""Duplicate detection for signals.

Two mechanisms live here:

* the exact-key admission check run before every insert, keyed on
  ``(company_id, kind, dedup_key)``, and
* the semantic batch pass over transaction signals, which finds the same deal
  reported from both sides and deletes the poorer record.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from biosignal.models import Signal
from biosignal.normalizer import comparison_key
from biosignal.schemas import DedupResult
from biosignal.utils import as_utc, canonicalize_url, json_parse

log = logging.getLogger(__name__)

TRANSACTION_KINDS = frozenset({"transaction"})

PAIR_WINDOW_DAYS = 30
GROUP_WINDOW_DAYS = 7
_MISSING_DATE_DAYS = 999

# ---------------------------------------------------------------------------
# Exact-key admission
# ---------------------------------------------------------------------------


def signal_exists(session: Session, company_id: int, kind: str, dedup_key: str) -> bool:
    row = session.execute(
        select(Signal.id).where(
            Signal.company_id == company_id,
            Signal.kind == kind,
            Signal.dedup_key == dedup_key,
        ).limit(1)
    ).first()
    return row is not None


def week_bucket(when: datetime) -> str:
    year, week, _ = as_utc(when).isocalendar()
    return f"{year}-W{week:02d}"


def bucketed_key(base: str, tag: str | None = None, when: datetime | None = None) -> str:
    """Build a dedup key from a source URL plus optional tag and ISO week.

    ``bucketed_key("https://x/jobs/1", "ml-scientist", now)`` gives
    ``"https://x/jobs/1#ml-scientist-week-2026-W03"``, so the same posting
    re-signals at most once a week.
    """
    key = canonicalize_url(base) if "://" in base or base.startswith("www.") else base.strip()
    if tag:
        key = f"{key}#{tag}"
    if when is not None:
        key = f"{key}-week-{week_bucket(when)}" if tag else f"{key}#week-{week_bucket(when)}"
    return key


# ---------------------------------------------------------------------------
# Semantic pass
# ---------------------------------------------------------------------------


def names_similar(a: str, b: str) -> bool:
    """Loose match on comparison keys: shared 6-char prefix or 8-char substring."""
    if not a or not b:
        return False
    if a == b:
        return True
    if len(a) >= 6 and b.startswith(a[:6]):
        return True
    if len(b) >= 6 and a.startswith(b[:6]):
        return True
    if len(a) >= 8 and a[:8] in b:
        return True
    if len(b) >= 8 and b[:8] in a:
        return True
    return False


def richness(detail: dict[str, Any] | None) -> int:
    if not isinstance(detail, dict):
        return 0
    return sum(1 for v in detail.values() if v is not None and v != "")


def days_between(a: datetime | None, b: datetime | None) -> int:
    if a is None or b is None:
        return _MISSING_DATE_DAYS
    return abs(as_utc(a) - as_utc(b)) // timedelta(days=1)


@dataclass(frozen=True)
class DealRecord:
    id: int
    kind: str
    company: str
    acquirer: str
    counterparty: str
    detected_at: datetime | None
    richness: int


def deal_record(signal: Signal) -> DealRecord:
    detail = json_parse(signal.detail_json)
    company = detail.get("company_name") or (signal.company.name if signal.company else "")
    counterparty = detail.get("counterparty_name") or detail.get("acquired_name") or ""
    return DealRecord(
        id=signal.id,
        kind=signal.kind,
        company=comparison_key(str(company)),
        acquirer=comparison_key(str(detail.get("acquirer_name") or "")),
        counterparty=comparison_key(str(counterparty)),
        detected_at=signal.first_detected_at,
        richness=richness(detail),
    )


def _preference(rec: DealRecord) -> tuple[int, datetime, int]:
    """Richer first, then newer, then higher id."""
    detected = as_utc(rec.detected_at) if rec.detected_at else datetime.min.replace(tzinfo=UTC)
    return rec.richness, detected, rec.id


def _same_deal(a: DealRecord, b: DealRecord, pair_window_days: int) -> str | None:
    if (a.counterparty and b.counterparty
            and names_similar(a.company, b.counterparty)
            and names_similar(b.company, a.counterparty)):
        return "symmetric"
    if (a.acquirer and b.acquirer
            and (names_similar(a.company, b.acquirer) or names_similar(b.company, a.acquirer))
            and days_between(a.detected_at, b.detected_at) <= pair_window_days):
        return "shared_actor"
    if (a.counterparty and b.counterparty and a.acquirer and b.acquirer
            and names_similar(a.counterparty, b.counterparty)
            and names_similar(a.acquirer, b.acquirer)):
        return "same_parties"
    return None


def find_semantic_duplicates(
    records: Iterable[DealRecord],
    *,
    pair_window_days: int = PAIR_WINDOW_DAYS,
    group_window_days: int = GROUP_WINDOW_DAYS,
) -> set[int]:
    """Return ids of records that duplicate a richer or newer record.

    Pure function; running it again on the survivors returns an empty set.
    """
    ordered = sorted(records, key=_preference, reverse=True)
    doomed: set[int] = set()

    for i, a in enumerate(ordered):
        for b in ordered[i + 1:]:
            if a.id in doomed or b.id in doomed:
                continue
            why = _same_deal(a, b, pair_window_days)
            if why is None:
                continue
            # ordered by preference, so b is the poorer record
            log.debug("Semantic duplicate (%s): keeping %d, dropping %d", why, a.id, b.id)
            doomed.add(b.id)

    groups: dict[tuple[str, str], list[DealRecord]] = {}
    for rec in ordered:
        if rec.id in doomed:
            continue
        groups.setdefault((rec.company, rec.kind), []).append(rec)
    for group in groups.values():
        if len(group) < 2:
            continue
        keep, rest = group[0], group[1:]
        for rec in rest:
            if days_between(keep.detected_at, rec.detected_at) <= group_window_days:
                log.debug("Repeat within %d days of %d, dropping %d", group_window_days, keep.id, rec.id)
                doomed.add(rec.id)
    return doomed


def dedup_transactions(
    session: Session,
    *,
    pair_window_days: int = PAIR_WINDOW_DAYS,
    group_window_days: int = GROUP_WINDOW_DAYS,
) -> DedupResult:
    signals = session.execute(
        select(Signal)
        .where(Signal.kind.in_(TRANSACTION_KINDS))
        .options(selectinload(Signal.company))
    ).scalars().all()
    records = [deal_record(s) for s in signals]
    doomed = find_semantic_duplicates(
        records, pair_window_days=pair_window_days, group_window_days=group_window_days,
    )
    if doomed:
        session.execute(delete(Signal).where(Signal.id.in_(sorted(doomed))))
    session.commit()
    log.info("Transaction dedup: %d checked, %d deleted", len(records), len(doomed))
    return DedupResult(checked=len(records), deleted=len(doomed), deleted_ids=sorted(doomed))

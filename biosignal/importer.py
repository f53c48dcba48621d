"""Import past-client and exclusion rosters from an XLSX workbook.

Sheets are recognised by name (``past client`` / ``exclu``); columns by their
header text, so column order does not matter.
"""
from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from biosignal.models import ExcludedCompany, PastClient
from biosignal.normalizer import display_name
from biosignal.resolver import identity_key
from biosignal.schemas import ImportResult
from biosignal.utils import utc_now

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _i(value: object) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(str(value).replace(",", "")))
    except (ValueError, TypeError):
        return None


def _b(value: object, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "y", "active")


_HEADER_ALIASES = {
    "name": ("name", "company", "company name", "client", "organization"),
    "rank": ("rank", "priority", "priority rank", "priority_rank"),
    "active": ("active", "is active", "is_active"),
    "reason": ("reason", "note", "notes"),
    "employees": ("employees", "employee count", "employee_count", "headcount"),
}


def _header_map(header: tuple) -> dict[str, int]:
    found: dict[str, int] = {}
    for idx, cell in enumerate(header):
        label = _s(cell).casefold()
        for field, aliases in _HEADER_ALIASES.items():
            if label in aliases and field not in found:
                found[field] = idx
    return found


def _rows(ws) -> tuple[dict[str, int], list[tuple]]:
    rows = list(ws.iter_rows(values_only=True))
    if not rows:
        return {}, []
    cols = _header_map(rows[0])
    if "name" not in cols:
        cols["name"] = 0
    return cols, [r for r in rows[1:] if r]


def _cell(row: tuple, cols: dict[str, int], field: str) -> object:
    idx = cols.get(field)
    if idx is None or idx >= len(row):
        return None
    return row[idx]


def _import_past_clients(session: Session, ws) -> tuple[int, int]:
    cols, rows = _rows(ws)
    existing = {p.name_key: p for p in session.execute(select(PastClient)).scalars().all()}
    count = skipped = 0
    for position, row in enumerate(rows, start=1):
        name = display_name(_s(_cell(row, cols, "name")))
        key = identity_key(name)
        if not key:
            skipped += 1
            continue
        rank = _i(_cell(row, cols, "rank")) or position
        active = _b(_cell(row, cols, "active"))
        client = existing.get(key)
        if client is None:
            client = PastClient(name=name, name_key=key, priority_rank=rank, is_active=active)
            session.add(client)
            existing[key] = client
        else:
            client.name, client.priority_rank, client.is_active = name, rank, active
        count += 1
    return count, skipped


def _import_excluded(session: Session, ws) -> tuple[int, int]:
    cols, rows = _rows(ws)
    existing = {e.name_key: e for e in session.execute(select(ExcludedCompany)).scalars().all()}
    count = skipped = 0
    for row in rows:
        name = display_name(_s(_cell(row, cols, "name")))
        key = identity_key(name)
        if not key:
            skipped += 1
            continue
        reason = _s(_cell(row, cols, "reason")) or "Imported exclusion"
        employees = _i(_cell(row, cols, "employees"))
        entry = existing.get(key)
        if entry is None:
            entry = ExcludedCompany(name=name, name_key=key)
            session.add(entry)
            existing[key] = entry
        entry.reason = reason
        entry.employee_count = employees
        entry.last_checked_at = utc_now()
        count += 1
    return count, skipped


def import_rosters(file_path: str | Path, session: Session) -> ImportResult:
    """Upsert both rosters by identity key. Returns per-roster counts."""
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    past = excluded = skipped = 0
    try:
        for sheet_name in wb.sheetnames:
            lower = sheet_name.casefold()
            if "past" in lower and "client" in lower:
                n, s = _import_past_clients(session, wb[sheet_name])
                past += n
                skipped += s
            elif "exclu" in lower:
                n, s = _import_excluded(session, wb[sheet_name])
                excluded += n
                skipped += s
            else:
                log.debug("Ignoring sheet %r", sheet_name)
    finally:
        wb.close()
    session.commit()
    log.info("Roster import: %d past clients, %d excluded, %d skipped", past, excluded, skipped)
    return ImportResult(past_clients=past, excluded=excluded, skipped=skipped)

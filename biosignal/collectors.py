"""Collector boundary plus two reference collectors.

A collector is anything with a ``name`` and an async ``events()`` iterator of
:class:`~biosignal.schemas.CandidateEvent`. Collectors only fetch and parse;
resolution, dedup and scoring happen in :mod:`biosignal.services`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Any, AsyncIterator, Protocol, runtime_checkable

import httpx
from pydantic import ValidationError

from biosignal.config import Settings, get_settings
from biosignal.schemas import CandidateEvent

log = logging.getLogger(__name__)


class CollectorError(Exception):
    """A source could not be fetched or parsed."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@runtime_checkable
class Collector(Protocol):
    name: str

    def events(self) -> AsyncIterator[CandidateEvent]: ...


# ---------------------------------------------------------------------------
# File replay
# ---------------------------------------------------------------------------


class FileCollector:
    """Replays candidate events from a JSON-lines file, one event per line."""

    def __init__(self, path: str | Path, name: str | None = None):
        self.path = Path(path)
        self.name = name or f"file:{self.path.stem}"
        self.invalid_lines = 0

    async def events(self) -> AsyncIterator[CandidateEvent]:
        if not self.path.exists():
            raise CollectorError(f"Event file not found: {self.path}")
        with self.path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                try:
                    event = CandidateEvent.model_validate(json.loads(line))
                except (json.JSONDecodeError, ValidationError) as exc:
                    self.invalid_lines += 1
                    log.warning("%s:%d: skipping invalid event: %s", self.path.name, lineno, exc)
                    continue
                if not event.source_name:
                    event.source_name = self.name
                yield event


# ---------------------------------------------------------------------------
# ClinicalTrials.gov
# ---------------------------------------------------------------------------

TRIAL_SOURCE = "ClinicalTrials.gov"
STUDY_URL = "https://clinicaltrials.gov/study/{nct_id}"
SITE_ACTIVATION_MIN_LOCATIONS = 10
COMPLETION_HORIZON_DAYS = 90

_STUDY_FIELDS = (
    "NCTId", "BriefTitle", "OfficialTitle", "OverallStatus", "Phase",
    "LeadSponsorName", "PrimaryCompletionDate", "LocationCount", "StartDate",
)
_STATUSES = "RECRUITING,ACTIVE_NOT_RECRUITING,COMPLETED,NOT_YET_RECRUITING"


def _path(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _partial_date(value: str | None) -> date | None:
    """ClinicalTrials.gov dates are ``YYYY-MM-DD`` or ``YYYY-MM``."""
    if not value:
        return None
    parts = value.strip().split("-")
    try:
        if len(parts) == 2:
            return date(int(parts[0]), int(parts[1]), 1)
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def classify_study(study: dict[str, Any], today: date) -> list[tuple[str, str]]:
    """Return ``(kind, summary)`` pairs for every signal a study carries."""
    protocol = study.get("protocolSection") or {}
    phases = _path(protocol, "designModule", "phases") or []
    locations = _path(protocol, "contactsLocationsModule", "locations") or []
    title = (_path(protocol, "identificationModule", "briefTitle")
             or _path(protocol, "identificationModule", "officialTitle")
             or "Unknown Study")

    found: list[tuple[str, str]] = []
    if "PHASE2" in phases or "PHASE3" in phases:
        n = "3" if "PHASE3" in phases else "2"
        found.append(("phase_transition", f"Phase {n} trial detected: {title}"))
    if "PHASE1" in phases and "PHASE2" not in phases:
        found.append(("new_ind", f"New Phase 1 IND study: {title}"))
    if len(locations) > SITE_ACTIVATION_MIN_LOCATIONS:
        found.append(("site_activation", f"Study has {len(locations)} active sites: {title}"))
    completion = _partial_date(_path(protocol, "statusModule", "primaryCompletionDateStruct", "date"))
    if completion is not None:
        days_left = (completion - today).days
        if 0 <= days_left <= COMPLETION_HORIZON_DAYS:
            found.append(("trial_completion", f"Trial completing in {days_left} days: {title}"))
    return found


def study_events(study: dict[str, Any], today: date) -> list[CandidateEvent]:
    protocol = study.get("protocolSection") or {}
    sponsor = _path(protocol, "sponsorCollaboratorsModule", "leadSponsor", "name")
    if not sponsor:
        return []
    nct_id = _path(protocol, "identificationModule", "nctId")
    source_url = STUDY_URL.format(nct_id=nct_id) if nct_id else "https://clinicaltrials.gov"
    detail = {
        "nct_id": nct_id,
        "title": _path(protocol, "identificationModule", "briefTitle") or "",
        "phases": _path(protocol, "designModule", "phases") or [],
        "n_locations": len(_path(protocol, "contactsLocationsModule", "locations") or []),
        "primary_completion_date": _path(protocol, "statusModule", "primaryCompletionDateStruct", "date"),
        "sponsor": sponsor,
        "source_url": source_url,
    }
    return [
        CandidateEvent(
            raw_company_name=sponsor, kind=kind, dedup_key=source_url,
            summary=summary, detail=detail, source_name=TRIAL_SOURCE,
        )
        for kind, summary in classify_study(study, today)
    ]


class ClinicalTrialsCollector:
    name = "clinical_trial_monitor"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        today: date | None = None,
        page_delay: float = 0.5,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self.today = today
        self.page_delay = page_delay
        self.pages_fetched = 0

    @asynccontextmanager
    async def _open(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout_seconds),
            headers={"User-Agent": self.settings.user_agent, "Accept": "application/json"},
            follow_redirects=True,
        ) as client:
            yield client

    async def _fetch_page(self, client: httpx.AsyncClient, page_token: str | None) -> tuple[list[dict], str | None]:
        params = {
            "format": "json",
            "pageSize": str(self.settings.clinical_trials_page_size),
            "fields": ",".join(_STUDY_FIELDS),
            "filter.overallStatus": _STATUSES,
            "filter.advanced": "AREA[StudyType]INTERVENTIONAL",
        }
        if page_token:
            params["pageToken"] = page_token
        try:
            resp = await client.get(self.settings.clinical_trials_url, params=params)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise CollectorError(
                f"ClinicalTrials API error {status}", retryable=status == 429 or status >= 500,
            ) from exc
        except httpx.TransportError as exc:
            raise CollectorError(f"ClinicalTrials API unreachable: {exc}", retryable=True) from exc
        except ValueError as exc:
            raise CollectorError(f"ClinicalTrials API returned invalid JSON: {exc}") from exc
        return payload.get("studies") or [], payload.get("nextPageToken") or None

    async def events(self) -> AsyncIterator[CandidateEvent]:
        today = self.today or date.today()
        token: str | None = None
        self.pages_fetched = 0
        async with self._open() as client:
            while True:
                studies, token = await self._fetch_page(client, token)
                self.pages_fetched += 1
                log.info("%s: page %d, %d studies", self.name, self.pages_fetched, len(studies))
                for study in studies:
                    for event in study_events(study, today):
                        yield event
                if not token or self.pages_fetched >= self.settings.clinical_trials_max_pages:
                    break
                if self.page_delay:
                    await asyncio.sleep(self.page_delay)

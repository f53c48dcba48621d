"""Pydantic boundary models for collectors, the API and the CLI."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from biosignal.models import SIGNAL_STATUSES, WARMTH_CATEGORIES

# ---------------------------------------------------------------------------
# Collector boundary
# ---------------------------------------------------------------------------


def normalize_kind(value: str) -> str:
    """``"new-award"`` and ``"New Award"`` both become ``"new_award"``."""
    return "_".join(value.strip().lower().replace("-", " ").split())


class CandidateEvent(BaseModel):
    """Raw event as a collector reports it, before resolution and dedup."""

    model_config = ConfigDict(populate_by_name=True)

    raw_company_name: str = Field(
        "", validation_alias=AliasChoices("raw_company_name", "rawCompanyName", "company"),
    )
    kind: str = Field(validation_alias=AliasChoices("kind", "signalKind", "signal_kind"))
    dedup_key: str = Field(validation_alias=AliasChoices("dedup_key", "dedupKey"))
    summary: str = Field("", validation_alias=AliasChoices("summary", "displaySummary"))
    detail: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("detail", "structuredDetail"),
    )
    source_name: str = ""
    pre_hiring_check: bool = False
    detected_at: datetime | None = None

    @field_validator("raw_company_name", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("kind")
    @classmethod
    def _normalize_kind(cls, v: str) -> str:
        kind = normalize_kind(v)
        if not kind:
            raise ValueError("kind must not be empty")
        return kind

    @field_validator("dedup_key")
    @classmethod
    def _strip_dedup_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("dedup_key must not be empty")
        return v


class AdmissionResult(BaseModel):
    admitted: bool
    signal_id: int | None = None
    company_id: int | None = None
    reason: str | None = None  # unresolvable | excluded | dismissed | duplicate


# ---------------------------------------------------------------------------
# Score breakdown
# ---------------------------------------------------------------------------


def as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(round(value))
    if isinstance(value, str):
        try:
            return int(round(float(value)))
        except ValueError:
            return default
    return default


COMPONENT_FIELDS = ("signal_strength", "recency", "relationship_warmth", "actionability", "past_client_boost")


class ScoreBreakdown(BaseModel):
    """Named score components; unknown keys are kept in the extension area."""

    model_config = ConfigDict(extra="allow")

    signal_strength: int
    recency: int = 0
    relationship_warmth: int = 0
    actionability: int = 0
    past_client_boost: int = 0

    @classmethod
    def from_stored(cls, data: dict[str, Any] | None, default_strength: int = 15) -> ScoreBreakdown:
        """Read a breakdown persisted by any earlier writer.

        Job-posting records used ``{"base", "days_posted_boost"}`` instead of
        ``signal_strength``; those are folded together.
        """
        data = dict(data or {})
        if "signal_strength" in data:
            strength = as_int(data.pop("signal_strength"), default_strength)
        elif "base" in data:
            strength = as_int(data.get("base"), default_strength) + as_int(data.get("days_posted_boost"))
        else:
            strength = default_strength
        values = {f: as_int(data.pop(f, 0)) for f in COMPONENT_FIELDS[1:]}
        return cls(signal_strength=strength, **values, **data)

    def components(self) -> dict[str, int]:
        return {f: getattr(self, f) for f in COMPONENT_FIELDS}


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


class SignalOut(BaseModel):
    id: int
    company_id: int
    company_name: str
    relationship_warmth: str
    kind: str
    summary: str
    detail: dict[str, Any] = {}
    dedup_key: str
    source_name: str = ""
    status: str
    priority_score: int
    score_breakdown: dict[str, Any] = {}
    days_in_queue: int
    first_detected_at: str | None = None
    claimed_by: str = ""


class SignalListResponse(BaseModel):
    items: list[SignalOut]
    total: int


class SignalUpdate(BaseModel):
    status: str | None = None
    claimed_by: str | None = None
    notes: str | None = None

    @field_validator("status")
    @classmethod
    def _known_status(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = normalize_kind(v)
        if v not in SIGNAL_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(SIGNAL_STATUSES)}")
        return v


# ---------------------------------------------------------------------------
# Jobs and runs
# ---------------------------------------------------------------------------


class CollectorResult(BaseModel):
    name: str
    success: bool
    signals_found: int = 0
    skipped: dict[str, int] = {}
    error: str | None = None
    retryable: bool = False
    run_id: int | None = None


class SweepResult(BaseModel):
    carried_forward: int
    recomputed: int


class OrchestratorResult(BaseModel):
    success: bool
    run_id: int | None = None
    total_signals: int = 0
    carried_forward: int = 0
    recomputed: int = 0
    active_signals: int = 0
    collectors: list[CollectorResult] = []
    error: str | None = None


class DedupResult(BaseModel):
    checked: int
    deleted: int
    deleted_ids: list[int] = []


class RunOut(BaseModel):
    id: int
    agent_name: str
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    signals_found: int
    signals_carried_forward: int = 0
    detail: dict[str, Any] = {}
    error_message: str = ""


class CompanySizeResult(BaseModel):
    name: str
    employee_count: int
    action: str  # excluded | refreshed | reinstated | protected | unchanged


class ImportResult(BaseModel):
    past_clients: int = 0
    excluded: int = 0
    skipped: int = 0


class StatsOut(BaseModel):
    total_signals: int
    active_signals: int
    companies: int
    past_clients: int
    excluded_companies: int
    by_status: dict[str, int]
    by_kind: dict[str, int]


# ---------------------------------------------------------------------------
# Companies and job requests
# ---------------------------------------------------------------------------


class CompanyOut(BaseModel):
    id: int
    name: str
    industry: str
    relationship_warmth: str


class CompanyUpdate(BaseModel):
    industry: str | None = None
    relationship_warmth: str | None = None

    @field_validator("relationship_warmth")
    @classmethod
    def _known_warmth(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = normalize_kind(v)
        if v not in WARMTH_CATEGORIES:
            raise ValueError(f"relationship_warmth must be one of: {', '.join(WARMTH_CATEGORIES)}")
        return v


class CompanySizeIn(BaseModel):
    name: str
    employee_count: int = Field(ge=0)


class OrchestratorRunIn(BaseModel):
    """Collectors come from configuration; only the trials toggle is per request."""

    model_config = ConfigDict(extra="forbid")

    clinical_trials: bool = False

from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from biosignal import services
from biosignal.collectors import ClinicalTrialsCollector, Collector, FileCollector
from biosignal.config import get_settings
from biosignal.db import get_session, get_session_factory, init_db
from biosignal.dedup import dedup_transactions
from biosignal.importer import import_rosters
from biosignal.models import Company, Signal
from biosignal.orchestrator import run_orchestrator
from biosignal.roster import load_past_clients
from biosignal.schemas import (
    AdmissionResult,
    CandidateEvent,
    CompanyOut,
    CompanySizeIn,
    CompanySizeResult,
    CompanyUpdate,
    DedupResult,
    ImportResult,
    OrchestratorResult,
    OrchestratorRunIn,
    RunOut,
    SignalListResponse,
    SignalOut,
    SignalUpdate,
    StatsOut,
    SweepResult,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="BioSignal",
    version="0.1.0",
    description=(
        "Business-development signal engine for life-sciences accounts. "
        "Resolves noisy company names, de-duplicates events and keeps a ranked queue. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Events", "description": "Submit candidate events from collectors."},
        {"name": "Signals", "description": "Browse the ranked signal queue and update its workflow state."},
        {"name": "Companies", "description": "Company warmth and size maintenance."},
        {"name": "Jobs", "description": "Sweep, semantic dedup and orchestrated collector runs."},
        {"name": "Rosters", "description": "Bulk import past-client and exclusion rosters."},
        {"name": "Stats", "description": "Aggregate counts and agent run history."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_factory() -> sessionmaker[Session]:
    return get_session_factory()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Events
# ---------------------------------------------------------------------------


@app.post("/api/events", response_model=AdmissionResult,
          tags=["Events"], summary="Admit one candidate event (resolve, filter, dedup, score)")
async def submit_event(body: CandidateEvent, session: Session = Depends(db_session)):
    ctx = services.RunContext.load(session, academic_filter=get_settings().academic_filter)
    return services.admit_event(session, body, ctx)


# ---------------------------------------------------------------------------
# Routes: Signals
# ---------------------------------------------------------------------------


@app.get("/api/signals", response_model=SignalListResponse,
         tags=["Signals"], summary="List signals by priority with filtering and pagination")
async def list_signals(
    status: str | None = Query(None, description="Comma-separated: new, carried_forward, claimed, contacted, closed"),
    kind: str | None = Query(None, description="Comma-separated signal kinds"),
    search: str | None = Query(None, description="Substring of the company name"),
    active_only: bool = Query(False, description="Only new and carried-forward signals"),
    page: int = Query(1, ge=1),
    per_page: int = Query(100, ge=1, le=500),
    session: Session = Depends(db_session),
):
    items, total = services.query_signals(
        session, status=status, kind=kind, search=search,
        active_only=active_only, page=page, per_page=per_page,
    )
    return {"items": items, "total": total}


@app.get("/api/signals/{signal_id}", response_model=SignalOut,
         tags=["Signals"], summary="Get one signal with detail and score breakdown")
async def get_signal(signal_id: int, session: Session = Depends(db_session)):
    return services.signal_summary(_get_or_404(session, Signal, signal_id, "Signal"))


@app.patch("/api/signals/{signal_id}", response_model=SignalOut,
           tags=["Signals"], summary="Change status, claim, or add rep notes")
async def update_signal(signal_id: int, body: SignalUpdate, session: Session = Depends(db_session)):
    signal = _get_or_404(session, Signal, signal_id, "Signal")
    try:
        services.update_signal(session, signal, body)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return services.signal_summary(signal)


# ---------------------------------------------------------------------------
# Routes: Companies
# ---------------------------------------------------------------------------


@app.patch("/api/companies/{company_id}", response_model=CompanyOut,
           tags=["Companies"], summary="Set industry or relationship warmth")
async def update_company(company_id: int, body: CompanyUpdate, session: Session = Depends(db_session)):
    company = _get_or_404(session, Company, company_id, "Company")
    services.apply_updates(company, body.model_dump(), ("industry", "relationship_warmth"))
    session.commit()
    return services.company_summary(company)


@app.post("/api/companies/size", response_model=CompanySizeResult,
          tags=["Companies"], summary="Record a headcount; excludes or reinstates the company")
async def record_company_size(body: CompanySizeIn, session: Session = Depends(db_session)):
    try:
        return services.record_company_size(
            session, body.name, body.employee_count, load_past_clients(session),
            threshold=get_settings().exclusion_employee_threshold,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc


# ---------------------------------------------------------------------------
# Routes: Jobs
# ---------------------------------------------------------------------------


@app.post("/api/sweep", response_model=SweepResult,
          tags=["Jobs"], summary="Carry forward stale signals and recompute all open scores")
async def sweep(session: Session = Depends(db_session)):
    return services.run_sweep(session)


@app.post("/api/dedup/transactions", response_model=DedupResult,
          tags=["Jobs"], summary="Delete transaction signals that duplicate the same deal")
async def dedup(session: Session = Depends(db_session)):
    settings = get_settings()
    return dedup_transactions(
        session,
        pair_window_days=settings.semantic_window_days,
        group_window_days=settings.group_window_days,
    )


@app.post("/api/orchestrator/run", response_model=OrchestratorResult,
          tags=["Jobs"], summary="Run the configured collectors concurrently, then sweep")
async def orchestrator_run(
    body: OrchestratorRunIn | None = None,
    factory: sessionmaker[Session] = Depends(session_factory),
):
    body = body or OrchestratorRunIn()
    settings = get_settings()
    collectors: list[Collector] = [FileCollector(p) for p in settings.collector_files]
    if body.clinical_trials:
        collectors.append(ClinicalTrialsCollector(settings))
    return await run_orchestrator(collectors, factory, academic_filter=settings.academic_filter)


# ---------------------------------------------------------------------------
# Routes: Rosters
# ---------------------------------------------------------------------------


@app.post("/api/rosters/import", response_model=ImportResult,
          tags=["Rosters"], summary="Import past-client and exclusion rosters from XLSX")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_rosters(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Signal counts by status and kind, roster sizes")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


@app.get("/api/runs", response_model=list[RunOut],
         tags=["Stats"], summary="Recent agent runs, newest first")
async def list_runs(
    agent_name: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return services.list_runs(session, agent_name=agent_name, limit=limit)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("biosignal.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()

"""Run collectors concurrently, then sweep the whole signal store."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Sequence

from sqlalchemy.orm import Session

from biosignal.collectors import Collector
from biosignal.db import finish_agent_run, start_agent_run
from biosignal.schemas import CollectorResult, OrchestratorResult
from biosignal.services import RunContext, admit_event, count_active, run_sweep

log = logging.getLogger(__name__)

ORCHESTRATOR_NAME = "orchestrator"

SessionFactory = Callable[[], Session]


async def run_collector(
    collector: Collector, session_factory: SessionFactory, *,
    now: datetime | None = None, academic_filter: bool = True,
) -> CollectorResult:
    """Drain one collector into the store. Never raises for collector faults.

    Events are admitted in source order on the collector's own session, each
    committed before the next is read.
    """
    session = session_factory()
    run = None
    ctx: RunContext | None = None
    try:
        run = start_agent_run(session, collector.name)
        ctx = RunContext.load(session, now, academic_filter=academic_filter)
        async for event in collector.events():
            admit_event(session, event, ctx)
        finish_agent_run(
            session, run, status="completed", signals_found=ctx.admitted,
            details={"skipped": dict(ctx.skipped)},
        )
        log.info("%s: %d signals admitted, skipped %s", collector.name, ctx.admitted, dict(ctx.skipped) or "none")
        return CollectorResult(
            name=collector.name, success=True, signals_found=ctx.admitted,
            skipped=dict(ctx.skipped), run_id=run.id,
        )
    except Exception as exc:
        session.rollback()
        log.warning("Collector %s failed: %s", collector.name, exc)
        admitted = ctx.admitted if ctx else 0
        skipped = dict(ctx.skipped) if ctx else {}
        if run is not None:
            finish_agent_run(
                session, run, status="failed", signals_found=admitted,
                details={"skipped": skipped}, error_message=str(exc),
            )
        return CollectorResult(
            name=collector.name, success=False, signals_found=admitted, skipped=skipped,
            error=str(exc), retryable=getattr(exc, "retryable", False),
            run_id=run.id if run is not None else None,
        )
    finally:
        session.close()


async def run_collectors(
    collectors: Sequence[Collector], session_factory: SessionFactory, *,
    now: datetime | None = None, academic_filter: bool = True,
) -> list[CollectorResult]:
    results = await asyncio.gather(
        *(run_collector(c, session_factory, now=now, academic_filter=academic_filter) for c in collectors),
        return_exceptions=True,
    )
    out: list[CollectorResult] = []
    for collector, result in zip(collectors, results):
        if isinstance(result, BaseException):
            log.warning("Collector %s crashed: %s", collector.name, result)
            out.append(CollectorResult(name=collector.name, success=False, error=str(result)))
        else:
            out.append(result)
    return out


async def run_orchestrator(
    collectors: Sequence[Collector], session_factory: SessionFactory, *,
    now: datetime | None = None, academic_filter: bool = True,
) -> OrchestratorResult:
    """Join all collectors, then carry forward and rescore every open signal.

    The outcome is recorded as one ``orchestrator`` agent run. Collector
    failures show up in its detail, not as a failed orchestrator run.
    """
    session = session_factory()
    results: list[CollectorResult] = []
    try:
        run = start_agent_run(session, ORCHESTRATOR_NAME)
        try:
            results = await run_collectors(collectors, session_factory, now=now, academic_filter=academic_filter)
            sweep = run_sweep(session, now)
            active = count_active(session)
            total = sum(r.signals_found for r in results)
            finish_agent_run(
                session, run, status="completed", signals_found=total,
                signals_carried_forward=sweep.carried_forward,
                details={
                    "agent_results": {r.name: r.model_dump(exclude={"name"}) for r in results},
                    "recomputed": sweep.recomputed,
                    "active_signals_after_run": active,
                },
            )
        except Exception as exc:
            session.rollback()
            log.error("Orchestrator run failed: %s", exc)
            finish_agent_run(
                session, run, status="failed",
                signals_found=sum(r.signals_found for r in results),
                details={"agent_results": {r.name: r.model_dump(exclude={"name"}) for r in results}},
                error_message=str(exc),
            )
            return OrchestratorResult(success=False, run_id=run.id, collectors=results, error=str(exc))
    finally:
        session.close()

    log.info(
        "Orchestrator: %d new signals from %d collectors, %d carried forward, %d active",
        total, len(results), sweep.carried_forward, active,
    )
    return OrchestratorResult(
        success=True, run_id=run.id, total_signals=total,
        carried_forward=sweep.carried_forward, recomputed=sweep.recomputed,
        active_signals=active, collectors=results,
    )

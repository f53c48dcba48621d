from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from biosignal.collectors import ClinicalTrialsCollector, Collector, FileCollector
from biosignal.config import get_settings
from biosignal.db import get_session_factory, init_db, session_scope
from biosignal.dedup import dedup_transactions
from biosignal.importer import import_rosters
from biosignal.orchestrator import run_orchestrator
from biosignal.roster import load_past_clients
from biosignal.services import query_signals, record_company_size, run_sweep

app = typer.Typer(help="Life-sciences business-development signal engine")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    project_root: str | None = typer.Option(
        None, "--project-root", help="Directory holding data/ and biosignal.yaml.",
    ),
    db_path: str | None = typer.Option(None, "--db", help="SQLite database file to use."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if project_root:
        os.environ["BIOSIGNAL_HOME"] = str(Path(project_root).expanduser().resolve())
    if db_path:
        os.environ["BIOSIGNAL_DB"] = str(Path(db_path).expanduser().resolve())
    if project_root or db_path:
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)
    init_db(get_settings().database_path)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return
    scalar_rows = [(k, _format_scalar(v)) for k, v in payload.items() if not isinstance(v, (dict, list))]
    _render_table(title, scalar_rows)
    for key, value in payload.items():
        if isinstance(value, dict) and value:
            _render_table(
                f"{title} · {key}",
                [(str(k), _format_scalar(v)) for k, v in value.items()],
                border_style="magenta",
            )
        elif isinstance(value, list) and value:
            _render_table(
                f"{title} · {key}",
                [("items", str(len(value))), ("preview", json.dumps(value[:3], ensure_ascii=False, default=str))],
                border_style="yellow",
            )


def _run_collectors(ctx: typer.Context, collectors: list[Collector]) -> None:
    result = asyncio.run(run_orchestrator(
        collectors, get_session_factory(), academic_filter=get_settings().academic_filter,
    ))
    payload = result.model_dump()
    payload["collectors"] = {
        c.name: ("ok" if c.success else f"failed: {c.error}") + f" ({c.signals_found} signals)"
        for c in result.collectors
    }
    _print("run", payload, ctx)
    if not result.success:
        raise typer.Exit(code=1)


@app.command("ingest")
def ingest_command(
    ctx: typer.Context,
    files: list[Path] = typer.Argument(..., help="JSON-lines files of candidate events."),
) -> None:
    """Admit candidate events from files, then sweep."""
    _run_collectors(ctx, [FileCollector(p) for p in files])


@app.command("run")
def run_command(
    ctx: typer.Context,
    trials: bool = typer.Option(False, "--trials", help="Include the ClinicalTrials.gov collector."),
) -> None:
    """Run every configured collector concurrently, then sweep."""
    settings = get_settings()
    collectors: list[Collector] = [FileCollector(p) for p in settings.collector_files]
    if trials:
        collectors.append(ClinicalTrialsCollector(settings))
    if not collectors:
        raise typer.BadParameter("No collectors configured; set collector_files or pass --trials")
    _run_collectors(ctx, collectors)


@app.command("sweep")
def sweep_command(ctx: typer.Context) -> None:
    """Carry forward yesterday's new signals and recompute open scores."""
    with session_scope() as session:
        result = run_sweep(session)
    _print("sweep", result.model_dump(), ctx)


@app.command("dedup")
def dedup_command(ctx: typer.Context) -> None:
    """Delete transaction signals that describe the same deal."""
    settings = get_settings()
    with session_scope() as session:
        result = dedup_transactions(
            session,
            pair_window_days=settings.semantic_window_days,
            group_window_days=settings.group_window_days,
        )
    _print("dedup", result.model_dump(), ctx)


@app.command("import-rosters")
def import_rosters_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="XLSX workbook with roster sheets."),
) -> None:
    with session_scope() as session:
        result = import_rosters(file, session)
    _print("import-rosters", result.model_dump(), ctx)


@app.command("company-size")
def company_size_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Company name as reported."),
    employee_count: int = typer.Argument(..., min=0),
) -> None:
    """Record a headcount; excludes or reinstates the company."""
    settings = get_settings()
    with session_scope() as session:
        try:
            result = record_company_size(
                session, name, employee_count, load_past_clients(session),
                threshold=settings.exclusion_employee_threshold,
            )
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    _print("company-size", result.model_dump(), ctx)


@app.command("signals")
def signals_command(
    ctx: typer.Context,
    status: str | None = typer.Option(None, help="Comma-separated statuses."),
    kind: str | None = typer.Option(None, help="Comma-separated kinds."),
    limit: int = typer.Option(20, min=1, max=500),
) -> None:
    """Show the top of the signal queue."""
    with session_scope() as session:
        items, total = query_signals(session, status=status, kind=kind, active_only=status is None, per_page=limit)
    if _wants_json(ctx):
        typer.echo(json.dumps({"items": items, "total": total}, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED, title=f"{len(items)} of {total} signals")
    for column in ("Score", "Company", "Kind", "Status", "Days", "Summary"):
        table.add_column(column)
    for item in items:
        table.add_row(
            str(item["priority_score"]), item["company_name"], item["kind"], item["status"],
            str(item["days_in_queue"]), (item["summary"] or "")[:80],
        )
    console.print(table)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8001),
) -> None:
    """Start the HTTP API."""
    import uvicorn
    uvicorn.run("biosignal.app:app", host=host, port=port)


if __name__ == "__main__":
    app()

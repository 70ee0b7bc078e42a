from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.orm import Session

from compass import services
from compass.config import get_settings
from compass.db import current_db_path, init_db, session_scope
from compass.errors import CompassError

app = typer.Typer(help="Compass: trace work to strategy and roll up KPI status")
console = Console()

_STATUS_STYLE = {
    "green": "green",
    "yellow": "yellow",
    "red": "red",
    "no_data": "dim",
    "exception": "magenta",
    "completed": "green",
    "in_progress": "cyan",
    "overdue": "red",
    "pending": "dim",
    "not_started": "dim",
}


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_path: str | None = typer.Option(None, "--db-path", help="SQLite database file (overrides COMPASS_DB_PATH)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db_path:
        os.environ["COMPASS_DB_PATH"] = str(Path(db_path).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.1f}"
    if value is None:
        return "-"
    return str(value)


def _styled(status: str) -> str:
    style = _STATUS_STYLE.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    rows = [
        (key, _styled(value) if key == "status" else _format_scalar(value))
        for key, value in payload.items()
        if isinstance(value, (str, int, float, bool)) or value is None
    ]
    _render_table(title, rows)


def _run(ctx: typer.Context, fn: Callable[[Session], Any], *, commit: bool = False) -> Any:
    """Open the database, run *fn* in a session, and turn domain errors into exit code 1."""
    init_db()
    try:
        with session_scope() as session:
            result = fn(session)
            if commit:
                session.commit()
            return result
    except CompassError as exc:
        if _wants_json(ctx):
            typer.echo(json.dumps({"error": exc.message, "code": exc.code}))
        else:
            console.print(f"[bold red]Error:[/bold red] {exc.message}")
        raise typer.Exit(code=1) from exc


def _render_nodes(title: str, nodes: list[dict[str, Any]], *, truncated: bool, warnings: list[str]) -> None:
    if not nodes:
        console.print(Panel("No traceability data", title=title, border_style="yellow"))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Level", style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Link", style="dim")
    for node in nodes:
        table.add_row(node["level"], str(node["id"]), node["name"], node["url"])
    console.print(Panel(table, title=title, border_style="yellow" if truncated else "cyan"))
    for warning in warnings:
        console.print(f"[yellow]![/yellow] {warning}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    init_db()
    _print("init-db", {"status": "ok", "database_path": str(current_db_path())}, ctx)


@app.command("trace-up")
def trace_up_command(
    ctx: typer.Context,
    task_id: int = typer.Argument(..., help="Task to trace."),
    last: int | None = typer.Option(None, "--last", help="Show only the last N hops (0 for all)."),
) -> None:
    if last is None:
        last = get_settings().trace_tail_default
    payload = _run(ctx, lambda s: services.trace_task_up(s, task_id, last))
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    title = f"task {task_id} → strategy"
    if payload["total_nodes"] > len(payload["path_up"]):
        title += f" (last {len(payload['path_up'])} of {payload['total_nodes']})"
    _render_nodes(title, payload["path_up"], truncated=payload["truncated"], warnings=payload["warnings"])


@app.command("trace-down")
def trace_down_command(
    ctx: typer.Context,
    kpi_id: int = typer.Argument(..., help="KPI to trace."),
    last: int | None = typer.Option(None, "--last", help="Show only the last N nodes."),
) -> None:
    payload = _run(ctx, lambda s: services.trace_kpi_down(s, kpi_id, last))
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    _render_nodes(f"kpi {kpi_id} → work", payload["path_down"],
                  truncated=payload["truncated"], warnings=payload["warnings"])


@app.command("kpi-status")
def kpi_status_command(ctx: typer.Context, kpi_id: int = typer.Argument(...)) -> None:
    payload = _run(ctx, lambda s: services.kpi_status(s, kpi_id))
    _print(f"kpi {kpi_id}", payload, ctx)


@app.command("sync-kr")
def sync_kr_command(ctx: typer.Context, kr_id: int = typer.Argument(...)) -> None:
    payload = _run(ctx, lambda s: services.sync_key_result(s, kr_id), commit=True)
    _print(f"sync key result {kr_id}", payload, ctx)


@app.command("sync-all")
def sync_all_command(ctx: typer.Context) -> None:
    payload = _run(ctx, services.sync_all_kpi_key_results, commit=True)
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Key result", justify="right")
    table.add_column("Result")
    table.add_column("Detail")
    for row in payload["details"]:
        detail = row.get("reason") or _format_scalar(row.get("progress"))
        table.add_row(str(row["kr_id"]), row["status"], detail)
    title = f"sync-all: {payload['synced_count']} synced, {payload['skipped_count']} skipped"
    console.print(Panel(table, title=title, border_style="green" if not payload["skipped_count"] else "yellow"))


@app.command("workflow-progress")
def workflow_progress_command(ctx: typer.Context, workflow_id: int = typer.Argument(...)) -> None:
    payload = _run(ctx, lambda s: services.workflow_progress(s, workflow_id))
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Assignee", style="bold")
    table.add_column("Status")
    table.add_column("Days", justify="right")
    table.add_column("Comment")
    for row in payload["progress"]:
        comment = (row["consultation"] or {}).get("comment") or "-"
        table.add_row(row["user_id"], _styled(row["status"]), str(row["days_elapsed"]), comment)
    stats = payload["stats"]
    title = f"workflow {workflow_id}: {stats['completed']}/{stats['total']} consulted"
    console.print(Panel(table, title=title, border_style="red" if stats["overdue"] else "cyan"))


@app.command("summary")
def summary_command(ctx: typer.Context) -> None:
    payload = _run(ctx, services.perspective_summary)
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Perspective", style="bold")
    for column in ("green", "yellow", "red", "no_data", "exception"):
        table.add_column(_styled(column), justify="right")
    table.add_column("Achievement", justify="right")
    for row in payload["perspectives"]:
        table.add_row(
            row["perspective"], str(row["green"]), str(row["yellow"]), str(row["red"]),
            str(row["no_data"]), str(row["exception"]), f"{row['achievement_rate']:.1f}%",
        )
    health = payload["summary"]["health"]
    console.print(Panel(table, title=f"BSC summary · health {_styled(health) if health else '-'}"))


@app.command("serve")
def serve_command(
    host: str | None = typer.Option(None, help="Bind address (defaults to COMPASS_API_HOST)."),
    port: int | None = typer.Option(None, help="Port (defaults to COMPASS_API_PORT)."),
) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("compass.app:app", host=host or settings.api_host, port=port or settings.api_port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()

"""
surveysync CLI
Commands: sync, job, preview, cache, stats, subjects, logs, server, status
"""

import time
import logging
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.live import Live
from rich import box

app = typer.Typer(
    name="surveysync",
    help="surveysync — local cache for supervision survey layers",
    add_completion=False,
)
console = Console()

# Suppress noisy loggers when running CLI
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

STATUS_STYLE = {
    "pending": "dim",
    "checking_cache": "cyan",
    "syncing": "yellow",
    "downloading_photos": "yellow",
    "preparing": "blue",
    "completed": "green",
    "failed": "red",
}


def _bootstrap():
    """Initialize DB and engine before any command that needs them."""
    from surveysync.storage.database import init_db
    from surveysync.sync.engine import sync_engine
    init_db()
    sync_engine.initialize()
    return sync_engine


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "—"


def _job_table(job) -> Table:
    style = STATUS_STYLE.get(job.status.value, "white")
    table = Table(box=box.SIMPLE, show_header=False, expand=True)
    table.add_column("", style="dim")
    table.add_column("")
    table.add_row("Job", f"[cyan]{job.id}[/]")
    table.add_row("Subject", job.subject)
    table.add_row("Status", f"[{style}]{job.status.value}[/]")
    table.add_row("Records", f"{job.fetched}/{job.total}")
    table.add_row("Photos", f"{job.attachments_downloaded}/{job.attachments_total}")
    if job.from_cache:
        table.add_row("Source", "[green]local cache[/]")
    if job.message:
        table.add_row("Message", job.message)
    if job.error:
        table.add_row("Error", f"[red]{job.error}[/]")
    return table


# ── sync ──────────────────────────────────────────────────────────────────────

@app.command()
def sync(
    subject: str = typer.Argument(..., help="Action code (CA or OTRO_CA)"),
    force: bool = typer.Option(False, "--force", "-f", help="Ignore freshness and fingerprints"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Poll until the job finishes"),
    interval: float = typer.Option(0.5, "--interval", help="Polling interval in seconds"),
):
    """Sync one subject from the remote service into the local cache."""
    engine = _bootstrap()
    from surveysync.sync.orchestrator import SubjectRequiredError

    try:
        job, created, fresh = engine.start_sync(subject, force=force)
    except SubjectRequiredError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    if not created:
        console.print(f"[yellow]Sync already running for {job.subject}[/] — following job {job.id[:8]}")
    elif fresh and not force:
        console.print(f"[dim]Cache for {job.subject} is fresh; no remote calls expected.[/]")

    if not wait:
        console.print(f"Job [cyan]{job.id}[/] started. Run [bold]surveysync job {job.id}[/] to poll.")
        return

    # Daemon job threads die with the process, so stay in the foreground
    with Live(Panel(_job_table(job), title="Sync", border_style="dim"), console=console, refresh_per_second=4) as live:
        while not job.is_terminal:
            time.sleep(interval)
            job = engine.jobs.get(job.id)
            live.update(Panel(_job_table(job), title="Sync", border_style="dim"))

    if job.status.value == "failed":
        console.print(Panel(f"[red]Sync failed:[/] {job.error}", title="Failed", border_style="red"))
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold]{job.message}[/]\n"
        f"Subject  : [cyan]{job.subject}[/]\n"
        f"Records  : [cyan]{job.total}[/]\n"
        f"Photos   : [cyan]{job.attachments_downloaded}/{job.attachments_total}[/]\n"
        f"Run [bold]surveysync preview {job.subject}[/] to browse the rows.",
        title="Done",
        border_style="green",
    ))


# ── job ───────────────────────────────────────────────────────────────────────

@app.command()
def job(job_id: str = typer.Argument(..., help="Job ID")):
    """Show the status of a sync job."""
    engine = _bootstrap()
    from surveysync.sync.jobs import JobNotFoundError

    try:
        current = engine.jobs.get(job_id)
    except JobNotFoundError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    console.print(Panel(_job_table(current), title="Job", border_style="blue"))


# ── preview ───────────────────────────────────────────────────────────────────

@app.command()
def preview(
    subject: str = typer.Argument(..., help="Action code"),
    page: int = typer.Option(1, "--page", "-p"),
    page_size: int = typer.Option(25, "--page-size", "-n"),
    sort: Optional[str] = typer.Option(None, "--sort", help="Column to sort by (default: fecha)"),
    asc: bool = typer.Option(False, "--asc", help="Ascending order"),
    supervisor: Optional[str] = typer.Option(None, "--supervisor"),
    componente: Optional[str] = typer.Option(None, "--componente"),
    actividad: Optional[str] = typer.Option(None, "--actividad"),
    hecho: Optional[str] = typer.Option(None, "--hecho", help="Detected fact"),
    date_from: Optional[str] = typer.Option(None, "--from", help="YYYY-MM-DD"),
    date_to: Optional[str] = typer.Option(None, "--to", help="YYYY-MM-DD"),
):
    """Browse cached records for a subject."""
    engine = _bootstrap()
    from surveysync.sync.query import InvalidQueryError

    try:
        result = engine.query.query(
            subject,
            filters={
                "supervisor": supervisor,
                "componente": componente,
                "actividad": actividad,
                "hecho_detectado": hecho,
            },
            date_range=(date_from, date_to),
            sort=sort,
            direction="asc" if asc else "desc",
            page=page,
            page_size=page_size,
        )
    except InvalidQueryError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    if not result.rows:
        console.print(f"[dim]No cached records for {subject}. Run [bold]surveysync sync {subject}[/] first.[/]")
        return

    table = Table(title=f"{subject} — page {result.page}/{result.pages} ({result.total} records)", box=box.ROUNDED)
    table.add_column("OID", justify="right", style="cyan")
    table.add_column("Fecha", no_wrap=True)
    table.add_column("Supervisor")
    table.add_column("Componente")
    table.add_column("Actividad")
    table.add_column("Hechos")
    table.add_column("Fotos", justify="right")

    for row in result.rows:
        table.add_row(
            str(row["objectid"] or ""),
            (row["fecha"] or "—")[:16].replace("T", " "),
            row["nombre_supervisor"] or "[dim]—[/]",
            row["componente"] or "[dim]—[/]",
            row["actividad"] or "[dim]—[/]",
            row["hecho_detec_1"] or "[dim]—[/]",
            str(len(row["photos"])),
        )

    console.print(table)


# ── cache ─────────────────────────────────────────────────────────────────────

@app.command()
def cache(subject: str = typer.Argument(..., help="Action code")):
    """Show the local cache summary for a subject."""
    engine = _bootstrap()
    summary = engine.cache_summary(subject)

    if not summary.exists:
        console.print(f"[dim]{subject} has never been synced.[/]")
        return

    fresh = "[green]fresh[/]" if summary.fresh else "[yellow]stale — needs sync[/]"
    console.print(Panel(
        f"Records    : [cyan]{summary.record_count}[/]\n"
        f"Photos     : [cyan]{summary.photo_count}[/]\n"
        f"Code kind  : [cyan]{summary.kind or '—'}[/]\n"
        f"Last sync  : [cyan]{_fmt_time(summary.last_sync_at)}[/] ({fresh})",
        title=f"Cache — {summary.subject}",
        border_style="blue",
    ))


# ── stats ─────────────────────────────────────────────────────────────────────

@app.command()
def stats():
    """Record and photo counts for every cached subject."""
    engine = _bootstrap()
    rows = engine.store.subject_stats()

    if not rows:
        console.print("[dim]Cache is empty.[/]")
        return

    table = Table(title="Cached subjects", box=box.ROUNDED)
    table.add_column("Subject", style="cyan", no_wrap=True)
    table.add_column("Records", justify="right")
    table.add_column("Photos", justify="right")
    table.add_column("Last edited", no_wrap=True)
    table.add_column("Last sync", no_wrap=True)

    for s in rows:
        table.add_row(
            s["subject"],
            str(s["record_count"]),
            str(s["photo_count"]),
            _fmt_time(s["last_edited_at"]),
            _fmt_time(s["last_sync_at"]),
        )

    console.print(table)


# ── subjects ──────────────────────────────────────────────────────────────────

@app.command()
def subjects(search: str = typer.Option("", "--search", "-s", help="Substring to match")):
    """List subject codes available on the remote service."""
    engine = _bootstrap()
    from surveysync.remote.client import RemoteServiceError

    try:
        codes = engine.subjects(search)
    except RemoteServiceError as e:
        console.print(f"[red]Remote error:[/] {e}")
        raise typer.Exit(1)

    if not codes:
        console.print("[dim]No matching subjects.[/]")
        return
    for code in codes:
        console.print(code)


# ── edit ──────────────────────────────────────────────────────────────────────

@app.command()
def edit(
    global_id: str = typer.Argument(..., help="Record global id"),
    field: str = typer.Argument(..., help="descrip_1, hecho_detec_1 or descrip_2"),
    value: Optional[str] = typer.Argument(None, help="New text; omit to clear the override"),
):
    """Override a record's description locally. Syncs never overwrite it."""
    engine = _bootstrap()
    from surveysync.sync.store import EditFieldError, RecordNotFoundError

    try:
        edits = engine.edit_description(global_id, field, value)
    except (EditFieldError, RecordNotFoundError) as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/] Updated {field} for {edits.globalid}")


@app.command()
def edits(subject: str = typer.Argument(..., help="Action code")):
    """List records of a subject with local description overrides."""
    engine = _bootstrap()
    rows = engine.edited_descriptions(subject)

    if not rows:
        console.print(f"[dim]No edited descriptions for {subject}.[/]")
        return

    table = Table(title=f"Edited descriptions — {subject}", box=box.ROUNDED)
    table.add_column("Global id", style="cyan", no_wrap=True)
    table.add_column("Field")
    table.add_column("Original")
    table.add_column("Edited")
    table.add_column("Edited at", no_wrap=True)

    for r in rows:
        for original, edited in (
            ("descrip_1", r.descrip_1_editada),
            ("hecho_detec_1", r.hecho_detec_1_editado),
            ("descrip_2", r.descrip_2_editada),
        ):
            if edited is None:
                continue
            table.add_row(
                r.globalid, original, getattr(r, original) or "[dim]—[/]", edited, _fmt_time(r.user_edited_at),
            )

    console.print(table)


# ── logs ──────────────────────────────────────────────────────────────────────

@app.command()
def logs(
    subject: Optional[str] = typer.Option(None, "--subject", "-s"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Recent reconciliation passes."""
    engine = _bootstrap()
    entries = engine.store.recent_logs(subject, limit)

    if not entries:
        console.print("[dim]No syncs recorded yet.[/]")
        return

    table = Table(title="Sync log", box=box.ROUNDED)
    table.add_column("Started", no_wrap=True)
    table.add_column("Subject", style="cyan")
    table.add_column("Mode")
    table.add_column("Status", justify="center")
    table.add_column("+/~/-", justify="right")
    table.add_column("Photos", justify="right")
    table.add_column("Duration", justify="right")

    for e in entries:
        style = {"completed": "green", "error": "red", "running": "yellow"}.get(e["status"], "white")
        table.add_row(
            _fmt_time(e["started_at"]),
            e["subject"],
            e["operation"],
            f"[{style}]{e['status']}[/]",
            f"{e['records_inserted'] or 0}/{e['records_updated'] or 0}/{e['records_deleted'] or 0}",
            f"{e['photos_downloaded'] or 0} ({e['photos_failed'] or 0} failed)",
            f"{(e['duration_ms'] or 0) / 1000:.1f}s",
        )

    console.print(table)


# ── server ────────────────────────────────────────────────────────────────────

@app.command()
def server(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the surveysync API server."""
    import uvicorn
    console.print(f"[green]Starting surveysync API server[/] → http://{host}:{port}")
    uvicorn.run("surveysync.main:app", host=host, port=port, reload=reload)


# ── status ────────────────────────────────────────────────────────────────────

@app.command()
def status():
    """Show configuration and cache totals."""
    engine = _bootstrap()
    from surveysync.config.settings import settings

    rows = engine.store.subject_stats()
    records = sum(s["record_count"] for s in rows)
    photos = sum(s["photo_count"] for s in rows)

    console.print(Panel(
        f"Layer URL        : [cyan]{settings.layer_url or '[red]not set[/]'}[/]\n"
        f"Credentials      : [cyan]{'configured' if settings.arcgis_user else 'anonymous'}[/]\n"
        f"Freshness window : [cyan]{settings.freshness_minutes:g} min[/]\n"
        f"Subjects cached  : [cyan]{len(rows)}[/]\n"
        f"  Records        : [green]{records}[/]\n"
        f"  Photos         : [green]{photos}[/]",
        title="surveysync Status",
        border_style="blue",
    ))


if __name__ == "__main__":
    app()

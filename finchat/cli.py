"""CLI entrypoint for finchat."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from finchat.config import settings
from finchat.logging import setup_logging

app = typer.Typer(name="finchat", help="Financial research chat backend.")
console = Console()


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    console.print(f"[dim]mode={settings.app_mode}  store={settings.store_backend}  auth={settings.auth_mode}[/]")
    uvicorn.run("finchat.main:app", host=host, port=port, reload=reload, log_level=settings.logging.level.lower())


@app.command("init-db")
def init_db() -> None:
    """Create the Postgres tables used by the postgres store backend."""
    setup_logging(settings.logging.level)
    from finchat import db

    db.ensure_schema()
    db.close_pool()
    console.print("[bold green]Schema ready.[/]")


@app.command("render-report")
def render_report_cmd(
    session_id: str = typer.Argument(..., help="Session to render"),
    out: Path = typer.Option(None, "--out", help="Output path (defaults to the sanitized session title)"),
    user_id: str = typer.Option("local-user", "--user", help="Owner of the session"),
) -> None:
    """Render a stored session as a PDF report."""
    setup_logging(settings.logging.level)
    import asyncio

    from finchat.report.rasterize import PillowChartRasterizer
    from finchat.report.renderer import ChartCache, render_report
    from finchat.storage import build_store

    try:
        filename, pdf = asyncio.run(
            render_report(
                build_store(),
                session_id,
                user_id,
                rasterizer=PillowChartRasterizer(),
                cache=ChartCache(max_size=settings.report.chart_cache_size),
                timeout_ms=settings.report.timeout_ms,
            )
        )
    except Exception as exc:
        console.print(f"[bold red]Report failed:[/] {exc}")
        raise typer.Exit(code=1)
    target = out or Path(filename)
    target.write_bytes(pdf)
    console.print(f"[bold green]Wrote[/] {target} ({len(pdf)} bytes)")


if __name__ == "__main__":
    app()

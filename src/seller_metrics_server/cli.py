"""CLI entry point for seller-metrics-server."""

import asyncio
import json
import sys

import typer
import uvicorn

from seller_metrics_server import __version__
from seller_metrics_server.core.config import settings
from seller_metrics_server.core.logging import configure_logging

app = typer.Typer(
    name="seller-metrics-server",
    help="eBay order sync and reconciliation server for the seller bookkeeping app",
    no_args_is_help=True,
)


@app.command()
def serve(
    host: str = typer.Option(None, help="Bind address, defaults to API_HOST"),
    port: int = typer.Option(None, help="Bind port, defaults to API_PORT"),
    reload: bool = typer.Option(False, help="Restart on code changes"),
) -> None:
    """Start the API server and background scheduler.

    Example:
        seller-metrics-server serve
        seller-metrics-server serve --host 0.0.0.0 --port 8080 --reload
    """
    uvicorn.run(
        "seller_metrics_server.app:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


async def _run_sync(user_id: str | None) -> dict[str, object]:
    from seller_metrics_server.core.database import async_session_maker, close_database
    from seller_metrics_server.models.sync_log import SyncTrigger
    from seller_metrics_server.services.sync_orchestrator import SyncOrchestrator

    orchestrator = SyncOrchestrator(async_session_maker)
    try:
        if user_id:
            outcome = await orchestrator.sync_user(user_id, trigger=SyncTrigger.CLI)
            return outcome.to_dict()
        refresh_report, sync_report = await orchestrator.run_cycle(SyncTrigger.CLI)
        return {"token_refresh": refresh_report.to_dict(), "order_sync": sync_report.to_dict()}
    finally:
        await close_database()


async def _run_refresh() -> dict[str, object]:
    from seller_metrics_server.core.database import async_session_maker, close_database
    from seller_metrics_server.models.sync_log import SyncTrigger
    from seller_metrics_server.services.sync_orchestrator import SyncOrchestrator

    try:
        report = await SyncOrchestrator(async_session_maker).run_token_refresh_pass(
            SyncTrigger.CLI
        )
        return report.to_dict()
    finally:
        await close_database()


@app.command()
def sync(
    user_id: str = typer.Option(None, "--user", help="Sync only this user"),
) -> None:
    """Run one token refresh + order sync cycle now, outside the scheduler.

    Example:
        seller-metrics-server sync
        seller-metrics-server sync --user 6f1c2a
    """
    configure_logging(stream=sys.stderr)
    result = asyncio.run(_run_sync(user_id))
    typer.echo(json.dumps(result, indent=2, default=str))


@app.command("refresh-tokens")
def refresh_tokens() -> None:
    """Refresh expiring eBay access tokens and disconnect expired refresh tokens."""
    configure_logging(stream=sys.stderr)
    result = asyncio.run(_run_refresh())
    typer.echo(json.dumps(result, indent=2, default=str))


@app.command()
def version() -> None:
    """Print the installed version."""
    typer.echo(f"seller-metrics-server v{__version__}")


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()

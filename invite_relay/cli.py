import asyncio
import logging
from typing import Optional

import httpx
import typer
from rich.console import Console

from .config import Settings, load_settings

app = typer.Typer(help="invite-relay CLI - single-use Telegram invites with join tracking")
console = Console()


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _base_url(settings: Settings, url: Optional[str]) -> str:
    if url:
        return url.rstrip("/")
    host = "127.0.0.1" if settings.http_host in ("0.0.0.0", "") else settings.http_host
    return f"http://{host}:{settings.http_port}"


def _headers(settings: Settings) -> dict:
    return {"X-API-Key": settings.api_key} if settings.api_key else {}


# ============================================================================
# Processes
# ============================================================================


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
):
    """Run the HTTP service (intake, status, worker and webhook routes)."""
    import uvicorn

    from .http import create_app

    settings = load_settings()
    _configure_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=host or settings.http_host,
        port=port or settings.http_port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def worker():
    """Consume the work queue until interrupted."""
    from .runtime import open_runtime
    from .worker import run_worker

    settings = load_settings()
    _configure_logging(settings)

    async def _main():
        runtime = await open_runtime(settings)
        try:
            await run_worker(runtime)
        finally:
            await runtime.close()
            logging.getLogger(__name__).info("Shutdown complete.")

    asyncio.run(_main())


# ============================================================================
# Client commands
# ============================================================================


@app.command()
def request(
    user_id: str = typer.Argument(..., help="Requesting user identity"),
    transaction_id: Optional[str] = typer.Option(
        None, "--transaction-id", "-t", help="Optional correlation id"
    ),
    url: Optional[str] = typer.Option(None, "--url", help="Service base URL"),
):
    """Submit an invite request to a running service."""
    settings = load_settings()
    body = {"userId": user_id}
    if transaction_id:
        body["transactionId"] = transaction_id

    try:
        response = httpx.post(
            f"{_base_url(settings, url)}/v1/invite/request",
            json=body,
            headers=_headers(settings),
            timeout=settings.http_timeout,
        )
    except httpx.HTTPError as e:
        console.print(f"[red]Error contacting service: {e}[/red]")
        raise typer.Exit(code=1)

    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    if response.status_code != 200:
        console.print(f"[red]Rejected ({response.status_code}): {data.get('error')}[/red]")
        raise typer.Exit(code=1)
    request_id = data.get("requestId")
    if not request_id:
        console.print("[red]Service reply has no requestId[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Queued[/green] request [bold]{request_id}[/bold]")


@app.command()
def status(
    request_id: str = typer.Argument(..., help="Request id returned by 'request'"),
    url: Optional[str] = typer.Option(None, "--url", help="Service base URL"),
):
    """Show the status of an invite request (and the link once DONE)."""
    settings = load_settings()
    try:
        response = httpx.get(
            f"{_base_url(settings, url)}/v1/invite/result/{request_id}",
            headers=_headers(settings),
            timeout=settings.http_timeout,
        )
    except httpx.HTTPError as e:
        console.print(f"[red]Error contacting service: {e}[/red]")
        raise typer.Exit(code=1)

    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    if response.status_code == 404:
        console.print(f"[yellow]Request {request_id} not found[/yellow]")
        raise typer.Exit(code=1)
    if response.status_code != 200:
        console.print(f"[red]Error ({response.status_code}): {data.get('error')}[/red]")
        raise typer.Exit(code=1)

    if not data.get("status"):
        console.print("[red]Service reply has no status[/red]")
        raise typer.Exit(code=1)
    console.print(f"Status: [bold]{data['status']}[/bold]")
    if data.get("inviteLink"):
        console.print(f"Invite link: {data['inviteLink']}")


if __name__ == "__main__":
    app()

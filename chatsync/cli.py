"""CLI interface for chatsync.

Provides commands for:
- Inspecting and repairing the local outbox
- Draining queued writes to the remote store
- Running the remote store emulator
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import click
import uvicorn

from chatsync import __version__
from chatsync.config import get_settings
from chatsync.db.engine import close_db, get_engine, init_db
from chatsync.db.models import Message
from chatsync.errors import ChatSyncError
from chatsync.logging import configure_logging
from chatsync.queue import OutboundQueue, RetryPolicy
from chatsync.reconciliation import ReconciliationEngine
from chatsync.remote.http import HttpRemoteClient
from chatsync.store import LocalStore

T = TypeVar("T")


def _run(work: Callable[[LocalStore, OutboundQueue], Awaitable[T]]) -> T:
    """Run an async command against the configured local store."""
    settings = get_settings()

    async def runner() -> T:
        engine = get_engine()
        remote = HttpRemoteClient(
            settings.remote_url,
            timeout=settings.request_timeout_seconds,
            poll_interval=settings.poll_interval_seconds,
        )
        try:
            await init_db(engine)
            store = LocalStore(engine)
            queue = OutboundQueue(
                store,
                remote,
                ReconciliationEngine(store),
                policy=RetryPolicy.from_settings(settings),
                send_timeout=settings.send_timeout_seconds,
            )
            return await work(store, queue)
        finally:
            await remote.close()
            await close_db()

    try:
        return asyncio.run(runner())
    except ChatSyncError as exc:
        raise click.ClickException(str(exc)) from exc


def _describe(message: Message, max_attempts: int) -> str:
    if message.rejected:
        state = click.style("rejected", fg="red")
    elif message.retry_count >= max_attempts + message.retry_allowance:
        state = click.style("failed", fg="red")
    else:
        state = click.style(message.sync_status.value, fg="yellow")
    preview = message.text if len(message.text) <= 40 else message.text[:37] + "..."
    line = f"  {message.id}  {state}  attempts={message.retry_count}  {preview!r}"
    if message.last_sync_error:
        line += f"\n      last error: {message.last_sync_error}"
    return line


@click.group()
@click.version_option(version=__version__, prog_name="chatsync")
def cli() -> None:
    """chatsync - offline-first message sync.

    Local outbox tools and a remote store emulator.
    """
    pass


@cli.command()
def info() -> None:
    """Show configuration."""
    settings = get_settings()

    click.echo("chatsync Configuration:\n")
    click.echo(f"  Database:      {settings.database_url}")
    click.echo(f"  Remote:        {settings.remote_url}")
    click.echo(f"  Max attempts:  {settings.max_attempts}")
    click.echo(f"  Send timeout:  {settings.send_timeout_seconds}s")
    click.echo(f"  Metered sync:  {'allowed' if settings.allow_metered_sync else 'held'}")
    click.echo(f"  Debug:         {settings.debug}")
    click.echo(f"  Log Level:     {settings.log_level}")


@cli.command("init-db")
def init_db_command() -> None:
    """Create the local store tables."""

    async def work(store: LocalStore, queue: OutboundQueue) -> None:
        return None

    _run(work)
    click.echo(click.style("✓ Local store ready", fg="green"))


@cli.command()
def status() -> None:
    """Show outbox counts."""
    max_attempts = get_settings().max_attempts

    async def work(store: LocalStore, queue: OutboundQueue):
        return await store.count_outbound(max_attempts), await store.list_conversations(True)

    counts, conversations = _run(work)
    click.echo(f"Conversations:    {len(conversations)}")
    click.echo(f"Waiting to send:  {counts.pending}")
    click.echo(f"Failed:           {counts.failed}")


@cli.command()
def outbox() -> None:
    """List queued and failed messages."""
    max_attempts = get_settings().max_attempts

    async def work(store: LocalStore, queue: OutboundQueue):
        queued = await store.outbound_messages(max_attempts)
        queued_ids = {message.id for message in queued}
        failed = [m for m in await store.failed_messages() if m.id not in queued_ids]
        return queued + failed

    messages = _run(work)
    if not messages:
        click.echo("Outbox is empty.")
        return

    click.echo(f"Outbox ({len(messages)}):\n")
    for message in messages:
        click.echo(_describe(message, max_attempts))


@cli.command()
@click.argument("message_id")
def retry(message_id: str) -> None:
    """Put a failed message back in the queue."""

    async def work(store: LocalStore, queue: OutboundQueue) -> Message:
        return await queue.retry(message_id)

    message = _run(work)
    click.echo(
        click.style(f"✓ Requeued {message.id}", fg="green")
        + f" (attempts so far: {message.retry_count})"
    )


@cli.command()
@click.argument("message_id")
@click.confirmation_option(prompt="Discard this message? It will not be sent.")
def discard(message_id: str) -> None:
    """Delete an undelivered message."""

    async def work(store: LocalStore, queue: OutboundQueue) -> None:
        await queue.discard(message_id)

    _run(work)
    click.echo(click.style(f"✓ Discarded {message_id}", fg="yellow"))


@cli.command()
def drain() -> None:
    """Deliver queued writes to the remote store now."""
    settings = get_settings()
    configure_logging(json_format=False, level=settings.log_level)

    async def work(store: LocalStore, queue: OutboundQueue):
        return await queue.drain()

    report = _run(work)
    click.echo(f"Synced:   {report.synced}")
    click.echo(f"Failed:   {report.failed}")
    click.echo(f"Deferred: {report.deferred}")


@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def emulator(host: str | None, port: int | None, reload: bool) -> None:
    """Start the remote store emulator."""
    settings = get_settings()

    actual_host = host or settings.emulator_host
    actual_port = port or settings.emulator_port

    click.echo(f"Starting chatsync emulator on {actual_host}:{actual_port}")

    uvicorn.run(
        "chatsync.emulator:app",
        host=actual_host,
        port=actual_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

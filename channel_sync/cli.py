from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from channel_sync.client import SyncClient
from channel_sync.codec import ParseError
from channel_sync.config import Settings
from channel_sync.logging_config import setup_logging
from channel_sync.models import Message
from channel_sync.retry import RetryExhaustedError
from channel_sync.signing import Signer, SigningFailedError
from channel_sync.store import SQLiteCursorStore
from channel_sync.transport import AiohttpTransport, Transport, TransportError

T = TypeVar("T")


@click.group()
@click.option(
    "--db-path",
    default=None,
    help="SQLite DB path (defaults to $CHANNEL_SYNC_DB or ~/.channel_sync/channel_sync.sqlite).",
)
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, db_path: str | None, debug: bool) -> None:
    """Administrative CLI for channel-sync."""
    setup_logging(debug=debug)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


def _store(ctx: click.Context) -> SQLiteCursorStore:
    db_path = None
    if ctx.obj:
        db_path = ctx.obj.get("db_path")
    return SQLiteCursorStore(path=db_path)


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        raise click.ClickException(str(e)) from e


def _make_transport(settings: Settings) -> Transport:
    return AiohttpTransport(
        auth_token=settings.auth_token, timeout_seconds=settings.http_timeout_seconds
    )


def _run(ctx: click.Context, op: Callable[[SyncClient], Awaitable[T]]) -> T:
    """Build a client over the configured store and run ``op`` to completion."""
    settings = _settings()
    try:
        signer = Signer(settings.private_key) if settings.private_key else None
    except SigningFailedError as e:
        raise click.ClickException(str(e)) from e

    async def _main() -> T:
        transport = _make_transport(settings)
        client = SyncClient(
            transport=transport,
            cursor_store=_store(ctx),
            signer=signer,
            display_name=settings.display_name,
            settings=settings,
        )
        try:
            return await op(client)
        finally:
            close = getattr(transport, "close", None)
            if close is not None:
                await close()

    try:
        return asyncio.run(_main())
    except RetryExhaustedError as e:
        raise click.ClickException(f"Gave up after {e.attempts} attempts: {e.last_error}") from e
    except (TransportError, ParseError, SigningFailedError) as e:
        raise click.ClickException(str(e)) from e


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, ensure_ascii=True, sort_keys=True, indent=2))


@cli.group("db")
def db_group() -> None:
    """Database operations."""


@db_group.command("wipe")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def db_wipe(ctx: click.Context, *, yes: bool) -> None:
    """Delete the local cursor database file (and WAL/SHM sidecars)."""
    store = _store(ctx)
    db_path = store.path
    if db_path == ":memory:":
        raise click.ClickException("Cannot wipe an in-memory DB.")

    main = Path(db_path)
    wal = Path(f"{db_path}-wal")
    shm = Path(f"{db_path}-shm")
    candidates = [main, wal, shm]

    click.echo(f"DB path: {main}")
    existing = [p for p in candidates if p.exists()]
    if not existing:
        click.echo("Nothing to delete (DB file not found).")
        return

    click.echo("Will delete:")
    for p in existing:
        click.echo(f"- {p}")

    if not yes and not click.confirm("Delete these files?", default=False):
        raise click.ClickException("Canceled.")

    removed = 0
    for p in existing:
        try:
            p.unlink()
        except FileNotFoundError:  # pragma: no cover
            continue
        removed += 1

    click.echo(f"Deleted {removed} file(s).")


@cli.group("cursors")
def cursors_group() -> None:
    """Cursor operations."""


@cursors_group.command("list")
@click.option("--server", default=None, help="Only show cursors of this server.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def cursors_list(ctx: click.Context, *, server: str | None, as_json: bool) -> None:
    """List stored cursors."""
    store = _store(ctx)
    cursors = store.list_cursors(server=server)
    rows = [
        {
            "server": c.server,
            "channel": c.channel,
            "kind": c.kind,
            "last_id": c.last_id,
            "updated_at": c.updated_at,
        }
        for c in cursors
    ]

    if as_json:
        _echo_json({"cursors": rows})
        return

    click.echo(f"DB path: {store.path}")
    click.echo(f"Cursors: {len(rows)}")
    if not rows:
        return

    headers = ["server", "channel", "kind", "last_id"]
    cols = {h: len(h) for h in headers}
    for r in rows:
        for h in headers:
            cols[h] = max(cols[h], len(str(r[h])))

    def _cell(key: str, val: Any) -> str:
        s = str(val)
        return s.rjust(cols[key]) if key in {"channel", "last_id"} else s.ljust(cols[key])

    click.echo(" ".join(_cell(h, h) for h in headers))
    for r in rows:
        click.echo(" ".join(_cell(h, r[h]) for h in headers))


@cursors_group.command("reset")
@click.argument("server")
@click.argument("channel", type=int)
@click.option(
    "--kind",
    type=click.Choice(["message", "deletion", "all"], case_sensitive=False),
    default="all",
    show_default=True,
)
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def cursors_reset(ctx: click.Context, server: str, channel: int, *, kind: str, yes: bool) -> None:
    """Forget cursors so the next fetch requests the fallback batch again."""
    if not yes and not click.confirm(
        f"Reset {kind} cursor(s) of channel {channel} on {server}?", default=False
    ):
        raise click.ClickException("Canceled.")
    store = _store(ctx)
    kind = kind.lower()
    removed = store.reset_cursor(
        channel=channel,
        server=server,
        kind=None if kind == "all" else kind,  # type: ignore[arg-type]
    )
    click.echo(f"Removed {removed} cursor(s).")


@cli.command("keygen")
def keygen() -> None:
    """Generate a signing key pair (export the private key as CHANNEL_SYNC_PRIVATE_KEY)."""
    signer = Signer.generate()
    click.echo(f"private_key: {signer.private_key_hex()}")
    click.echo(f"public_key:  {signer.public_key}")


@cli.command("fetch")
@click.argument("server")
@click.argument("channel", type=int)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def fetch(ctx: click.Context, server: str, channel: int, *, as_json: bool) -> None:
    """Fetch new verified messages of a channel."""
    messages = _run(ctx, lambda c: c.fetch_messages(channel, server))
    if as_json:
        _echo_json({"messages": [m.to_dict() for m in messages]})
        return
    click.echo(f"Messages: {len(messages)}")
    for m in messages:
        click.echo(f"[{m.server_id}] {m.display_name}: {m.body}")


@cli.command("deletions")
@click.argument("server")
@click.argument("channel", type=int)
@click.pass_context
def deletions(ctx: click.Context, server: str, channel: int) -> None:
    """Print server IDs of messages deleted since the last call."""
    deleted = _run(ctx, lambda c: c.fetch_deletions(channel, server))
    for message_id in deleted:
        click.echo(str(message_id))


@cli.command("send")
@click.argument("server")
@click.argument("channel", type=int)
@click.argument("text")
@click.pass_context
def send(ctx: click.Context, server: str, channel: int, text: str) -> None:
    """Sign and send a message."""

    async def _send(client: SyncClient) -> Message:
        if client.signer is None or not client.signer.has_key:
            raise SigningFailedError("CHANNEL_SYNC_PRIVATE_KEY is not set")
        message = Message(
            sender_public_key=client.signer.public_key,
            display_name=client.display_name or "",
            body=text,
            timestamp=int(time.time() * 1000),
        )
        return await client.send(message, channel, server)

    sent = _run(ctx, _send)
    click.echo(f"Sent message {sent.server_id}.")


@cli.command("delete")
@click.argument("server")
@click.argument("channel", type=int)
@click.argument("message_id", type=int)
@click.option("--moderator", is_flag=True, help="Delete someone else's message as a moderator.")
@click.pass_context
def delete(ctx: click.Context, server: str, channel: int, message_id: int, *, moderator: bool) -> None:
    """Delete a message."""
    deleted = _run(
        ctx, lambda c: c.delete(message_id, channel, server, is_sent_by_user=not moderator)
    )
    click.echo(f"Deleted message {deleted}.")


@cli.command("moderators")
@click.argument("server")
@click.argument("channel", type=int)
@click.pass_context
def moderators(ctx: click.Context, server: str, channel: int) -> None:
    """List the moderators of a channel."""
    identities = _run(ctx, lambda c: c.fetch_moderators(channel, server))
    for identity in sorted(identities):
        click.echo(identity)


@cli.command("channel-info")
@click.argument("server")
@click.argument("channel", type=int)
@click.pass_context
def channel_info(ctx: click.Context, server: str, channel: int) -> None:
    """Print the display name of a channel."""
    click.echo(_run(ctx, lambda c: c.fetch_channel_info(channel, server)))


@cli.command("set-name")
@click.argument("server")
@click.argument("name", required=False)
@click.pass_context
def set_name(ctx: click.Context, server: str, name: str | None) -> None:
    """Set (or clear) the display name on a server."""
    _run(ctx, lambda c: c.set_display_name(name, server))
    click.echo(f'Display name set to "{name or ""}".')

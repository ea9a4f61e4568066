from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal

from mcp.server.fastmcp import FastMCP
from mcp.types import CallToolResult

from channel_sync.client import SyncClient
from channel_sync.codec import ParseError
from channel_sync.common import (
    ErrorCode,
    WarningCode,
    env_int,
    tool_error,
    tool_ok,
    truncate_list,
)
from channel_sync.config import Settings
from channel_sync.logging_config import setup_logging
from channel_sync.models import Message
from channel_sync.retry import RetryExhaustedError
from channel_sync.signing import Signer, SigningFailedError
from channel_sync.store import DBBusyError, SchemaMismatchError, SQLiteCursorStore
from channel_sync.tool_schemas import (
    ChannelInfoOutput,
    CursorResetOutput,
    DeleteMessageOutput,
    FetchDeletionsOutput,
    FetchMessagesOutput,
    IsModeratorOutput,
    ModeratorsOutput,
    PingOutput,
    SendMessageOutput,
)
from channel_sync.transport import AiohttpTransport, ModerationForbiddenError, TransportError

VERSION = "0.1.0"

_client: SyncClient | None = None


async def _close_client() -> None:
    global _client
    client, _client = _client, None
    if client is None:
        return
    close = getattr(client.transport, "close", None)
    if close is not None:
        await close()


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    try:
        yield
    finally:
        await _close_client()


store = SQLiteCursorStore()
mcp = FastMCP(
    name="channel-sync",
    instructions=(
        "Synchronize public chat channels. Call fetch_messages(server=..., channel=...) "
        "repeatedly: each call only returns messages newer than the stored cursor, and only "
        "messages with a valid signature. Call fetch_deletions the same way to learn which "
        "message IDs to purge. Use cursor_reset to replay a channel from the fallback batch. "
        "send_message requires CHANNEL_SYNC_PRIVATE_KEY. Call fetch_moderators before "
        "is_moderator; the moderator cache is never refreshed implicitly."
    ),
    lifespan=_lifespan,
)


def _get_client() -> SyncClient:
    # One client per server process so the moderator cache survives between tool calls.
    global _client
    if _client is None:
        settings = Settings.from_env()
        _client = SyncClient(
            transport=AiohttpTransport(
                auth_token=settings.auth_token, timeout_seconds=settings.http_timeout_seconds
            ),
            cursor_store=store,
            signer=Signer(settings.private_key) if settings.private_key else None,
            display_name=settings.display_name,
            settings=settings,
        )
    return _client


def _error_result(e: Exception) -> CallToolResult:
    if isinstance(e, ModerationForbiddenError):
        return tool_error(code=ErrorCode.MODERATION_FORBIDDEN, message=str(e))
    if isinstance(e, RetryExhaustedError):
        return tool_error(
            code=ErrorCode.RETRY_EXHAUSTED,
            message=str(e),
            structured={"attempts": e.attempts},
        )
    if isinstance(e, TransportError):
        return tool_error(code=ErrorCode.TRANSPORT_ERROR, message=str(e))
    if isinstance(e, ParseError):
        return tool_error(code=ErrorCode.PARSE_ERROR, message=str(e))
    if isinstance(e, SigningFailedError):
        return tool_error(code=ErrorCode.SIGNING_FAILED, message=str(e))
    if isinstance(e, SchemaMismatchError):
        return tool_error(code=ErrorCode.DB_SCHEMA_MISMATCH, message=str(e))
    if isinstance(e, DBBusyError):
        return tool_error(code=ErrorCode.DB_BUSY, message="Database is busy.")
    return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=str(e))


_HANDLED = (
    TransportError,
    RetryExhaustedError,
    ParseError,
    SigningFailedError,
    SchemaMismatchError,
    DBBusyError,
    ValueError,
)


def _validate_target(server: object, channel: object) -> str | None:
    if not isinstance(server, str) or not server.strip():
        return "server must be a non-empty string"
    if not server.startswith(("http://", "https://")):
        return "server must be an http(s) URL"
    if not isinstance(channel, int) or isinstance(channel, bool) or channel <= 0:
        return "channel must be a positive integer"
    return None


def _message_line(m: dict[str, Any]) -> str:
    preview = m["body"].splitlines()[0][:80] if m["body"] else ""
    return f"[{m['server_id']}] {m['display_name']} ({m['sender_public_key'][:8]}): {preview}"


@mcp.tool(description="Health check for the channel-sync MCP server.")
def ping() -> Annotated[CallToolResult, PingOutput]:
    """Health check for the channel-sync MCP server."""
    return tool_ok(text="pong", structured={"ok": True, "version": VERSION})


@mcp.tool(description="Fetch new, signature-verified messages of a channel.")
async def fetch_messages(server: str, channel: int) -> Annotated[CallToolResult, FetchMessagesOutput]:
    """Fetch messages newer than the stored cursor, sorted by timestamp."""
    if (err := _validate_target(server, channel)) is not None:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=err)
    try:
        max_items = env_int("CHANNEL_SYNC_TOOL_MAX_MESSAGES", default=200, min_value=1)
        client = _get_client()
        messages = await client.fetch_messages(channel, server)
        cursor = store.get_last_message_server_id(channel, server)
    except _HANDLED as e:
        return _error_result(e)

    structured_messages = [m.to_dict() for m in messages]
    kept, warn = truncate_list(
        structured_messages,
        max_items=max_items,
        warning_code=WarningCode.MESSAGES_TRUNCATED,
    )
    lines = [f"Messages: {len(structured_messages)} cursor={cursor}"]
    for m in kept[:20]:
        lines.append(_message_line(m))
    if len(kept) > 20:
        lines.append(f"... ({len(kept) - 20} more)")
    return tool_ok(
        text="\n".join(lines),
        structured={
            "server": server,
            "channel": channel,
            "messages": kept,
            "count": len(kept),
            "cursor": cursor,
        },
        warnings=[warn] if warn else None,
    )


@mcp.tool(description="Fetch IDs of messages deleted since the last call.")
async def fetch_deletions(
    server: str, channel: int
) -> Annotated[CallToolResult, FetchDeletionsOutput]:
    """Fetch server IDs of messages to purge locally."""
    if (err := _validate_target(server, channel)) is not None:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=err)
    try:
        deleted = await _get_client().fetch_deletions(channel, server)
        cursor = store.get_last_deletion_server_id(channel, server)
    except _HANDLED as e:
        return _error_result(e)
    return tool_ok(
        text=f"Deleted message IDs: {deleted}",
        structured={
            "server": server,
            "channel": channel,
            "deleted_message_ids": deleted,
            "count": len(deleted),
            "cursor": cursor,
        },
    )


@mcp.tool(description="Sign and send a message to a channel.")
async def send_message(
    server: str,
    channel: int,
    body: str,
) -> Annotated[CallToolResult, SendMessageOutput]:
    """Sign and send a message; transient failures are retried."""
    if (err := _validate_target(server, channel)) is not None:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=err)
    if not isinstance(body, str) or not body.strip():
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message="body must be a non-empty string")
    try:
        client = _get_client()
        if client.signer is None or not client.signer.has_key:
            raise SigningFailedError("CHANNEL_SYNC_PRIVATE_KEY is not set")
        message = Message(
            sender_public_key=client.signer.public_key,
            display_name=client.display_name or "",
            body=body,
            timestamp=int(time.time() * 1000),
        )
        sent = await client.send(message, channel, server)
    except _HANDLED as e:
        return _error_result(e)
    return tool_ok(
        text=f"Sent message {sent.server_id} to channel {channel}.",
        structured={"message": sent.to_dict()},
    )


@mcp.tool(description="Delete a message (own message, or any message as a moderator).")
async def delete_message(
    server: str,
    channel: int,
    message_id: int,
    mode: Literal["own", "moderation"] = "own",
) -> Annotated[CallToolResult, DeleteMessageOutput]:
    """Delete a message.

    mode:
    - own: delete a message sent by this identity
    - moderation: delete any message (requires moderator privileges)
    """
    if (err := _validate_target(server, channel)) is not None:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=err)
    if not isinstance(message_id, int) or message_id <= 0:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message="message_id must be > 0")
    try:
        deleted = await _get_client().delete(
            message_id, channel, server, is_sent_by_user=mode == "own"
        )
    except _HANDLED as e:
        return _error_result(e)
    return tool_ok(
        text=f"Deleted message {deleted}.",
        structured={"deleted_message_id": deleted, "moderation": mode == "moderation"},
    )


@mcp.tool(description="Refresh and return the moderators of a channel.")
async def fetch_moderators(
    server: str, channel: int
) -> Annotated[CallToolResult, ModeratorsOutput]:
    """Refresh the cached moderator set of a channel."""
    if (err := _validate_target(server, channel)) is not None:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=err)
    try:
        moderators = await _get_client().fetch_moderators(channel, server)
    except _HANDLED as e:
        return _error_result(e)
    ordered = sorted(moderators)
    return tool_ok(
        text=f"Moderators ({len(ordered)}): " + ", ".join(ordered),
        structured={"server": server, "channel": channel, "moderators": ordered},
    )


@mcp.tool(description="Check an identity against the cached moderator set.")
def is_moderator(
    identity: str, server: str, channel: int
) -> Annotated[CallToolResult, IsModeratorOutput]:
    """Check the cached moderator set; does not fetch."""
    if (err := _validate_target(server, channel)) is not None:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=err)
    try:
        result = _get_client().is_moderator(identity, channel, server)
    except _HANDLED as e:
        return _error_result(e)
    return tool_ok(
        text=f"{identity} is {'a' if result else 'not a'} moderator.",
        structured={"identity": identity, "is_moderator": result},
    )


@mcp.tool(description="Fetch the display name of a channel.")
async def channel_info(server: str, channel: int) -> Annotated[CallToolResult, ChannelInfoOutput]:
    """Fetch the display name of a channel."""
    if (err := _validate_target(server, channel)) is not None:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=err)
    try:
        name = await _get_client().fetch_channel_info(channel, server)
    except _HANDLED as e:
        return _error_result(e)
    return tool_ok(
        text=f'Channel {channel}: "{name}"',
        structured={"server": server, "channel": channel, "name": name},
    )


@mcp.tool(description="Forget stored cursors so the next fetch starts from the fallback batch.")
def cursor_reset(
    server: str,
    channel: int,
    kind: Literal["message", "deletion", "all"] = "all",
) -> Annotated[CallToolResult, CursorResetOutput]:
    """Forget stored cursors for a channel."""
    if (err := _validate_target(server, channel)) is not None:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=err)
    try:
        removed = store.reset_cursor(
            channel=channel, server=server, kind=None if kind == "all" else kind
        )
    except _HANDLED as e:
        return _error_result(e)
    return tool_ok(
        text=f"Removed {removed} cursor(s).",
        structured={"server": server, "channel": channel, "kind": kind, "removed": removed},
    )


def main() -> None:
    setup_logging()
    mcp.run(transport="stdio")

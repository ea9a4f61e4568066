from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from channel_sync.codec import (
    ParseError,
    decode_channel_name,
    decode_created_message,
    decode_deletion,
    decode_list_body,
    decode_message,
    decode_moderators,
    encode_message,
    parse_created_at,
    record_server_id,
)
from channel_sync.config import Settings
from channel_sync.models import ANONYMOUS, PUBLIC_CHAT_MESSAGE_TYPE, Message
from channel_sync.moderators import ModeratorDirectory
from channel_sync.retry import retry_if_needed
from channel_sync.signing import Signer, SigningFailedError, verify
from channel_sync.store import CursorStore
from channel_sync.transport import (
    ModerationForbiddenError,
    Transport,
    TransportError,
    TransportResponse,
)

logger = logging.getLogger(__name__)

MESSAGE_SENT_EVENT = "Public Chat Message Sent"
MESSAGE_SEND_FAILED_EVENT = "Failed to Send Public Chat Message"


class SyncClient:
    """Incremental sync and signed mutations for public channels.

    Fetches read the cursor store, request only records newer than the cursor
    and advance it per record while decoding. A record advances the cursor as
    soon as its server ID is known, even when it is later skipped or fails
    verification, so a permanently invalid record is not fetched again.

    Cursor store calls run in a worker thread, so stores must be thread-safe.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        cursor_store: CursorStore,
        signer: Signer | None = None,
        display_name: str | None = None,
        settings: Settings | None = None,
        moderators: ModeratorDirectory | None = None,
        track: Callable[[str], None] | None = None,
    ) -> None:
        self.transport = transport
        self.cursor_store = cursor_store
        self.signer = signer
        self.display_name = display_name
        self.settings = settings or Settings()
        self.moderators = moderators or ModeratorDirectory()
        self._track = track

    def _moderation_path(self, path: str) -> str:
        prefix = self.settings.moderation_prefix.strip("/")
        return f"{prefix}/{path}" if prefix else path

    def _cursor_params(self, last_id: int | None) -> dict[str, Any]:
        if last_id is not None:
            return {"since_id": last_id}
        return {"count": self.settings.fallback_batch_size}

    def _emit(self, event: str) -> None:
        if self._track is None:
            return
        try:
            self._track(event)
        except Exception:
            logger.exception("Telemetry callback failed for %r", event)

    async def fetch_messages(self, channel: int, server: str) -> list[Message]:
        logger.debug("Fetching messages for channel %s on %s", channel, server)
        last_id = await asyncio.to_thread(
            self.cursor_store.get_last_message_server_id, channel, server
        )
        params: dict[str, Any] = {"include_annotations": 1}
        params.update(self._cursor_params(last_id))
        response = await self.transport.execute(
            "GET", server, f"channels/{channel}/messages", params
        )
        try:
            records = decode_list_body(response.text)
        except ParseError:
            logger.debug("Couldn't parse messages for channel %s on %s", channel, server)
            raise

        # Cursor writes may hit the disk; keep them off the event loop.
        messages = await asyncio.to_thread(self._process_messages, records, channel, server)
        messages.sort(key=lambda m: m.timestamp)
        return messages

    def _process_messages(self, records: list[Any], channel: int, server: str) -> list[Message]:
        messages: list[Message] = []
        for record in records:
            try:
                server_id = record_server_id(record)
                self.cursor_store.advance_last_message_server_id(channel, server, server_id)
                message = decode_message(record, server=server)
            except ParseError as e:
                logger.debug(
                    "Skipping malformed message record in channel %s on %s: %s", channel, server, e
                )
                continue
            if message is None:
                continue
            if not verify(message):
                logger.debug(
                    "Dropping message %s in channel %s on %s: invalid signature",
                    server_id,
                    channel,
                    server,
                )
                continue
            messages.append(message)
        return messages

    async def fetch_deletions(self, channel: int, server: str) -> list[int]:
        """Return server IDs of messages deleted since the last deletion cursor."""
        logger.debug("Fetching deletions for channel %s on %s", channel, server)
        last_id = await asyncio.to_thread(
            self.cursor_store.get_last_deletion_server_id, channel, server
        )
        response = await self.transport.execute(
            "GET",
            server,
            self._moderation_path(f"channel/{channel}/deletes"),
            self._cursor_params(last_id),
        )
        try:
            records = decode_list_body(response.text)
        except ParseError:
            logger.debug("Couldn't parse deletions for channel %s on %s", channel, server)
            raise
        return await asyncio.to_thread(self._process_deletions, records, channel, server)

    def _process_deletions(self, records: list[Any], channel: int, server: str) -> list[int]:
        deleted: list[int] = []
        for record in records:
            try:
                deletion = decode_deletion(record)
            except ParseError as e:
                logger.debug(
                    "Skipping malformed deletion record in channel %s on %s: %s", channel, server, e
                )
                continue
            self.cursor_store.advance_last_deletion_server_id(
                channel, server, deletion.deletion_server_id
            )
            deleted.append(deletion.message_server_id)
        return deleted

    async def send(self, message: Message, channel: int, server: str) -> Message:
        if self.signer is None or not self.signer.has_key:
            self._emit(MESSAGE_SEND_FAILED_EVENT)
            raise SigningFailedError("no private key configured")
        try:
            signed = self.signer.sign(message)
            sender = self.signer.public_key
        except SigningFailedError:
            self._emit(MESSAGE_SEND_FAILED_EVENT)
            raise
        body = encode_message(signed)

        async def attempt() -> TransportResponse:
            logger.debug("Sending message to channel %s on %s", channel, server)
            return await self.transport.execute(
                "POST", server, f"channels/{channel}/messages", body
            )

        try:
            response = await retry_if_needed(
                attempt,
                max_retries=self.settings.max_retries,
                base_delay=self.settings.retry_base_delay,
                label=f"send to channel {channel} on {server}",
            )
            # decoded outside the retry: the POST has already succeeded
            created = decode_created_message(response.text)
            timestamp = parse_created_at(created.created_at)
        except Exception:
            self._emit(MESSAGE_SEND_FAILED_EVENT)
            raise
        self._emit(MESSAGE_SENT_EVENT)
        return Message(
            server_id=created.id,
            sender_public_key=sender,
            display_name=self.display_name or ANONYMOUS,
            body=created.text,
            timestamp=timestamp,
            type_tag=PUBLIC_CHAT_MESSAGE_TYPE,
            quote=message.quote,
            attachments=message.attachments,
            signature=signed.signature,
        )

    async def delete(
        self, message_server_id: int, channel: int, server: str, *, is_sent_by_user: bool
    ) -> int:
        """Delete a message; moderators may delete messages they did not send."""
        if is_sent_by_user:
            path = f"channels/{channel}/messages/{message_server_id}"
        else:
            path = self._moderation_path(f"moderation/message/{message_server_id}")

        async def attempt() -> int:
            logger.debug(
                "Deleting message %s from channel %s on %s (moderation=%s)",
                message_server_id,
                channel,
                server,
                not is_sent_by_user,
            )
            try:
                await self.transport.execute("DELETE", server, path)
            except TransportError as e:
                if not is_sent_by_user and e.status == 403:
                    raise ModerationForbiddenError(
                        f"not allowed to moderate channel {channel} on {server}", status=403
                    ) from e
                raise
            return message_server_id

        return await retry_if_needed(
            attempt,
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
            give_up_on=(ModerationForbiddenError,),
            label=f"delete of message {message_server_id}",
        )

    async def fetch_moderators(self, channel: int, server: str) -> frozenset[str]:
        response = await self.transport.execute(
            "GET", server, self._moderation_path(f"channel/{channel}/get_moderators")
        )
        try:
            identities = decode_moderators(response.text)
        except ParseError:
            logger.debug("Couldn't parse moderators for channel %s on %s", channel, server)
            raise
        return self.moderators.replace(server=server, channel=channel, identities=identities)

    def is_moderator(self, identity: str, channel: int, server: str) -> bool:
        return self.moderators.is_moderator(identity, channel=channel, server=server)

    async def fetch_channel_info(self, channel: int, server: str) -> str:
        response = await self.transport.execute(
            "GET", server, f"channels/{channel}", {"include_annotations": 1}
        )
        return decode_channel_name(response.text)

    async def set_display_name(self, name: str | None, server: str) -> None:
        logger.debug("Updating display name on %s", server)
        await self.transport.execute("PATCH", server, "users/me", {"name": name or ""})
        self.display_name = name

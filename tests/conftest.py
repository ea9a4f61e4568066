from __future__ import annotations

import json
from collections import deque
from collections.abc import Callable
from typing import Any

import pytest

from channel_sync.codec import encode_message
from channel_sync.models import Attachment, Message, Quote
from channel_sync.signing import Signer
from channel_sync.transport import TransportResponse

SERVER = "https://chat.example.org"
CHANNEL = 1


class FakeTransport:
    """Records calls and replays queued responses in order.

    A queued item may be a TransportResponse, an exception to raise, or any
    JSON-serializable value returned as a 200 response body.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str, dict[str, Any] | None]] = []
        self._responses: deque[Any] = deque()

    def queue(self, *items: Any) -> None:
        self._responses.extend(items)

    async def execute(
        self,
        verb: str,
        server: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> TransportResponse:
        self.calls.append((verb, server, path, params))
        if not self._responses:
            raise AssertionError(f"unexpected call: {verb} {path}")
        item = self._responses.popleft()
        if isinstance(item, Exception):
            raise item
        if isinstance(item, TransportResponse):
            return item
        return TransportResponse(status=200, text=json.dumps(item))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def signer() -> Signer:
    return Signer.generate()


@pytest.fixture
def make_record(signer: Signer) -> Callable[..., dict[str, Any]]:
    """Build a raw channel-message record signed by ``signer``."""

    def _make(
        server_id: int,
        body: str,
        timestamp: int,
        *,
        display_name: str | None = "alice",
        quote: Quote | None = None,
        attachments: tuple[Attachment, ...] = (),
        by: Signer | None = None,
    ) -> dict[str, Any]:
        author = by or signer
        message = author.sign(
            Message(
                sender_public_key=author.public_key,
                display_name=display_name or "",
                body=body,
                timestamp=timestamp,
                quote=quote,
                attachments=attachments,
            )
        )
        encoded = encode_message(message)
        user: dict[str, Any] = {"username": author.public_key}
        if display_name is not None:
            user["name"] = display_name
        record: dict[str, Any] = {
            "id": server_id,
            "user": user,
            "text": encoded["text"],
            "annotations": encoded["annotations"],
        }
        if "reply_to" in encoded:
            record["reply_to"] = encoded["reply_to"]
        return record

    return _make

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

# Annotation type discriminators of the server-defined wire schema.
PUBLIC_CHAT_MESSAGE_TYPE = "network.loki.messenger.publicChat"
ATTACHMENT_TYPE = "net.app.core.oembed"
CHANNEL_INFO_TYPE = "net.patter-app.settings"

ANONYMOUS = "Anonymous"

CursorKind = Literal["message", "deletion"]


@dataclass(frozen=True, slots=True)
class Signature:
    data: bytes
    version: int


@dataclass(frozen=True, slots=True)
class Quote:
    quoted_timestamp: int
    author: str
    text: str
    reply_to_server_id: int | None = None


@dataclass(frozen=True, slots=True)
class Attachment:
    server_location: str
    id: int
    content_type: str
    size_bytes: int
    file_name: str
    flags: int
    width: int
    height: int
    url: str
    caption: str | None = None


@dataclass(frozen=True, slots=True)
class Message:
    sender_public_key: str
    display_name: str
    body: str
    timestamp: int
    server_id: int | None = None
    type_tag: str = PUBLIC_CHAT_MESSAGE_TYPE
    quote: Quote | None = None
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)
    signature: Signature | None = None

    def to_dict(self) -> dict[str, Any]:
        quote = None
        if self.quote is not None:
            quote = {
                "quoted_timestamp": self.quote.quoted_timestamp,
                "author": self.quote.author,
                "text": self.quote.text,
                "reply_to_server_id": self.quote.reply_to_server_id,
            }
        return {
            "server_id": self.server_id,
            "sender_public_key": self.sender_public_key,
            "display_name": self.display_name,
            "body": self.body,
            "timestamp": self.timestamp,
            "type_tag": self.type_tag,
            "quote": quote,
            "attachments": [
                {
                    "id": a.id,
                    "server_location": a.server_location,
                    "content_type": a.content_type,
                    "size_bytes": a.size_bytes,
                    "file_name": a.file_name,
                    "flags": a.flags,
                    "width": a.width,
                    "height": a.height,
                    "url": a.url,
                    "caption": a.caption,
                }
                for a in self.attachments
            ],
            "signature": None
            if self.signature is None
            else {"sig": self.signature.data.hex(), "sigver": self.signature.version},
        }


@dataclass(frozen=True, slots=True)
class Deletion:
    deletion_server_id: int
    message_server_id: int


@dataclass(frozen=True, slots=True)
class Cursor:
    server: str
    channel: int
    kind: CursorKind
    last_id: int
    updated_at: float

"""Pydantic schemas for the JSON records served by a channel server.

Every optional field is declared as such so that a record decodes in a single
pass; unknown fields are ignored.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class UserRecord(WireModel):
    username: str
    name: str | None = None


class AnnotationRecord(WireModel):
    type: str = ""
    value: dict[str, Any] | None = None


class QuoteValue(WireModel):
    id: int
    author: str | None = None
    text: str | None = None


class MessageValue(WireModel):
    timestamp: int
    sig: str
    sigver: int
    quote: QuoteValue | None = None


class AttachmentValue(WireModel):
    id: int
    contentType: str
    size: int
    fileName: str
    flags: int
    width: int
    height: int
    url: str
    caption: str | None = None


class MessageRecord(WireModel):
    id: int
    is_deleted: bool = False
    user: UserRecord | None = None
    text: str | None = None
    reply_to: int | None = None
    annotations: list[Any] | None = None


class DeletionRecord(WireModel):
    id: int
    message_id: int


class ListEnvelope(WireModel):
    data: list[Any]


class ObjectEnvelope(WireModel):
    data: dict[str, Any]


class CreatedMessage(WireModel):
    id: int
    text: str
    created_at: str


class ChannelRecord(WireModel):
    annotations: list[Any] = []


class ModeratorsResponse(WireModel):
    moderators: list[str] | None = None

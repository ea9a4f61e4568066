from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, model_validator

CursorKindName = Literal["message", "deletion", "all"]


class ToolErrorInfo(BaseModel):
    code: str
    message: str


class ToolWarningInfo(BaseModel):
    code: str
    message: str | None = None
    context: dict[str, Any] | None = None


class ToolOutputBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: ToolErrorInfo | None = None
    warnings: list[ToolWarningInfo] | None = None

    required_on_success: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _validate_required_on_success(self) -> ToolOutputBase:
        if self.error is not None:
            return self
        for field in self.required_on_success:
            if getattr(self, field) is None:
                raise ValueError(f"Missing required field: {field}")
        return self


class QuoteInfo(BaseModel):
    quoted_timestamp: int
    author: str
    text: str
    reply_to_server_id: int | None


class AttachmentInfo(BaseModel):
    id: int
    server_location: str
    content_type: str
    size_bytes: int
    file_name: str
    flags: int
    width: int
    height: int
    url: str
    caption: str | None


class SignatureInfo(BaseModel):
    sig: str
    sigver: int


class MessageInfo(BaseModel):
    server_id: int | None
    sender_public_key: str
    display_name: str
    body: str
    timestamp: int
    type_tag: str
    quote: QuoteInfo | None
    attachments: list[AttachmentInfo]
    signature: SignatureInfo | None


class PingOutput(ToolOutputBase):
    required_on_success = ("ok", "version")

    ok: bool | None = None
    version: str | None = None


class FetchMessagesOutput(ToolOutputBase):
    required_on_success = ("server", "channel", "messages", "count", "cursor")

    server: str | None = None
    channel: int | None = None
    messages: list[MessageInfo] | None = None
    count: int | None = None
    cursor: int | None = None


class FetchDeletionsOutput(ToolOutputBase):
    required_on_success = ("server", "channel", "deleted_message_ids", "count")

    server: str | None = None
    channel: int | None = None
    deleted_message_ids: list[int] | None = None
    count: int | None = None
    cursor: int | None = None


class SendMessageOutput(ToolOutputBase):
    required_on_success = ("message",)

    message: MessageInfo | None = None


class DeleteMessageOutput(ToolOutputBase):
    required_on_success = ("deleted_message_id", "moderation")

    deleted_message_id: int | None = None
    moderation: bool | None = None


class ModeratorsOutput(ToolOutputBase):
    required_on_success = ("server", "channel", "moderators")

    server: str | None = None
    channel: int | None = None
    moderators: list[str] | None = None


class IsModeratorOutput(ToolOutputBase):
    required_on_success = ("identity", "is_moderator")

    identity: str | None = None
    is_moderator: bool | None = None


class ChannelInfoOutput(ToolOutputBase):
    required_on_success = ("server", "channel", "name")

    server: str | None = None
    channel: int | None = None
    name: str | None = None


class CursorResetOutput(ToolOutputBase):
    required_on_success = ("server", "channel", "kind", "removed")

    server: str | None = None
    channel: int | None = None
    kind: CursorKindName | None = None
    removed: int | None = None

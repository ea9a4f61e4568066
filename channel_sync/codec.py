from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from channel_sync.common import json_loads
from channel_sync.models import (
    ANONYMOUS,
    ATTACHMENT_TYPE,
    CHANNEL_INFO_TYPE,
    PUBLIC_CHAT_MESSAGE_TYPE,
    Attachment,
    Deletion,
    Message,
    Quote,
    Signature,
)
from channel_sync.wire import (
    AnnotationRecord,
    AttachmentValue,
    ChannelRecord,
    CreatedMessage,
    DeletionRecord,
    ListEnvelope,
    MessageRecord,
    MessageValue,
    ModeratorsResponse,
    ObjectEnvelope,
)

CREATED_AT_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ParseError(ValueError):
    pass


def _load_body(text: str) -> Any:
    try:
        return json_loads(text)
    except ValueError as e:
        raise ParseError(f"response body is not JSON: {e}") from e


def decode_list_body(text: str) -> list[Any]:
    """Return the ``data`` array of a list response."""
    try:
        return ListEnvelope.model_validate(_load_body(text)).data
    except ValidationError as e:
        raise ParseError(str(e)) from e


def decode_object_body(text: str) -> dict[str, Any]:
    try:
        return ObjectEnvelope.model_validate(_load_body(text)).data
    except ValidationError as e:
        raise ParseError(str(e)) from e


def record_server_id(record: Any) -> int:
    if not isinstance(record, dict):
        raise ParseError("record must be an object")
    raw = record.get("id")
    if isinstance(raw, bool) or raw is None:
        raise ParseError("record has no id")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ParseError(f"record id is not an integer: {raw!r}") from e


def parse_created_at(text: str) -> int:
    """Parse a server creation timestamp into milliseconds since the epoch."""
    try:
        dt = datetime.strptime(text, CREATED_AT_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError) as e:
        raise ParseError(f"invalid created_at: {text!r}") from e
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def _find_annotations(annotations: list[Any], type_: str) -> list[dict[str, Any]]:
    """Return the object values of the annotations tagged ``type_``.

    Annotations are validated one at a time; entries that are not objects or
    whose ``type`` or ``value`` have the wrong shape are skipped.
    """
    values: list[dict[str, Any]] = []
    for raw in annotations:
        if not isinstance(raw, dict) or raw.get("type") != type_:
            continue
        try:
            annotation = AnnotationRecord.model_validate(raw)
        except ValidationError:
            continue
        if annotation.value is not None:
            values.append(annotation.value)
    return values


def _decode_quote(value: MessageValue, reply_to: int | None) -> Quote | None:
    q = value.quote
    if q is None:
        return None
    if q.id <= 0 or not q.author or not q.text:
        return None
    return Quote(quoted_timestamp=q.id, author=q.author, text=q.text, reply_to_server_id=reply_to)


def _decode_attachments(annotations: list[Any], server: str) -> tuple[Attachment, ...]:
    out: list[Attachment] = []
    for raw in _find_annotations(annotations, ATTACHMENT_TYPE):
        try:
            v = AttachmentValue.model_validate(raw)
        except ValidationError:
            continue
        out.append(
            Attachment(
                server_location=server,
                id=v.id,
                content_type=v.contentType,
                size_bytes=v.size,
                file_name=v.fileName,
                flags=v.flags,
                width=v.width,
                height=v.height,
                url=v.url,
                caption=v.caption,
            )
        )
    return tuple(out)


def decode_message(record: Any, *, server: str) -> Message | None:
    """Decode one channel-message record.

    Returns None for records that are deleted or carry no chat-message
    annotation. Raises ParseError for malformed records.
    """
    try:
        rec = MessageRecord.model_validate(record)
    except ValidationError as e:
        raise ParseError(str(e)) from e
    if rec.is_deleted:
        return None
    if not rec.annotations:
        return None
    values = _find_annotations(rec.annotations, PUBLIC_CHAT_MESSAGE_TYPE)
    if not values:
        return None
    if rec.user is None or rec.text is None:
        raise ParseError(f"record {rec.id} is missing user or text")
    try:
        value = MessageValue.model_validate(values[0])
        sig = bytes.fromhex(value.sig)
    except (ValidationError, ValueError) as e:
        raise ParseError(f"record {rec.id} has an invalid message annotation: {e}") from e

    return Message(
        server_id=rec.id,
        sender_public_key=rec.user.username,
        display_name=rec.user.name if rec.user.name is not None else ANONYMOUS,
        body=rec.text,
        timestamp=value.timestamp,
        type_tag=PUBLIC_CHAT_MESSAGE_TYPE,
        quote=_decode_quote(value, rec.reply_to),
        attachments=_decode_attachments(rec.annotations, server),
        signature=Signature(data=sig, version=value.sigver),
    )


def decode_deletion(record: Any) -> Deletion:
    try:
        rec = DeletionRecord.model_validate(record)
    except ValidationError as e:
        raise ParseError(str(e)) from e
    return Deletion(deletion_server_id=rec.id, message_server_id=rec.message_id)


def decode_created_message(text: str) -> CreatedMessage:
    try:
        return CreatedMessage.model_validate(decode_object_body(text))
    except ValidationError as e:
        raise ParseError(str(e)) from e


def decode_moderators(text: str) -> frozenset[str]:
    try:
        resp = ModeratorsResponse.model_validate(_load_body(text))
    except ValidationError as e:
        raise ParseError(str(e)) from e
    return frozenset(resp.moderators or ())


def decode_channel_name(text: str) -> str:
    try:
        channel = ChannelRecord.model_validate(decode_object_body(text))
    except ValidationError as e:
        raise ParseError(str(e)) from e
    values = _find_annotations(channel.annotations, CHANNEL_INFO_TYPE)
    if not values or not isinstance(values[0].get("name"), str):
        raise ParseError("channel has no settings annotation with a name")
    return values[0]["name"]


def _attachment_kind(content_type: str) -> str:
    if content_type.startswith("image/"):
        return "photo"
    if content_type.startswith("video/"):
        return "video"
    return "rich"


def encode_message(message: Message) -> dict[str, Any]:
    """Build the POST body for a (signed) outgoing message."""
    value: dict[str, Any] = {"timestamp": message.timestamp}
    if message.quote is not None:
        value["quote"] = {
            "id": message.quote.quoted_timestamp,
            "author": message.quote.author,
            "text": message.quote.text,
        }
    if message.signature is not None:
        value["sig"] = message.signature.data.hex()
        value["sigver"] = message.signature.version

    annotations: list[dict[str, Any]] = [{"type": PUBLIC_CHAT_MESSAGE_TYPE, "value": value}]
    for a in message.attachments:
        attachment_value: dict[str, Any] = {
            "version": 1,
            "type": _attachment_kind(a.content_type),
            "id": a.id,
            "url": a.url,
            "width": a.width,
            "height": a.height,
            "contentType": a.content_type,
            "size": a.size_bytes,
            "fileName": a.file_name,
            "flags": a.flags,
        }
        if a.caption is not None:
            attachment_value["caption"] = a.caption
        annotations.append({"type": ATTACHMENT_TYPE, "value": attachment_value})

    body: dict[str, Any] = {"text": message.body, "annotations": annotations}
    if message.quote is not None and message.quote.reply_to_server_id is not None:
        body["reply_to"] = message.quote.reply_to_server_id
    return body

from __future__ import annotations

import threading

import pytest

from channel_sync.client import (
    MESSAGE_SEND_FAILED_EVENT,
    MESSAGE_SENT_EVENT,
    SyncClient,
)
from channel_sync.codec import ParseError
from channel_sync.config import LEGACY_FALLBACK_BATCH_SIZE, Settings
from channel_sync.models import Message, Quote
from channel_sync.retry import RetryExhaustedError
from channel_sync.signing import Signer, SigningFailedError, verify
from channel_sync.store import MemoryCursorStore, SQLiteCursorStore
from channel_sync.transport import ModerationForbiddenError, TransportError, TransportResponse

SERVER = "https://chat.example.org"
CHANNEL = 1


def _client(transport, signer=None, **kw) -> SyncClient:
    kw.setdefault("cursor_store", MemoryCursorStore())
    return SyncClient(transport=transport, signer=signer, **kw)


@pytest.mark.anyio
async def test_fetch_without_cursor_requests_fallback_batch(transport):
    client = _client(transport)
    transport.queue({"data": []})

    assert await client.fetch_messages(CHANNEL, SERVER) == []

    verb, server, path, params = transport.calls[0]
    assert (verb, server, path) == ("GET", SERVER, "channels/1/messages")
    assert params == {"include_annotations": 1, "count": 256}


@pytest.mark.anyio
async def test_fetch_with_cursor_requests_since_id(transport):
    store = MemoryCursorStore()
    store.advance_last_message_server_id(CHANNEL, SERVER, 41)
    client = _client(transport, cursor_store=store)
    transport.queue({"data": []})

    await client.fetch_messages(CHANNEL, SERVER)

    params = transport.calls[0][3]
    assert params == {"include_annotations": 1, "since_id": 41}


@pytest.mark.anyio
async def test_fallback_batch_size_is_configurable(transport):
    client = _client(transport, settings=Settings(fallback_batch_size=LEGACY_FALLBACK_BATCH_SIZE))
    transport.queue({"data": []}, {"data": []})

    await client.fetch_messages(CHANNEL, SERVER)
    await client.fetch_deletions(CHANNEL, SERVER)

    assert transport.calls[0][3]["count"] == 20
    assert transport.calls[1][3] == {"count": 20}


@pytest.mark.anyio
async def test_deleted_and_forged_records_advance_cursor_but_are_dropped(transport, make_record):
    store = MemoryCursorStore()
    client = _client(transport, cursor_store=store)
    forger = Signer.generate()

    first = make_record(10, "one", 1000)
    second = make_record(11, "two", 2000)
    second["is_deleted"] = True
    third = make_record(12, "three", 3000)
    # claims to be from the same sender but was signed with another key
    third["annotations"][0]["value"]["sig"] = make_record(12, "three", 3000, by=forger)[
        "annotations"
    ][0]["value"]["sig"]
    transport.queue({"data": [first, second, third]})

    messages = await client.fetch_messages(CHANNEL, SERVER)

    assert [m.server_id for m in messages] == [10]
    assert store.get_last_message_server_id(CHANNEL, SERVER) == 12


@pytest.mark.anyio
async def test_results_sorted_by_timestamp_not_server_id(transport, make_record):
    client = _client(transport)
    transport.queue(
        {
            "data": [
                make_record(3, "late", 3000),
                make_record(1, "middle", 2000),
                make_record(2, "early", 1000),
            ]
        }
    )

    messages = await client.fetch_messages(CHANNEL, SERVER)

    assert [m.body for m in messages] == ["early", "middle", "late"]
    assert all(verify(m) for m in messages)


@pytest.mark.anyio
async def test_malformed_record_does_not_abort_batch(transport, make_record):
    store = MemoryCursorStore()
    client = _client(transport, cursor_store=store)
    broken = make_record(20, "broken", 1500)
    del broken["annotations"][0]["value"]["timestamp"]
    transport.queue({"data": [make_record(19, "ok", 1000), broken, {"no": "id"}, "junk"]})

    messages = await client.fetch_messages(CHANNEL, SERVER)

    assert [m.body for m in messages] == ["ok"]
    assert store.get_last_message_server_id(CHANNEL, SERVER) == 20


@pytest.mark.anyio
async def test_cursor_is_max_across_fetches(transport, make_record):
    store = MemoryCursorStore()
    client = _client(transport, cursor_store=store)
    transport.queue(
        {"data": [make_record(5, "a", 1), make_record(7, "b", 2)]},
        {"data": [make_record(6, "late arrival", 3)]},
    )

    await client.fetch_messages(CHANNEL, SERVER)
    await client.fetch_messages(CHANNEL, SERVER)

    assert transport.calls[1][3]["since_id"] == 7
    assert store.get_last_message_server_id(CHANNEL, SERVER) == 7


@pytest.mark.anyio
async def test_body_parse_failure_propagates(transport, make_record):
    store = MemoryCursorStore()
    store.advance_last_message_server_id(CHANNEL, SERVER, 3)
    client = _client(transport, cursor_store=store)
    transport.queue(TransportResponse(status=200, text="<html>oops</html>"))

    with pytest.raises(ParseError):
        await client.fetch_messages(CHANNEL, SERVER)
    assert store.get_last_message_server_id(CHANNEL, SERVER) == 3


@pytest.mark.anyio
async def test_fetch_transport_error_is_not_retried(transport):
    client = _client(transport)
    transport.queue(TransportError("boom", status=502))

    with pytest.raises(TransportError):
        await client.fetch_messages(CHANNEL, SERVER)
    assert len(transport.calls) == 1


@pytest.mark.anyio
async def test_fetch_works_against_sqlite_store(transport, make_record, tmp_path):
    store = SQLiteCursorStore(path=str(tmp_path / "cursors.sqlite"))
    client = _client(transport, cursor_store=store)
    transport.queue({"data": [make_record(8, "hi", 1)]})

    messages = await client.fetch_messages(CHANNEL, SERVER)

    assert len(messages) == 1
    assert store.get_last_message_server_id(CHANNEL, SERVER) == 8


@pytest.mark.anyio
async def test_broken_foreign_annotation_keeps_valid_message(transport, make_record):
    client = _client(transport)
    with_list_value = make_record(1, "hello", 1000)
    with_list_value["annotations"].append(
        {"type": "net.app.core.oembed", "value": ["not", "an", "object"]}
    )
    with_null_type = make_record(2, "world", 2000)
    with_null_type["annotations"].append({"type": None, "value": "x"})
    transport.queue({"data": [with_list_value, with_null_type]})

    messages = await client.fetch_messages(CHANNEL, SERVER)

    assert [m.body for m in messages] == ["hello", "world"]


class _ThreadRecordingStore(MemoryCursorStore):
    def __init__(self) -> None:
        super().__init__()
        self.threads: set[int] = set()

    def get_last_message_server_id(self, channel, server):
        self.threads.add(threading.get_ident())
        return super().get_last_message_server_id(channel, server)

    def advance_last_message_server_id(self, channel, server, server_id):
        self.threads.add(threading.get_ident())
        return super().advance_last_message_server_id(channel, server, server_id)

    def get_last_deletion_server_id(self, channel, server):
        self.threads.add(threading.get_ident())
        return super().get_last_deletion_server_id(channel, server)

    def advance_last_deletion_server_id(self, channel, server, server_id):
        self.threads.add(threading.get_ident())
        return super().advance_last_deletion_server_id(channel, server, server_id)


@pytest.mark.anyio
async def test_cursor_store_runs_off_the_event_loop(transport, make_record):
    store = _ThreadRecordingStore()
    client = _client(transport, cursor_store=store)
    transport.queue(
        {"data": [make_record(1, "a", 1), make_record(2, "b", 2)]},
        {"data": [{"id": 3, "message_id": 1}]},
    )

    await client.fetch_messages(CHANNEL, SERVER)
    await client.fetch_deletions(CHANNEL, SERVER)

    assert store.threads
    assert threading.get_ident() not in store.threads
    assert store.get_last_message_server_id(CHANNEL, SERVER) == 2
    assert store.get_last_deletion_server_id(CHANNEL, SERVER) == 3


@pytest.mark.anyio
async def test_fetch_deletions(transport):
    store = MemoryCursorStore()
    client = _client(transport, cursor_store=store)
    transport.queue(
        {
            "data": [
                {"id": 4, "message_id": 100},
                {"id": 5},
                {"id": 6, "message_id": 102},
            ]
        },
        {"data": []},
    )

    assert await client.fetch_deletions(CHANNEL, SERVER) == [100, 102]
    assert store.get_last_deletion_server_id(CHANNEL, SERVER) == 6
    assert store.get_last_message_server_id(CHANNEL, SERVER) is None

    await client.fetch_deletions(CHANNEL, SERVER)
    verb, _, path, params = transport.calls[1]
    assert (verb, path) == ("GET", "loki/v1/channel/1/deletes")
    assert params == {"since_id": 6}


def _local_message(signer: Signer, **kw) -> Message:
    return Message(
        sender_public_key=signer.public_key,
        display_name="alice",
        body=kw.pop("body", "hello"),
        timestamp=1000,
        **kw,
    )


def _created(server_id: int = 77, text: str = "hello") -> dict:
    return {"data": {"id": server_id, "text": text, "created_at": "2019-10-15T04:29:23.123Z"}}


@pytest.mark.anyio
async def test_send_reconstructs_canonical_message(transport, signer):
    events: list[str] = []
    client = _client(transport, signer, display_name="Alice", track=events.append)
    quote = Quote(quoted_timestamp=900, author="bob", text="before", reply_to_server_id=5)
    transport.queue(_created())

    sent = await client.send(_local_message(signer, quote=quote), CHANNEL, SERVER)

    verb, server, path, body = transport.calls[0]
    assert (verb, server, path) == ("POST", SERVER, "channels/1/messages")
    assert body["text"] == "hello"
    assert body["reply_to"] == 5
    assert sent.server_id == 77
    assert sent.sender_public_key == signer.public_key
    assert sent.display_name == "Alice"
    assert sent.timestamp == 1571113763123
    assert sent.quote == quote
    assert sent.signature is not None
    assert body["annotations"][0]["value"]["sig"] == sent.signature.data.hex()
    assert events == [MESSAGE_SENT_EVENT]


@pytest.mark.anyio
async def test_send_defaults_to_anonymous(transport, signer):
    client = _client(transport, signer)
    transport.queue(_created())
    sent = await client.send(_local_message(signer), CHANNEL, SERVER)
    assert sent.display_name == "Anonymous"


@pytest.mark.anyio
async def test_send_without_key_fails_without_retry(transport, signer):
    events: list[str] = []
    client = _client(transport, None, track=events.append)

    with pytest.raises(SigningFailedError):
        await client.send(_local_message(signer), CHANNEL, SERVER)
    assert transport.calls == []
    assert events == [MESSAGE_SEND_FAILED_EVENT]


@pytest.mark.anyio
async def test_send_retries_transient_failures(transport, signer):
    client = _client(transport, signer)
    transport.queue(*[TransportError("flaky", status=503) for _ in range(7)], _created())

    sent = await client.send(_local_message(signer), CHANNEL, SERVER)

    assert sent.server_id == 77
    assert len(transport.calls) == 8
    # signing happens once, outside the retried operation
    assert len({c[3]["annotations"][0]["value"]["sig"] for c in transport.calls}) == 1


@pytest.mark.anyio
async def test_send_gives_up_after_bound(transport, signer):
    events: list[str] = []
    client = _client(transport, signer, track=events.append)
    transport.queue(*[TransportError("down", status=503) for _ in range(9)])

    with pytest.raises(RetryExhaustedError) as excinfo:
        await client.send(_local_message(signer), CHANNEL, SERVER)

    assert len(transport.calls) == 9
    assert isinstance(excinfo.value.last_error, TransportError)
    assert events == [MESSAGE_SEND_FAILED_EVENT]


@pytest.mark.anyio
async def test_unparseable_echo_is_not_reposted(transport, signer):
    events: list[str] = []
    client = _client(transport, signer, track=events.append)
    no_millis = {"data": {"id": 1, "text": "hello", "created_at": "2019-10-15T04:29:23Z"}}
    transport.queue(no_millis, _created(server_id=2))

    with pytest.raises(ParseError):
        await client.send(_local_message(signer), CHANNEL, SERVER)

    assert len(transport.calls) == 1
    assert events == [MESSAGE_SEND_FAILED_EVENT]


@pytest.mark.anyio
async def test_delete_endpoint_depends_on_actor(transport):
    client = _client(transport)
    transport.queue({}, {})

    assert await client.delete(9, CHANNEL, SERVER, is_sent_by_user=True) == 9
    assert await client.delete(10, CHANNEL, SERVER, is_sent_by_user=False) == 10

    assert transport.calls[0][:3] == ("DELETE", SERVER, "channels/1/messages/9")
    assert transport.calls[1][:3] == ("DELETE", SERVER, "loki/v1/moderation/message/10")


@pytest.mark.anyio
async def test_moderation_prefix_is_configurable(transport):
    client = _client(transport, settings=Settings(moderation_prefix="/api/"))
    transport.queue({})
    await client.delete(10, CHANNEL, SERVER, is_sent_by_user=False)
    assert transport.calls[0][2] == "api/moderation/message/10"


@pytest.mark.anyio
async def test_delete_retries_then_succeeds(transport):
    client = _client(transport)
    transport.queue(TransportError("reset"), TransportError("reset"), {})

    assert await client.delete(9, CHANNEL, SERVER, is_sent_by_user=True) == 9
    assert len(transport.calls) == 3


@pytest.mark.anyio
async def test_forbidden_moderation_delete_is_not_retried(transport):
    client = _client(transport)
    transport.queue(TransportError("forbidden", status=403))

    with pytest.raises(ModerationForbiddenError):
        await client.delete(10, CHANNEL, SERVER, is_sent_by_user=False)
    assert len(transport.calls) == 1


@pytest.mark.anyio
async def test_fetch_moderators_overwrites_cache(transport):
    client = _client(transport)
    transport.queue({"moderators": ["alice", "bob"]}, {"moderators": ["carol"]})

    assert client.is_moderator("alice", CHANNEL, SERVER) is False
    assert await client.fetch_moderators(CHANNEL, SERVER) == frozenset({"alice", "bob"})
    assert client.is_moderator("alice", CHANNEL, SERVER) is True

    assert await client.fetch_moderators(CHANNEL, SERVER) == frozenset({"carol"})
    assert client.is_moderator("alice", CHANNEL, SERVER) is False
    assert transport.calls[0][:3] == ("GET", SERVER, "loki/v1/channel/1/get_moderators")


@pytest.mark.anyio
async def test_fetch_channel_info(transport):
    client = _client(transport)
    transport.queue(
        {
            "data": {
                "id": 1,
                "annotations": [{"type": "net.patter-app.settings", "value": {"name": "Lobby"}}],
            }
        }
    )

    assert await client.fetch_channel_info(CHANNEL, SERVER) == "Lobby"
    assert transport.calls[0] == ("GET", SERVER, "channels/1", {"include_annotations": 1})


@pytest.mark.anyio
async def test_set_display_name_updates_local_name(transport, signer):
    client = _client(transport, signer, display_name="old")
    transport.queue({}, _created())

    await client.set_display_name("new", SERVER)
    assert transport.calls[0] == ("PATCH", SERVER, "users/me", {"name": "new"})

    sent = await client.send(_local_message(signer), CHANNEL, SERVER)
    assert sent.display_name == "new"


@pytest.mark.anyio
async def test_telemetry_failure_does_not_break_send(transport, signer):
    def broken(event: str) -> None:
        raise RuntimeError("analytics down")

    client = _client(transport, signer, track=broken)
    transport.queue(_created())
    sent = await client.send(_local_message(signer), CHANNEL, SERVER)
    assert sent.server_id == 77

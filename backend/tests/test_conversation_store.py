from __future__ import annotations

import asyncio

import pytest

from chat_fakes import message_row
from therapy_sync import ConversationStore, SendOutcome
from therapy_sync.store import LOAD_ERROR, SEND_ERROR
from therapy_transport import TransportError


def _store(api, **kwargs) -> ConversationStore:
    return ConversationStore(load_fn=api.load, send_fn=api.send, poll_fn=api.poll, **kwargs)


def _keys(store: ConversationStore) -> list[str]:
    return [message.key for message in store.messages]


def test_load_send_poll_scenario(fake_api):
    fake_api.add_conversation(42, messages=[message_row(101), message_row(102), message_row(103)])
    fake_api.queue("send", {"message_id": 501, "conversation_id": 42})
    fake_api.queue("poll", {"messages": []})

    async def scenario():
        store = _store(fake_api)
        assert await store.load(42) is True
        assert store.watermark == 103

        gate = fake_api.hold("send")
        pending = asyncio.create_task(store.send("hi"))
        await asyncio.sleep(0)
        in_flight = list(store.messages)
        busy = store.busy
        gate.set()
        outcome = await pending

        merged = await store.poll()
        return store, in_flight, busy, outcome, merged

    store, in_flight, busy, outcome, merged = asyncio.run(scenario())
    assert len(in_flight) == 4
    assert in_flight[-1].is_temporary
    assert in_flight[-1].content == "hi"
    assert busy is True
    assert outcome.status == "sent"
    assert store.messages[-1].id == 501
    assert store.watermark == 501
    assert merged == 0
    assert len(store.messages) == 4
    assert fake_api.calls[-1] == ("poll", 42, 501)


def test_blocked_send_replaces_temp_with_system_notice(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10)])
    fake_api.queue("send", {"blocked": True, "type": "danger_detected", "message": "Please reach out to your therapist."})

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        outcome = await store.send("something alarming")
        return store, outcome

    store, outcome = asyncio.run(scenario())
    assert outcome.status == "blocked"
    assert not any(message.content == "something alarming" for message in store.messages)
    notice = store.messages[-1]
    assert notice.sender_type == "system"
    assert notice.key.startswith("safety-")
    assert notice.content == "Please reach out to your therapist."
    assert store.error is None
    assert store.watermark == 10


def test_failed_send_removes_temp_and_sets_error(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10)])
    fake_api.queue("send", TransportError("boom", status_code=500))

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        outcome = await store.send("hello")
        return store, outcome

    store, outcome = asyncio.run(scenario())
    assert outcome.status == "failed"
    assert _keys(store) == ["10"]
    assert store.error == SEND_ERROR
    assert store.is_sending is False
    assert store.busy is False


def test_send_without_message_id_counts_as_failure(fake_api):
    fake_api.add_conversation(5)
    fake_api.queue("send", {"conversation_id": 5})

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        return store, await store.send("hello")

    store, outcome = asyncio.run(scenario())
    assert outcome.status == "failed"
    assert store.messages == []


def test_send_is_skipped_for_blank_text_or_missing_conversation(fake_api):
    fake_api.add_conversation(5)

    async def scenario():
        store = _store(fake_api)
        unbound = await store.send("hello")
        await store.load(5)
        blank = await store.send("   ")
        return unbound, blank

    unbound, blank = asyncio.run(scenario())
    assert unbound.status == "skipped"
    assert blank.status == "skipped"
    assert fake_api.count("send") == 0


def test_poll_is_noop_while_send_outstanding(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10)])

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        gate = fake_api.hold("send")
        pending = asyncio.create_task(store.send("hello"))
        await asyncio.sleep(0)
        merged = await store.poll()
        gate.set()
        await pending
        return merged

    assert asyncio.run(scenario()) == 0
    assert fake_api.count("poll") == 0


def test_poll_is_noop_while_load_outstanding(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10)])

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        gate = fake_api.hold("load")
        pending = asyncio.create_task(store.load(5))
        await asyncio.sleep(0)
        merged = await store.poll()
        gate.set()
        await pending
        return merged

    assert asyncio.run(scenario()) == 0
    assert fake_api.count("poll") == 0


def test_poll_dedupes_and_advances_watermark(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10), message_row(11)])
    fake_api.queue(
        "poll",
        {"messages": [message_row(11), message_row(12, sender_type="therapist"), message_row(12, sender_type="therapist")]},
        {"messages": [message_row(12, sender_type="therapist"), message_row(13, sender_type="ai")]},
    )

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        first = await store.poll()
        second = await store.poll()
        return store, first, second

    store, first, second = asyncio.run(scenario())
    assert (first, second) == (1, 1)
    assert _keys(store) == ["10", "11", "12", "13"]
    assert len(set(_keys(store))) == len(store.messages)
    assert store.watermark == 13
    assert store.messages[-1].role == "assistant"


def test_ai_reply_is_appended_once(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10)])
    ai_reply = message_row(12, "I'm here for you.", sender_type="ai")
    fake_api.queue("poll", {"messages": [ai_reply]})
    fake_api.queue("send", {"message_id": 11, "conversation_id": 5, "ai_message": ai_reply})

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        await store.send("hello")
        await store.poll()
        return store

    store = asyncio.run(scenario())
    assert _keys(store) == ["10", "11", "12"]
    assert store.watermark == 12


def test_acknowledged_id_already_merged_drops_temp(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10)])
    fake_api.queue("send", {"message_id": 11, "conversation_id": 5})

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        store.messages.append(store.messages[0].model_copy(update={"id": 11, "content": "hello"}))
        outcome = await store.send("hello")
        return store, outcome

    store, outcome = asyncio.run(scenario())
    assert outcome.sent
    assert _keys(store) == ["10", "11"]


def test_poll_result_for_previous_conversation_is_discarded(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10)])
    fake_api.add_conversation(6, messages=[message_row(20)])
    fake_api.queue("poll", {"messages": [message_row(11)]})

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        gate = fake_api.hold("poll")
        pending = asyncio.create_task(store.poll())
        await asyncio.sleep(0)
        await store.load(6)
        gate.set()
        merged = await pending
        return store, merged

    store, merged = asyncio.run(scenario())
    assert merged == 0
    assert _keys(store) == ["20"]
    assert store.watermark == 20


def test_failed_load_keeps_previous_view(fake_api):
    fake_api.add_conversation(5, messages=[message_row(10)])
    fake_api.queue("load", None, TransportError("offline"))

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        ok = await store.load(5)
        return store, ok

    store, ok = asyncio.run(scenario())
    assert ok is False
    assert store.error == LOAD_ERROR
    assert _keys(store) == ["10"]
    assert store.is_loading is False


def test_empty_conversation_has_no_watermark(fake_api):
    fake_api.add_conversation(5)

    async def scenario():
        store = _store(fake_api)
        await store.load(5)
        return store

    store = asyncio.run(scenario())
    assert store.messages == []
    assert store.watermark is None


def test_reload_during_send_keeps_the_acknowledged_message(fake_api):
    fake_api.add_conversation(42, messages=[message_row(101), message_row(102), message_row(103)])
    fake_api.queue("send", {"message_id": 501, "conversation_id": 42})
    fake_api.queue("poll", {"messages": []})

    async def scenario():
        store = _store(fake_api)
        await store.load(42)
        gate = fake_api.hold("send")
        pending = asyncio.create_task(store.send("hi"))
        await asyncio.sleep(0)
        assert await store.load(42) is True
        gate.set()
        outcome = await pending
        await store.poll()
        return store, outcome

    store, outcome = asyncio.run(scenario())
    assert outcome.status == "sent"
    assert _keys(store) == ["101", "102", "103", "501"]
    assert store.messages[-1].content == "hi"
    assert store.watermark == 501


def test_send_acknowledged_after_switching_conversation_leaves_new_view_alone(fake_api):
    fake_api.add_conversation(42, messages=[message_row(101)])
    fake_api.add_conversation(43, messages=[message_row(201)])
    fake_api.queue("send", {"message_id": 501, "conversation_id": 42})

    async def scenario():
        store = _store(fake_api)
        await store.load(42)
        gate = fake_api.hold("send")
        pending = asyncio.create_task(store.send("hi"))
        await asyncio.sleep(0)
        await store.load(43)
        gate.set()
        outcome = await pending
        return store, outcome

    store, outcome = asyncio.run(scenario())
    assert outcome.status == "sent"
    assert outcome.message is not None and outcome.message.id == 501
    assert _keys(store) == ["201"]
    assert store.watermark == 201


def test_send_outcome_rejects_unknown_status():
    assert SendOutcome(status="skipped").sent is False
    with pytest.raises(ValueError):
        SendOutcome(status="queued")

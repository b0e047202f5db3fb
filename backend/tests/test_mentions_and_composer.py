from __future__ import annotations

import asyncio
import json

from therapy_sync import (
    DEFAULT_MENTION,
    DEFAULT_TAG_REASONS,
    MentionSession,
    MessageComposer,
    describe_tag,
    detect_trigger,
    filter_items,
    parse_tag_reasons,
    scan_mentions,
    tag_alerts_for,
    tag_message_text,
)
from therapy_sync.schemas import MentionItem, Message

AVERY = MentionItem(id="therapist-a", display="Dr Avery", insert_text="@DrAvery")
BLAKE = MentionItem(id="therapist-b", display="Dr Blake", insert_text="@DrBlake")


def test_detect_trigger_requires_word_boundary():
    trigger = detect_trigger("hello @doc", 10)
    assert trigger is not None
    assert (trigger.kind, trigger.query, trigger.offset) == ("@", "doc", 6)

    assert detect_trigger("a@b", 3) is None
    assert detect_trigger("hello @doc there", 16) is None

    topic = detect_trigger("#urg", 4)
    assert topic is not None
    assert (topic.kind, topic.query, topic.offset) == ("#", "urg", 0)

    bare = detect_trigger("ping @", 6)
    assert bare is not None and bare.query == ""


def test_detect_trigger_uses_text_before_cursor():
    trigger = detect_trigger("hi @av and more", 6)
    assert trigger is not None
    assert trigger.query == "av"


def test_filter_items_is_case_insensitive_substring():
    assert filter_items([AVERY, BLAKE], "") == [AVERY, BLAKE]
    assert filter_items([AVERY, BLAKE], "BLA") == [BLAKE]
    assert filter_items([AVERY, BLAKE], "zz") == []


def test_parse_tag_reasons_accepts_json_and_falls_back():
    raw = json.dumps(
        [
            {"key": "sleep", "label": "Trouble sleeping"},
            {"code": "panic", "label": "Panic attack", "urgency": "emergency"},
            {"key": "odd", "label": "Odd urgency", "urgency": "whenever"},
            {"label": "missing code"},
        ]
    )
    reasons = parse_tag_reasons(raw)
    assert [(reason.code, reason.urgency) for reason in reasons] == [
        ("sleep", "normal"),
        ("panic", "emergency"),
        ("odd", "normal"),
    ]
    assert parse_tag_reasons("not json") == list(DEFAULT_TAG_REASONS)
    assert parse_tag_reasons([]) == list(DEFAULT_TAG_REASONS)
    assert parse_tag_reasons(None) == list(DEFAULT_TAG_REASONS)


def test_scan_mentions_finds_group_therapists_and_topics():
    scan = scan_mentions("@therapist I need help #urgent #unknown", DEFAULT_TAG_REASONS, [AVERY, BLAKE])
    assert scan.tag_all is True
    assert scan.topics == ["urgent"]
    assert scan.therapist_ids == []
    assert scan.tagged

    direct = scan_mentions("hey @DrBlake are you there", DEFAULT_TAG_REASONS, [AVERY, BLAKE])
    assert direct.tag_all is False
    assert direct.therapist_ids == ["therapist-b"]

    plain = scan_mentions("mail me at pat@therapist.org", DEFAULT_TAG_REASONS, [AVERY, BLAKE])
    assert not plain.tagged


def test_describe_tag_uses_most_urgent_topic():
    scan = scan_mentions("#overwhelmed and #emergency", DEFAULT_TAG_REASONS)
    tag = describe_tag(scan, DEFAULT_TAG_REASONS)
    assert tag.code == "emergency"
    assert tag.urgency == "emergency"

    mention_only = describe_tag(scan_mentions("@therapist", DEFAULT_TAG_REASONS), DEFAULT_TAG_REASONS)
    assert (mention_only.code, mention_only.urgency) == ("mention", "normal")


def test_tag_message_text_carries_topic_code():
    reason = DEFAULT_TAG_REASONS[1]
    text = tag_message_text(reason)
    assert text.startswith("@therapist ")
    assert f"#{reason.code}: {reason.label}" in text
    assert scan_mentions(text, DEFAULT_TAG_REASONS).topics == [reason.code]


def test_session_navigates_and_commits_selection():
    calls: list[int] = []

    async def fetch():
        calls.append(1)
        return [AVERY, BLAKE]

    async def scenario():
        session = MentionSession(fetch_mentions=fetch)
        await session.update("hi @", 4)
        opened = (session.is_open, len(session.items))
        assert session.handle_key("down") is True
        assert session.handle_key("down") is True
        assert session.selected_index == 1
        assert session.handle_key("up") is True
        assert session.handle_key("up") is True
        assert session.selected_index == 0
        session.handle_key("down")
        session.handle_key("enter")
        committed = (session.text, session.cursor, session.is_open)
        await session.update("hi @DrBlake and @Dr", 19)
        return opened, committed, session.items

    opened, committed, items = asyncio.run(scenario())
    assert opened == (True, 2)
    assert committed == ("hi @DrBlake ", 12, False)
    assert items == [AVERY, BLAKE]
    assert calls == [1]


def test_session_falls_back_to_default_mention():
    async def broken():
        raise RuntimeError("directory offline")

    async def empty():
        return []

    async def scenario():
        failing = MentionSession(fetch_mentions=broken)
        await failing.update("@", 1)
        blank = MentionSession(fetch_mentions=empty)
        await blank.update("@th", 3)
        unconfigured = MentionSession()
        await unconfigured.update("@", 1)
        return failing.items, blank.items, unconfigured.items

    failing, blank, unconfigured = asyncio.run(scenario())
    assert failing == [DEFAULT_MENTION]
    assert blank == [DEFAULT_MENTION]
    assert unconfigured == [DEFAULT_MENTION]


def test_session_topics_escape_and_empty_matches():
    async def scenario():
        session = MentionSession()
        await session.update("feeling #over", 13)
        topics = [item.insert_text for item in session.items]
        session.handle_key("escape")
        closed = session.is_open
        await session.update("#zzz", 4)
        nothing_to_commit = session.handle_key("enter")
        return topics, closed, session.is_open, nothing_to_commit

    topics, closed, still_open, nothing_to_commit = asyncio.run(scenario())
    assert topics == ["#overwhelmed"]
    assert closed is False
    assert still_open is True
    assert nothing_to_commit is False


def test_blur_closes_after_grace_unless_refocused():
    async def scenario():
        session = MentionSession(blur_grace=0.01)
        await session.update("@", 1)
        session.blur()
        session.focus()
        await asyncio.sleep(0.03)
        kept = session.is_open
        session.blur()
        await asyncio.sleep(0.03)
        return kept, session.is_open

    kept, after_blur = asyncio.run(scenario())
    assert kept is True
    assert after_blur is False


def test_composer_choose_and_submit():
    async def fetch():
        return [AVERY]

    async def scenario():
        composer = MessageComposer(mentions=MentionSession(fetch_mentions=fetch))
        await composer.set_text("please @av")
        chosen = composer.choose(0)
        text_after_choice = composer.text
        out_of_range = composer.choose(3)
        submitted = composer.submit()
        return chosen, text_after_choice, out_of_range, submitted, composer.text

    chosen, text_after_choice, out_of_range, submitted, remaining_text = asyncio.run(scenario())
    assert chosen is True
    assert text_after_choice == "please @DrAvery "
    assert out_of_range is False
    assert submitted == "please @DrAvery"
    assert remaining_text == ""


def test_composer_keyboard_commit_updates_text():
    async def scenario():
        composer = MessageComposer()
        await composer.set_text("need @th")
        consumed = composer.handle_key("tab")
        return consumed, composer.text, composer.cursor

    consumed, text, cursor = asyncio.run(scenario())
    assert consumed is True
    assert text == "need @therapist "
    assert cursor == len(text)


def test_composer_transcript_insert_and_limits():
    async def scenario():
        composer = MessageComposer(max_length=20)
        await composer.set_text("hello", cursor=5)
        composer.insert_transcript("I am here")
        inserted = composer.text
        composer.insert_transcript("   ")
        await composer.set_text("x" * 30)
        truncated = (len(composer.text), composer.remaining)
        composer.disabled = True
        return inserted, truncated, composer.submit()

    inserted, truncated, disabled_submit = asyncio.run(scenario())
    assert inserted == "hello I am here "
    assert truncated == (20, 0)
    assert disabled_submit is None


def test_tag_alerts_point_back_at_the_message():
    message = Message(id=88, sender_type="subject", content="@DrAvery @DrBlake #need_talk")
    scan = scan_mentions(message.content, DEFAULT_TAG_REASONS, [AVERY, BLAKE])
    alerts = tag_alerts_for(message, scan, 7)
    assert [alert.target_user_id for alert in alerts] == ["therapist-a", "therapist-b"]
    assert {(alert.message_id, alert.conversation_id, alert.urgency, alert.severity) for alert in alerts} == {
        (88, 7, "urgent", "critical")
    }
    assert all(alert.id is None and alert.alert_type == "tag_received" for alert in alerts)

    group_wide = tag_alerts_for(message, scan_mentions("@therapist hi", DEFAULT_TAG_REASONS, [AVERY]), 7)
    assert [(alert.target_user_id, alert.urgency, alert.reason) for alert in group_wide] == [
        (None, "normal", "Therapist mentioned")
    ]
    assert tag_alerts_for(message, scan_mentions("just talking", DEFAULT_TAG_REASONS, [AVERY]), 7) == []

from __future__ import annotations

import asyncio
import json
import os

import httpx
import pytest

from therapy_host.assistant import FALLBACK_REPLY, AssistantReplies, _coerce_completion_text
from therapy_sync.settings import SyncSettings, load_env_file
from therapy_transport import ChatTransport, SubjectApi, TherapistApi, TransportError


def _mock(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


def test_requests_carry_identity_and_section():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messages": [{"id": 4, "sender_type": "ai", "content": "hi"}]})

    async def scenario():
        async with ChatTransport(base_url="http://host", user_id="patient-a", section_id=3, transport=_mock(handler)) as api:
            return await api.poll(9, after_id=3)

    batch = asyncio.run(scenario())
    assert batch.messages[0].role == "assistant"
    request = seen[0]
    assert request.headers["X-User-Id"] == "patient-a"
    assert request.url.path == "/chat/messages"
    assert dict(request.url.params) == {"conversation_id": "9", "after_id": "3", "section_id": "3"}


def test_error_responses_become_transport_errors():
    responses = [
        httpx.Response(500, json={"detail": "database locked"}),
        httpx.Response(200, json={"error": "Conversation closed"}),
        httpx.Response(200, json=[1, 2, 3]),
        httpx.Response(502, text="Bad Gateway"),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    async def scenario():
        errors: list[TransportError] = []
        async with ChatTransport(base_url="http://host", user_id="patient-a", transport=_mock(handler)) as api:
            for _ in range(4):
                try:
                    await api.check_updates()
                except TransportError as exc:
                    errors.append(exc)
        return errors

    errors = asyncio.run(scenario())
    assert [str(exc) for exc in errors] == [
        "database locked",
        "Conversation closed",
        "Unexpected response body from /chat/updates",
        "Bad Gateway",
    ]
    assert [exc.status_code for exc in errors] == [500, 200, 200, 502]


def test_timeouts_are_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async def scenario():
        async with SubjectApi(base_url="http://host", user_id="patient-a", transport=_mock(handler)) as api:
            await api.send(1, "hello")

    with pytest.raises(TransportError, match="timed out"):
        asyncio.run(scenario())


def test_therapist_calls_shape_requests():
    seen: list[tuple[str, str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        seen.append((request.method, request.url.path, body))
        if request.url.path.endswith("/risk"):
            return httpx.Response(200, json={"risk_level": body["risk_level"]})
        if request.url.path == "/dashboard/conversations/init":
            return httpx.Response(
                200,
                json={"conversation": {"id": 12, "subject_id": body["patient_id"]}, "already_exists": True},
            )
        return httpx.Response(200, json={"unread_counts": {"total": 2, "by_group": {"1": 2}}})

    async def scenario():
        async with TherapistApi(base_url="http://host", user_id="therapist-a", transport=_mock(handler)) as api:
            risk = await api.set_risk(12, "high")
            created = await api.initialize_conversation(77)
            counts = await api.get_unread_counts()
            with pytest.raises(TransportError):
                await api.load(None)
            return risk, created, counts

    risk, created, counts = asyncio.run(scenario())
    assert risk == "high"
    assert created.already_exists is True
    assert created.conversation.subject_id == "77"
    assert counts.by_group == {"1": 2}
    assert seen[0] == ("POST", "/dashboard/conversations/12/risk", {"risk_level": "high"})
    assert seen[1][2] == {"patient_id": "77"}
    assert len(seen) == 3


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("THERAPY_SYNC_BASE_URL", "http://chat.internal:9000/")
    monkeypatch.setenv("THERAPY_SYNC_POLL_SECONDS", "2.5")
    monkeypatch.setenv("THERAPY_SYNC_BADGE_CAP", "not-a-number")
    monkeypatch.delenv("THERAPY_SYNC_TIMEOUT_SECONDS", raising=False)

    settings = SyncSettings.from_env()
    assert settings.base_url == "http://chat.internal:9000"
    assert settings.polling_interval == 2.5
    assert settings.badge_cap == 99
    assert settings.request_timeout == 20.0

    api = ChatTransport.from_settings(settings, user_id="patient-a")
    assert (api._client.base_url.host, api._client.base_url.port) == ("chat.internal", 9000)
    asyncio.run(api.aclose())


def test_env_file_loading(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "# comment",
                "THERAPY_SYNC_TEST_QUOTED='quoted value'",
                "THERAPY_SYNC_TEST_KEEP=from-file",
                "1BAD=ignored",
                "no equals sign",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.delenv("THERAPY_SYNC_TEST_QUOTED", raising=False)
    monkeypatch.setenv("THERAPY_SYNC_TEST_KEEP", "from-env")

    load_env_file(env_file)
    assert os.environ["THERAPY_SYNC_TEST_QUOTED"] == "quoted value"
    assert os.environ["THERAPY_SYNC_TEST_KEEP"] == "from-env"
    assert "1BAD" not in os.environ
    monkeypatch.delenv("THERAPY_SYNC_TEST_QUOTED", raising=False)


def test_assistant_falls_back_without_provider(monkeypatch):
    monkeypatch.setenv("THERAPY_HOST_CHAT_PROVIDER", "none")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assistant = AssistantReplies()
    assert assistant.enabled is False
    assert assistant.reply([{"role": "user", "content": "hello"}]) == FALLBACK_REPLY


def test_assistant_uses_completion_and_survives_provider_errors(monkeypatch):
    monkeypatch.setenv("THERAPY_HOST_CHAT_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assistant = AssistantReplies()
    assert assistant.enabled is True

    monkeypatch.setattr(assistant, "_chat", lambda messages, **_: "You are doing the work. Keep going.")
    assert assistant.reply([{"role": "user", "content": "hi"}]) == "You are doing the work. Keep going."

    def failing(messages, **_):
        raise RuntimeError("rate limited")

    monkeypatch.setattr(assistant, "_chat", failing)
    summary = assistant.summary([{"sender_type": "subject", "content": "hi"}])
    assert summary.startswith("Conversation summary: 1 messages (subject: 1)")


def test_completion_text_coercion():
    assert _coerce_completion_text({"choices": [{"message": {"content": "plain"}}]}) == "plain"
    parts = {"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"text": "b"}, "junk"]}}]}
    assert _coerce_completion_text(parts) == "a\nb"
    assert _coerce_completion_text({"choices": []}) == ""

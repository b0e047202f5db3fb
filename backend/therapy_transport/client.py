from __future__ import annotations

import logging
from typing import Any

import httpx

from therapy_sync.schemas import (
    Alert,
    Conversation,
    ConversationPayload,
    DashboardStats,
    DraftPayload,
    InitializedConversation,
    MentionItem,
    MessageBatch,
    Note,
    NotePayload,
    ReadReceipt,
    SendResult,
    SummaryPayload,
    TherapistGroup,
    UnreadCounts,
    UpdateCheck,
)
from therapy_sync.settings import SyncSettings

logger = logging.getLogger(__name__)


class TransportError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_message(response: httpx.Response, payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("error", "detail", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return response.text.strip() or f"HTTP {response.status_code}"


def _clean(params: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


class ChatTransport:
    """Calls shared by the subject chat and the therapist dashboard."""

    def __init__(
        self,
        *,
        base_url: str,
        user_id: str,
        timeout: float = 20.0,
        section_id: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.user_id = user_id
        self.section_id = section_id
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=8.0),
            headers={"X-User-Id": user_id, "Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        user_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ChatTransport":
        return cls(
            base_url=settings.base_url,
            user_id=user_id,
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        query = _clean(params or {})
        if self.section_id is not None:
            query.setdefault("section_id", self.section_id)
        try:
            response = await self._client.request(method, path, params=query, json=json)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Request failed: {method} {path}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.status_code >= 400:
            logger.debug(f"{method} {path} returned HTTP {response.status_code}")
            raise TransportError(_error_message(response, payload), status_code=response.status_code)
        if not isinstance(payload, dict):
            raise TransportError(f"Unexpected response body from {path}", status_code=response.status_code)
        if payload.get("error"):
            raise TransportError(str(payload["error"]), status_code=response.status_code)
        return payload

    async def load(self, conversation_id: int | None = None) -> ConversationPayload:
        payload = await self._request("GET", "/chat/conversation", params={"conversation_id": conversation_id})
        return ConversationPayload.model_validate(payload)

    async def send(self, conversation_id: int, message: str) -> SendResult:
        payload = await self._request(
            "POST",
            "/chat/messages",
            json={"conversation_id": conversation_id, "message": message},
        )
        return SendResult.model_validate(payload)

    async def poll(self, conversation_id: int, after_id: int | None = None) -> MessageBatch:
        payload = await self._request(
            "GET",
            "/chat/messages",
            params={"conversation_id": conversation_id, "after_id": after_id},
        )
        return MessageBatch.model_validate(payload)

    async def check_updates(self) -> UpdateCheck:
        return UpdateCheck.model_validate(await self._request("GET", "/chat/updates"))

    async def mark_messages_read(self, conversation_id: int | None = None) -> ReadReceipt:
        payload = await self._request("POST", "/chat/read", json=_clean({"conversation_id": conversation_id}))
        return ReadReceipt.model_validate(payload)


class SubjectApi(ChatTransport):
    async def get_therapists(self) -> list[MentionItem]:
        payload = await self._request("GET", "/chat/therapists")
        return [MentionItem.model_validate(item) for item in payload.get("therapists") or []]

    async def tag_therapist(
        self,
        conversation_id: int,
        reason: str | None = None,
        urgency: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/chat/tag",
            json=_clean({"conversation_id": conversation_id, "reason": reason, "urgency": urgency}),
        )


class TherapistApi(ChatTransport):
    async def load(self, conversation_id: int | None = None) -> ConversationPayload:
        if conversation_id is None:
            raise TransportError("A conversation id is required to open a conversation")
        payload = await self._request("GET", f"/dashboard/conversations/{conversation_id}")
        return ConversationPayload.model_validate(payload)

    async def get_conversations(self, filters: dict[str, Any] | None = None) -> list[Conversation]:
        payload = await self._request("GET", "/dashboard/conversations", params=filters or {})
        return [Conversation.model_validate(item) for item in payload.get("conversations") or []]

    async def initialize_conversation(self, patient_id: int | str) -> InitializedConversation:
        payload = await self._request("POST", "/dashboard/conversations/init", json={"patient_id": str(patient_id)})
        return InitializedConversation.model_validate(payload)

    async def toggle_ai(self, conversation_id: int, enabled: bool) -> bool:
        payload = await self._request("POST", f"/dashboard/conversations/{conversation_id}/ai", json={"enabled": enabled})
        return bool(payload.get("ai_enabled", enabled))

    async def set_risk(self, conversation_id: int, risk_level: str) -> str:
        payload = await self._request(
            "POST",
            f"/dashboard/conversations/{conversation_id}/risk",
            json={"risk_level": risk_level},
        )
        return str(payload.get("risk_level") or risk_level)

    async def set_status(self, conversation_id: int, status: str) -> str:
        payload = await self._request(
            "POST",
            f"/dashboard/conversations/{conversation_id}/status",
            json={"status": status},
        )
        return str(payload.get("status") or status)

    async def create_draft(self, conversation_id: int) -> DraftPayload:
        payload = await self._request("POST", f"/dashboard/conversations/{conversation_id}/drafts")
        return DraftPayload.model_validate(payload)

    async def update_draft(self, draft_id: int, edited_content: str) -> bool:
        payload = await self._request("POST", f"/dashboard/drafts/{draft_id}", json={"edited_content": edited_content})
        return bool(payload.get("ok", True))

    async def send_draft(self, draft_id: int, conversation_id: int | None = None) -> SendResult:
        payload = await self._request(
            "POST",
            f"/dashboard/drafts/{draft_id}/send",
            json=_clean({"conversation_id": conversation_id}),
        )
        return SendResult.model_validate(payload)

    async def discard_draft(self, draft_id: int) -> bool:
        payload = await self._request("POST", f"/dashboard/drafts/{draft_id}/discard")
        return bool(payload.get("ok", True))

    async def generate_summary(self, conversation_id: int) -> SummaryPayload:
        payload = await self._request("POST", f"/dashboard/conversations/{conversation_id}/summary")
        return SummaryPayload.model_validate(payload)

    async def add_note(self, conversation_id: int, content: str) -> NotePayload:
        payload = await self._request(
            "POST",
            f"/dashboard/conversations/{conversation_id}/notes",
            json={"content": content},
        )
        return NotePayload.model_validate(payload)

    async def get_notes(self, conversation_id: int) -> list[Note]:
        payload = await self._request("GET", f"/dashboard/conversations/{conversation_id}/notes")
        return [Note.model_validate(item) for item in payload.get("notes") or []]

    async def get_unread_counts(self) -> UnreadCounts:
        payload = await self._request("GET", "/dashboard/unread")
        return UnreadCounts.model_validate(payload.get("unread_counts") or {})

    async def get_stats(self) -> DashboardStats:
        payload = await self._request("GET", "/dashboard/stats")
        return DashboardStats.model_validate(payload.get("stats") or {})

    async def get_alerts(self, unread_only: bool = False) -> list[Alert]:
        payload = await self._request("GET", "/dashboard/alerts", params={"unread_only": "1" if unread_only else None})
        return [Alert.model_validate(item) for item in payload.get("alerts") or []]

    async def mark_alert_read(self, alert_id: int) -> bool:
        payload = await self._request("POST", f"/dashboard/alerts/{alert_id}/read")
        return bool(payload.get("ok", True))

    async def get_groups(self) -> list[TherapistGroup]:
        payload = await self._request("GET", "/dashboard/groups")
        return [TherapistGroup.model_validate(item) for item in payload.get("groups") or []]

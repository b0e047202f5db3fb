from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel

from .schemas import Alert, Conversation, DashboardStats, Note, TherapistGroup
from .unread import UnreadReconciler

logger = logging.getLogger(__name__)

LIST_FILTERS = ("all", "active", "critical", "unread")
_RESOURCES = ("conversations", "alerts", "notes", "stats", "unread_counts")


def _items(raw: Any, key: str, model: type[BaseModel]) -> list[Any]:
    if isinstance(raw, dict):
        raw = raw.get(key) or []
    return [item if isinstance(item, model) else model.model_validate(item) for item in raw or []]


class ConversationDirectory:
    """Single writer for the therapist's shared list resources."""

    def __init__(
        self,
        api: Any,
        *,
        unread: UnreadReconciler | None = None,
        group_id: int | None = None,
        selected_conversation_id: int | None = None,
    ) -> None:
        self.api = api
        self.unread = unread
        self.conversations: list[Conversation] = []
        self.alerts: list[Alert] = []
        self.notes: list[Note] = []
        self.groups: list[TherapistGroup] = []
        self.stats: DashboardStats | None = None
        self.active_group_id = group_id
        self.active_filter = "all"
        self.selected_conversation_id = selected_conversation_id
        self.loading = {name: False for name in _RESOURCES}
        self.errors: dict[str, str | None] = {name: None for name in _RESOURCES}

    def get(self, conversation_id: int | None) -> Conversation | None:
        if conversation_id is None:
            return None
        return next((conv for conv in self.conversations if conv.id == conversation_id), None)

    def select(self, conversation_id: int | None) -> None:
        self.selected_conversation_id = conversation_id

    def set_group(self, group_id: int | None) -> None:
        self.active_group_id = group_id

    def set_filter(self, list_filter: str) -> None:
        if list_filter in LIST_FILTERS:
            self.active_filter = list_filter

    def patch(self, conversation_id: int, **update: Any) -> None:
        self.conversations = [
            conv.model_copy(update=update) if conv.id == conversation_id else conv for conv in self.conversations
        ]

    def upsert(self, conversation: Conversation) -> None:
        if self.get(conversation.id) is None:
            self.conversations = [*self.conversations, conversation]
        else:
            self.conversations = [conversation if conv.id == conversation.id else conv for conv in self.conversations]

    def add_note(self, note: Note) -> None:
        self.notes = [*self.notes, note]

    def update_note(self, note_id: int, **update: Any) -> None:
        self.notes = [note.model_copy(update=update) if note.id == note_id else note for note in self.notes]

    def delete_note(self, note_id: int) -> None:
        self.notes = [note for note in self.notes if note.id != note_id]

    async def load_conversations(
        self,
        group_id: int | None = None,
        list_filter: str | None = None,
        *,
        silent: bool = False,
    ) -> None:
        filters: dict[str, Any] = {}
        if group_id is not None:
            filters["group_id"] = group_id
        if list_filter and list_filter != "all":
            filters["filter"] = list_filter
        if not silent:
            self.loading["conversations"] = True
            self.errors["conversations"] = None
        try:
            self.conversations = _items(await self.api.get_conversations(filters), "conversations", Conversation)
        except Exception as exc:
            self.errors["conversations"] = str(exc) or "Failed to load conversations"
            if silent:
                logger.warning(f"Background conversation refresh failed: {exc}")
            else:
                logger.error(f"Load conversations error: {exc}")
        finally:
            if not silent:
                self.loading["conversations"] = False

    async def load_alerts(self) -> None:
        self.loading["alerts"] = True
        self.errors["alerts"] = None
        try:
            self.alerts = _items(await self.api.get_alerts(True), "alerts", Alert)
        except Exception as exc:
            self.errors["alerts"] = str(exc) or "Failed to load alerts"
            logger.warning(f"Load alerts error: {exc}")
        finally:
            self.loading["alerts"] = False

    async def load_notes(self, conversation_id: int) -> None:
        self.loading["notes"] = True
        self.errors["notes"] = None
        try:
            self.notes = _items(await self.api.get_notes(conversation_id), "notes", Note)
        except Exception as exc:
            self.errors["notes"] = str(exc) or "Failed to load notes"
            logger.warning(f"Load notes error for conversation {conversation_id}: {exc}")
        finally:
            self.loading["notes"] = False

    async def load_stats(self) -> None:
        self.loading["stats"] = True
        try:
            raw = await self.api.get_stats()
            if isinstance(raw, dict) and "stats" in raw:
                raw = raw["stats"]
            self.stats = raw if isinstance(raw, DashboardStats) else DashboardStats.model_validate(raw)
        except Exception as exc:
            self.errors["stats"] = str(exc) or "Failed to load stats"
            logger.warning(f"Load stats error: {exc}")
        finally:
            self.loading["stats"] = False

    async def load_unread_counts(self) -> None:
        if self.unread is None:
            return
        self.loading["unread_counts"] = True
        try:
            await self.unread.refresh_counts()
        finally:
            self.loading["unread_counts"] = False

    async def load_groups(self) -> None:
        try:
            self.groups = _items(await self.api.get_groups(), "groups", TherapistGroup)
        except Exception as exc:
            logger.error(f"Load groups error: {exc}")

    async def refresh(self) -> None:
        await asyncio.gather(
            self.load_conversations(self.active_group_id, self.active_filter, silent=True),
            self.load_alerts(),
            self.load_unread_counts(),
            self.load_stats(),
        )

    async def mark_alert_read(self, alert_id: int) -> None:
        self.alerts = [
            alert.model_copy(update={"is_read": True}) if alert.id == alert_id else alert for alert in self.alerts
        ]
        try:
            await self.api.mark_alert_read(alert_id)
        except Exception as exc:
            logger.error(f"Failed to mark alert {alert_id} as read: {exc}")

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .directory import ConversationDirectory
from .schemas import CONVERSATION_STATUSES, RISK_LEVELS, Conversation, InitializedConversation
from .store import ConversationStore
from .unread import UnreadReconciler

logger = logging.getLogger(__name__)

PersistFn = Callable[[int, Any], Awaitable[Any]]


class ConversationActions:
    """Therapist-side mutations of a conversation.

    Each toggle issues the persistence call, patches the local copies
    before that call resolves, then re-loads the active message view and
    refreshes the list and stats for the current scope. A failed call is
    logged and the optimistic patch stays until the next refresh.
    """

    def __init__(
        self,
        api: Any,
        *,
        store: ConversationStore,
        directory: ConversationDirectory,
        unread: UnreadReconciler | None = None,
    ) -> None:
        self.api = api
        self.store = store
        self.directory = directory
        self.unread = unread
        self.initializing_patient_id: int | str | None = None

    def _resolve_id(self, conversation_id: int | None) -> int | None:
        if conversation_id is not None:
            return conversation_id
        if self.store.conversation_id is not None:
            return self.store.conversation_id
        return self.directory.selected_conversation_id

    def _current(self, conversation_id: int) -> Conversation | None:
        if self.store.conversation is not None and self.store.conversation.id == conversation_id:
            return self.store.conversation
        return self.directory.get(conversation_id)

    def _patch(self, conversation_id: int, **update: Any) -> None:
        if self.store.conversation_id == conversation_id:
            self.store.patch_conversation(**update)
        self.directory.patch(conversation_id, **update)

    async def toggle_ai(self, enabled: bool | None = None, conversation_id: int | None = None) -> bool:
        target = self._resolve_id(conversation_id)
        if target is None:
            return False
        if enabled is None:
            current = self._current(target)
            if current is None:
                return False
            enabled = not current.ai_enabled
        return await self._apply(target, "ai_enabled", enabled, self.api.toggle_ai)

    async def set_risk(self, level: str, conversation_id: int | None = None) -> bool:
        if level not in RISK_LEVELS:
            logger.warning(f"Ignoring unknown risk level: {level!r}")
            return False
        target = self._resolve_id(conversation_id)
        if target is None:
            return False
        return await self._apply(target, "risk_level", level, self.api.set_risk)

    async def set_status(self, status: str, conversation_id: int | None = None) -> bool:
        if status not in CONVERSATION_STATUSES:
            logger.warning(f"Ignoring unknown conversation status: {status!r}")
            return False
        target = self._resolve_id(conversation_id)
        if target is None:
            return False
        return await self._apply(target, "status", status, self.api.set_status)

    async def _apply(self, conversation_id: int, field: str, value: Any, persist: PersistFn) -> bool:
        pending = asyncio.ensure_future(persist(conversation_id, value))
        self._patch(conversation_id, **{field: value})
        try:
            raw = await pending
        except Exception as exc:
            logger.error(f"Failed to set {field} on conversation {conversation_id}: {exc}")
            return False

        confirmed = raw.get(field, value) if isinstance(raw, dict) else (value if raw is None else raw)
        if confirmed != value:
            self._patch(conversation_id, **{field: confirmed})
        await self._reconcile()
        return True

    async def _reconcile(self) -> None:
        active_id = self.store.conversation_id or self.directory.selected_conversation_id
        if active_id is not None:
            await self.store.load(active_id)
        await asyncio.gather(
            self.directory.load_conversations(
                self.directory.active_group_id,
                self.directory.active_filter,
                silent=True,
            ),
            self.directory.load_stats(),
        )

    async def mark_read(self) -> bool:
        if self.store.conversation is None:
            return False
        if self.unread is not None:
            marked = await self.unread.mark_read()
        else:
            try:
                await self.api.mark_messages_read(self.store.conversation_id)
                marked = True
            except Exception as exc:
                logger.warning(f"Mark read failed for conversation {self.store.conversation_id}: {exc}")
                marked = False
        if marked:
            await asyncio.gather(
                self.directory.load_unread_counts(),
                self.directory.load_conversations(
                    self.directory.active_group_id,
                    self.directory.active_filter,
                    silent=True,
                ),
            )
        return marked

    async def initialize_conversation(self, patient_id: int | str) -> InitializedConversation | None:
        self.initializing_patient_id = patient_id
        try:
            raw = await self.api.initialize_conversation(patient_id)
            result = raw if isinstance(raw, InitializedConversation) else InitializedConversation.model_validate(raw)
            self.directory.upsert(result.conversation)
            self.directory.select(result.conversation.id)
            await self.directory.load_conversations(
                self.directory.active_group_id,
                self.directory.active_filter,
                silent=True,
            )
            return result
        except Exception as exc:
            logger.error(f"Failed to initialize conversation for patient {patient_id}: {exc}")
            return None
        finally:
            self.initializing_patient_id = None

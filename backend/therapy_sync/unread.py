from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .indicators import IndicatorBoard
from .schemas import ReadReceipt, SubjectUnread, UnreadCounts, UpdateCheck
from .store import ConversationStore
from .visibility import VisibilitySignal

logger = logging.getLogger(__name__)

CheckFn = Callable[[], Awaitable[Any]]
MarkReadFn = Callable[[int | None], Awaitable[Any]]
CountsFn = Callable[[], Awaitable[Any]]


class UnreadReconciler:
    """Keeps read receipts, unread counts and badges in step with the log.

    The last-known message id only moves forward. Marking read while the
    view is hidden is deferred until it becomes visible again.
    """

    def __init__(
        self,
        *,
        check_updates: CheckFn,
        mark_messages_read: MarkReadFn | None = None,
        get_unread_counts: CountsFn | None = None,
        store: ConversationStore | None = None,
        indicators: IndicatorBoard | None = None,
        visibility: VisibilitySignal | None = None,
    ) -> None:
        self._check_updates = check_updates
        self._mark_messages_read = mark_messages_read
        self._get_unread_counts = get_unread_counts
        self.store = store
        self.indicators = indicators or IndicatorBoard()
        self.visibility = visibility
        self.counts = UnreadCounts()
        self.last_known_message_id: int | None = None
        self.pending_mark_read = False
        self.deferred_task: asyncio.Task | None = None
        self._unsubscribe = visibility.subscribe(self._on_visibility) if visibility is not None else None

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _known_id(self) -> int | None:
        candidates = [self.last_known_message_id]
        if self.store is not None:
            candidates.append(self.store.watermark)
        known = [value for value in candidates if value is not None]
        return max(known) if known else None

    async def check(self) -> bool:
        try:
            raw = await self._check_updates()
            update = raw if isinstance(raw, UpdateCheck) else UpdateCheck.model_validate(raw)
        except Exception as exc:
            logger.warning(f"Update check failed: {exc}")
            return False

        latest = update.latest_message_id
        known = self._known_id()
        if latest is None or (known is not None and latest <= known):
            return False
        if self.store is not None:
            if self.store.busy:
                return False
            await self.store.poll()
        self.last_known_message_id = latest
        await self.mark_read()
        return True

    async def check_badge(self) -> int:
        """Lightweight count refresh for a closed chat panel."""
        try:
            raw = await self._check_updates()
            update = raw if isinstance(raw, UpdateCheck) else UpdateCheck.model_validate(raw)
        except Exception as exc:
            logger.warning(f"Unread badge check failed: {exc}")
            return self.indicators.count
        count = update.unread_count or (update.unread_messages + update.unread_alerts)
        self.indicators.update(count)
        return count

    async def mark_read(self) -> bool:
        if self._mark_messages_read is None:
            return False
        if self.visibility is not None and not self.visibility.visible:
            self.pending_mark_read = True
            return False
        self.pending_mark_read = False
        conversation_id = self.store.conversation_id if self.store is not None else None
        try:
            raw = await self._mark_messages_read(conversation_id)
            receipt = raw if isinstance(raw, ReadReceipt) else ReadReceipt.model_validate(raw or {})
        except Exception as exc:
            logger.warning(f"Mark read failed for conversation {conversation_id}: {exc}")
            return False
        self.indicators.update(receipt.unread_count)
        return True

    def _on_visibility(self, visible: bool) -> None:
        if visible and self.pending_mark_read:
            self.deferred_task = asyncio.get_running_loop().create_task(self.mark_read())

    async def refresh_counts(self) -> UnreadCounts:
        if self._get_unread_counts is None:
            return self.counts
        try:
            raw = await self._get_unread_counts()
            self.counts = raw if isinstance(raw, UnreadCounts) else UnreadCounts.model_validate(raw)
        except Exception as exc:
            logger.warning(f"Unread count refresh failed: {exc}")
            return self.counts
        self.indicators.update(self.total_unread())
        return self.counts

    def unread_for_subject(self, subject_id: int | str) -> int:
        entry = self.counts.by_subject.get(str(subject_id))
        return entry.unread_count if entry is not None else 0

    def unread_for_group(self, group_id: int | str) -> int:
        return self.counts.by_group.get(str(group_id), 0)

    def total_unread(self) -> int:
        return self.counts.total + self.counts.total_alerts

    def has_unread_alerts(self) -> bool:
        return self.counts.total_alerts > 0

    def subjects_with_unread(self) -> list[tuple[str, SubjectUnread]]:
        entries = [(key, entry) for key, entry in self.counts.by_subject.items() if entry.unread_count > 0]
        return sorted(entries, key=lambda item: item[1].unread_count, reverse=True)

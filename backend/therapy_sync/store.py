from __future__ import annotations

import itertools
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from .models import SendOutcome
from .schemas import Conversation, ConversationPayload, Message, MessageBatch, SendResult

logger = logging.getLogger(__name__)

LoadFn = Callable[[int | None], Awaitable[Any]]
SendFn = Callable[[int, str], Awaitable[Any]]
PollFn = Callable[[int, int | None], Awaitable[Any]]

BLOCKED_NOTICE = "Your message was blocked for safety reasons."
LOAD_ERROR = "Failed to load conversation"
SEND_ERROR = "Failed to send message"

_local_ids = itertools.count(1)


def _local_token(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{next(_local_ids)}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_batch(result: Any) -> MessageBatch:
    if isinstance(result, MessageBatch):
        return result
    if isinstance(result, list):
        return MessageBatch(messages=result)
    return MessageBatch.model_validate(result or {})


class ConversationStore:
    """Local view of one conversation's append-only message log.

    Load and Send hold the busy flag for their whole duration and poll is
    a no-op while it is held, so an incremental fetch can never race the
    optimistic pipeline.
    """

    def __init__(
        self,
        *,
        load_fn: LoadFn,
        send_fn: SendFn,
        poll_fn: PollFn,
        sender_type: str = "subject",
        sender_id: str | None = None,
        sender_name: str | None = None,
    ) -> None:
        self._load_fn = load_fn
        self._send_fn = send_fn
        self._poll_fn = poll_fn
        self.sender_type = sender_type
        self.sender_id = sender_id
        self.sender_name = sender_name

        self.conversation: Conversation | None = None
        self.messages: list[Message] = []
        self.is_loading = False
        self.is_sending = False
        self.error: str | None = None
        self.watermark: int | None = None
        self._busy = 0

    @property
    def busy(self) -> bool:
        return self._busy > 0

    @property
    def conversation_id(self) -> int | None:
        return self.conversation.id if self.conversation else None

    def rebind(
        self,
        *,
        load_fn: LoadFn | None = None,
        send_fn: SendFn | None = None,
        poll_fn: PollFn | None = None,
    ) -> None:
        if load_fn is not None:
            self._load_fn = load_fn
        if send_fn is not None:
            self._send_fn = send_fn
        if poll_fn is not None:
            self._poll_fn = poll_fn

    def clear(self) -> None:
        self.conversation = None
        self.messages = []
        self.watermark = None
        self.error = None

    def clear_error(self) -> None:
        self.error = None

    def patch_conversation(self, **update: Any) -> None:
        if self.conversation is not None:
            self.conversation = self.conversation.model_copy(update=update)

    def has_message(self, message_id: int | str) -> bool:
        key = str(message_id)
        return any(message.key == key for message in self.messages)

    async def load(self, conversation_id: int | None = None) -> bool:
        target = conversation_id if conversation_id is not None else self.conversation_id
        self._busy += 1
        self.is_loading = True
        self.error = None
        try:
            result = await self._load_fn(target)
            payload = result if isinstance(result, ConversationPayload) else ConversationPayload.model_validate(result)
        except Exception as exc:
            logger.warning(f"Conversation load failed ({target}): {exc}")
            self.error = LOAD_ERROR
            return False
        finally:
            self._busy -= 1
            self.is_loading = False

        self.conversation = payload.conversation
        self.messages = list(payload.messages)
        self.watermark = None
        for message in reversed(self.messages):
            if message.numeric_id is not None:
                self.watermark = message.numeric_id
                break
        return True

    async def send(self, content: str) -> SendOutcome:
        conversation_id = self.conversation_id
        if not (content or "").strip() or conversation_id is None:
            return SendOutcome(status="skipped")

        temp = Message(
            id=_local_token("temp"),
            role="user",
            sender_type=self.sender_type,
            sender_id=self.sender_id,
            sender_name=self.sender_name,
            content=content,
            timestamp=_now_iso(),
        )
        self._busy += 1
        self.is_sending = True
        self.error = None
        self.messages.append(temp)
        try:
            raw = await self._send_fn(conversation_id, content)
            result = raw if isinstance(raw, SendResult) else SendResult.model_validate(raw)
            if not result.blocked and result.message_id is None:
                raise ValueError("send response carried no message id")
        except Exception as exc:
            logger.warning(f"Message send failed for conversation {conversation_id}: {exc}")
            self._drop(temp.key)
            self.error = SEND_ERROR
            return SendOutcome(status="failed", error=SEND_ERROR)
        finally:
            self._busy -= 1
            self.is_sending = False

        if self.conversation_id != conversation_id:
            # The view moved to another conversation while the send was in flight.
            sent = None if result.blocked else temp.model_copy(update={"id": result.message_id})
            return SendOutcome(status="blocked" if result.blocked else "sent", message=sent)

        if result.blocked:
            self._drop(temp.key)
            notice = Message(
                id=_local_token("safety"),
                role="system",
                sender_type="system",
                content=result.message or BLOCKED_NOTICE,
                timestamp=_now_iso(),
            )
            self.messages.append(notice)
            return SendOutcome(status="blocked", notice=notice)

        sent = self._acknowledge(temp, result.message_id)
        if result.ai_message is not None and not self.has_message(result.ai_message.id):
            self.messages.append(result.ai_message)
            self._advance(result.ai_message)
        return SendOutcome(status="sent", message=sent)

    async def poll(self) -> int:
        conversation_id = self.conversation_id
        if conversation_id is None or self.busy:
            return 0
        try:
            batch = _as_batch(await self._poll_fn(conversation_id, self.watermark))
        except Exception as exc:
            logger.warning(f"Polling error for conversation {conversation_id}: {exc}")
            return 0
        if self.conversation_id != conversation_id:
            return 0

        known = {message.key for message in self.messages}
        merged = 0
        for message in batch.messages:
            if message.key in known:
                continue
            known.add(message.key)
            self.messages.append(message)
            self._advance(message)
            merged += 1
        return merged

    def _acknowledge(self, temp: Message, message_id: int) -> Message:
        if self.has_message(message_id):
            self._drop(temp.key)
            sent = next(message for message in self.messages if message.key == str(message_id))
        elif self.has_message(temp.key):
            sent = temp.model_copy(update={"id": message_id})
            self.messages = [sent if message.key == temp.key else message for message in self.messages]
        else:
            # A reload replaced the list before the server stored this message.
            sent = temp.model_copy(update={"id": message_id})
            self.messages.append(sent)
        self._advance(sent)
        return sent

    def _advance(self, message: Message) -> None:
        numeric = message.numeric_id
        if numeric is not None and (self.watermark is None or numeric > self.watermark):
            self.watermark = numeric

    def _drop(self, key: str) -> None:
        self.messages = [message for message in self.messages if message.key != key]

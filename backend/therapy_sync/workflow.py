from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from .models import SendOutcome
from .schemas import Draft, DraftPayload, Note, NotePayload, SendResult, SummaryPayload

logger = logging.getLogger(__name__)

ConversationIdFn = Callable[[], "int | None"]
NoteCallback = Callable[[Note], None]


class WorkflowError(Exception):
    pass


class GenerationWorkflow:
    """Editor state for one AI-generated text that a therapist reviews.

    A request sequence token guards every generation: a response that
    lands after the workflow was closed or restarted is dropped.
    """

    _TRANSITIONS = {
        "idle": {"generating"},
        "generating": {"ready", "error", "idle"},
        "ready": {"generating", "idle"},
        "error": {"generating", "idle"},
    }
    failure_message = "Failed to generate"

    def __init__(self, *, get_conversation_id: ConversationIdFn) -> None:
        self._get_conversation_id = get_conversation_id
        self.state = "idle"
        self.is_open = False
        self.text = ""
        self.error: str | None = None
        self.undo_stack: list[str] = []
        self.conversation_id: int | None = None
        self._sequence = 0

    @property
    def generating(self) -> bool:
        return self.state == "generating"

    def _transition(self, next_state: str) -> None:
        allowed_next = self._TRANSITIONS.get(self.state, set())
        if next_state not in allowed_next:
            raise WorkflowError(f"Invalid transition: {self.state} -> {next_state}")
        self.state = next_state

    async def _request(self, conversation_id: int) -> str:
        raise NotImplementedError

    async def generate(self) -> bool:
        conversation_id = self._get_conversation_id()
        if conversation_id is None or self.generating:
            return False
        return await self._run(conversation_id)

    async def regenerate(self) -> bool:
        if self.state != "ready" or self.conversation_id is None:
            return False
        if self.text:
            self.undo_stack.append(self.text)
        return await self._run(self.conversation_id)

    async def retry(self) -> bool:
        if self.state != "error":
            return False
        conversation_id = self.conversation_id if self.conversation_id is not None else self._get_conversation_id()
        if conversation_id is None:
            return False
        return await self._run(conversation_id)

    def undo(self) -> bool:
        if self.state not in {"ready", "error"} or not self.undo_stack:
            return False
        self.text = self.undo_stack.pop()
        return True

    def edit(self, text: str) -> bool:
        if self.state != "ready":
            return False
        self.text = text
        return True

    def close(self) -> None:
        self._reset()

    async def _run(self, conversation_id: int) -> bool:
        self._sequence += 1
        token = self._sequence
        self._transition("generating")
        self.conversation_id = conversation_id
        self.is_open = True
        self.error = None
        try:
            text = await self._request(conversation_id)
        except Exception as exc:
            if token != self._sequence:
                return False
            logger.warning(f"{type(self).__name__} generation failed for conversation {conversation_id}: {exc}")
            self.error = str(exc) or self.failure_message
            self._transition("error")
            return False
        if token != self._sequence:
            return False
        self.text = text
        self._transition("ready")
        return True

    def _reset(self) -> None:
        self._sequence += 1
        if self.state != "idle":
            self._transition("idle")
        self.is_open = False
        self.text = ""
        self.error = None
        self.undo_stack = []
        self.conversation_id = None


class DraftWorkflow(GenerationWorkflow):
    """Draft reply editor.

    With ``send_draft`` wired the host delivers the persisted draft and
    records its terminal status; ``send_message`` alone sends the text as
    an ordinary message and leaves the draft row to the host.
    """

    failure_message = "Failed to generate draft"

    def __init__(
        self,
        *,
        create_draft: Callable[[int], Awaitable[Any]],
        get_conversation_id: ConversationIdFn,
        send_message: Callable[[str], Awaitable[Any]] | None = None,
        update_draft: Callable[[int, str], Awaitable[Any]] | None = None,
        send_draft: Callable[[int, int], Awaitable[Any]] | None = None,
        discard_draft: Callable[[int], Awaitable[Any]] | None = None,
    ) -> None:
        if send_message is None and send_draft is None:
            raise WorkflowError("DraftWorkflow needs send_message or send_draft")
        super().__init__(get_conversation_id=get_conversation_id)
        self._create_draft = create_draft
        self._send_message = send_message
        self._update_draft = update_draft
        self._send_draft = send_draft
        self._discard_draft = discard_draft
        self.draft: Draft | None = None
        self._saved_text: str | None = None

    async def _request(self, conversation_id: int) -> str:
        token = self._sequence
        raw = await self._create_draft(conversation_id)
        payload = raw if isinstance(raw, DraftPayload) else DraftPayload.model_validate(raw)
        if token == self._sequence:
            self.draft = payload.draft
            self._saved_text = payload.draft.text
        return payload.draft.text

    def edit(self, text: str) -> bool:
        if not super().edit(text):
            return False
        if self.draft is not None:
            self.draft = self.draft.model_copy(update={"edited_content": text})
        return True

    async def save_edit(self) -> bool:
        """Persist the current text as the draft's edited content."""
        if self.draft is None or self._update_draft is None or self.text == self._saved_text:
            return False
        text = self.text
        await self._update_draft(self.draft.id, text)
        self._saved_text = text
        return True

    async def send(self) -> SendOutcome:
        if self.state != "ready" or not self.text.strip():
            return SendOutcome(status="skipped")
        try:
            if self._send_draft is not None and self.draft is not None:
                result = await self._deliver_draft(self.draft)
            else:
                result = await self._send_message(self.text)
        except Exception as exc:
            logger.warning(f"Draft send failed for conversation {self.conversation_id}: {exc}")
            result = SendOutcome(status="failed", error=str(exc) or "Failed to send draft")
        outcome = result if isinstance(result, SendOutcome) else SendOutcome(status="sent")
        if not outcome.sent:
            notice = outcome.notice.content if outcome.notice is not None else None
            self.error = outcome.error or notice or "Failed to send draft"
            return outcome
        if self.draft is not None:
            self.draft = self.draft.model_copy(update={"status": "sent"})
        self._reset()
        return outcome

    async def _deliver_draft(self, draft: Draft) -> SendOutcome:
        await self.save_edit()
        raw = await self._send_draft(draft.id, draft.conversation_id)
        result = raw if isinstance(raw, SendResult) else SendResult.model_validate(raw)
        if result.blocked:
            return SendOutcome(status="blocked", error=result.message or "Draft was blocked")
        if result.message_id is None:
            return SendOutcome(status="failed", error="Failed to send draft")
        return SendOutcome(status="sent")

    async def discard(self) -> None:
        draft = self.draft
        if draft is not None and draft.status == "draft" and self._discard_draft is not None:
            try:
                await self._discard_draft(draft.id)
            except Exception as exc:
                logger.warning(f"Discarding draft {draft.id} failed: {exc}")
        if draft is not None:
            self.draft = draft.model_copy(update={"status": "discarded"})
        self._reset()

    def _reset(self) -> None:
        super()._reset()
        self._saved_text = None


class SummaryWorkflow(GenerationWorkflow):
    failure_message = "Failed to generate summary"

    def __init__(
        self,
        *,
        generate_summary: Callable[[int], Awaitable[Any]],
        add_note: Callable[[int, str], Awaitable[Any]],
        get_conversation_id: ConversationIdFn,
        on_note_added: NoteCallback | None = None,
        author_id: str | None = None,
        author_name: str | None = None,
    ) -> None:
        super().__init__(get_conversation_id=get_conversation_id)
        self._generate_summary = generate_summary
        self._add_note = add_note
        self.on_note_added = on_note_added
        self.author_id = author_id
        self.author_name = author_name

    async def _request(self, conversation_id: int) -> str:
        raw = await self._generate_summary(conversation_id)
        payload = raw if isinstance(raw, SummaryPayload) else SummaryPayload.model_validate(raw)
        return payload.summary

    async def save_as_note(self) -> Note | None:
        conversation_id = self.conversation_id
        if self.state != "ready" or conversation_id is None or not self.text.strip():
            return None
        try:
            raw = await self._add_note(conversation_id, self.text)
            payload = raw if isinstance(raw, NotePayload) else NotePayload.model_validate(raw)
        except Exception as exc:
            logger.warning(f"Saving summary as note failed for conversation {conversation_id}: {exc}")
            self.error = "Failed to save note"
            return None
        note = Note(
            id=payload.note_id,
            conversation_id=conversation_id,
            author_id=self.author_id,
            author_name=self.author_name,
            content=self.text,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        if self.on_note_added is not None:
            self.on_note_added(note)
        self._reset()
        return note

    def discard(self) -> None:
        self._reset()

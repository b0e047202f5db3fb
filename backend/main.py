from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, TypeVar

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from therapy_host import HostPolicyError, HostService, SQLiteThreadDB
from therapy_sync.settings import bootstrap_env

bootstrap_env()

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SendMessageRequest(BaseModel):
    message: str
    conversation_id: int | None = None


class ReadRequest(BaseModel):
    conversation_id: int | None = None


class TagRequest(BaseModel):
    conversation_id: int
    reason: str | None = None
    urgency: str | None = None


class InitConversationRequest(BaseModel):
    patient_id: str


class ToggleAiRequest(BaseModel):
    enabled: bool


class RiskRequest(BaseModel):
    risk_level: str


class StatusRequest(BaseModel):
    status: str


class NoteRequest(BaseModel):
    content: str


class DraftEditRequest(BaseModel):
    edited_content: str


class DraftSendRequest(BaseModel):
    conversation_id: int | None = None


def _parse_therapists(raw: str) -> list[tuple[str, str]]:
    seeded: list[tuple[str, str]] = []
    for chunk in raw.split(";"):
        if ":" not in chunk:
            continue
        user_id, name = chunk.split(":", 1)
        if user_id.strip() and name.strip():
            seeded.append((user_id.strip(), name.strip()))
    return seeded


class TherapyHostApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "THERAPY_HOST_DB_PATH",
            str((Path(__file__).resolve().parent / "therapy.sqlite")),
        )
        self.db = SQLiteThreadDB(db_path)
        self.service = HostService(self.db, tag_reasons=os.getenv("THERAPY_HOST_TAG_REASONS"))
        for user_id, name in _parse_therapists(os.getenv("THERAPY_HOST_THERAPISTS", "")):
            self.service.register_therapist(user_id, name)


container = TherapyHostApp()
app = FastAPI(title="Therapy Chat Host")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    if not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def resolve_user_id(x_user_id: str | None) -> str:
    # Identity is resolved upstream and forwarded as X-User-Id.
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return _validated_trusted_user_id(x_user_id)


def _guarded(call: Callable[[], T]) -> T:
    try:
        return call()
    except HostPolicyError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@app.get("/health")
def health() -> dict[str, Any]:
    return {"ok": True}


@app.get("/chat/conversation")
def chat_conversation(conversation_id: int | None = None, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.get_conversation(user_id, conversation_id))


@app.get("/chat/messages")
def chat_messages(
    conversation_id: int | None = None,
    after_id: int | None = None,
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.get_messages(user_id, conversation_id, after_id))


@app.post("/chat/messages")
def chat_send(payload: SendMessageRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    result = _guarded(lambda: container.service.send_message(user_id, payload.conversation_id, payload.message))
    if result.get("blocked"):
        logger.info(f"Message from {user_id} blocked in conversation {result.get('conversation_id')}")
    return result


@app.post("/chat/read")
def chat_read(payload: ReadRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.mark_read(user_id, payload.conversation_id))


@app.get("/chat/updates")
def chat_updates(x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.check_updates(user_id))


@app.get("/chat/therapists")
def chat_therapists(x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return {"therapists": _guarded(lambda: container.service.therapists(user_id))}


@app.post("/chat/tag")
def chat_tag(payload: TagRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(
        lambda: container.service.tag_therapist(user_id, payload.conversation_id, payload.reason, payload.urgency)
    )


@app.get("/dashboard/conversations")
def dashboard_conversations(
    group_id: int | None = None,
    filter: str | None = None,
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(x_user_id)
    rows = _guarded(lambda: container.service.list_conversations(user_id, group_id=group_id, list_filter=filter))
    return {"conversations": rows}


@app.post("/dashboard/conversations/init")
def dashboard_init_conversation(payload: InitConversationRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.initialize_conversation(user_id, payload.patient_id.strip()))


@app.get("/dashboard/conversations/{conversation_id}")
def dashboard_conversation(conversation_id: int, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    if container.service.role_for(user_id) != "therapist":
        raise HTTPException(status_code=403, detail="This action requires the therapist role.")
    return _guarded(lambda: container.service.get_conversation(user_id, conversation_id))


@app.post("/dashboard/conversations/{conversation_id}/ai")
def dashboard_toggle_ai(conversation_id: int, payload: ToggleAiRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.set_ai_enabled(user_id, conversation_id, payload.enabled))


@app.post("/dashboard/conversations/{conversation_id}/risk")
def dashboard_risk(conversation_id: int, payload: RiskRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.set_risk(user_id, conversation_id, payload.risk_level))


@app.post("/dashboard/conversations/{conversation_id}/status")
def dashboard_status(conversation_id: int, payload: StatusRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.set_status(user_id, conversation_id, payload.status))


@app.post("/dashboard/conversations/{conversation_id}/drafts")
def dashboard_draft(conversation_id: int, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.create_draft(user_id, conversation_id))


@app.post("/dashboard/drafts/{draft_id}")
def dashboard_update_draft(draft_id: int, payload: DraftEditRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.update_draft(user_id, draft_id, payload.edited_content))


@app.post("/dashboard/drafts/{draft_id}/send")
def dashboard_send_draft(draft_id: int, payload: DraftSendRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.send_draft(user_id, draft_id, payload.conversation_id))


@app.post("/dashboard/drafts/{draft_id}/discard")
def dashboard_discard_draft(draft_id: int, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.discard_draft(user_id, draft_id))


@app.post("/dashboard/conversations/{conversation_id}/summary")
def dashboard_summary(conversation_id: int, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.generate_summary(user_id, conversation_id))


@app.get("/dashboard/conversations/{conversation_id}/notes")
def dashboard_notes(conversation_id: int, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return {"notes": _guarded(lambda: container.service.list_notes(user_id, conversation_id))}


@app.post("/dashboard/conversations/{conversation_id}/notes")
def dashboard_add_note(conversation_id: int, payload: NoteRequest, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.add_note(user_id, conversation_id, payload.content))


@app.get("/dashboard/unread")
def dashboard_unread(x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return {"unread_counts": _guarded(lambda: container.service.unread_counts(user_id))}


@app.get("/dashboard/stats")
def dashboard_stats(x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return {"stats": _guarded(lambda: container.service.stats(user_id))}


@app.get("/dashboard/alerts")
def dashboard_alerts(unread_only: str | None = None, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    only_unread = (unread_only or "").lower() in {"1", "true", "yes"}
    return {"alerts": _guarded(lambda: container.service.alerts(user_id, unread_only=only_unread))}


@app.post("/dashboard/alerts/{alert_id}/read")
def dashboard_alert_read(alert_id: int, x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return _guarded(lambda: container.service.mark_alert_read(user_id, alert_id))


@app.get("/dashboard/groups")
def dashboard_groups(x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(x_user_id)
    return {"groups": _guarded(lambda: container.service.groups(user_id))}

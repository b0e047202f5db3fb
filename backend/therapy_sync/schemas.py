from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SenderType = Literal["subject", "therapist", "ai", "system"]
MessageRole = Literal["user", "assistant", "system"]
RiskLevel = Literal["low", "medium", "high", "critical"]
ConversationStatus = Literal["active", "paused", "closed"]
ConversationMode = Literal["ai_hybrid", "human_only"]
TagUrgency = Literal["normal", "urgent", "emergency"]
AlertSeverity = Literal["info", "warning", "critical", "emergency"]
DraftStatus = Literal["draft", "sent", "discarded"]

RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high", "critical")
CONVERSATION_STATUSES: tuple[str, ...] = ("active", "paused", "closed")
TAG_URGENCIES: tuple[str, ...] = ("normal", "urgent", "emergency")

URGENCY_SEVERITY: dict[str, str] = {
    "normal": "warning",
    "urgent": "critical",
    "emergency": "emergency",
}

_ROLE_SENDER = {"assistant": "ai", "system": "system", "user": "subject"}
_SENDER_ROLE = {"ai": "assistant", "system": "system", "subject": "user", "therapist": "user"}


def risk_rank(level: str | None) -> int:
    try:
        return RISK_LEVELS.index(str(level))
    except ValueError:
        return -1


def urgency_rank(urgency: str | None) -> int:
    try:
        return TAG_URGENCIES.index(str(urgency))
    except ValueError:
        return 0


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Message(WireModel):
    id: int | str
    role: MessageRole = "user"
    sender_type: SenderType
    sender_id: str | None = None
    sender_name: str | None = None
    label: str | None = None
    content: str = ""
    timestamp: str | None = None
    edited: bool = False
    deleted: bool = False
    tags: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _classify_sender(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if not data.get("sender_type"):
            role = str(data.get("role") or "user")
            data = {**data, "sender_type": _ROLE_SENDER.get(role, "subject")}
        elif not data.get("role"):
            data = {**data, "role": _SENDER_ROLE.get(str(data["sender_type"]), "user")}
        return data

    @property
    def is_temporary(self) -> bool:
        return isinstance(self.id, str) and not self.id.isdigit()

    @property
    def numeric_id(self) -> int | None:
        if isinstance(self.id, int):
            return self.id
        if self.id.isdigit():
            return int(self.id)
        return None

    @property
    def key(self) -> str:
        return str(self.id)


class Conversation(WireModel):
    id: int
    title: str | None = None
    subject_id: str | None = None
    subject_name: str | None = None
    subject_code: str | None = None
    group_id: int | None = None
    ai_enabled: bool = True
    risk_level: RiskLevel = "low"
    status: ConversationStatus = "active"
    mode: ConversationMode = "ai_hybrid"
    unread_count: int = 0
    unread_alerts: int = 0
    last_activity: str | None = None
    last_seen_subject: int | None = None
    last_seen_therapist: int | None = None


class Draft(WireModel):
    id: int
    conversation_id: int
    author_id: str | None = None
    ai_content: str = ""
    edited_content: str | None = None
    status: DraftStatus = "draft"

    @property
    def text(self) -> str:
        return self.edited_content if self.edited_content else self.ai_content


class Alert(WireModel):
    id: int | None = None
    conversation_id: int
    alert_type: str = "tag_received"
    reason: str = ""
    urgency: TagUrgency = "normal"
    severity: AlertSeverity = "warning"
    message_id: int | None = None
    target_user_id: str | None = None
    is_read: bool = False
    created_at: str | None = None


class Note(WireModel):
    id: int
    conversation_id: int
    author_id: str | None = None
    author_name: str | None = None
    content: str
    created_at: str | None = None


class TagReason(WireModel):
    code: str
    label: str
    urgency: TagUrgency = "normal"


class TherapistGroup(WireModel):
    id: int
    name: str = ""


class MentionItem(WireModel):
    id: str
    display: str
    insert_text: str


class SubjectUnread(WireModel):
    subject_id: str | None = None
    subject_name: str | None = None
    subject_code: str | None = None
    unread_count: int = 0
    last_message_at: str | None = None


class UnreadCounts(WireModel):
    total: int = 0
    total_alerts: int = 0
    by_subject: dict[str, SubjectUnread] = Field(default_factory=dict)
    by_group: dict[str, int] = Field(default_factory=dict)

    @field_validator("by_subject", "by_group", mode="before")
    @classmethod
    def _string_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(key): item for key, item in value.items()}
        return value


class DashboardStats(WireModel):
    total: int = 0
    active: int = 0
    paused: int = 0
    closed: int = 0
    risk_low: int = 0
    risk_medium: int = 0
    risk_high: int = 0
    risk_critical: int = 0
    unread_alerts: int = 0
    pending_tags: int = 0


class ConversationPayload(WireModel):
    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)


class SendResult(WireModel):
    message_id: int | None = None
    conversation_id: int | None = None
    blocked: bool = False
    type: str | None = None
    message: str | None = None
    ai_message: Message | None = None


class MessageBatch(WireModel):
    messages: list[Message] = Field(default_factory=list)


class UpdateCheck(WireModel):
    latest_message_id: int | None = None
    unread_count: int = 0
    unread_messages: int = 0
    unread_alerts: int = 0


class ReadReceipt(WireModel):
    unread_count: int = 0


class DraftPayload(WireModel):
    draft: Draft


class SummaryPayload(WireModel):
    summary: str
    summary_conversation_id: int | None = None
    tokens_used: int | None = None


class NotePayload(WireModel):
    note_id: int


class InitializedConversation(WireModel):
    conversation: Conversation
    already_exists: bool = False

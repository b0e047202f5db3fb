from __future__ import annotations

import logging
from typing import Any

from therapy_sync.mentions import parse_tag_reasons, scan_mentions, tag_alerts_for, tag_message_text
from therapy_sync.schemas import (
    CONVERSATION_STATUSES,
    RISK_LEVELS,
    TAG_URGENCIES,
    URGENCY_SEVERITY,
    MentionItem,
    Message,
    TagReason,
    risk_rank,
)

from .assistant import AssistantReplies
from .database import SQLiteThreadDB
from .safety_guard import HostPolicyError, SafetyGuard
from .thread_store import ThreadStore

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "General"
MAX_MESSAGE_LENGTH = 4000
TAG_FALLBACK_TEXT = "@therapist I would like to speak with my therapist"


class HostService:
    """Reference host behind the chat and dashboard routes."""

    def __init__(
        self,
        db: SQLiteThreadDB,
        *,
        assistant: AssistantReplies | None = None,
        guard: SafetyGuard | None = None,
        tag_reasons: Any = None,
    ) -> None:
        self.db = db
        self.store = ThreadStore(db)
        self.assistant = assistant or AssistantReplies()
        self.guard = guard or SafetyGuard()
        self.tag_reasons: list[TagReason] = parse_tag_reasons(tag_reasons)

    # Directory

    def register_therapist(self, user_id: str, display_name: str, *, groups: list[str] | None = None) -> None:
        self.store.upsert_user(user_id=user_id, display_name=display_name, role="therapist")
        for name in groups or [DEFAULT_GROUP]:
            self.store.add_group_member(group_id=self.store.ensure_group(name), user_id=user_id)

    def register_subject(
        self,
        user_id: str,
        display_name: str,
        *,
        code: str | None = None,
        group: str = DEFAULT_GROUP,
    ) -> None:
        self.store.upsert_user(user_id=user_id, display_name=display_name, role="subject", code=code)
        self.store.add_group_member(group_id=self.store.ensure_group(group), user_id=user_id)

    def role_for(self, user_id: str) -> str:
        user = self.store.get_user(user_id)
        if user is None:
            self.register_subject(user_id, user_id)
            return "subject"
        return str(user["role"])

    def _scope(self, therapist_id: str) -> list[int]:
        return [int(group["id"]) for group in self.store.groups_for_user(therapist_id)]

    def _scoped_conversations(self, therapist_id: str) -> list[dict[str, Any]]:
        return self.store.list_conversations(self._scope(therapist_id))

    def _subject_conversation(self, subject_id: str) -> dict[str, Any]:
        conversation = self.store.conversation_for_subject(subject_id)
        if conversation is not None:
            return conversation
        groups = self.store.groups_for_user(subject_id)
        group_id = int(groups[0]["id"]) if groups else self.store.ensure_group(DEFAULT_GROUP)
        return self.store.create_conversation(subject_id=subject_id, group_id=group_id)

    def _resolve(self, user_id: str, conversation_id: int | None) -> tuple[str, dict[str, Any]]:
        role = self.role_for(user_id)
        if role == "subject":
            conversation = self._subject_conversation(user_id)
            if conversation_id is not None and conversation_id != conversation["id"]:
                raise HostPolicyError("Conversation belongs to another patient.")
            return role, conversation
        if conversation_id is None:
            raise HostPolicyError("Conversation ID is required", status_code=400)
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise HostPolicyError("Conversation not found", status_code=404)
        if conversation["group_id"] not in self._scope(user_id):
            raise HostPolicyError("Conversation is outside your assigned groups.")
        return role, conversation

    def _therapist(self, user_id: str) -> None:
        self.guard.ensure_role(self.role_for(user_id), "therapist")

    def _with_unread(self, conversation: dict[str, Any], user_id: str) -> dict[str, Any]:
        return {
            **conversation,
            "unread_count": self.store.unread_count(conversation_id=conversation["id"], user_id=user_id),
            "unread_alerts": self.store.unread_alert_count([conversation["id"]]),
        }

    def mention_items(self, group_id: int | None) -> list[MentionItem]:
        return [
            MentionItem(
                id=str(row["id"]),
                display=row["display_name"],
                insert_text="@" + "".join(str(row["display_name"]).split()),
            )
            for row in self.store.therapists_for_group(group_id)
        ]

    # Chat

    def get_conversation(self, user_id: str, conversation_id: int | None) -> dict[str, Any]:
        _, conversation = self._resolve(user_id, conversation_id)
        return {
            "conversation": self._with_unread(conversation, user_id),
            "messages": self.store.list_messages(conversation["id"]),
        }

    def get_messages(self, user_id: str, conversation_id: int | None, after_id: int | None) -> dict[str, Any]:
        _, conversation = self._resolve(user_id, conversation_id)
        return {"messages": self.store.list_messages(conversation["id"], after_id=after_id)}

    def send_message(self, user_id: str, conversation_id: int | None, text: str) -> dict[str, Any]:
        role, conversation = self._resolve(user_id, conversation_id)
        content = self.guard.ensure_message(text, max_length=MAX_MESSAGE_LENGTH)
        if role == "therapist":
            return self._send_therapist(user_id, conversation, content)
        return self._send_subject(user_id, conversation, content)

    def _send_therapist(self, user_id: str, conversation: dict[str, Any], content: str) -> dict[str, Any]:
        user = self.store.get_user(user_id) or {}
        name = user.get("display_name")
        message = self.store.append_message(
            conversation_id=conversation["id"],
            sender_type="therapist",
            sender_id=user_id,
            content=content,
            label=f"Therapist ({name})" if name else "Therapist",
        )
        self.store.mark_read(conversation_id=conversation["id"], user_id=user_id, up_to_id=message["id"])
        return {"message_id": message["id"], "conversation_id": conversation["id"], "blocked": False}

    def _send_subject(self, user_id: str, conversation: dict[str, Any], content: str) -> dict[str, Any]:
        conversation_id = conversation["id"]
        decision = self.guard.check(content)
        if decision.blocked:
            self.store.create_alert(
                conversation_id=conversation_id,
                alert_type="danger_detected",
                reason=f"Danger detected ({', '.join(decision.concerns)}): {content[:200]}",
                urgency="emergency",
                severity=URGENCY_SEVERITY["emergency"],
            )
            self.store.update_conversation(conversation_id, ai_enabled=False, risk_level="critical")
            logger.warning(f"Blocked subject message in conversation {conversation_id}: {decision.concerns}")
            return {
                "conversation_id": conversation_id,
                "blocked": True,
                "type": "danger_detected",
                "message": decision.message,
            }

        message = self.store.append_message(
            conversation_id=conversation_id,
            sender_type="subject",
            sender_id=user_id,
            content=content,
            label=conversation.get("subject_name") or "You",
        )
        self.store.mark_read(conversation_id=conversation_id, user_id=user_id, up_to_id=message["id"])
        response: dict[str, Any] = {"message_id": message["id"], "conversation_id": conversation_id, "blocked": False}

        therapists = self.mention_items(conversation["group_id"])
        scan = scan_mentions(content, self.tag_reasons, therapists)
        if scan.tagged:
            for alert in tag_alerts_for(Message.model_validate(message), scan, conversation_id, self.tag_reasons):
                self.store.create_alert(
                    conversation_id=alert.conversation_id,
                    alert_type=alert.alert_type,
                    reason=alert.reason,
                    urgency=alert.urgency,
                    severity=alert.severity,
                    message_id=alert.message_id,
                    target_user_id=alert.target_user_id,
                )
            return response

        ai_active = conversation["ai_enabled"] and conversation["mode"] == "ai_hybrid" and conversation["status"] == "active"
        if ai_active:
            reply = self.assistant.reply(self.store.list_messages(conversation_id, limit=50))
            ai_message = self.store.append_message(
                conversation_id=conversation_id,
                sender_type="ai",
                sender_id=None,
                content=reply,
                label="AI Assistant",
            )
            self.store.mark_read(conversation_id=conversation_id, user_id=user_id, up_to_id=ai_message["id"])
            response["ai_message"] = ai_message
        return response

    def tag_therapist(
        self,
        user_id: str,
        conversation_id: int,
        reason: str | None,
        urgency: str | None,
    ) -> dict[str, Any]:
        role, conversation = self._resolve(user_id, conversation_id)
        self.guard.ensure_role(role, "subject")
        matched = next((item for item in self.tag_reasons if item.code == reason), None)
        text = tag_message_text(matched) if matched else TAG_FALLBACK_TEXT
        if urgency not in TAG_URGENCIES:
            urgency = matched.urgency if matched else "normal"
        message = self.store.append_message(
            conversation_id=conversation["id"],
            sender_type="subject",
            sender_id=user_id,
            content=text,
            label=conversation.get("subject_name") or "You",
        )
        self.store.mark_read(conversation_id=conversation["id"], user_id=user_id, up_to_id=message["id"])
        alert_id = self.store.create_alert(
            conversation_id=conversation["id"],
            alert_type="tag_received",
            reason=matched.label if matched else "Therapist requested",
            urgency=urgency,
            severity=URGENCY_SEVERITY[urgency],
            message_id=message["id"],
        )
        return {"message_id": message["id"], "alert_id": alert_id}

    def mark_read(self, user_id: str, conversation_id: int | None) -> dict[str, Any]:
        role, conversation = self._resolve(user_id, conversation_id)
        latest = self.store.latest_message_id([conversation["id"]])
        if latest is not None:
            self.store.mark_read(conversation_id=conversation["id"], user_id=user_id, up_to_id=latest)
        if role == "subject":
            return {"unread_count": self.store.unread_count(conversation_id=conversation["id"], user_id=user_id)}
        counts = self.unread_counts(user_id)
        return {"unread_count": counts["total"] + counts["total_alerts"]}

    def check_updates(self, user_id: str) -> dict[str, Any]:
        if self.role_for(user_id) == "subject":
            conversation = self._subject_conversation(user_id)
            return {
                "latest_message_id": self.store.latest_message_id([conversation["id"]]),
                "unread_count": self.store.unread_count(conversation_id=conversation["id"], user_id=user_id),
            }
        conversations = self._scoped_conversations(user_id)
        ids = [conversation["id"] for conversation in conversations]
        return {
            "latest_message_id": self.store.latest_message_id(ids),
            "unread_messages": sum(self.store.unread_count(conversation_id=cid, user_id=user_id) for cid in ids),
            "unread_alerts": self.store.unread_alert_count(ids),
        }

    def therapists(self, user_id: str) -> list[dict[str, Any]]:
        _, conversation = self._resolve(user_id, None)
        return [item.model_dump() for item in self.mention_items(conversation["group_id"])]

    # Dashboard

    def list_conversations(self, user_id: str, *, group_id: int | None = None, list_filter: str | None = None) -> list[dict[str, Any]]:
        self._therapist(user_id)
        rows = [self._with_unread(row, user_id) for row in self._scoped_conversations(user_id)]
        if group_id is not None:
            rows = [row for row in rows if row["group_id"] == group_id]
        if list_filter == "active":
            rows = [row for row in rows if row["status"] == "active"]
        elif list_filter == "critical":
            rows = [row for row in rows if row["risk_level"] == "critical"]
        elif list_filter == "unread":
            rows = [row for row in rows if row["unread_count"] > 0 or row["unread_alerts"] > 0]
        # Highest risk first; the store already orders by most recent activity.
        return sorted(rows, key=lambda row: -risk_rank(row["risk_level"]))

    def set_ai_enabled(self, user_id: str, conversation_id: int, enabled: bool) -> dict[str, Any]:
        self._therapist(user_id)
        self._resolve(user_id, conversation_id)
        self.store.update_conversation(conversation_id, ai_enabled=enabled)
        return {"ai_enabled": bool(enabled)}

    def set_risk(self, user_id: str, conversation_id: int, risk_level: str) -> dict[str, Any]:
        self._therapist(user_id)
        if risk_level not in RISK_LEVELS:
            raise HostPolicyError(f"Invalid risk level: {risk_level}", status_code=400)
        self._resolve(user_id, conversation_id)
        self.store.update_conversation(conversation_id, risk_level=risk_level)
        return {"risk_level": risk_level}

    def set_status(self, user_id: str, conversation_id: int, status: str) -> dict[str, Any]:
        self._therapist(user_id)
        if status not in CONVERSATION_STATUSES:
            raise HostPolicyError(f"Invalid status: {status}", status_code=400)
        self._resolve(user_id, conversation_id)
        self.store.update_conversation(conversation_id, status=status)
        return {"status": status}

    def create_draft(self, user_id: str, conversation_id: int) -> dict[str, Any]:
        self._therapist(user_id)
        _, conversation = self._resolve(user_id, conversation_id)
        text = self.assistant.draft(self.store.list_messages(conversation["id"], limit=50))
        return {"draft": self.store.create_draft(conversation_id=conversation["id"], author_id=user_id, ai_content=text)}

    def _open_draft(self, user_id: str, draft_id: int) -> tuple[dict[str, Any], dict[str, Any]]:
        self._therapist(user_id)
        draft = self.store.get_draft(draft_id)
        if draft is None:
            raise HostPolicyError("Draft not found", status_code=404)
        _, conversation = self._resolve(user_id, draft["conversation_id"])
        if draft["status"] != "draft":
            raise HostPolicyError(f"Draft already {draft['status']}", status_code=409)
        return draft, conversation

    def update_draft(self, user_id: str, draft_id: int, edited_content: str) -> dict[str, Any]:
        self._open_draft(user_id, draft_id)
        self.store.update_draft(draft_id, edited_content=(edited_content or "").strip())
        return {"ok": True}

    def send_draft(self, user_id: str, draft_id: int, conversation_id: int | None = None) -> dict[str, Any]:
        draft, conversation = self._open_draft(user_id, draft_id)
        if conversation_id is not None and conversation_id != conversation["id"]:
            raise HostPolicyError("Draft belongs to another conversation", status_code=400)
        content = self.guard.ensure_message(draft["edited_content"] or draft["ai_content"], max_length=MAX_MESSAGE_LENGTH)
        response = self._send_therapist(user_id, conversation, content)
        self.store.update_draft(draft_id, status="sent")
        return {**response, "draft_id": draft_id}

    def discard_draft(self, user_id: str, draft_id: int) -> dict[str, Any]:
        self._open_draft(user_id, draft_id)
        self.store.update_draft(draft_id, status="discarded")
        return {"ok": True}

    def generate_summary(self, user_id: str, conversation_id: int) -> dict[str, Any]:
        self._therapist(user_id)
        _, conversation = self._resolve(user_id, conversation_id)
        summary = self.assistant.summary(self.store.list_messages(conversation["id"], limit=200))
        return {"summary": summary, "summary_conversation_id": conversation["id"], "tokens_used": None}

    def add_note(self, user_id: str, conversation_id: int, content: str) -> dict[str, Any]:
        self._therapist(user_id)
        _, conversation = self._resolve(user_id, conversation_id)
        cleaned = (content or "").strip()
        if not cleaned:
            raise HostPolicyError("Note cannot be empty", status_code=400)
        return {"note_id": self.store.add_note(conversation_id=conversation["id"], author_id=user_id, content=cleaned)}

    def list_notes(self, user_id: str, conversation_id: int) -> list[dict[str, Any]]:
        self._therapist(user_id)
        _, conversation = self._resolve(user_id, conversation_id)
        return self.store.list_notes(conversation["id"])

    def unread_counts(self, user_id: str) -> dict[str, Any]:
        self._therapist(user_id)
        by_subject: dict[str, dict[str, Any]] = {}
        by_group: dict[str, int] = {}
        total = 0
        conversations = self._scoped_conversations(user_id)
        for conversation in conversations:
            unread = self.store.unread_count(conversation_id=conversation["id"], user_id=user_id)
            total += unread
            group_key = str(conversation["group_id"])
            by_group[group_key] = by_group.get(group_key, 0) + unread
            by_subject[str(conversation["subject_id"])] = {
                "subject_id": conversation["subject_id"],
                "subject_name": conversation["subject_name"],
                "subject_code": conversation["subject_code"],
                "unread_count": unread,
                "last_message_at": conversation["last_activity"],
            }
        return {
            "total": total,
            "total_alerts": self.store.unread_alert_count([conversation["id"] for conversation in conversations]),
            "by_subject": by_subject,
            "by_group": by_group,
        }

    def stats(self, user_id: str) -> dict[str, Any]:
        self._therapist(user_id)
        conversations = self._scoped_conversations(user_id)
        ids = [conversation["id"] for conversation in conversations]
        stats: dict[str, Any] = {"total": len(conversations)}
        for status in CONVERSATION_STATUSES:
            stats[status] = sum(1 for conversation in conversations if conversation["status"] == status)
        for level in RISK_LEVELS:
            stats[f"risk_{level}"] = sum(1 for conversation in conversations if conversation["risk_level"] == level)
        stats["unread_alerts"] = self.store.unread_alert_count(ids)
        stats["pending_tags"] = self.store.unread_alert_count(ids, alert_type="tag_received")
        return stats

    def alerts(self, user_id: str, *, unread_only: bool = False) -> list[dict[str, Any]]:
        self._therapist(user_id)
        ids = [conversation["id"] for conversation in self._scoped_conversations(user_id)]
        return self.store.list_alerts(ids, unread_only=unread_only)

    def mark_alert_read(self, user_id: str, alert_id: int) -> dict[str, Any]:
        self._therapist(user_id)
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise HostPolicyError("Alert not found", status_code=404)
        self._resolve(user_id, alert["conversation_id"])
        self.store.mark_alert_read(alert_id)
        return {"ok": True}

    def groups(self, user_id: str) -> list[dict[str, Any]]:
        self._therapist(user_id)
        return self.store.groups_for_user(user_id)

    def initialize_conversation(self, user_id: str, patient_id: str) -> dict[str, Any]:
        self._therapist(user_id)
        patient = self.store.get_user(patient_id)
        if patient is None:
            raise HostPolicyError("Patient not found", status_code=404)
        if patient["role"] != "subject":
            raise HostPolicyError("Conversations can only be opened for patients", status_code=400)
        scope = self._scope(user_id)
        if not scope:
            raise HostPolicyError("You are not assigned to any group.")
        existing = self.store.conversation_for_subject(patient_id)
        if existing is not None:
            if existing["group_id"] not in scope:
                raise HostPolicyError("Conversation is outside your assigned groups.")
            return {"conversation": self._with_unread(existing, user_id), "already_exists": True}
        patient_groups = [int(group["id"]) for group in self.store.groups_for_user(patient_id)]
        group_id = next((gid for gid in patient_groups if gid in scope), scope[0])
        self.store.add_group_member(group_id=group_id, user_id=patient_id)
        conversation = self.store.create_conversation(subject_id=patient_id, group_id=group_id)
        return {"conversation": self._with_unread(conversation, user_id), "already_exists": False}

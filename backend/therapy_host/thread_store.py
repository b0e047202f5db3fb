from __future__ import annotations

import json
import sqlite3
from typing import Any

from .database import SQLiteThreadDB
from .time_utils import to_iso, utc_now

_SENDER_ROLE = {"ai": "assistant", "system": "system"}
_CONVERSATION_FIELDS = {"ai_enabled", "risk_level", "status", "mode", "title", "group_id"}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _placeholders(values: list[Any]) -> str:
    return ",".join("?" for _ in values)


def _message_from_row(row: sqlite3.Row) -> dict[str, Any]:
    sender_type = row["sender_type"]
    return {
        "id": row["id"],
        "conversation_id": row["conversation_id"],
        "role": _SENDER_ROLE.get(sender_type, "user"),
        "sender_type": sender_type,
        "sender_id": row["sender_id"],
        "sender_name": row["sender_name"],
        "label": row["label"],
        "content": row["content"],
        "timestamp": row["created_at"],
        "edited": bool(row["edited"]),
        "deleted": bool(row["deleted"]),
        "tags": json.loads(row["tags_json"] or "[]"),
    }


def _conversation_from_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "title": row["title"],
        "subject_id": row["subject_id"],
        "subject_name": row["subject_name"],
        "subject_code": row["subject_code"],
        "group_id": row["group_id"],
        "ai_enabled": bool(row["ai_enabled"]),
        "risk_level": row["risk_level"],
        "status": row["status"],
        "mode": row["mode"],
        "last_activity": row["last_activity"] or row["updated_at"],
    }


_CONVERSATION_SELECT = """
    SELECT c.id, c.title, c.subject_id, c.group_id, c.ai_enabled, c.risk_level, c.status, c.mode,
           c.updated_at, u.display_name AS subject_name, u.code AS subject_code,
           (SELECT MAX(m.created_at) FROM messages m WHERE m.conversation_id = c.id) AS last_activity
    FROM conversations c
    JOIN users u ON u.id = c.subject_id
"""

_MESSAGE_SELECT = """
    SELECT m.id, m.conversation_id, m.sender_type, m.sender_id, m.content, m.label, m.tags_json,
           m.edited, m.deleted, m.created_at, u.display_name AS sender_name
    FROM messages m
    LEFT JOIN users u ON u.id = m.sender_id
"""


class ThreadStore:
    """Row-level access to the shared conversation log."""

    def __init__(self, db: SQLiteThreadDB) -> None:
        self._db = db

    def upsert_user(
        self,
        *,
        user_id: str,
        display_name: str,
        role: str = "subject",
        code: str | None = None,
    ) -> None:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO users (id, display_name, role, code, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  display_name = excluded.display_name,
                  role = excluded.role,
                  code = COALESCE(excluded.code, users.code)
                """,
                (user_id, display_name, role, code, now),
            )

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id, display_name, role, code FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def ensure_group(self, name: str) -> int:
        with self._db.connection() as conn:
            conn.execute("INSERT OR IGNORE INTO therapy_groups (name) VALUES (?)", (name,))
            row = conn.execute("SELECT id FROM therapy_groups WHERE name = ?", (name,)).fetchone()
        return int(row["id"])

    def add_group_member(self, *, group_id: int, user_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO group_members (group_id, user_id) VALUES (?, ?)",
                (group_id, user_id),
            )

    def groups_for_user(self, user_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT g.id, g.name
                FROM therapy_groups g
                JOIN group_members gm ON gm.group_id = g.id
                WHERE gm.user_id = ?
                ORDER BY g.id
                """,
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def therapists_for_group(self, group_id: int | None) -> list[dict[str, Any]]:
        if group_id is None:
            return []
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT u.id, u.display_name
                FROM users u
                JOIN group_members gm ON gm.user_id = u.id
                WHERE gm.group_id = ? AND u.role = 'therapist'
                ORDER BY u.display_name
                """,
                (group_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_conversation(self, conversation_id: int) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(f"{_CONVERSATION_SELECT} WHERE c.id = ?", (conversation_id,)).fetchone()
        return _conversation_from_row(row) if row else None

    def conversation_for_subject(self, subject_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(f"{_CONVERSATION_SELECT} WHERE c.subject_id = ?", (subject_id,)).fetchone()
        return _conversation_from_row(row) if row else None

    def create_conversation(self, *, subject_id: str, group_id: int | None, title: str | None = None) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO conversations (subject_id, group_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (subject_id, group_id, title, now, now),
            )
            conversation_id = int(cursor.lastrowid)
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise LookupError(f"Conversation vanished after insert: {conversation_id}")
        return conversation

    def update_conversation(self, conversation_id: int, **fields: Any) -> None:
        updates = {key: value for key, value in fields.items() if key in _CONVERSATION_FIELDS}
        if not updates:
            return
        if "ai_enabled" in updates:
            updates["ai_enabled"] = 1 if updates["ai_enabled"] else 0
        assignments = ", ".join(f"{key} = ?" for key in updates)
        with self._db.connection() as conn:
            conn.execute(
                f"UPDATE conversations SET {assignments}, updated_at = ? WHERE id = ?",
                (*updates.values(), to_iso(utc_now()), conversation_id),
            )

    def list_conversations(self, group_ids: list[int]) -> list[dict[str, Any]]:
        if not group_ids:
            return []
        with self._db.connection() as conn:
            rows = conn.execute(
                f"{_CONVERSATION_SELECT} WHERE c.group_id IN ({_placeholders(group_ids)}) ORDER BY c.updated_at DESC",
                tuple(group_ids),
            ).fetchall()
        return [_conversation_from_row(row) for row in rows]

    def append_message(
        self,
        *,
        conversation_id: int,
        sender_type: str,
        sender_id: str | None,
        content: str,
        label: str | None = None,
        tags: list[str] | None = None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (conversation_id, sender_type, sender_id, content, label, tags_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (conversation_id, sender_type, sender_id, content, label, _json_dumps(tags or []), now),
            )
            message_id = int(cursor.lastrowid)
            conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
            row = conn.execute(f"{_MESSAGE_SELECT} WHERE m.id = ?", (message_id,)).fetchone()
        return _message_from_row(row)

    def list_messages(
        self,
        conversation_id: int,
        *,
        after_id: int | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        params: list[Any] = [conversation_id]
        sql = f"{_MESSAGE_SELECT} WHERE m.conversation_id = ? AND m.deleted = 0"
        if after_id is not None:
            sql += " AND m.id > ?"
            params.append(after_id)
        # Newest page, returned oldest first.
        sql = f"SELECT * FROM ({sql} ORDER BY m.id DESC LIMIT ?) ORDER BY id ASC"
        params.append(max(1, limit))
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_message_from_row(row) for row in rows]

    def latest_message_id(self, conversation_ids: list[int]) -> int | None:
        if not conversation_ids:
            return None
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT MAX(id) AS latest FROM messages WHERE conversation_id IN ({_placeholders(conversation_ids)})",
                tuple(conversation_ids),
            ).fetchone()
        return int(row["latest"]) if row and row["latest"] is not None else None

    def mark_read(self, *, conversation_id: int, user_id: str, up_to_id: int) -> None:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO read_receipts (conversation_id, user_id, last_read_id, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(conversation_id, user_id) DO UPDATE SET
                  last_read_id = MAX(read_receipts.last_read_id, excluded.last_read_id),
                  updated_at = excluded.updated_at
                """,
                (conversation_id, user_id, up_to_id, now),
            )

    def unread_count(self, *, conversation_id: int, user_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS unread
                FROM messages m
                WHERE m.conversation_id = ?
                  AND m.deleted = 0
                  AND (m.sender_id IS NULL OR m.sender_id != ?)
                  AND m.id > COALESCE(
                    (SELECT last_read_id FROM read_receipts WHERE conversation_id = ? AND user_id = ?), 0
                  )
                """,
                (conversation_id, user_id, conversation_id, user_id),
            ).fetchone()
        return int(row["unread"])

    def create_alert(
        self,
        *,
        conversation_id: int,
        alert_type: str,
        reason: str,
        urgency: str = "normal",
        severity: str = "warning",
        message_id: int | None = None,
        target_user_id: str | None = None,
    ) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alerts (
                  conversation_id, alert_type, reason, urgency, severity, message_id, target_user_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (conversation_id, alert_type, reason, urgency, severity, message_id, target_user_id, to_iso(utc_now())),
            )
            return int(cursor.lastrowid)

    def get_alert(self, alert_id: int) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        return self._alert_from_row(row) if row else None

    def list_alerts(self, conversation_ids: list[int], *, unread_only: bool = False) -> list[dict[str, Any]]:
        if not conversation_ids:
            return []
        sql = f"SELECT * FROM alerts WHERE conversation_id IN ({_placeholders(conversation_ids)})"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY id DESC LIMIT 200"
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(conversation_ids)).fetchall()
        return [self._alert_from_row(row) for row in rows]

    def mark_alert_read(self, alert_id: int) -> None:
        with self._db.connection() as conn:
            conn.execute("UPDATE alerts SET is_read = 1 WHERE id = ?", (alert_id,))

    def unread_alert_count(self, conversation_ids: list[int], *, alert_type: str | None = None) -> int:
        if not conversation_ids:
            return 0
        params: list[Any] = list(conversation_ids)
        sql = f"SELECT COUNT(*) AS pending FROM alerts WHERE is_read = 0 AND conversation_id IN ({_placeholders(conversation_ids)})"
        if alert_type:
            sql += " AND alert_type = ?"
            params.append(alert_type)
        with self._db.connection() as conn:
            row = conn.execute(sql, tuple(params)).fetchone()
        return int(row["pending"])

    @staticmethod
    def _alert_from_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "conversation_id": row["conversation_id"],
            "alert_type": row["alert_type"],
            "reason": row["reason"],
            "urgency": row["urgency"],
            "severity": row["severity"],
            "message_id": row["message_id"],
            "target_user_id": row["target_user_id"],
            "is_read": bool(row["is_read"]),
            "created_at": row["created_at"],
        }

    def create_draft(self, *, conversation_id: int, author_id: str, ai_content: str) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE drafts SET status = 'discarded', updated_at = ?
                WHERE conversation_id = ? AND author_id = ? AND status = 'draft'
                """,
                (now, conversation_id, author_id),
            )
            cursor = conn.execute(
                """
                INSERT INTO drafts (conversation_id, author_id, ai_content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, author_id, ai_content, now, now),
            )
            draft_id = int(cursor.lastrowid)
        return {
            "id": draft_id,
            "conversation_id": conversation_id,
            "author_id": author_id,
            "ai_content": ai_content,
            "edited_content": None,
            "status": "draft",
        }

    def get_draft(self, draft_id: int) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id, conversation_id, author_id, ai_content, edited_content, status FROM drafts WHERE id = ?",
                (draft_id,),
            ).fetchone()
        return dict(row) if row else None

    def update_draft(self, draft_id: int, *, edited_content: str | None = None, status: str | None = None) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE drafts
                SET edited_content = COALESCE(?, edited_content), status = COALESCE(?, status), updated_at = ?
                WHERE id = ?
                """,
                (edited_content, status, to_iso(utc_now()), draft_id),
            )

    def add_note(self, *, conversation_id: int, author_id: str, content: str) -> int:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notes (conversation_id, author_id, content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, author_id, content, now, now),
            )
            return int(cursor.lastrowid)

    def list_notes(self, conversation_id: int) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT n.id, n.conversation_id, n.author_id, n.content, n.created_at,
                       u.display_name AS author_name
                FROM notes n
                LEFT JOIN users u ON u.id = n.author_id
                WHERE n.conversation_id = ?
                ORDER BY n.created_at ASC, n.id ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [dict(row) for row in rows]

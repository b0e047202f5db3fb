from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteThreadDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                  id TEXT PRIMARY KEY,
                  display_name TEXT NOT NULL,
                  role TEXT NOT NULL DEFAULT 'subject',
                  code TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS therapy_groups (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  name TEXT UNIQUE NOT NULL
                );

                CREATE TABLE IF NOT EXISTS group_members (
                  group_id INTEGER NOT NULL REFERENCES therapy_groups(id) ON DELETE CASCADE,
                  user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                  PRIMARY KEY (group_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS conversations (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  subject_id TEXT UNIQUE NOT NULL REFERENCES users(id),
                  group_id INTEGER REFERENCES therapy_groups(id),
                  title TEXT,
                  ai_enabled INTEGER NOT NULL DEFAULT 1,
                  risk_level TEXT NOT NULL DEFAULT 'low',
                  status TEXT NOT NULL DEFAULT 'active',
                  mode TEXT NOT NULL DEFAULT 'ai_hybrid',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  sender_type TEXT NOT NULL,
                  sender_id TEXT,
                  content TEXT NOT NULL,
                  label TEXT,
                  tags_json TEXT NOT NULL DEFAULT '[]',
                  edited INTEGER NOT NULL DEFAULT 0,
                  deleted INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS read_receipts (
                  conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  user_id TEXT NOT NULL,
                  last_read_id INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (conversation_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS drafts (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  author_id TEXT NOT NULL,
                  ai_content TEXT NOT NULL,
                  edited_content TEXT,
                  status TEXT NOT NULL DEFAULT 'draft',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notes (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  author_id TEXT NOT NULL,
                  content TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS alerts (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  alert_type TEXT NOT NULL,
                  reason TEXT NOT NULL,
                  urgency TEXT NOT NULL DEFAULT 'normal',
                  severity TEXT NOT NULL DEFAULT 'warning',
                  message_id INTEGER,
                  target_user_id TEXT,
                  is_read INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
                CREATE INDEX IF NOT EXISTS idx_alerts_conversation ON alerts(conversation_id, is_read);
                CREATE INDEX IF NOT EXISTS idx_notes_conversation ON notes(conversation_id, created_at);
                """
            )

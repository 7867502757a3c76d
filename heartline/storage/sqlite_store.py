"""
SQLite transcript store.
This is the source of truth: every conversation, every persisted turn.
Messages are append-only and come back in creation order.
"""

import sqlite3
import logging
from pathlib import Path
from contextlib import contextmanager

from heartline.storage.models import Conversation, Message, utcnow

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    companion_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    companion_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    model TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    token_count INTEGER DEFAULT 0,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, created_at, seq);
"""


class SQLiteStore:
    """Thread-safe SQLite transcript store (one connection per operation)."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ─ Conversations ───────────────────────────────────────────────────────

    def create_conversation(self, user_id: str, companion_id: str, title: str = "") -> Conversation:
        """Create a conversation owned by user_id and bound to companion_id."""
        conv = Conversation(
            user_id=user_id,
            companion_id=companion_id,
            title=title or f"Chat with {companion_id}",
        )
        conv.updated_at = conv.created_at
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations (id, user_id, companion_id, title, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (conv.id, conv.user_id, conv.companion_id, conv.title,
                 conv.created_at, conv.updated_at),
            )
        logger.debug("Created conversation %s (user=%s, companion=%s)", conv.id, user_id, companion_id)
        return conv

    def find_conversation(
        self,
        conversation_id: str,
        user_id: str,
        companion_id: str | None = None,
    ) -> Conversation | None:
        """
        Return the conversation only if user_id owns it (and, when given,
        it references companion_id). Anything else looks like "not there".
        """
        query = "SELECT * FROM conversations WHERE id = ? AND user_id = ?"
        params: list = [conversation_id, user_id]
        if companion_id is not None:
            query += " AND companion_id = ?"
            params.append(companion_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return Conversation.from_row(dict(row)) if row else None

    def list_conversations(self, user_id: str, limit: int = 50) -> list[Conversation]:
        """The user's conversations, most recently updated first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM conversations WHERE user_id = ?
                   ORDER BY updated_at DESC, created_at DESC LIMIT ?""",
                (user_id, limit),
            ).fetchall()
        return [Conversation.from_row(dict(r)) for r in rows]

    def get_updated_at(self, conversation_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT updated_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        return row["updated_at"] if row else None

    # ─ Messages ────────────────────────────────────────────────────────────

    @staticmethod
    def _insert_message(conn: sqlite3.Connection, msg: Message):
        """
        created_at is clamped to the conversation's latest created_at so the
        timestamp order always agrees with insertion order.
        """
        if msg.role == "assistant" and not msg.content:
            raise ValueError("refusing to store an empty assistant message")

        row = conn.execute(
            "SELECT MAX(created_at) AS latest FROM messages WHERE conversation_id = ?",
            (msg.conversation_id,),
        ).fetchone()
        latest = row["latest"] if row else None
        if latest and latest > msg.created_at:
            msg.created_at = latest
        conn.execute(
            """INSERT INTO messages
               (id, conversation_id, user_id, companion_id, role, content,
                model, created_at, token_count)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (msg.id, msg.conversation_id, msg.user_id, msg.companion_id,
             msg.role, msg.content, msg.model, msg.created_at, msg.token_count),
        )

    def append_message(self, msg: Message) -> Message:
        """Append one turn. The conversation's recency marker is left alone."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._insert_message(conn, msg)
        logger.debug("Stored message %s (role=%s, conv=%s)", msg.id, msg.role, msg.conversation_id)
        return msg

    def complete_exchange(self, msg: Message) -> str:
        """
        Append the assistant turn and bump the conversation's updated_at in
        one transaction. updated_at never moves backwards, even if the wall
        clock did. Returns the stored updated_at.
        """
        now = utcnow()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._insert_message(conn, msg)
            cur = conn.execute(
                """UPDATE conversations
                   SET updated_at = CASE WHEN updated_at > ? THEN updated_at ELSE ? END
                   WHERE id = ?""",
                (now, now, msg.conversation_id),
            )
            if cur.rowcount != 1:
                raise sqlite3.IntegrityError(f"conversation {msg.conversation_id} does not exist")
            updated_at = conn.execute(
                "SELECT updated_at FROM conversations WHERE id = ?",
                (msg.conversation_id,),
            ).fetchone()["updated_at"]
        logger.debug("Completed exchange with message %s (conv=%s)", msg.id, msg.conversation_id)
        return updated_at

    def get_messages(self, conversation_id: str) -> list[Message]:
        """All turns of a conversation in creation order."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM messages WHERE conversation_id = ?
                   ORDER BY created_at, seq""",
                (conversation_id,),
            ).fetchall()
        return [Message.from_row(dict(r)) for r in rows]

    def get_recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """The `limit` most recent turns, oldest first."""
        if limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM (
                       SELECT * FROM messages WHERE conversation_id = ?
                       ORDER BY created_at DESC, seq DESC LIMIT ?
                   ) ORDER BY created_at, seq""",
                (conversation_id, limit),
            ).fetchall()
        return [Message.from_row(dict(r)) for r in rows]

    def get_stats(self) -> dict:
        """Return counts of stored data."""
        with self._connect() as conn:
            conv_count = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            msg_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            user_count = conn.execute("SELECT COUNT(*) FROM messages WHERE role='user'").fetchone()[0]
            asst_count = conn.execute("SELECT COUNT(*) FROM messages WHERE role='assistant'").fetchone()[0]
            total_tokens = conn.execute(
                "SELECT COALESCE(SUM(token_count), 0) FROM messages"
            ).fetchone()[0]

        return {
            "conversations": conv_count,
            "messages": msg_count,
            "user_messages": user_count,
            "assistant_messages": asst_count,
            "tokens": total_tokens,
        }

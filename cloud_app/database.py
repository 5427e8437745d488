import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Union

DB_PATH = os.getenv("DB_PATH", "storage/chat.db")

DEFAULT_TITLE = "New Chat"


def init_db():
    """Initialize database schema."""
    directory = os.path.dirname(DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)

    conn = sqlite3.connect(DB_PATH)
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            guest_id TEXT,
            title TEXT
        )
    """)

    # content holds JSON when is_multipart = 1
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
            content TEXT NOT NULL,
            is_multipart INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES conversations(id)
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages(conversation_id, created_at)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_conversations_guest
        ON conversations(guest_id, updated_at)
    """)

    conn.commit()
    conn.close()


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _now() -> str:
    return datetime.utcnow().isoformat()


def create_conversation(guest_id: Optional[str] = None, title: Optional[str] = None) -> str:
    """Create a new conversation and return its ID."""
    conversation_id = str(uuid.uuid4())
    now = _now()

    with get_db() as conn:
        conn.execute("""
            INSERT INTO conversations (id, created_at, updated_at, guest_id, title)
            VALUES (?, ?, ?, ?, ?)
        """, (conversation_id, now, now, guest_id, title))

    return conversation_id


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        cursor = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        row = cursor.fetchone()
        return dict(row) if row else None


def conversation_belongs_to_guest(conversation_id: str, guest_id: Optional[str]) -> bool:
    """
    Ownership check. Conversations created without a guest are shared
    (anyone holding the id may use them).
    """
    with get_db() as conn:
        cursor = conn.execute("SELECT guest_id FROM conversations WHERE id = ?", (conversation_id,))
        row = cursor.fetchone()
        if not row:
            return False

        owner = row["guest_id"]
        if owner is None:
            return True
        return owner == guest_id


def create_message(
    conversation_id: str,
    role: str,
    content: Union[str, List[Dict[str, Any]]],
) -> str:
    """Store one turn. Multi-part content (text + image parts) is kept as JSON."""
    message_id = str(uuid.uuid4())
    now = _now()
    is_multipart = not isinstance(content, str)
    stored = json.dumps(content, ensure_ascii=False) if is_multipart else content

    with get_db() as conn:
        conn.execute("""
            INSERT INTO messages (id, conversation_id, role, content, is_multipart, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (message_id, conversation_id, role, stored, int(is_multipart), now))
        conn.execute("""
            UPDATE conversations SET updated_at = ? WHERE id = ?
        """, (now, conversation_id))

    return message_id


def get_messages(conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Messages of a conversation in chronological order, content decoded."""
    query = """
        SELECT id, conversation_id, role, content, is_multipart, created_at
        FROM messages
        WHERE conversation_id = ?
        ORDER BY created_at ASC, rowid ASC
    """
    params: tuple = (conversation_id,)
    if limit:
        query += " LIMIT ?"
        params = (conversation_id, limit)

    with get_db() as conn:
        rows = [dict(row) for row in conn.execute(query, params).fetchall()]

    for row in rows:
        if row.pop("is_multipart"):
            row["content"] = json.loads(row["content"])
    return rows


def get_conversations_by_guest(guest_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Get all conversations for a guest, most recently active first."""
    with get_db() as conn:
        cursor = conn.execute("""
            SELECT id, title, created_at, updated_at, guest_id
            FROM conversations
            WHERE guest_id = ?
            ORDER BY updated_at DESC
            LIMIT ?
        """, (guest_id, limit))
        return [dict(row) for row in cursor.fetchall()]


def update_conversation_title(conversation_id: str, title: str):
    with get_db() as conn:
        conn.execute("UPDATE conversations SET title = ? WHERE id = ?", (title, conversation_id))


def generate_title_from_message(message: str, max_chars: int = 40) -> str:
    """Chat title from the first user message: first 40 characters, then '...'."""
    text = " ".join(message.split())
    if not text:
        return DEFAULT_TITLE
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def delete_conversation(conversation_id: str):
    """Delete a conversation and all its messages."""
    with get_db() as conn:
        conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
        conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

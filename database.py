import logging
import sqlite3
import threading
from pathlib import Path

from utils import normalize_timestamp, track_latency

log = logging.getLogger(__name__)


class Database:
    """Local store of WhatsApp messages seen by this device.

    Automation transcripts are read from here; the neonize client has no
    history fetch of its own, so every inbound/outbound message is recorded
    as it passes through.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def initialize(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()
        log.info("Database initialized at %s", self.db_path)

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS chats (
                jid TEXT PRIMARY KEY,
                name TEXT,
                last_message_time TEXT
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_jid TEXT NOT NULL,
                sender TEXT NOT NULL,
                sender_name TEXT,
                content TEXT,
                timestamp TEXT NOT NULL,
                is_from_me INTEGER DEFAULT 0,
                FOREIGN KEY (chat_jid) REFERENCES chats(jid)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat_timestamp
                ON messages(chat_jid, timestamp);
        """)
        self.conn.commit()

    def store_message(
        self,
        msg_id: str,
        chat_jid: str,
        sender: str,
        sender_name: str,
        content: str,
        timestamp: str,
        is_from_me: bool,
    ):
        normalized_timestamp = normalize_timestamp(timestamp)
        with self._lock:
            # Upsert chat
            self.conn.execute(
                """
                INSERT INTO chats (jid, name, last_message_time)
                VALUES (?, ?, ?)
                ON CONFLICT(jid) DO UPDATE SET
                    name = COALESCE(excluded.name, chats.name),
                    last_message_time = excluded.last_message_time
                """,
                (chat_jid, sender_name or None, normalized_timestamp),
            )
            # Upsert message
            self.conn.execute(
                """
                INSERT OR REPLACE INTO messages
                    (id, chat_jid, sender, sender_name, content, timestamp, is_from_me)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    msg_id,
                    chat_jid,
                    sender,
                    sender_name,
                    content,
                    normalized_timestamp,
                    int(is_from_me),
                ),
            )
            self.conn.commit()

    @track_latency("sqlite", "recent_messages")
    def get_recent_messages(self, chat_jid: str, limit: int = 20) -> list[dict]:
        """Most recent ``limit`` messages for a chat, oldest first."""
        with self._lock:
            cursor = self.conn.execute(
                """
                SELECT id, chat_jid, sender, sender_name, content, timestamp, is_from_me
                FROM messages
                WHERE chat_jid = ?
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                (chat_jid, limit),
            )
            rows = cursor.fetchall()
        return [dict(r) for r in reversed(rows)]

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            log.info("Database closed")

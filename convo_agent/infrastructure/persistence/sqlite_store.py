"""SQLite-backed durable store using aiosqlite.

One connection per operation; rows hold ISO timestamps and JSON-encoded
tool calls and metadata.
"""

import json
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite
import structlog

from convo_agent.domain.errors import TransientDependencyError
from convo_agent.domain.models import Message, SessionRecord
from .durable_store import DurableStore, DELETED_STATUS

logger = structlog.get_logger(__name__)

SESSION_COLUMNS = (
    "id", "owner_id", "agent_type", "title", "status", "conversation_id",
    "context_aware", "created_at", "updated_at", "message_count", "last_message_at"
)


class SqliteDurableStore(DurableStore):
    """Durable sessions and messages in a local SQLite file"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        async with self._get_connection() as conn:
            await conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    agent_type TEXT,
                    title TEXT NOT NULL DEFAULT 'New Chat',
                    status TEXT DEFAULT 'active' CHECK (status IN ('active', 'closed', 'archived', 'deleted')),
                    conversation_id TEXT,
                    context_aware INTEGER DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT,
                    message_count INTEGER DEFAULT 0,
                    last_message_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_sessions_owner ON chat_sessions(owner_id);

                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    agent_name TEXT,
                    tool_calls TEXT,
                    metadata TEXT DEFAULT '{}',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, created_at);
                """
            )
            await conn.commit()

        self._initialized = True
        logger.info("SQLite durable store initialized", path=self.db_path)

    @asynccontextmanager
    async def _get_connection(self):
        try:
            conn = await aiosqlite.connect(self.db_path)
        except Exception as e:
            raise TransientDependencyError("durable_store", "Could not open SQLite database", cause=e)

        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        except aiosqlite.Error as e:
            raise TransientDependencyError("durable_store", str(e), cause=e)
        finally:
            await conn.close()

    async def persist_session(self, record: SessionRecord) -> str:
        session_id = record.id or str(uuid.uuid4())
        row = self._session_to_row(record.model_copy(update={"id": session_id}))

        async with self._get_connection() as conn:
            await conn.execute(
                f"INSERT INTO chat_sessions ({', '.join(SESSION_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in SESSION_COLUMNS)})",
                [row[column] for column in SESSION_COLUMNS]
            )
            await conn.commit()

        return session_id

    async def load_session(self, session_id: str) -> Optional[SessionRecord]:
        async with self._get_connection() as conn:
            async with conn.execute(
                "SELECT * FROM chat_sessions WHERE id = ? AND status != ?",
                (session_id, DELETED_STATUS)
            ) as cursor:
                row = await cursor.fetchone()

        return self._row_to_session(row) if row else None

    async def update_session(self, session_id: str, **fields: Any) -> Optional[SessionRecord]:
        fields.setdefault("updated_at", datetime.utcnow())
        updates = {key: value for key, value in fields.items() if key in SESSION_COLUMNS and key != "id"}
        if not updates:
            return await self.load_session(session_id)

        row = self._session_to_row(updates)
        assignments = ", ".join(f"{key} = ?" for key in updates)

        async with self._get_connection() as conn:
            await conn.execute(
                f"UPDATE chat_sessions SET {assignments} WHERE id = ?",
                [row[key] for key in updates] + [session_id]
            )
            await conn.commit()

        return await self.load_session(session_id)

    async def persist_message(self, session_id: str, message: Message) -> None:
        tool_calls = (
            json.dumps([call.model_dump(mode="json") for call in message.tool_calls])
            if message.tool_calls else None
        )

        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO messages (id, session_id, role, content, agent_name, tool_calls, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    session_id,
                    message.role.value,
                    message.content,
                    message.agent_name,
                    tool_calls,
                    json.dumps(message.metadata, default=str),
                    message.timestamp.isoformat()
                )
            )
            await conn.execute(
                """
                UPDATE chat_sessions
                SET message_count = message_count + 1, last_message_at = ?
                WHERE id = ?
                """,
                (message.timestamp.isoformat(), session_id)
            )
            await conn.commit()

    async def load_messages(self, session_id: str) -> List[Message]:
        async with self._get_connection() as conn:
            async with conn.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY created_at ASC, rowid ASC",
                (session_id,)
            ) as cursor:
                rows = await cursor.fetchall()

        return [
            Message(
                id=row["id"],
                role=row["role"],
                content=row["content"],
                agent_name=row["agent_name"],
                tool_calls=json.loads(row["tool_calls"]) if row["tool_calls"] else None,
                metadata=json.loads(row["metadata"] or "{}"),
                timestamp=datetime.fromisoformat(row["created_at"])
            )
            for row in rows
        ]

    @staticmethod
    def _session_to_row(record: Any) -> Dict[str, Any]:
        data = record.model_dump() if isinstance(record, SessionRecord) else dict(record)
        row = {}
        for key, value in data.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, bool):
                value = int(value)
            row[key] = value
        return row

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> SessionRecord:
        data = dict(row)
        data["context_aware"] = bool(data["context_aware"])
        return SessionRecord.model_validate(data)

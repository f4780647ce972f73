"""Continuation-token persistence with SQLite"""
import aiosqlite
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
import json
import logging
from datetime import datetime

from core.events import ToolDef

logger = logging.getLogger(__name__)


class ChatStateDB:
    """
    SQLite-backed store of chat sessions.

    A row keeps what is needed to rebuild the next turn elsewhere: the
    tool reference (path, inline definitions or content) and the latest
    continuation token.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self.db: Optional[aiosqlite.Connection] = None

    async def initialize(self):
        """Initialize database schema"""
        self.db = await aiosqlite.connect(self.db_path)

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS chat_sessions (
                session_id TEXT PRIMARY KEY,
                request_path TEXT NOT NULL,
                tool_path TEXT,
                tools TEXT,
                content TEXT,
                chat_state TEXT,
                created_at REAL NOT NULL,
                last_activity REAL NOT NULL
            )
        """)
        await self.db.commit()
        logger.info(f"Chat state database initialized: {self.db_path}")

    async def save(
        self,
        session_id: str,
        request_path: str,
        chat_state: Optional[str],
        tool_path: str = "",
        tools: Optional[List[ToolDef]] = None,
        content: str = "",
    ):
        """Save or update a session's tool reference and token"""
        if not self.db:
            await self.initialize()

        now = datetime.now().timestamp()
        tools_json = json.dumps([t.to_wire() for t in tools]) if tools is not None else None

        await self.db.execute(
            """
            INSERT OR REPLACE INTO chat_sessions
            (session_id, request_path, tool_path, tools, content, chat_state, created_at, last_activity)
            VALUES (?, ?, ?, ?, ?, ?, COALESCE(
                (SELECT created_at FROM chat_sessions WHERE session_id = ?),
                ?
            ), ?)
            """,
            (session_id, request_path, tool_path, tools_json, content, chat_state, session_id, now, now)
        )
        await self.db.commit()
        logger.debug(f"Saved chat state for session: {session_id}")

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Retrieve session"""
        if not self.db:
            await self.initialize()

        cursor = await self.db.execute(
            """
            SELECT request_path, tool_path, tools, content, chat_state, created_at, last_activity
            FROM chat_sessions
            WHERE session_id = ?
            """,
            (session_id,)
        )
        row = await cursor.fetchone()

        if row:
            return {
                "request_path": row[0],
                "tool_path": row[1] or "",
                "tools": [ToolDef.model_validate(t) for t in json.loads(row[2])] if row[2] else None,
                "content": row[3] or "",
                "chat_state": row[4],
                "created_at": row[5],
                "last_activity": row[6]
            }
        return None

    async def clear(self, session_id: str):
        """Delete session"""
        if not self.db:
            return

        await self.db.execute(
            "DELETE FROM chat_sessions WHERE session_id = ?",
            (session_id,)
        )
        await self.db.commit()
        logger.info(f"Cleared chat session: {session_id}")

    async def cleanup(self, max_age_hours: int = 24) -> int:
        """Remove sessions idle for longer than max_age_hours"""
        if not self.db:
            return 0

        cutoff = datetime.now().timestamp() - (max_age_hours * 3600)

        result = await self.db.execute(
            """
            DELETE FROM chat_sessions
            WHERE last_activity < ?
            """,
            (cutoff,)
        )
        await self.db.commit()

        count = result.rowcount
        if count > 0:
            logger.info(f"Cleaned up {count} old chat sessions")
        return count

    async def close(self):
        """Close database connection"""
        if self.db:
            await self.db.close()
            self.db = None

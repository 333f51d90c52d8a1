"""
Persistence collaborators.

The core only talks to the two protocols below. ``SQLiteStore`` is the local
reference implementation: a single SQLite database with JSON documents per
table, fully local, no cloud dependencies.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional, Protocol

import aiosqlite

from . import config
from .models import AuthContextRecord, SessionLogRecord, SessionStatusUpdate

logger = logging.getLogger(__name__)


class AuthContextStore(Protocol):
    async def get_auth_context(self, tenant_id: str, platform: str) -> Optional[AuthContextRecord]: ...

    async def save_auth_context(self, record: AuthContextRecord) -> AuthContextRecord: ...

    async def mark_context_used(self, tenant_id: str, platform: str,
                                login_completed: bool = False) -> Optional[AuthContextRecord]: ...

    async def deactivate_auth_context(self, tenant_id: str, platform: str) -> bool: ...


class RunRecorder(Protocol):
    async def log_action(self, record: SessionLogRecord) -> None: ...

    async def update_status(self, update: SessionStatusUpdate) -> None: ...


class SQLiteStore:
    """Local SQLite storage for auth contexts, action logs and run status."""

    def __init__(self, db_path: Optional[str] = None):
        self._db_path = db_path or config.SQLITE_DB_PATH
        self._initialized = False

    async def _ensure_initialized(self):
        if self._initialized:
            return
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS auth_contexts (
                    tenant_id TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, platform)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS session_logs (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    step_number INTEGER NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS session_status (
                    session_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_session ON session_logs(session_id, step_number)")
            await db.commit()
        self._initialized = True

    # ── Auth contexts ───────────────────────────────────────────────

    async def get_auth_context(self, tenant_id: str, platform: str) -> Optional[AuthContextRecord]:
        await self._ensure_initialized()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT data FROM auth_contexts WHERE tenant_id = ? AND platform = ?",
                (tenant_id, platform.lower()),
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        record = AuthContextRecord(**json.loads(row[0]))
        return record if record.is_active else None

    async def save_auth_context(self, record: AuthContextRecord) -> AuthContextRecord:
        await self._ensure_initialized()
        record.platform = record.platform.lower()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO auth_contexts (tenant_id, platform, data) VALUES (?, ?, ?)",
                (record.tenant_id, record.platform, record.model_dump_json()),
            )
            await db.commit()
        return record

    async def mark_context_used(self, tenant_id: str, platform: str,
                                login_completed: bool = False) -> Optional[AuthContextRecord]:
        record = await self.get_auth_context(tenant_id, platform)
        if record is None:
            return None
        now = datetime.now(timezone.utc).isoformat()
        record.last_used_at = now
        if login_completed:
            if not record.first_login_at:
                record.first_login_at = now
            record.last_login_at = now
            record.login_attempts += 1
        return await self.save_auth_context(record)

    async def deactivate_auth_context(self, tenant_id: str, platform: str) -> bool:
        record = await self.get_auth_context(tenant_id, platform)
        if record is None:
            return False
        record.is_active = False
        await self.save_auth_context(record)
        return True

    # ── Run recording ───────────────────────────────────────────────

    async def log_action(self, record: SessionLogRecord) -> None:
        await self._ensure_initialized()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO session_logs (id, session_id, step_number, data) VALUES (?, ?, ?, ?)",
                (record.id, record.session_id, record.step_number, record.model_dump_json()),
            )
            await db.commit()

    async def list_actions(self, session_id: str) -> List[SessionLogRecord]:
        await self._ensure_initialized()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT data FROM session_logs WHERE session_id = ? ORDER BY step_number",
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [SessionLogRecord(**json.loads(r[0])) for r in rows]

    async def update_status(self, update: SessionStatusUpdate) -> None:
        await self._ensure_initialized()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO session_status (session_id, data) VALUES (?, ?)",
                (update.session_id, update.model_dump_json()),
            )
            await db.commit()
        logger.info(f"Session {update.session_id} marked {update.status.value}")

    async def get_status(self, session_id: str) -> Optional[SessionStatusUpdate]:
        await self._ensure_initialized()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT data FROM session_status WHERE session_id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return SessionStatusUpdate(**json.loads(row[0])) if row else None

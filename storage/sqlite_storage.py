"""
SQLite-based storage implementation.

Provides the same event-log layout as the file backend, with ACID writes
and indexed lookups.
"""

import asyncio
import json
import aiosqlite
from pathlib import Path
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
import logging

from .storage_interface import StorageInterface

logger = logging.getLogger(__name__)


class SQLiteStorage(StorageInterface):
    """
    SQLite-based storage implementation.

    Tables: events (append-only, primary key (space_id, branch_id, event_id)),
    branch_heads (head index), branches (metadata), system_state.
    """

    def __init__(self, storage_config: Dict[str, Any]):
        super().__init__(storage_config)

        self.db_path = Path(storage_config.get('db_path', './storage_data/loom.db'))
        self.connection_timeout = storage_config.get('connection_timeout', 30.0)
        self.enable_wal_mode = storage_config.get('enable_wal_mode', True)

        self._connection: Optional[aiosqlite.Connection] = None
        self._init_lock: Optional[asyncio.Lock] = None

        self.logger.info(f"SQLiteStorage initialized with db_path: {self.db_path}")

    async def initialize(self) -> bool:
        """Initialize the SQLite database and create tables. Safe to call again once open."""
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._connection is not None:
                return True
            return await self._open()

    async def _open(self) -> bool:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(str(self.db_path), timeout=self.connection_timeout)

            if self.enable_wal_mode:
                await self._connection.execute("PRAGMA journal_mode=WAL")

            await self._create_tables()
            await self._connection.commit()

            self.logger.info("SQLiteStorage initialized successfully")
            return True

        except Exception as e:
            self.logger.error(f"Failed to initialize SQLiteStorage: {e}", exc_info=True)
            return False

    async def shutdown(self) -> bool:
        """Close the database connection."""
        try:
            if self._connection:
                await self._connection.close()
                self._connection = None
            self.logger.info("SQLiteStorage shutdown completed")
            return True
        except Exception as e:
            self.logger.error(f"Error during SQLiteStorage shutdown: {e}", exc_info=True)
            return False

    async def _create_tables(self) -> None:
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                space_id TEXT NOT NULL,
                branch_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                event_data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (space_id, branch_id, event_id)
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS branch_heads (
                space_id TEXT NOT NULL,
                branch_id TEXT NOT NULL,
                head_event_id TEXT,
                PRIMARY KEY (space_id, branch_id)
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS branches (
                space_id TEXT NOT NULL,
                branch_id TEXT NOT NULL,
                branch_data TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (space_id, branch_id)
            )
        """)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS system_state (
                state_key TEXT PRIMARY KEY,
                state_data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_space_branch
            ON events (space_id, branch_id, seq)
        """)

    def _serialize_data(self, data: Any) -> str:
        return json.dumps(data, default=str)

    def _deserialize_data(self, json_str: str) -> Any:
        return json.loads(json_str)

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    # ===== Event Log =====

    async def append_event(self, space_id: str, branch_id: str, event_data: Dict[str, Any]) -> bool:
        try:
            await self._connection.execute(
                "INSERT OR IGNORE INTO events (space_id, branch_id, event_id, event_data, created_at) VALUES (?, ?, ?, ?, ?)",
                (space_id, branch_id, event_data['id'], self._serialize_data(event_data), self._now())
            )
            await self._connection.commit()
            return True
        except Exception as e:
            self.logger.error(f"Failed to append event {event_data.get('id')} for space {space_id}: {e}", exc_info=True)
            return False

    async def load_events(self, space_id: str, branch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            if branch_id is None:
                cursor = await self._connection.execute(
                    "SELECT event_data FROM events WHERE space_id = ? ORDER BY seq", (space_id,))
            else:
                cursor = await self._connection.execute(
                    "SELECT event_data FROM events WHERE space_id = ? AND branch_id = ? ORDER BY seq",
                    (space_id, branch_id))
            rows = await cursor.fetchall()
            return [self._deserialize_data(row[0]) for row in rows]
        except Exception as e:
            self.logger.error(f"Failed to load events for space {space_id}: {e}", exc_info=True)
            return []

    # ===== Head Index =====

    async def set_branch_head(self, space_id: str, branch_id: str, head_event_id: Optional[str]) -> bool:
        try:
            await self._connection.execute(
                "INSERT OR REPLACE INTO branch_heads (space_id, branch_id, head_event_id) VALUES (?, ?, ?)",
                (space_id, branch_id, head_event_id))
            await self._connection.commit()
            return True
        except Exception as e:
            self.logger.error(f"Failed to set head for {space_id}/{branch_id}: {e}", exc_info=True)
            return False

    async def load_branch_heads(self, space_id: str) -> Dict[str, Optional[str]]:
        try:
            cursor = await self._connection.execute(
                "SELECT branch_id, head_event_id FROM branch_heads WHERE space_id = ?", (space_id,))
            rows = await cursor.fetchall()
            return {row[0]: row[1] for row in rows}
        except Exception as e:
            self.logger.error(f"Failed to load heads for space {space_id}: {e}", exc_info=True)
            return {}

    # ===== Branch Metadata =====

    async def store_branch(self, space_id: str, branch_data: Dict[str, Any]) -> bool:
        try:
            await self._connection.execute(
                "INSERT OR REPLACE INTO branches (space_id, branch_id, branch_data, updated_at) VALUES (?, ?, ?, ?)",
                (space_id, branch_data['branch_id'], self._serialize_data(branch_data), self._now()))
            await self._connection.commit()
            return True
        except Exception as e:
            self.logger.error(f"Failed to store branch {branch_data.get('branch_id')}: {e}", exc_info=True)
            return False

    async def load_branches(self, space_id: str) -> List[Dict[str, Any]]:
        try:
            cursor = await self._connection.execute(
                "SELECT branch_data FROM branches WHERE space_id = ? ORDER BY branch_id", (space_id,))
            rows = await cursor.fetchall()
            return [self._deserialize_data(row[0]) for row in rows]
        except Exception as e:
            self.logger.error(f"Failed to load branches for space {space_id}: {e}", exc_info=True)
            return []

    async def delete_branch(self, space_id: str, branch_id: str) -> bool:
        try:
            await self._connection.execute(
                "DELETE FROM branches WHERE space_id = ? AND branch_id = ?", (space_id, branch_id))
            await self._connection.execute(
                "DELETE FROM branch_heads WHERE space_id = ? AND branch_id = ?", (space_id, branch_id))
            await self._connection.commit()
            return True
        except Exception as e:
            self.logger.error(f"Failed to delete branch {branch_id}: {e}", exc_info=True)
            return False

    # ===== System State =====

    async def store_system_state(self, state_key: str, state_data: Dict[str, Any]) -> bool:
        try:
            await self._connection.execute(
                "INSERT OR REPLACE INTO system_state (state_key, state_data, updated_at) VALUES (?, ?, ?)",
                (state_key, self._serialize_data(state_data), self._now()))
            await self._connection.commit()
            return True
        except Exception as e:
            self.logger.error(f"Failed to store system state {state_key}: {e}", exc_info=True)
            return False

    async def load_system_state(self, state_key: str) -> Optional[Dict[str, Any]]:
        try:
            cursor = await self._connection.execute(
                "SELECT state_data FROM system_state WHERE state_key = ?", (state_key,))
            row = await cursor.fetchone()
            return self._deserialize_data(row[0]) if row else None
        except Exception as e:
            self.logger.error(f"Failed to load system state {state_key}: {e}", exc_info=True)
            return None

    async def health_check(self) -> Dict[str, Any]:
        try:
            cursor = await self._connection.execute("SELECT COUNT(*) FROM events")
            row = await cursor.fetchone()
            return {
                "status": "healthy",
                "backend_type": "SQLiteStorage",
                "db_path": str(self.db_path),
                "event_count": row[0],
            }
        except Exception as e:
            return {"status": "unhealthy", "backend_type": "SQLiteStorage", "error": str(e)}

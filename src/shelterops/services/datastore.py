"""SQLite access to the business data store (animals, municipalities, interactions).

Entity CRUD belongs to the back office; this module only offers what the
conversational core needs: ad hoc statements from tool calls, the short list of
available animals used by the fallback reply, and the interaction log.
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Sequence

from ..errors import DataStoreError

logger = logging.getLogger(__name__)

AVAILABLE_STATUS = "DISPONIVEL"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS municipalities (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      state TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS animals (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      species TEXT NOT NULL,
      size TEXT NULL,
      status TEXT NOT NULL,
      municipality_id TEXT NOT NULL REFERENCES municipalities(id),
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_interactions (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      agent_name TEXT NOT NULL,
      user_id TEXT NULL,
      session_id TEXT NULL,
      input_message TEXT NOT NULL,
      output_message TEXT NULL,
      success INTEGER NOT NULL,
      response_time_ms INTEGER NOT NULL,
      error_message TEXT NULL,
      metadata TEXT NULL,
      created_at TEXT NOT NULL
    )
    """,
)


class BusinessDataStore:
    """Thin async wrapper over a SQLite database file.

    Each call opens its own connection and runs in a worker thread, so
    statements from concurrent turns never share a cursor.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        try:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()

    async def init_schema(self) -> None:
        """Create the tables the core reads and writes, if missing."""
        await asyncio.to_thread(self._init_schema)

    def _execute(self, query: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise DataStoreError(f"cannot open {self._db_path}: {e}") from e
        try:
            cur = conn.execute(query, tuple(params))
            rows = [dict(row) for row in cur.fetchall()]
            conn.commit()
            return rows
        except sqlite3.Error as e:
            raise DataStoreError(str(e)) from e
        finally:
            conn.close()

    async def execute(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run one statement with bound parameters and return its rows as dicts."""
        logger.debug("Executing statement: %s", query[:200])
        return await asyncio.to_thread(self._execute, query, params)

    async def list_available_animals(self, limit: int = 3) -> List[Dict[str, Any]]:
        return await self.execute(
            """
            SELECT a.id, a.name, a.species, a.size, m.name AS municipality
            FROM animals a
            JOIN municipalities m ON m.id = a.municipality_id
            WHERE a.status = ?
            ORDER BY a.created_at DESC
            LIMIT ?
            """,
            (AVAILABLE_STATUS, limit),
        )

    async def insert_interaction(self, row: Dict[str, Any]) -> None:
        await self.execute(
            """
            INSERT INTO agent_interactions
              (agent_name, user_id, session_id, input_message, output_message,
               success, response_time_ms, error_message, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row["agent_name"],
                row.get("user_id"),
                row.get("session_id"),
                row["input_message"],
                row.get("output_message"),
                1 if row["success"] else 0,
                int(row["response_time_ms"]),
                row.get("error_message"),
                row.get("metadata"),
                row["created_at"],
            ),
        )

from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            if not has_tables:
                await self._create_schema(db)
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            elif version != self.SCHEMA_VERSION and self._allow_destructive_reset_on_mismatch():
                await self._reset_schema(db)
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            else:
                await self._create_schema(db)
                await self._migrate_schema(db, version)
                if version != self.SCHEMA_VERSION:
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")

            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("memory_chunks", "memory_summaries", "memory_facts"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        cols: set[str] = set()
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            cols.add(str(row[1]))
        return cols

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = str(column_sql.split()[0]).strip()
        if not column_name:
            return
        cols = await self._table_columns(db, table_name)
        if column_name in cols:
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        # Idempotent; heals databases created before soft-delete merges existed.
        await self._add_column_if_missing(db, "memory_facts", "superseded_by TEXT")

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS memory_facts (
                row_seq INTEGER PRIMARY KEY AUTOINCREMENT,
                fact_id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                source_message_id TEXT NOT NULL DEFAULT '',
                fact_text TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT 'event',
                importance INTEGER NOT NULL DEFAULT 5,
                embedding BLOB,
                active INTEGER NOT NULL DEFAULT 1,
                branch_path TEXT NOT NULL DEFAULT '[]',
                related_entities TEXT NOT NULL DEFAULT '[]',
                created_at REAL NOT NULL,
                last_accessed_at REAL NOT NULL,
                access_count INTEGER NOT NULL DEFAULT 0,
                superseded_by TEXT
            );

            CREATE TABLE IF NOT EXISTS memory_summaries (
                row_seq INTEGER PRIMARY KEY AUTOINCREMENT,
                summary_id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                level INTEGER NOT NULL CHECK (level IN (0, 1, 2)),
                content TEXT NOT NULL,
                key_facts TEXT NOT NULL DEFAULT '[]',
                range_start INTEGER NOT NULL,
                range_end INTEGER NOT NULL,
                child_ids TEXT NOT NULL DEFAULT '[]',
                embedding BLOB,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS memory_chunks (
                row_seq INTEGER PRIMARY KEY AUTOINCREMENT,
                chunk_id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                member_message_ids TEXT NOT NULL DEFAULT '[]',
                chunk_text TEXT NOT NULL,
                embedding BLOB,
                characters TEXT NOT NULL DEFAULT '[]',
                location TEXT NOT NULL DEFAULT '',
                importance INTEGER NOT NULL DEFAULT 5,
                tags TEXT NOT NULL DEFAULT '[]',
                branch_path TEXT NOT NULL DEFAULT '[]',
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_memory_facts_conversation
            ON memory_facts(conversation_id, row_seq);

            CREATE INDEX IF NOT EXISTS idx_memory_facts_superseded
            ON memory_facts(superseded_by);

            CREATE INDEX IF NOT EXISTS idx_memory_summaries_conversation
            ON memory_summaries(conversation_id, level, row_seq);

            CREATE INDEX IF NOT EXISTS idx_memory_chunks_conversation
            ON memory_chunks(conversation_id, row_seq);
            """
        )

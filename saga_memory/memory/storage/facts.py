from __future__ import annotations

import logging
import time
from typing import Iterable, Sequence

import aiosqlite

from ..models import Fact, clamp_importance
from .utils import (
    _sqlite_memory_connection,
    encode_embedding,
    encode_str_list,
    fact_from_row,
)


logger = logging.getLogger("saga_memory")

_FACT_COLUMNS = """
    fact_id, conversation_id, source_message_id, fact_text, category, importance, embedding,
    active, branch_path, related_entities, created_at, last_accessed_at, access_count
"""


class MemoryFactsMixin:
    async def _insert_fact_row(self, db: aiosqlite.Connection, fact: Fact) -> None:
        created_at = float(fact.timestamp or time.time())
        await db.execute(
            f"""
            INSERT INTO memory_facts ({_FACT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(fact.id),
                str(fact.conversation_id),
                str(fact.source_message_id or ""),
                str(fact.text),
                fact.category.value,
                clamp_importance(fact.importance),
                encode_embedding(fact.embedding),
                1 if fact.active else 0,
                encode_str_list(fact.branch_path),
                encode_str_list(fact.related_entities),
                created_at,
                float(fact.last_accessed_at or created_at),
                max(0, int(fact.access_count)),
            ),
        )

    async def insert_fact(self, fact: Fact) -> None:
        if not fact.text.strip():
            raise ValueError("fact text must not be empty")
        async with _sqlite_memory_connection(self.db_path) as db:
            await self._insert_fact_row(db, fact)
            await db.commit()

    async def insert_facts(self, facts: Sequence[Fact]) -> int:
        rows = [fact for fact in facts if fact.text.strip()]
        if not rows:
            return 0
        async with _sqlite_memory_connection(self.db_path) as db:
            for fact in rows:
                await self._insert_fact_row(db, fact)
            await db.commit()
        return len(rows)

    async def get_facts_by_conversation(
        self,
        conversation_id: str,
        *,
        include_inactive: bool = False,
    ) -> list[Fact]:
        query = f"""
            SELECT {_FACT_COLUMNS}
            FROM memory_facts
            WHERE conversation_id = ?
              AND superseded_by IS NULL
        """
        if not include_inactive:
            query += " AND active = 1"
        query += " ORDER BY row_seq ASC"
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, (str(conversation_id),)) as cursor:
                rows = await cursor.fetchall()
        return [fact_from_row(row) for row in rows]

    async def get_fact(self, fact_id: str) -> Fact | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT {_FACT_COLUMNS}
                FROM memory_facts
                WHERE fact_id = ?
                  AND superseded_by IS NULL
                """,
                (str(fact_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return fact_from_row(row) if row else None

    async def update_fact_embedding(self, fact_id: str, embedding: Sequence[float]) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE memory_facts SET embedding = ? WHERE fact_id = ?",
                (encode_embedding(embedding), str(fact_id)),
            )
            await db.commit()
            return (cursor.rowcount or 0) > 0

    async def set_fact_active(self, fact_id: str, active: bool) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE memory_facts SET active = ? WHERE fact_id = ?",
                (1 if active else 0, str(fact_id)),
            )
            await db.commit()
            return (cursor.rowcount or 0) > 0

    async def touch_facts(self, fact_ids: Iterable[str], *, now: float | None = None) -> int:
        ids = [str(item) for item in dict.fromkeys(fact_ids) if str(item)]
        if not ids:
            return 0
        stamp = float(now if now is not None else time.time())
        placeholders = ", ".join("?" for _ in ids)
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE memory_facts
                SET access_count = access_count + 1,
                    last_accessed_at = ?
                WHERE fact_id IN ({placeholders})
                """,
                (stamp, *ids),
            )
            await db.commit()
            return max(0, cursor.rowcount or 0)

    async def delete_fact(self, fact_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM memory_facts WHERE fact_id = ?", (str(fact_id),))
            await db.commit()
            return (cursor.rowcount or 0) > 0

    async def delete_conversation_facts(self, conversation_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM memory_facts WHERE conversation_id = ?",
                (str(conversation_id),),
            )
            await db.commit()
            return max(0, cursor.rowcount or 0)

    async def replace_facts(self, new_fact: Fact, superseded_ids: Sequence[str]) -> int:
        """Insert a merged fact and remove the facts it replaces in one transaction.

        Originals are first marked ``superseded_by`` and then deleted, so a
        reader never sees both the merged fact and its sources at once.
        """
        ids = [str(item) for item in dict.fromkeys(superseded_ids) if str(item) and str(item) != new_fact.id]
        placeholders = ", ".join("?" for _ in ids)
        async with _sqlite_memory_connection(self.db_path) as db:
            try:
                await db.execute("BEGIN IMMEDIATE")
                await self._insert_fact_row(db, new_fact)
                deleted = 0
                if ids:
                    await db.execute(
                        f"UPDATE memory_facts SET superseded_by = ? WHERE fact_id IN ({placeholders})",
                        (str(new_fact.id), *ids),
                    )
                    cursor = await db.execute(
                        f"DELETE FROM memory_facts WHERE fact_id IN ({placeholders})",
                        tuple(ids),
                    )
                    deleted = max(0, cursor.rowcount or 0)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return deleted

    async def recover_superseded_facts(self) -> int:
        """Finish or undo merges left half-applied by an older build or a crash."""
        async with _sqlite_memory_connection(self.db_path) as db:
            finished = await db.execute(
                """
                DELETE FROM memory_facts
                WHERE superseded_by IS NOT NULL
                  AND superseded_by IN (SELECT fact_id FROM memory_facts WHERE superseded_by IS NULL)
                """
            )
            restored = await db.execute(
                """
                UPDATE memory_facts
                SET superseded_by = NULL
                WHERE superseded_by IS NOT NULL
                """
            )
            await db.commit()
        count = max(0, finished.rowcount or 0) + max(0, restored.rowcount or 0)
        if count:
            logger.warning("Recovered %s fact rows from interrupted merges", count)
        return count

from __future__ import annotations

import time

from ..models import Summary, SummaryLevel, VectorChunk
from .utils import (
    _sqlite_memory_connection,
    encode_embedding,
    encode_str_list,
    summary_from_row,
)

_SUMMARY_COLUMNS = """
    summary_id, conversation_id, level, content, key_facts, range_start, range_end,
    child_ids, embedding, created_at
"""


class MemorySummariesMixin:
    async def insert_summary(self, summary: Summary, *, chunk: VectorChunk | None = None) -> None:
        """Persist a summary, and its scene chunk when given, atomically."""
        content = summary.content.strip()
        if not content:
            raise ValueError("summary content must not be empty")
        start, end = summary.message_range
        if start < 0 or end < start:
            raise ValueError(f"invalid message range {summary.message_range!r}")

        async with _sqlite_memory_connection(self.db_path) as db:
            try:
                await db.execute(
                    f"""
                    INSERT INTO memory_summaries ({_SUMMARY_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(summary.id),
                        str(summary.conversation_id),
                        int(summary.level),
                        content,
                        encode_str_list(summary.key_facts),
                        int(start),
                        int(end),
                        encode_str_list(summary.child_ids),
                        encode_embedding(summary.embedding),
                        float(summary.created_at or time.time()),
                    ),
                )
                if chunk is not None:
                    await self._insert_chunk_row(db, chunk)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def get_summaries_by_conversation(
        self,
        conversation_id: str,
        level: SummaryLevel | None = None,
    ) -> list[Summary]:
        query = f"""
            SELECT {_SUMMARY_COLUMNS}
            FROM memory_summaries
            WHERE conversation_id = ?
        """
        params: tuple[object, ...] = (str(conversation_id),)
        if level is not None:
            query += " AND level = ?"
            params = (*params, int(level))
        query += " ORDER BY row_seq ASC"
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [summary_from_row(row) for row in rows]

    async def delete_summary(self, summary_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM memory_summaries WHERE summary_id = ?", (str(summary_id),))
            await db.commit()
            return (cursor.rowcount or 0) > 0

    async def delete_conversation_summaries(self, conversation_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM memory_summaries WHERE conversation_id = ?",
                (str(conversation_id),),
            )
            await db.commit()
            return max(0, cursor.rowcount or 0)

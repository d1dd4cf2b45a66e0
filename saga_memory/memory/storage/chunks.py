from __future__ import annotations

import time

import aiosqlite

from ..models import VectorChunk, clamp_importance
from .utils import (
    _sqlite_memory_connection,
    chunk_from_row,
    encode_embedding,
    encode_str_list,
)

_CHUNK_COLUMNS = """
    chunk_id, conversation_id, member_message_ids, chunk_text, embedding, characters,
    location, importance, tags, branch_path, created_at
"""


class MemoryChunksMixin:
    async def _insert_chunk_row(self, db: aiosqlite.Connection, chunk: VectorChunk) -> None:
        created_at = float(chunk.created_at or chunk.metadata.timestamp or time.time())
        await db.execute(
            f"""
            INSERT INTO memory_chunks ({_CHUNK_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(chunk.id),
                str(chunk.conversation_id),
                encode_str_list(chunk.member_message_ids),
                str(chunk.text),
                encode_embedding(chunk.embedding),
                encode_str_list(chunk.metadata.characters),
                str(chunk.metadata.location or ""),
                clamp_importance(chunk.metadata.importance),
                encode_str_list(chunk.metadata.tags),
                encode_str_list(chunk.branch_path),
                created_at,
            ),
        )

    async def insert_chunk(self, chunk: VectorChunk) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await self._insert_chunk_row(db, chunk)
            await db.commit()

    async def get_chunks_by_conversation(self, conversation_id: str) -> list[VectorChunk]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM memory_chunks
                WHERE conversation_id = ?
                ORDER BY row_seq ASC
                """,
                (str(conversation_id),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [chunk_from_row(row) for row in rows]

    async def delete_conversation_chunks(self, conversation_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM memory_chunks WHERE conversation_id = ?",
                (str(conversation_id),),
            )
            await db.commit()
            return max(0, cursor.rowcount or 0)

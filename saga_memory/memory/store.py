from __future__ import annotations

from .storage.chunks import MemoryChunksMixin
from .storage.facts import MemoryFactsMixin
from .storage.schema import MemorySchemaMixin
from .storage.summaries import MemorySummariesMixin
from .storage.utils import _sqlite_memory_connection


class MemoryStore(
    MemorySchemaMixin,
    MemorySummariesMixin,
    MemoryChunksMixin,
    MemoryFactsMixin,
):
    """Persistent conversation memory: facts, hierarchical summaries and scene chunks."""

    backend_name = "sqlite"

    async def init(self) -> None:
        await super().init()
        await self.recover_superseded_facts()

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")

    async def delete_conversation_memory(self, conversation_id: str) -> dict[str, int]:
        return {
            "facts": await self.delete_conversation_facts(conversation_id),
            "summaries": await self.delete_conversation_summaries(conversation_id),
            "chunks": await self.delete_conversation_chunks(conversation_id),
        }

from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path

import aiosqlite
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from saga_memory.memory.models import (  # noqa: E402
    ChunkMetadata,
    Fact,
    FactCategory,
    Summary,
    SummaryLevel,
    VectorChunk,
)
from saga_memory.memory.store import MemoryStore  # noqa: E402


def _fact(fact_id: str, text: str, **overrides) -> Fact:  # type: ignore[no-untyped-def]
    values = {
        "id": fact_id,
        "conversation_id": "c1",
        "source_message_id": "m1",
        "text": text,
        "category": FactCategory.EVENT,
        "importance": 5,
        "embedding": [0.5, 0.25],
        "timestamp": 1000.0,
        "last_accessed_at": 1000.0,
    }
    values.update(overrides)
    return Fact(**values)


async def _raw_execute(db_path: Path, sql: str, params: tuple = ()) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(sql, params)
        await db.commit()


def test_sqlite_facts_keep_insertion_order_and_roundtrip_fields(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        inserted = await store.insert_facts(
            [
                _fact("f1", "Aria meets Bram", category=FactCategory.RELATIONSHIP, related_entities=["Aria", "Bram"]),
                _fact("f2", "   "),
                _fact("f3", "Bram forges a shield", importance=14, branch_path=["m3"]),
            ]
        )
        await store.insert_fact(_fact("f4", "The forge goes cold", active=False))

        facts = await store.get_facts_by_conversation("c1")
        everything = await store.get_facts_by_conversation("c1", include_inactive=True)

        assert inserted == 2
        assert [fact.id for fact in facts] == ["f1", "f3"]
        assert [fact.id for fact in everything] == ["f1", "f3", "f4"]
        assert facts[0].category == FactCategory.RELATIONSHIP
        assert facts[0].related_entities == ["Aria", "Bram"]
        assert facts[0].embedding == [0.5, 0.25]
        assert facts[1].importance == 10
        assert facts[1].branch_path == ["m3"]
        assert await store.get_facts_by_conversation("other") == []

        with pytest.raises(ValueError):
            await store.insert_fact(_fact("f5", ""))

    asyncio.run(scenario())


def test_sqlite_replace_facts_swaps_originals_for_merged_fact(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        await store.insert_facts([_fact("a", "Hero obtains the Sunblade"), _fact("b", "Hero holds the Sunblade"), _fact("c", "Rain falls")])

        deleted = await store.replace_facts(_fact("m", "Hero obtains the Sunblade", importance=7), ["a", "b", "a"])
        facts = await store.get_facts_by_conversation("c1")

        assert deleted == 2
        assert [fact.id for fact in facts] == ["c", "m"]
        assert await store.get_fact("a") is None
        merged = await store.get_fact("m")
        assert merged is not None and merged.importance == 7

    asyncio.run(scenario())


def test_sqlite_replace_facts_rolls_back_on_duplicate_id(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        await store.insert_facts([_fact("a", "first"), _fact("b", "second")])

        with pytest.raises(sqlite3.IntegrityError):
            await store.replace_facts(_fact("b", "merged"), ["a"])

        facts = await store.get_facts_by_conversation("c1")
        assert [fact.text for fact in facts] == ["first", "second"]

    asyncio.run(scenario())


def test_sqlite_init_recovers_interrupted_merges(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    store = MemoryStore(db_path)

    async def scenario() -> None:
        await store.init()
        await store.insert_facts([_fact("a", "orphaned original"), _fact("m", "merged result"), _fact("b", "stranded original")])
        await _raw_execute(db_path, "UPDATE memory_facts SET superseded_by = ? WHERE fact_id = ?", ("m", "a"))
        await _raw_execute(db_path, "UPDATE memory_facts SET superseded_by = ? WHERE fact_id = ?", ("gone", "b"))

        hidden = await store.get_facts_by_conversation("c1")
        assert [fact.id for fact in hidden] == ["m"]

        await MemoryStore(db_path).init()
        facts = await store.get_facts_by_conversation("c1")

        assert [fact.id for fact in facts] == ["m", "b"]
        assert await store.get_fact("a") is None
        assert await store.recover_superseded_facts() == 0

    asyncio.run(scenario())


def test_sqlite_touch_facts_updates_access_stats(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        await store.insert_facts([_fact("a", "Aria smiles"), _fact("b", "Bram frowns")])

        touched = await store.touch_facts(["a", "a", ""], now=5000.0)
        fact_a = await store.get_fact("a")
        fact_b = await store.get_fact("b")

        assert touched == 1
        assert fact_a is not None and fact_a.access_count == 1
        assert fact_a.last_accessed_at == 5000.0
        assert fact_b is not None and fact_b.access_count == 0
        assert await store.touch_facts([]) == 0

    asyncio.run(scenario())


def test_sqlite_fact_embedding_and_active_flag_updates(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        await store.insert_fact(_fact("a", "Aria sings"))

        assert await store.update_fact_embedding("a", [1.0, 0.0, 0.5]) is True
        assert await store.set_fact_active("a", False) is True
        assert await store.set_fact_active("missing", False) is False

        fact = await store.get_fact("a")
        assert fact is not None
        assert fact.embedding == [1.0, 0.0, 0.5]
        assert fact.active is False
        assert await store.delete_fact("a") is True
        assert await store.get_fact("a") is None

    asyncio.run(scenario())


def test_sqlite_summary_with_chunk_is_atomic(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    def _chunk(chunk_id: str) -> VectorChunk:
        return VectorChunk(
            id=chunk_id,
            conversation_id="c1",
            member_message_ids=["m0", "m1"],
            text="The party rests at the inn.",
            embedding=[0.5, 0.5],
            metadata=ChunkMetadata(characters=["Aria", "Hero"], location="Inn", importance=6, tags=["rest"]),
            created_at=2000.0,
        )

    def _summary(summary_id: str, start: int, end: int) -> Summary:
        return Summary(
            id=summary_id,
            conversation_id="c1",
            level=SummaryLevel.L0,
            content="The party rests at the inn.",
            key_facts=["party rests"],
            message_range=(start, end),
            created_at=2000.0,
        )

    async def scenario() -> None:
        await store.init()
        await store.insert_summary(_summary("s1", 0, 1), chunk=_chunk("k1"))

        with pytest.raises(sqlite3.IntegrityError):
            await store.insert_summary(_summary("s2", 2, 3), chunk=_chunk("k1"))
        with pytest.raises(ValueError):
            await store.insert_summary(_summary("s3", 5, 4))

        summaries = await store.get_summaries_by_conversation("c1")
        chunks = await store.get_chunks_by_conversation("c1")

        assert [summary.id for summary in summaries] == ["s1"]
        assert summaries[0].message_range == (0, 1)
        assert summaries[0].key_facts == ["party rests"]
        assert [chunk.id for chunk in chunks] == ["k1"]
        assert chunks[0].metadata.characters == ["Aria", "Hero"]
        assert chunks[0].metadata.location == "Inn"
        assert chunks[0].metadata.tags == ["rest"]
        assert await store.get_summaries_by_conversation("c1", SummaryLevel.L1) == []

    asyncio.run(scenario())


def test_sqlite_newer_schema_requires_explicit_reset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "memory.db"
    monkeypatch.delenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)

    async def scenario() -> None:
        store = MemoryStore(db_path)
        await store.init()
        await store.insert_fact(_fact("a", "Aria waits"))
        await _raw_execute(db_path, "PRAGMA user_version = 99")

        with pytest.raises(RuntimeError, match="schema version mismatch"):
            await MemoryStore(db_path).init()

        monkeypatch.setenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
        await MemoryStore(db_path).init()

        async with aiosqlite.connect(db_path) as db:
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
        assert row is not None and int(row[0]) == MemoryStore.SCHEMA_VERSION
        assert await store.get_facts_by_conversation("c1") == []

    asyncio.run(scenario())


def test_sqlite_delete_conversation_memory_reports_counts(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        await store.ping()
        await store.insert_facts([_fact("a", "one"), _fact("b", "two"), _fact("x", "other", conversation_id="c2")])
        await store.insert_summary(
            Summary(id="s1", conversation_id="c1", level=SummaryLevel.L0, content="Chapter", message_range=(0, 9))
        )
        await store.insert_chunk(VectorChunk(id="k1", conversation_id="c1", member_message_ids=["m0"], text="Scene"))

        counts = await store.delete_conversation_memory("c1")

        assert counts == {"facts": 2, "summaries": 1, "chunks": 1}
        assert [fact.id for fact in await store.get_facts_by_conversation("c2")] == ["x"]

    asyncio.run(scenario())

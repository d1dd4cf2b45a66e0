from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from saga_memory.memory.embedding import Embedder  # noqa: E402
from saga_memory.memory.engine import MemoryEngine  # noqa: E402
from saga_memory.memory.facts import FactExtractor  # noqa: E402
from saga_memory.memory.models import ChatMessage, WorldState  # noqa: E402
from saga_memory.memory.retrieval import ContextAssembler  # noqa: E402
from saga_memory.memory.store import MemoryStore  # noqa: E402
from saga_memory.memory.summarizer import HierarchicalSummarizer  # noqa: E402


class _WordTokenizer:
    def count_tokens(self, text: str) -> int:
        return len(text.split())

    def truncate_to_token_budget(self, text: str, max_tokens: int) -> str:
        return " ".join(text.split()[: max(0, max_tokens)])


class _ScriptedLLM:
    """Answers fact extraction with ``facts`` and every summary request with a numbered summary."""

    def __init__(self, facts: list[dict[str, object]] | None = None) -> None:
        self.facts = facts or []
        self.summary_calls = 0
        self.active = 0
        self.max_active = 0
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def chat(self, messages, temperature=None, max_output_tokens=None):  # type: ignore[no-untyped-def]
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            if "chronicle keeper" in messages[0]["content"]:
                return json.dumps(self.facts)
            self.summary_calls += 1
            return json.dumps({"summary": f"Chapter {self.summary_calls} happened", "keyFacts": []})
        finally:
            self.active -= 1


def _engine(tmp_path: Path, llm: _ScriptedLLM, chunk_size: int = 10) -> MemoryEngine:
    store = MemoryStore(tmp_path / "memory.db")
    embedder = Embedder("", dimension=64)
    summarizer = HierarchicalSummarizer(store, embedder, llm, _WordTokenizer(), chunk_size=chunk_size)
    return MemoryEngine(
        store,
        embedder,
        FactExtractor(llm),
        summarizer,
        ContextAssembler(store, embedder, summarizer),
    )


def _messages(count: int) -> list[ChatMessage]:
    return [
        ChatMessage(id=f"m{index}", role="user" if index % 2 == 0 else "assistant", content=f"line {index}", created_at=float(index))
        for index in range(count)
    ]


SUNBLADE_FACT = {
    "fact": "Hero will obtain the Sunblade",
    "category": "item",
    "importance": 6,
    "entities": ["Hero", "Sunblade"],
}


def test_ingest_message_stores_facts_and_derives_world_state(tmp_path: Path) -> None:
    llm = _ScriptedLLM([SUNBLADE_FACT])
    engine = _engine(tmp_path, llm)
    message = ChatMessage(id="m1", role="assistant", content="The priest hands the Sunblade to the hero.")

    async def scenario() -> None:
        await engine.start()
        first = await engine.ingest_message(
            "c1",
            message,
            world_state=WorldState(location="Temple"),
            character_name="Aria",
            user_name="Hero",
            branch_path=["m1"],
        )
        second = await engine.ingest_message("c1", message, character_name="Aria", user_name="Hero")
        facts = await engine.get_facts("c1")
        await engine.close()

        assert llm.started is True and llm.closed is True
        assert [fact.text for fact in first.stored_facts] == ["Hero will obtain the Sunblade"]
        assert first.stored_facts[0].id
        assert first.stored_facts[0].branch_path == ["m1"]
        assert len(first.stored_facts[0].embedding) == 64
        assert first.world_state_update.inventory_add == ["Sunblade"]
        assert first.merge.cluster_count == 0
        assert second.stored_facts == []
        assert second.skipped_duplicates == 1
        assert second.world_state_update.is_empty()
        assert [fact.text for fact in facts] == ["Hero will obtain the Sunblade"]

    asyncio.run(scenario())


def test_concurrent_compaction_of_one_conversation_is_serialized(tmp_path: Path) -> None:
    llm = _ScriptedLLM()
    engine = _engine(tmp_path, llm)

    async def scenario() -> None:
        await engine.store.init()
        reports = await asyncio.gather(
            engine.compact("c1", _messages(10), "Aria", "Hero"),
            engine.compact("c1", _messages(10), "Aria", "Hero"),
        )
        hierarchy = await engine.get_summary_hierarchy("c1")

        assert sorted(report.l0_created for report in reports) == [0, 1]
        assert len(hierarchy.l0) == 1
        assert llm.summary_calls == 1
        assert llm.max_active == 1

    asyncio.run(scenario())


def test_retrieve_context_and_close_flush_access_updates(tmp_path: Path) -> None:
    llm = _ScriptedLLM([SUNBLADE_FACT])
    engine = _engine(tmp_path, llm)

    async def scenario() -> None:
        await engine.start()
        await engine.ingest_message(
            "c1",
            ChatMessage(id="m1", role="assistant", content="The priest hands over the blade."),
            character_name="Aria",
            user_name="Hero",
        )
        sections = await engine.retrieve_context("Where is the Sunblade, hero?", "c1", 500)
        await engine.close()

        facts = await engine.get_facts("c1")
        assert [section.label for section in sections] == ["Facts (1)"]
        assert facts[0].access_count == 1

    asyncio.run(scenario())


def test_add_reindex_and_delete_conversation(tmp_path: Path) -> None:
    llm = _ScriptedLLM()
    engine = _engine(tmp_path, llm)

    async def scenario() -> None:
        await engine.store.init()
        extractor_facts = await engine.extractor.extract(
            "irrelevant text",
            conversation_id="c1",
            message_id="m1",
        )
        assert extractor_facts.facts == []

        llm.facts = [SUNBLADE_FACT, {"fact": "Bram guards the gate", "category": "event", "importance": 4}]
        parsed = await engine.extractor.extract("Two things happen.", conversation_id="c1", message_id="m2")
        stored = await engine.add_facts("c1", parsed.facts)
        for fact in stored:
            await engine.store.update_fact_embedding(fact.id, [])

        reindexed = await engine.reindex_facts("c1")
        facts = await engine.get_facts("c1")
        await engine.compact("c1", _messages(10), "Aria", "Hero")
        counts = await engine.delete_conversation("c1")

        assert len(stored) == 2
        assert reindexed == 2
        assert all(len(fact.embedding) == 64 for fact in facts)
        assert counts == {"facts": 2, "summaries": 1, "chunks": 1}
        assert await engine.get_facts("c1") == []
        assert await engine.get_best_context_summary("c1") == ""

    asyncio.run(scenario())

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Sequence

from .embedding import Embedder
from .facts import FactExtractor, FactMergeReport, deduplicate_facts, merge_related_facts
from .models import ChatMessage, ContextSection, Fact, WorldState, WorldStateUpdate
from .retrieval import ContextAssembler
from .store import MemoryStore
from .summarizer import CompactionReport, HierarchicalSummarizer, SummaryHierarchy
from .world_state import derive_world_state_updates


logger = logging.getLogger("saga_memory")


@dataclass(slots=True)
class IngestReport:
    stored_facts: List[Fact] = field(default_factory=list)
    skipped_duplicates: int = 0
    merge: FactMergeReport = field(default_factory=FactMergeReport)
    world_state_update: WorldStateUpdate = field(default_factory=WorldStateUpdate)
    extraction_error: str = ""


class MemoryEngine:
    """Per-conversation serialized ingestion and compaction over one store."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        extractor: FactExtractor,
        summarizer: HierarchicalSummarizer,
        assembler: ContextAssembler,
        *,
        merge_threshold: float = 0.7,
        top_k_facts: int = 10,
        top_k_chunks: int = 5,
        min_confidence: float = 0.0,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.extractor = extractor
        self.summarizer = summarizer
        self.assembler = assembler
        self.merge_threshold = float(merge_threshold)
        self.top_k_facts = max(1, int(top_k_facts))
        self.top_k_chunks = max(1, int(top_k_chunks))
        self.min_confidence = float(min_confidence)
        self.conversation_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def start(self) -> None:
        await self.store.init()
        await self.embedder.start()
        start_fn = getattr(self.extractor.llm, "start", None)
        if callable(start_fn):
            await start_fn()
        logger.info("Memory engine ready (store=%s, embedder=%s)", self.store.backend_name, self.embedder.status)

    async def close(self) -> None:
        await self.assembler.drain()
        close_fn = getattr(self.extractor.llm, "close", None)
        if callable(close_fn):
            await close_fn()
        await self.embedder.close()

    async def _store_new_facts(self, conversation_id: str, candidates: Sequence[Fact]) -> tuple[list[Fact], int]:
        existing = await self.store.get_facts_by_conversation(conversation_id, include_inactive=True)
        kept = deduplicate_facts(candidates, existing)
        missing = [fact for fact in kept if not fact.embedding]
        for fact, vector in zip(missing, await self.embedder.embed_many(fact.text for fact in missing)):
            fact.embedding = vector
        for fact in kept:
            fact.id = fact.id or uuid.uuid4().hex
            fact.conversation_id = conversation_id
        await self.store.insert_facts(kept)
        return kept, len(candidates) - len(kept)

    async def ingest_message(
        self,
        conversation_id: str,
        message: ChatMessage,
        *,
        world_state: WorldState | None = None,
        character_name: str = "Character",
        user_name: str = "Player",
        branch_path: Sequence[str] = (),
    ) -> IngestReport:
        """Extract facts from one message, store them, merge near-duplicates and derive state changes."""
        state = world_state or WorldState()
        async with self.conversation_locks[conversation_id]:
            result = await self.extractor.extract(
                message.content,
                conversation_id=conversation_id,
                message_id=message.id,
                world_state=state,
                character_name=character_name,
                user_name=user_name,
                branch_path=branch_path,
            )
            report = IngestReport(
                extraction_error=result.diagnostics.error if result.diagnostics is not None else "",
            )
            if not result.facts:
                return report
            report.stored_facts, report.skipped_duplicates = await self._store_new_facts(
                conversation_id, result.facts
            )
            report.merge = await merge_related_facts(
                self.store,
                self.embedder,
                conversation_id,
                self.merge_threshold,
                seed_ids=[fact.id for fact in report.stored_facts],
            )
            active = [fact for fact in report.stored_facts if fact.active]
            report.world_state_update = derive_world_state_updates(active, state, character_name, user_name)
        return report

    async def add_facts(self, conversation_id: str, facts: Iterable[Fact]) -> list[Fact]:
        async with self.conversation_locks[conversation_id]:
            stored, _ = await self._store_new_facts(conversation_id, list(facts))
        return stored

    async def reindex_facts(self, conversation_id: str) -> int:
        async with self.conversation_locks[conversation_id]:
            facts = await self.store.get_facts_by_conversation(conversation_id, include_inactive=True)
            vectors = await self.embedder.embed_many(fact.text for fact in facts)
            for fact, vector in zip(facts, vectors):
                await self.store.update_fact_embedding(fact.id, vector)
        return len(facts)

    async def merge_related_facts(self, conversation_id: str, threshold: float | None = None) -> FactMergeReport:
        async with self.conversation_locks[conversation_id]:
            return await merge_related_facts(
                self.store,
                self.embedder,
                conversation_id,
                self.merge_threshold if threshold is None else float(threshold),
            )

    async def compact(
        self,
        conversation_id: str,
        messages: Sequence[ChatMessage],
        character_name: str = "Character",
        user_name: str = "Player",
        *,
        branch_path: Sequence[str] = (),
    ) -> CompactionReport:
        async with self.conversation_locks[conversation_id]:
            return await self.summarizer.compact(
                conversation_id,
                messages,
                character_name,
                user_name,
                branch_path=branch_path,
            )

    async def retrieve_context(
        self,
        query_text: str,
        conversation_id: str,
        token_budget: int,
        **options: Any,
    ) -> list[ContextSection]:
        options.setdefault("top_k_facts", self.top_k_facts)
        options.setdefault("top_k_chunks", self.top_k_chunks)
        options.setdefault("min_confidence", self.min_confidence)
        return await self.assembler.retrieve_relevant_context(query_text, conversation_id, token_budget, **options)

    async def get_best_context_summary(self, conversation_id: str, max_tokens: int = 300) -> str:
        return await self.summarizer.get_best_context_summary(conversation_id, max_tokens)

    async def get_summary_hierarchy(self, conversation_id: str) -> SummaryHierarchy:
        return await self.summarizer.get_summary_hierarchy(conversation_id)

    async def get_facts(self, conversation_id: str, *, include_inactive: bool = False) -> list[Fact]:
        return await self.store.get_facts_by_conversation(conversation_id, include_inactive=include_inactive)

    async def delete_conversation(self, conversation_id: str) -> dict[str, int]:
        async with self.conversation_locks[conversation_id]:
            return await self.store.delete_conversation_memory(conversation_id)

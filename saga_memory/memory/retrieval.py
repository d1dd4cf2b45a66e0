from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Protocol, Sequence

from .embedding import Embedder, cosine_similarity, find_top_k
from .models import (
    BranchScope,
    ChatMessage,
    ChunkMetadata,
    ContextSection,
    ContextSectionType,
    Fact,
    VectorChunk,
    clamp_importance,
)
from .summarizer import HierarchicalSummarizer


logger = logging.getLogger("saga_memory")

SUMMARY_BUDGET_RATIO = 0.3
SUMMARY_BUDGET_CAP = 300
MIN_SECTION_BUDGET = 50
FACT_SCORE_FLOOR = 0.15
CHUNK_SCORE_FLOOR = 0.2
_HOUR = 3600.0


def temporal_decay(fact: Fact, now: float) -> float:
    age_hours = max(0.0, (now - fact.timestamp) / _HOUR)
    idle_hours = max(0.0, (now - fact.last_accessed_at) / _HOUR)
    if fact.importance >= 8:
        half_life = 720.0
    elif fact.importance >= 5:
        half_life = 168.0
    else:
        half_life = 48.0
    age_factor = math.pow(0.5, age_hours / half_life)
    if idle_hours < 1:
        recency_boost = 1.5
    elif idle_hours < 24:
        recency_boost = 1.2
    else:
        recency_boost = 1.0
    frequency_boost = min(1.5, 1.0 + 0.1 * fact.access_count)
    return age_factor * recency_boost * frequency_boost


def fact_score(similarity: float, fact: Fact, now: float) -> float:
    return 0.5 * similarity + 0.25 * (fact.importance / 10.0) + 0.25 * temporal_decay(fact, now)


@dataclass(slots=True)
class RankedFact:
    fact: Fact
    score: float
    similarity: float


def rank_facts(query: Sequence[float], facts: Iterable[Fact], top_k: int, now: float) -> list[RankedFact]:
    ranked: list[tuple[float, float, int, RankedFact]] = []
    for index, fact in enumerate(facts):
        if not fact.embedding:
            continue
        similarity = cosine_similarity(query, fact.embedding)
        score = fact_score(similarity, fact, now)
        if score > FACT_SCORE_FLOOR:
            ranked.append((-score, -similarity, index, RankedFact(fact=fact, score=score, similarity=similarity)))
    ranked.sort(key=lambda entry: entry[:3])
    return [entry[3] for entry in ranked[: max(0, int(top_k))]]


def _fact_marker(importance: int) -> str:
    if importance >= 8:
        return "!!"
    if importance >= 5:
        return "*"
    return "-"


@dataclass(slots=True)
class LorebookEntry:
    keys: List[str]
    content: str


@dataclass(slots=True)
class ContextPreview:
    sections: List[ContextSection]
    total_tokens: int
    max_tokens: int
    warnings: List[str] = field(default_factory=list)


class _RetrievalStore(Protocol):
    async def get_facts_by_conversation(self, conversation_id: str) -> list[Fact]: ...

    async def get_chunks_by_conversation(self, conversation_id: str) -> list[VectorChunk]: ...

    async def insert_chunk(self, chunk: VectorChunk) -> None: ...

    async def touch_facts(self, fact_ids: Iterable[str], *, now: float | None = None) -> int: ...


class ContextAssembler:
    """Builds the per-turn memory sections under a token budget."""

    def __init__(
        self,
        store: _RetrievalStore,
        embedder: Embedder,
        summarizer: HierarchicalSummarizer,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.summarizer = summarizer
        self.tokenizer = summarizer.tokenizer
        self.clock = clock
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def _schedule_touch(self, fact_ids: list[str], now: float) -> None:
        task = asyncio.create_task(self.store.touch_facts(fact_ids, now=now), name="memory-touch-facts")
        self._background_tasks.add(task)

        def _drop_task(done: asyncio.Task[Any]) -> None:
            self._background_tasks.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.debug("Fact access update failed: %s", exc)

        task.add_done_callback(_drop_task)

    async def drain(self) -> None:
        pending = list(self._background_tasks)
        if pending:
            with contextlib.suppress(Exception):
                await asyncio.gather(*pending, return_exceptions=True)

    async def retrieve_relevant_context(
        self,
        query_text: str,
        conversation_id: str,
        token_budget: int,
        *,
        top_k_facts: int = 10,
        top_k_chunks: int = 5,
        include_summary: bool = True,
        active_branch_ids: Iterable[str] | None = None,
        min_confidence: float = 0.0,
        now: float | None = None,
    ) -> list[ContextSection]:
        stamp = float(now if now is not None else self.clock())
        scope = BranchScope(active_branch_ids)
        sections: list[ContextSection] = []
        remaining = int(token_budget)

        query = await self.embedder.embed(query_text)

        if include_summary:
            summary_budget = min(math.floor(token_budget * SUMMARY_BUDGET_RATIO), SUMMARY_BUDGET_CAP)
            summary_text = await self.summarizer.get_best_context_summary(conversation_id, summary_budget)
            if summary_text:
                tokens = self.tokenizer.count_tokens(summary_text)
                sections.append(
                    ContextSection(
                        priority=1,
                        content=summary_text,
                        token_cost=tokens,
                        label="Story Summary",
                        type=ContextSectionType.SUMMARY,
                    )
                )
                remaining -= tokens

        facts = [
            fact
            for fact in await self.store.get_facts_by_conversation(conversation_id)
            if fact.active and scope.is_in_scope(fact.branch_path)
        ]
        if facts and remaining > MIN_SECTION_BUDGET:
            ranked = rank_facts(query, facts, top_k_facts, stamp)
            if ranked:
                confidence = sum(item.score for item in ranked) / len(ranked)
                if confidence >= min_confidence:
                    lines = [f"{_fact_marker(item.fact.importance)} {item.fact.text}" for item in ranked]
                    content = "Relevant Past Events:\n" + "\n".join(lines)
                    tokens = self.tokenizer.count_tokens(content)
                    if tokens <= remaining:
                        sections.append(
                            ContextSection(
                                priority=2,
                                content=content,
                                token_cost=tokens,
                                label=f"Facts ({len(ranked)})",
                                type=ContextSectionType.FACT,
                                confidence=confidence,
                            )
                        )
                        remaining -= tokens
                        self._schedule_touch([item.fact.id for item in ranked], stamp)

        chunks = [
            chunk
            for chunk in await self.store.get_chunks_by_conversation(conversation_id)
            if scope.is_in_scope(chunk.branch_path)
        ]
        if chunks and remaining > MIN_SECTION_BUDGET:
            matches = find_top_k(query, chunks, top_k_chunks, CHUNK_SCORE_FLOOR)
            if matches:
                confidence = sum(item.score for item in matches) / len(matches)
                if confidence >= min_confidence:
                    content = "Related Past Scenes:\n" + "\n---\n".join(item.item.text for item in matches)
                    tokens = self.tokenizer.count_tokens(content)
                    if tokens <= remaining:
                        sections.append(
                            ContextSection(
                                priority=3,
                                content=content,
                                token_cost=tokens,
                                label=f"Scenes ({len(matches)})",
                                type=ContextSectionType.MEMORY,
                                confidence=confidence,
                            )
                        )
                        remaining -= tokens

        sections.sort(key=lambda section: section.priority)
        return sections

    async def index_message_chunk(
        self,
        messages: Sequence[ChatMessage],
        conversation_id: str,
        summary_text: str,
        *,
        characters: Sequence[str] = (),
        location: str = "",
        importance: int = 5,
        tags: Sequence[str] = (),
        branch_path: Sequence[str] = (),
    ) -> VectorChunk:
        stamp = self.clock()
        chunk = VectorChunk(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            member_message_ids=[message.id for message in messages],
            text=summary_text,
            embedding=await self.embedder.embed(summary_text),
            metadata=ChunkMetadata(
                characters=list(characters),
                location=location,
                importance=clamp_importance(importance),
                tags=list(tags),
                timestamp=stamp,
            ),
            branch_path=list(branch_path),
            created_at=stamp,
        )
        await self.store.insert_chunk(chunk)
        return chunk

    def build_context_preview(
        self,
        system_prompt: str,
        rag_sections: Sequence[ContextSection],
        history: Sequence[ChatMessage],
        post_history: str | None,
        max_context_tokens: int,
        max_output_tokens: int,
        lorebook_entries: Sequence[LorebookEntry] = (),
    ) -> ContextPreview:
        """Everything that would be sent to the model, with token costs and warnings.

        Lorebook entries are shown for visibility only; their text is already
        part of the system prompt, so they do not add to the total.
        """
        count = self.tokenizer.count_tokens
        sections = [
            ContextSection(
                priority=0,
                content=system_prompt,
                token_cost=count(system_prompt),
                label="System Prompt",
                type=ContextSectionType.SYSTEM,
            )
        ]
        warnings: list[str] = []
        counted = sections[0].token_cost

        if lorebook_entries:
            lore_text = "\n".join(
                f"[About {entry.keys[0] if entry.keys else 'entry'}: {entry.content}]" for entry in lorebook_entries
            )
            lore_tokens = count(lore_text)
            sections.append(
                ContextSection(
                    priority=1,
                    content=lore_text,
                    token_cost=lore_tokens,
                    label=f"Lorebook ({len(lorebook_entries)} entries)",
                    type=ContextSectionType.LOREBOOK,
                )
            )
            warnings.append(f"Lorebook tokens ({lore_tokens}) are included within the system prompt")

        for section in rag_sections:
            sections.append(section)
            counted += section.token_cost

        history_text = "\n\n".join(f"[{message.role}]: {message.content}" for message in history)
        history_tokens = count(history_text)
        sections.append(
            ContextSection(
                priority=10,
                content=history_text,
                token_cost=history_tokens,
                label=f"Chat History ({len(history)} msgs)",
                type=ContextSectionType.HISTORY,
            )
        )
        counted += history_tokens

        if post_history:
            post_tokens = count(post_history)
            sections.append(
                ContextSection(
                    priority=11,
                    content=post_history,
                    token_cost=post_tokens,
                    label="Post-History Instructions",
                    type=ContextSectionType.POST_HISTORY,
                )
            )
            counted += post_tokens

        total = counted + max(0, int(max_output_tokens))
        if total > max_context_tokens:
            warnings.append(
                f"Context exceeds limit: {total} / {max_context_tokens} tokens "
                f"(including {max_output_tokens} reserved for output)"
            )
        elif max_context_tokens > 0 and total / max_context_tokens > 0.9:
            warnings.append(f"Context is at {round(total / max_context_tokens * 100)}% capacity")

        return ContextPreview(sections=sections, total_tokens=total, max_tokens=max_context_tokens, warnings=warnings)

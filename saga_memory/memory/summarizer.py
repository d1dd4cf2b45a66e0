"""Three-level summary pyramid over a conversation.

L0 summaries cover fixed-size chunks of raw messages, L1 summaries cover
batches of L0s and L2 summaries cover batches of L1s. Coverage is tracked
through ``message_range`` for L0 and through ``child_ids`` above that.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Protocol, Sequence

from ..prompts.memory import build_l0_prompt, build_l1_prompt, build_l2_prompt, summary_system_prompt
from .embedding import Embedder
from .models import ChatMessage, ChunkMetadata, Summary, SummaryLevel, VectorChunk


logger = logging.getLogger("saga_memory")

DEFAULT_CHUNK_SIZE = 10
DEFAULT_L1_THRESHOLD = 5
DEFAULT_L2_THRESHOLD = 3
_RECENT_SECTION_MIN_TOKENS = 100
_L1_RECENT_LIMIT = 3
_DUPLICATE_OVERLAP = 0.6

__all__ = [
    "CompactionReport",
    "HierarchicalSummarizer",
    "SummaryDraft",
    "SummaryHierarchy",
    "build_l0_prompt",
    "build_l1_prompt",
    "build_l2_prompt",
    "covered_message_count",
    "get_l0_summaries_for_l1",
    "get_l1_summaries_for_l2",
    "get_next_chunk_to_summarize",
    "get_unsummarized_messages",
    "parse_summarization_response",
    "select_context_summary",
    "should_create_l0_summary",
    "should_create_l1_summary",
    "should_create_l2_summary",
]


@dataclass(slots=True)
class SummaryDraft:
    summary: str
    key_facts: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SummaryHierarchy:
    l0: List[Summary]
    l1: List[Summary]
    l2: List[Summary]
    total_messages: int


@dataclass(slots=True)
class CompactionReport:
    l0_created: int = 0
    l1_created: int = 0
    l2_created: int = 0
    stopped_early: bool = False
    error: str = ""

    @property
    def created(self) -> int:
        return self.l0_created + self.l1_created + self.l2_created


def _of_level(summaries: Sequence[Summary], level: SummaryLevel) -> list[Summary]:
    return [summary for summary in summaries if summary.level == level]


def covered_message_count(summaries: Sequence[Summary]) -> int:
    l0s = _of_level(summaries, SummaryLevel.L0)
    if not l0s:
        return 0
    return max(summary.message_range[1] for summary in l0s) + 1


def should_create_l0_summary(
    message_count: int,
    summaries: Sequence[Summary],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> bool:
    if message_count <= 0:
        return False
    return message_count - covered_message_count(summaries) >= max(1, chunk_size)


def _uncovered(summaries: Sequence[Summary], child_level: SummaryLevel) -> list[Summary]:
    parent_level = SummaryLevel(int(child_level) + 1)
    claimed = {child_id for parent in _of_level(summaries, parent_level) for child_id in parent.child_ids}
    children = sorted(_of_level(summaries, child_level), key=lambda summary: summary.message_range[0])
    return [summary for summary in children if summary.id not in claimed]


def should_create_l1_summary(summaries: Sequence[Summary], threshold: int = DEFAULT_L1_THRESHOLD) -> bool:
    return len(_uncovered(summaries, SummaryLevel.L0)) >= max(1, threshold)


def should_create_l2_summary(summaries: Sequence[Summary], threshold: int = DEFAULT_L2_THRESHOLD) -> bool:
    return len(_uncovered(summaries, SummaryLevel.L1)) >= max(1, threshold)


def get_unsummarized_messages(messages: Sequence[ChatMessage], summaries: Sequence[Summary]) -> list[ChatMessage]:
    ordered = sorted(messages, key=lambda message: message.created_at)
    return ordered[covered_message_count(summaries) :]


def get_next_chunk_to_summarize(
    messages: Sequence[ChatMessage],
    summaries: Sequence[Summary],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[ChatMessage] | None:
    size = max(1, chunk_size)
    pending = get_unsummarized_messages(messages, summaries)
    if len(pending) < size:
        return None
    return pending[:size]


def get_l0_summaries_for_l1(
    summaries: Sequence[Summary],
    threshold: int = DEFAULT_L1_THRESHOLD,
) -> list[Summary] | None:
    pending = _uncovered(summaries, SummaryLevel.L0)
    size = max(1, threshold)
    return pending[:size] if len(pending) >= size else None


def get_l1_summaries_for_l2(
    summaries: Sequence[Summary],
    threshold: int = DEFAULT_L2_THRESHOLD,
) -> list[Summary] | None:
    pending = _uncovered(summaries, SummaryLevel.L1)
    size = max(1, threshold)
    return pending[:size] if len(pending) >= size else None


def _strip_reasoning(text: str) -> str:
    return re.sub(r"<think>.*?</think>", "", text or "", flags=re.IGNORECASE | re.DOTALL).strip()


def _draft_from_json(raw: str) -> SummaryDraft | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    summary = parsed.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        return None
    key_facts = parsed.get("keyFacts", parsed.get("key_facts"))
    facts = [item.strip() for item in key_facts if isinstance(item, str) and item.strip()] if isinstance(key_facts, list) else []
    return SummaryDraft(summary=summary.strip(), key_facts=facts)


def parse_summarization_response(text: str) -> SummaryDraft | None:
    cleaned = _strip_reasoning(text)
    if not cleaned:
        return None

    candidates = [cleaned]
    fenced = re.search(r"```(?:json)?\s*(.*?)```", cleaned, flags=re.IGNORECASE | re.DOTALL)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start >= 0 and end > start:
        candidates.append(cleaned[start : end + 1])

    for candidate in candidates:
        draft = _draft_from_json(candidate)
        if draft is not None:
            return draft
    return SummaryDraft(summary=cleaned, key_facts=[])


def _content_words(text: str) -> set[str]:
    return {word for word in text.casefold().split() if len(word) > 3}


def word_jaccard(a: str, b: str) -> float:
    words_a = _content_words(a)
    words_b = _content_words(b)
    if not words_a or not words_b:
        return 0.0
    intersection = len(words_a & words_b)
    union = len(words_a | words_b)
    return intersection / union if union else 0.0


def _dedupe_contents(summaries: Sequence[Summary]) -> list[str]:
    kept: list[str] = []
    for summary in summaries:
        if any(word_jaccard(existing, summary.content) > _DUPLICATE_OVERLAP for existing in kept):
            continue
        kept.append(summary.content)
    return kept


def _newest_first(summaries: Sequence[Summary]) -> list[Summary]:
    # Reversing first makes equal timestamps come out latest-inserted first.
    return sorted(reversed(list(summaries)), key=lambda summary: summary.created_at, reverse=True)


class _TokenCounter(Protocol):
    def count_tokens(self, text: str) -> int: ...

    def truncate_to_token_budget(self, text: str, max_tokens: int) -> str: ...


class _SectionWriter:
    def __init__(self, tokenizer: _TokenCounter, max_tokens: int) -> None:
        self.tokenizer = tokenizer
        self.max_tokens = max_tokens
        self.lines: list[str] = []

    def _fits(self, lines: Sequence[str]) -> bool:
        return self.tokenizer.count_tokens("\n".join(lines)) <= self.max_tokens

    def remaining(self) -> int:
        return self.max_tokens - self.tokenizer.count_tokens("\n".join(self.lines))

    def add_section(self, header: str, items: Sequence[str], *, truncate_first: bool = False) -> int:
        section = [*self.lines, "", header] if self.lines else [header]
        added = 0
        for item in items:
            candidate = [*section, item]
            if self._fits(candidate):
                section = candidate
                added += 1
                continue
            if added == 0 and truncate_first:
                shortened = self._truncate_into(section, item)
                if shortened:
                    section.append(shortened)
                    added += 1
            break
        if added:
            self.lines = section
        return added

    def _truncate_into(self, section: list[str], item: str) -> str:
        budget = self.max_tokens - self.tokenizer.count_tokens("\n".join([*section, ""]))
        while budget > 0:
            shortened = self.tokenizer.truncate_to_token_budget(item, budget).strip()
            if shortened and self._fits([*section, shortened]):
                return shortened
            budget -= 1
        return ""

    def render(self) -> str:
        return "\n".join(self.lines)


def select_context_summary(summaries: Sequence[Summary], max_tokens: int, tokenizer: _TokenCounter) -> str:
    """Best summary text for a prompt, never longer than ``max_tokens``."""
    if max_tokens <= 0 or not summaries:
        return ""

    by_id = {summary.id: summary for summary in summaries}
    l0s = _of_level(summaries, SummaryLevel.L0)
    l1s = _newest_first(_of_level(summaries, SummaryLevel.L1))
    l2s = _newest_first(_of_level(summaries, SummaryLevel.L2))
    writer = _SectionWriter(tokenizer, max_tokens)

    if l2s:
        writer.add_section("Story Arc:", [summary.content for summary in l2s], truncate_first=True)
        covered: set[str] = set()
        for l2 in l2s:
            for l1_id in l2.child_ids:
                l1 = by_id.get(l1_id)
                if l1 is not None:
                    covered.update(l1.child_ids)
        recent = _newest_first([summary for summary in l0s if summary.id not in covered])
        if recent and writer.lines and writer.remaining() >= _RECENT_SECTION_MIN_TOKENS:
            writer.add_section("Recent Events:", _dedupe_contents(recent))
        return writer.render()

    if l1s:
        writer.add_section("Story So Far:", [summary.content for summary in l1s], truncate_first=True)
        covered = {child_id for l1 in l1s for child_id in l1.child_ids}
        recent = _newest_first([summary for summary in l0s if summary.id not in covered])[:_L1_RECENT_LIMIT]
        if recent and writer.lines and writer.remaining() >= _RECENT_SECTION_MIN_TOKENS:
            writer.add_section("Recent:", _dedupe_contents(recent))
        return writer.render()

    writer.add_section("Recent Events:", _dedupe_contents(_newest_first(l0s)), truncate_first=True)
    return writer.render()


def build_summary_hierarchy(summaries: Sequence[Summary]) -> SummaryHierarchy:
    def by_start(level: SummaryLevel) -> list[Summary]:
        return sorted(_of_level(summaries, level), key=lambda summary: summary.message_range[0])

    total = max((summary.message_range[1] + 1 for summary in summaries), default=0)
    return SummaryHierarchy(
        l0=by_start(SummaryLevel.L0),
        l1=by_start(SummaryLevel.L1),
        l2=by_start(SummaryLevel.L2),
        total_messages=total,
    )


class _SummaryStore(Protocol):
    async def insert_summary(self, summary: Summary, *, chunk: VectorChunk | None = None) -> None: ...

    async def get_summaries_by_conversation(self, conversation_id: str) -> list[Summary]: ...


class _ChatBackend(Protocol):
    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str: ...


class HierarchicalSummarizer:
    def __init__(
        self,
        store: _SummaryStore,
        embedder: Embedder,
        llm: _ChatBackend | Any,
        tokenizer: _TokenCounter,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        l1_threshold: int = DEFAULT_L1_THRESHOLD,
        l2_threshold: int = DEFAULT_L2_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.llm = llm
        self.tokenizer = tokenizer
        self.chunk_size = max(1, int(chunk_size))
        self.l1_threshold = max(1, int(l1_threshold))
        self.l2_threshold = max(1, int(l2_threshold))
        self.clock = clock

    async def create_summary(
        self,
        conversation_id: str,
        level: SummaryLevel,
        content: str,
        key_facts: Sequence[str],
        message_range: tuple[int, int],
        child_ids: Sequence[str] = (),
        *,
        chunk: VectorChunk | None = None,
    ) -> Summary:
        embedding = await self.embedder.embed(content)
        summary = Summary(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            level=SummaryLevel(level),
            content=content.strip(),
            key_facts=list(key_facts),
            message_range=(int(message_range[0]), int(message_range[1])),
            child_ids=list(child_ids),
            embedding=embedding,
            created_at=self.clock(),
        )
        if chunk is not None and not chunk.embedding:
            chunk.embedding = list(embedding)
        await self.store.insert_summary(summary, chunk=chunk)
        return summary

    async def _generate(self, level: SummaryLevel, prompt: str) -> tuple[SummaryDraft | None, str]:
        messages = [
            {"role": "system", "content": summary_system_prompt(level)},
            {"role": "user", "content": prompt},
        ]
        try:
            raw = await self.llm.chat(messages)
        except Exception as exc:
            logger.warning("L%s summarization request failed: %s", int(level), exc)
            return None, str(exc)[:220]
        draft = parse_summarization_response(raw)
        if draft is None:
            logger.warning("L%s summarization returned no usable text", int(level))
            return None, "empty summary response"
        return draft, ""

    async def compact(
        self,
        conversation_id: str,
        messages: Sequence[ChatMessage],
        character_name: str,
        user_name: str,
        *,
        branch_path: Sequence[str] = (),
    ) -> CompactionReport:
        """Run one scheduling pass: every eligible L0, then L1, then L2 step."""
        report = CompactionReport()
        summaries = list(await self.store.get_summaries_by_conversation(conversation_id))

        while True:
            chunk = get_next_chunk_to_summarize(messages, summaries, self.chunk_size)
            if chunk is None:
                break
            start = covered_message_count(summaries)
            draft, error = await self._generate(
                SummaryLevel.L0,
                build_l0_prompt(chunk, character_name, user_name),
            )
            if draft is None:
                report.stopped_early, report.error = True, error
                return report
            now = self.clock()
            scene = VectorChunk(
                id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                member_message_ids=[message.id for message in chunk],
                text=draft.summary,
                metadata=ChunkMetadata(
                    characters=[name for name in (character_name, user_name) if name],
                    importance=5,
                    timestamp=now,
                ),
                branch_path=list(branch_path),
                created_at=now,
            )
            summaries.append(
                await self.create_summary(
                    conversation_id,
                    SummaryLevel.L0,
                    draft.summary,
                    draft.key_facts,
                    (start, start + len(chunk) - 1),
                    chunk=scene,
                )
            )
            report.l0_created += 1

        for level, select, build, threshold in (
            (SummaryLevel.L1, get_l0_summaries_for_l1, build_l1_prompt, self.l1_threshold),
            (SummaryLevel.L2, get_l1_summaries_for_l2, build_l2_prompt, self.l2_threshold),
        ):
            while True:
                batch = select(summaries, threshold)
                if batch is None:
                    break
                draft, error = await self._generate(level, build(batch))
                if draft is None:
                    report.stopped_early, report.error = True, error
                    return report
                summaries.append(
                    await self.create_summary(
                        conversation_id,
                        level,
                        draft.summary,
                        draft.key_facts,
                        (
                            min(item.message_range[0] for item in batch),
                            max(item.message_range[1] for item in batch),
                        ),
                        [item.id for item in batch],
                    )
                )
                if level == SummaryLevel.L1:
                    report.l1_created += 1
                else:
                    report.l2_created += 1

        if report.created:
            logger.info(
                "Compacted conversation %s: L0=%s L1=%s L2=%s",
                conversation_id,
                report.l0_created,
                report.l1_created,
                report.l2_created,
            )
        return report

    async def get_best_context_summary(self, conversation_id: str, max_tokens: int = 300) -> str:
        if max_tokens <= 0:
            return ""
        summaries = await self.store.get_summaries_by_conversation(conversation_id)
        return select_context_summary(summaries, max_tokens, self.tokenizer)

    async def get_summary_hierarchy(self, conversation_id: str) -> SummaryHierarchy:
        return build_summary_hierarchy(await self.store.get_summaries_by_conversation(conversation_id))

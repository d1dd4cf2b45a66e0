from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Collection, Iterable, List, Protocol, Sequence

from ..prompts.memory import build_fact_extraction_prompt, build_fact_extraction_system_prompt
from .embedding import Embedder, cosine_similarity
from .models import Fact, FactCategory, WorldState, clamp_importance


logger = logging.getLogger("saga_memory")

_HIGH_IMPORTANCE = (
    re.compile(r"\b(kill|die|death|murder|betray|destroy|save|rescue|discover|reveal|secret)\w*", re.IGNORECASE),
    re.compile(r"\b(tuer|mourir|mort|trahir|détruire|sauver|découvrir|révéler|secret)\w*", re.IGNORECASE),
)
_MEDIUM_IMPORTANCE = (
    re.compile(r"\b(attack|fight|battle|find|give|take|steal|buy|sell|enchant|curse)\w*", re.IGNORECASE),
    re.compile(r"\b(attaquer|combattre|trouver|donner|prendre|voler|acheter|vendre)\w*", re.IGNORECASE),
)
_LOW_IMPORTANCE = (
    re.compile(r"\b(say|ask|reply|nod|smile|laugh|walk|look|think)\w*", re.IGNORECASE),
    re.compile(r"\b(dire|demander|répondre|sourire|marcher|regarder|penser)\w*", re.IGNORECASE),
)


def heuristic_importance(text: str) -> int:
    """Keyword-based importance used when the model gives none."""
    score = 3
    if any(pattern.search(text or "") for pattern in _HIGH_IMPORTANCE):
        score = max(score, 7)
    if any(pattern.search(text or "") for pattern in _MEDIUM_IMPORTANCE):
        score = max(score, 5)
    if any(pattern.search(text or "") for pattern in _LOW_IMPORTANCE):
        score = max(score, 2)
    if len(text or "") > 500:
        score = min(10, score + 1)
    if len(text or "") > 1000:
        score = min(10, score + 1)
    return score


def _first_json_array(text: str) -> list[Any] | None:
    start = text.find("[")
    end = text.rfind("]")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, list) else None


def parse_fact_extraction_response(
    text: str,
    conversation_id: str,
    message_id: str,
    *,
    branch_path: Sequence[str] = (),
    now: float | None = None,
) -> list[Fact]:
    cleaned = re.sub(r"<think>.*?</think>\s*", "", text or "", flags=re.IGNORECASE | re.DOTALL)
    entries = _first_json_array(cleaned)
    if entries is None:
        if cleaned.strip():
            logger.debug("Fact extraction response has no JSON array: %.120s", cleaned)
        return []

    stamp = float(now if now is not None else time.time())
    facts: list[Fact] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        fact_text = str(entry.get("fact") or "").strip()
        if not fact_text or not entry.get("category") or not entry.get("importance"):
            continue
        entities = entry.get("entities")
        facts.append(
            Fact(
                id="",
                conversation_id=conversation_id,
                source_message_id=message_id,
                text=fact_text,
                category=FactCategory.parse(entry.get("category")),
                importance=clamp_importance(entry.get("importance"), default=heuristic_importance(fact_text)),
                active=True,
                branch_path=list(branch_path),
                timestamp=stamp,
                last_accessed_at=stamp,
                access_count=0,
                related_entities=[str(item) for item in entities if str(item).strip()]
                if isinstance(entities, list)
                else [],
            )
        )
    return facts


def _word_overlap(candidate: str, existing: str) -> float:
    words = candidate.casefold().split()
    if not words:
        return 0.0
    existing_words = set(existing.casefold().split())
    return sum(1 for word in words if word in existing_words) / len(words)


def deduplicate_facts(new_facts: Iterable[Fact], existing_facts: Sequence[Fact]) -> list[Fact]:
    kept: list[Fact] = []
    for candidate in new_facts:
        lowered = candidate.text.casefold()
        duplicate = False
        for existing in existing_facts:
            if existing.text.casefold() == lowered:
                duplicate = True
                break
            existing_entities = {entity.casefold() for entity in existing.related_entities}
            overlap = sum(1 for entity in candidate.related_entities if entity.casefold() in existing_entities)
            if (
                overlap >= 2
                and existing.category == candidate.category
                and _word_overlap(candidate.text, existing.text) > 0.6
            ):
                duplicate = True
                break
        if not duplicate:
            kept.append(candidate)
    return kept


def find_related_fact_clusters(
    facts: Sequence[Fact],
    threshold: float = 0.7,
    *,
    seed_ids: Collection[str] | None = None,
) -> list[list[Fact]]:
    """Single-link clusters of facts whose embeddings are at least ``threshold`` similar.

    With ``seed_ids`` only the clusters reachable from those facts are built, comparing each
    reached fact against the rest instead of every pair.
    """
    embedded = [fact for fact in facts if fact.embedding]
    if len(embedded) < 2:
        return []

    parent = list(range(len(embedded)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    def union(i: int, j: int) -> None:
        root_i, root_j = find(i), find(j)
        if root_i != root_j:
            parent[max(root_i, root_j)] = min(root_i, root_j)

    if seed_ids is None:
        reached = set(range(len(embedded)))
        for i in range(len(embedded)):
            for j in range(i + 1, len(embedded)):
                if cosine_similarity(embedded[i].embedding, embedded[j].embedding) >= threshold:
                    union(i, j)
    else:
        wanted = set(seed_ids)
        pending = [index for index, fact in enumerate(embedded) if fact.id in wanted]
        reached = set(pending)
        while pending:
            i = pending.pop()
            for j in range(len(embedded)):
                if j == i or find(i) == find(j):
                    continue
                if cosine_similarity(embedded[i].embedding, embedded[j].embedding) >= threshold:
                    union(i, j)
                    if j not in reached:
                        reached.add(j)
                        pending.append(j)

    groups: dict[int, list[Fact]] = {}
    for index in sorted(reached):
        groups.setdefault(find(index), []).append(embedded[index])
    # Roots are the smallest member index, so sorting them keeps earliest-member order.
    return [groups[root] for root in sorted(groups) if len(groups[root]) >= 2]


def merge_fact_cluster(cluster: Sequence[Fact], *, new_id: str) -> Fact:
    if not cluster:
        raise ValueError("cannot merge an empty fact cluster")

    ranked = sorted(cluster, key=lambda fact: (-fact.importance, -fact.timestamp))
    primary = ranked[0]

    primary_words = set(primary.text.casefold().split())
    additional: list[str] = []
    for fact in ranked[1:]:
        words = fact.text.casefold().split()
        if not words:
            continue
        novel = [word for word in words if word not in primary_words and len(word) > 3]
        if len(novel) / len(words) > 0.2:
            additional.append(fact.text)

    text = primary.text
    if additional:
        text += ". Also: " + "; ".join(additional)

    entities: list[str] = []
    seen: set[str] = set()
    for fact in cluster:
        for entity in fact.related_entities:
            key = entity.casefold()
            if key not in seen:
                seen.add(key)
                entities.append(entity)

    return Fact(
        id=new_id,
        conversation_id=primary.conversation_id,
        source_message_id=primary.source_message_id,
        text=text,
        category=primary.category,
        importance=max(fact.importance for fact in cluster),
        embedding=[],
        active=any(fact.active for fact in cluster),
        branch_path=list(primary.branch_path),
        timestamp=max(fact.timestamp for fact in cluster),
        last_accessed_at=max(fact.last_accessed_at for fact in cluster),
        access_count=sum(fact.access_count for fact in cluster),
        related_entities=entities,
    )


@dataclass(slots=True)
class FactMergeReport:
    cluster_count: int = 0
    merged_fact_ids: List[str] = field(default_factory=list)
    deleted_ids: List[str] = field(default_factory=list)


class _FactReplaceStore(Protocol):
    async def get_facts_by_conversation(self, conversation_id: str) -> list[Fact]: ...

    async def replace_facts(self, new_fact: Fact, superseded_ids: Sequence[str]) -> int: ...


async def merge_related_facts(
    store: _FactReplaceStore,
    embedder: Embedder,
    conversation_id: str,
    threshold: float = 0.7,
    *,
    seed_ids: Collection[str] | None = None,
) -> FactMergeReport:
    facts = await store.get_facts_by_conversation(conversation_id)
    clusters = find_related_fact_clusters(facts, threshold, seed_ids=seed_ids)
    report = FactMergeReport(cluster_count=len(clusters))
    for cluster in clusters:
        merged = merge_fact_cluster(cluster, new_id=uuid.uuid4().hex)
        merged.embedding = await embedder.embed(merged.text)
        await store.replace_facts(merged, [fact.id for fact in cluster])
        report.merged_fact_ids.append(merged.id)
        report.deleted_ids.extend(fact.id for fact in cluster)
    if clusters:
        logger.info(
            "Merged %s fact clusters in conversation %s (%s facts replaced)",
            len(clusters),
            conversation_id,
            len(report.deleted_ids),
        )
    return report


@dataclass(slots=True)
class ExtractionDiagnostics:
    backend_name: str
    model_name: str
    latency_ms: int
    llm_ok: bool
    parsed: bool
    error: str = ""
    llm_fact_count: int = 0
    returned_fact_count: int = 0


@dataclass(slots=True)
class ExtractionResult:
    facts: List[Fact]
    diagnostics: ExtractionDiagnostics | None = None


class _ChatBackend(Protocol):
    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str: ...


class FactExtractor:
    """Extracts atomic world facts from one roleplay message via a chat LLM."""

    def __init__(
        self,
        llm: _ChatBackend | Any,
        *,
        custom_categories: Iterable[str] = (),
        candidate_limit: int = 12,
    ) -> None:
        self.llm = llm
        self.custom_categories = [str(item) for item in custom_categories if str(item).strip()]
        self.candidate_limit = max(1, int(candidate_limit))

    @property
    def backend_name(self) -> str:
        raw = str(getattr(self.llm, "backend_name", "") or "").strip().lower()
        return raw or "llm"

    @property
    def model_name(self) -> str:
        return str(getattr(self.llm, "model", "") or "").strip()

    @staticmethod
    def _sanitize_text(text: str) -> str:
        return re.sub(r"\s+", " ", text or "").strip()[:4000]

    async def extract(
        self,
        message_text: str,
        *,
        conversation_id: str,
        message_id: str,
        world_state: WorldState | None = None,
        character_name: str = "Character",
        user_name: str = "Player",
        branch_path: Sequence[str] = (),
        now: float | None = None,
    ) -> ExtractionResult:
        text = self._sanitize_text(message_text)
        started = time.perf_counter()
        if len(text) < 4:
            return ExtractionResult(facts=[])

        messages = [
            {"role": "system", "content": build_fact_extraction_system_prompt(self.custom_categories)},
            {
                "role": "user",
                "content": build_fact_extraction_prompt(text, world_state, character_name, user_name),
            },
        ]
        raw = ""
        llm_ok = False
        error_text = ""
        try:
            raw = await self.llm.chat(messages, temperature=0.1, max_output_tokens=800)
            llm_ok = True
        except Exception as exc:
            error_text = str(exc)[:220]
            logger.warning("Fact extraction failed for message %s: %s", message_id, error_text)

        facts = (
            parse_fact_extraction_response(
                raw,
                conversation_id,
                message_id,
                branch_path=branch_path,
                now=now,
            )
            if llm_ok
            else []
        )
        diagnostics = ExtractionDiagnostics(
            backend_name=self.backend_name,
            model_name=self.model_name,
            latency_ms=max(0, int((time.perf_counter() - started) * 1000)),
            llm_ok=llm_ok,
            parsed=bool(facts) or raw.strip().startswith("["),
            error=error_text,
            llm_fact_count=len(facts),
            returned_fact_count=len(facts[: self.candidate_limit]),
        )
        return ExtractionResult(facts=facts[: self.candidate_limit], diagnostics=diagnostics)

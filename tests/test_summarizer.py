from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from saga_memory.memory.embedding import Embedder  # noqa: E402
from saga_memory.memory.models import ChatMessage, Summary, SummaryLevel  # noqa: E402
from saga_memory.memory.store import MemoryStore  # noqa: E402
from saga_memory.memory.summarizer import (  # noqa: E402
    HierarchicalSummarizer,
    build_summary_hierarchy,
    covered_message_count,
    get_l0_summaries_for_l1,
    get_next_chunk_to_summarize,
    get_unsummarized_messages,
    parse_summarization_response,
    select_context_summary,
    should_create_l0_summary,
    should_create_l1_summary,
    should_create_l2_summary,
)


class _WordTokenizer:
    def count_tokens(self, text: str) -> int:
        return len(text.split())

    def truncate_to_token_budget(self, text: str, max_tokens: int) -> str:
        return " ".join(text.split()[: max(0, max_tokens)])


class _SummaryLLM:
    def __init__(self, fail_on_call: int | None = None) -> None:
        self.fail_on_call = fail_on_call
        self.calls: list[list[dict[str, str]]] = []

    async def chat(self, messages, temperature=None, max_output_tokens=None):  # type: ignore[no-untyped-def]
        self.calls.append(messages)
        number = len(self.calls)
        if self.fail_on_call is not None and number >= self.fail_on_call:
            raise RuntimeError("model offline")
        return json.dumps({"summary": f"Summary number {number}", "keyFacts": [f"fact {number}"]})


def _messages(count: int) -> list[ChatMessage]:
    return [
        ChatMessage(
            id=f"m{index}",
            role="user" if index % 2 == 0 else "assistant",
            content=f"message {index}",
            created_at=float(index),
        )
        for index in range(count)
    ]


def _summary(
    summary_id: str,
    level: SummaryLevel,
    content: str,
    message_range: tuple[int, int],
    child_ids: list[str] | None = None,
    created_at: float = 0.0,
) -> Summary:
    return Summary(
        id=summary_id,
        conversation_id="c1",
        level=level,
        content=content,
        message_range=message_range,
        child_ids=child_ids or [],
        created_at=created_at,
    )


def _summarizer(store: MemoryStore, llm: _SummaryLLM, **kwargs) -> HierarchicalSummarizer:  # type: ignore[no-untyped-def]
    return HierarchicalSummarizer(store, Embedder("", dimension=32), llm, _WordTokenizer(), **kwargs)


def test_l0_scheduling_walks_fixed_chunks() -> None:
    messages = _messages(25)
    summaries: list[Summary] = []

    assert should_create_l0_summary(25, summaries, 10) is True
    first = get_next_chunk_to_summarize(messages, summaries, 10)
    assert first is not None and [message.id for message in first] == [f"m{index}" for index in range(10)]

    summaries.append(_summary("s0", SummaryLevel.L0, "first", (0, 9)))
    assert covered_message_count(summaries) == 10
    assert should_create_l0_summary(25, summaries, 10) is True
    second = get_next_chunk_to_summarize(messages, summaries, 10)
    assert second is not None and second[0].id == "m10" and second[-1].id == "m19"

    summaries.append(_summary("s1", SummaryLevel.L0, "second", (10, 19)))
    assert should_create_l0_summary(25, summaries, 10) is False
    assert get_next_chunk_to_summarize(messages, summaries, 10) is None
    assert [message.id for message in get_unsummarized_messages(messages, summaries)] == [
        f"m{index}" for index in range(20, 25)
    ]


def test_l0_trigger_boundaries() -> None:
    assert should_create_l0_summary(0, [], 10) is False
    assert should_create_l0_summary(9, [], 10) is False
    assert should_create_l0_summary(10, [], 10) is True
    assert should_create_l0_summary(19, [_summary("s0", SummaryLevel.L0, "x", (0, 9))], 10) is False


def test_l1_and_l2_scheduling_respect_child_coverage() -> None:
    l0s = [_summary(f"a{index}", SummaryLevel.L0, f"chapter {index}", (index * 10, index * 10 + 9)) for index in range(5)]

    assert should_create_l1_summary(l0s, 5) is True
    batch = get_l0_summaries_for_l1(list(reversed(l0s)), 5)
    assert batch is not None and [summary.id for summary in batch] == ["a0", "a1", "a2", "a3", "a4"]

    l1 = _summary("b0", SummaryLevel.L1, "section", (0, 49), [summary.id for summary in l0s])
    extra = _summary("a5", SummaryLevel.L0, "chapter 5", (50, 59))
    assert should_create_l1_summary([*l0s, l1, extra], 5) is False
    assert get_l0_summaries_for_l1([*l0s, l1, extra], 5) is None

    l1s = [_summary(f"b{index}", SummaryLevel.L1, "s", (0, 0)) for index in range(3)]
    assert should_create_l2_summary(l1s, 3) is True
    l2 = _summary("c0", SummaryLevel.L2, "arc", (0, 0), ["b0", "b1", "b2"])
    assert should_create_l2_summary([*l1s, l2], 3) is False


def test_parse_summarization_response_variants() -> None:
    plain = parse_summarization_response('{"summary": "Aria won.", "keyFacts": ["Aria won", 3, ""]}')
    fenced = parse_summarization_response('<think>plan</think>```json\n{"summary": "Bram left.", "key_facts": ["Bram left"]}\n```')
    prose = parse_summarization_response("The party slept at the inn.")

    assert plain is not None and plain.summary == "Aria won." and plain.key_facts == ["Aria won"]
    assert fenced is not None and fenced.summary == "Bram left." and fenced.key_facts == ["Bram left"]
    assert prose is not None and prose.summary == "The party slept at the inn." and prose.key_facts == []
    assert parse_summarization_response("<think>only thinking</think>") is None
    assert parse_summarization_response("") is None


def test_context_summary_never_exceeds_budget() -> None:
    tokenizer = _WordTokenizer()
    words = "alpha beta gamma delta epsilon zeta theta iota kappa lambda".split()
    summaries = [
        _summary(f"s{index}", SummaryLevel.L0, " ".join(f"{word}{index}" for word in words * 2), (index, index), created_at=float(index))
        for index in range(5)
    ]

    for budget in (1, 5, 10, 30, 45, 200):
        text = select_context_summary(summaries, budget, tokenizer)
        assert tokenizer.count_tokens(text) <= budget

    assert select_context_summary(summaries, 0, tokenizer) == ""
    assert select_context_summary([], 100, tokenizer) == ""


def test_context_summary_truncates_oversized_first_item() -> None:
    tokenizer = _WordTokenizer()
    long_summary = _summary("s0", SummaryLevel.L0, " ".join(f"word{index}" for index in range(50)), (0, 9))

    text = select_context_summary([long_summary], 10, tokenizer)

    assert text.startswith("Recent Events:\nword0 word1")
    assert tokenizer.count_tokens(text) == 10


def test_context_summary_skips_near_duplicate_l0s() -> None:
    summaries = [
        _summary("s0", SummaryLevel.L0, "Aria and Bram explored the ruined temple searching for relics", (0, 9), created_at=1.0),
        _summary("s1", SummaryLevel.L0, "Aria and Bram explored the ruined temple searching for relics today", (10, 19), created_at=2.0),
        _summary("s2", SummaryLevel.L0, "Storm clouds gathered above the harbor", (20, 29), created_at=3.0),
    ]

    text = select_context_summary(summaries, 200, _WordTokenizer())

    assert text.count("temple") == 1
    assert "relics today" in text
    assert text.index("Storm clouds") < text.index("relics today")


def test_context_summary_prefers_l2_arc_with_uncovered_recent_events() -> None:
    summaries = [
        _summary("a", SummaryLevel.L0, "Aria crossed the frozen river", (0, 9), created_at=1.0),
        _summary("b", SummaryLevel.L0, "Bram repaired the broken wagon", (10, 19), created_at=2.0),
        _summary("c", SummaryLevel.L0, "Wolves surrounded the camp at night", (20, 29), created_at=3.0),
        _summary("x", SummaryLevel.L1, "The caravan pushed north through winter", (0, 19), ["a", "b"], created_at=4.0),
        _summary("y", SummaryLevel.L2, "A long journey toward the northern capital began", (0, 19), ["x"], created_at=5.0),
    ]

    text = select_context_summary(summaries, 400, _WordTokenizer())

    assert text == (
        "Story Arc:\nA long journey toward the northern capital began\n\n"
        "Recent Events:\nWolves surrounded the camp at night"
    )

    tight = select_context_summary(summaries, 50, _WordTokenizer())
    assert tight == "Story Arc:\nA long journey toward the northern capital began"


def test_context_summary_l1_path_limits_recent_chapters() -> None:
    summaries = [
        _summary("a", SummaryLevel.L0, "Aria crossed the frozen river", (0, 9), created_at=1.0),
        _summary("b", SummaryLevel.L0, "Bram repaired the broken wagon", (10, 19), created_at=2.0),
        _summary("c", SummaryLevel.L0, "Wolves surrounded the camp", (20, 29), created_at=3.0),
        _summary("d", SummaryLevel.L0, "Merchants arrived with spices", (30, 39), created_at=4.0),
        _summary("e", SummaryLevel.L0, "Lightning split the old oak", (40, 49), created_at=5.0),
        _summary("f", SummaryLevel.L0, "The healer mended Bram's hand", (50, 59), created_at=6.0),
        _summary("x", SummaryLevel.L1, "The caravan pushed north through winter", (0, 19), ["a", "b"], created_at=7.0),
    ]

    text = select_context_summary(summaries, 400, _WordTokenizer())

    assert text.startswith("Story So Far:\nThe caravan pushed north through winter\n\nRecent:\n")
    assert "Wolves" not in text
    assert "frozen river" not in text
    assert text.index("healer") < text.index("Lightning") < text.index("Merchants")


def test_compact_creates_l0_summaries_and_scene_chunks(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    llm = _SummaryLLM()
    summarizer = _summarizer(store, llm, chunk_size=10, clock=lambda: 500.0)

    async def scenario() -> None:
        await store.init()
        report = await summarizer.compact("c1", _messages(25), "Aria", "Hero", branch_path=["m24"])
        again = await summarizer.compact("c1", _messages(25), "Aria", "Hero")

        summaries = await store.get_summaries_by_conversation("c1")
        chunks = await store.get_chunks_by_conversation("c1")

        assert (report.l0_created, report.l1_created, report.l2_created) == (2, 0, 0)
        assert again.created == 0
        assert len(llm.calls) == 2
        assert [summary.message_range for summary in summaries] == [(0, 9), (10, 19)]
        assert summaries[0].content == "Summary number 1"
        assert summaries[0].key_facts == ["fact 1"]
        assert len(summaries[0].embedding) == 32
        assert [chunk.member_message_ids[0] for chunk in chunks] == ["m0", "m10"]
        assert chunks[0].text == "Summary number 1"
        assert chunks[0].metadata.characters == ["Aria", "Hero"]
        assert chunks[0].branch_path == ["m24"]
        assert chunks[0].embedding == summaries[0].embedding

        prompt = llm.calls[0][1]["content"]
        assert "Hero: message 0" in prompt
        assert "Aria: message 1" in prompt

    asyncio.run(scenario())


def test_compact_cascades_into_l1_and_l2(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    summarizer = _summarizer(store, _SummaryLLM(), chunk_size=2, l1_threshold=2, l2_threshold=2)

    async def scenario() -> None:
        await store.init()
        report = await summarizer.compact("c1", _messages(8), "Aria", "Hero")
        hierarchy = await summarizer.get_summary_hierarchy("c1")

        assert (report.l0_created, report.l1_created, report.l2_created) == (4, 2, 1)
        assert [summary.message_range for summary in hierarchy.l0] == [(0, 1), (2, 3), (4, 5), (6, 7)]
        assert [summary.message_range for summary in hierarchy.l1] == [(0, 3), (4, 7)]
        assert hierarchy.l1[0].child_ids == [hierarchy.l0[0].id, hierarchy.l0[1].id]
        assert hierarchy.l2[0].child_ids == [summary.id for summary in hierarchy.l1]
        assert hierarchy.l2[0].message_range == (0, 7)
        assert hierarchy.total_messages == 8

        best = await summarizer.get_best_context_summary("c1", 300)
        assert best.startswith("Story Arc:\n")

    asyncio.run(scenario())


def test_compact_stops_on_llm_failure_and_keeps_finished_steps(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    summarizer = _summarizer(store, _SummaryLLM(fail_on_call=2), chunk_size=10)
    failing = _summarizer(store, _SummaryLLM(fail_on_call=1), chunk_size=10)

    async def scenario() -> None:
        await store.init()
        nothing = await failing.compact("c2", _messages(10), "Aria", "Hero")
        partial = await summarizer.compact("c1", _messages(30), "Aria", "Hero")

        assert nothing.stopped_early is True
        assert nothing.error == "model offline"
        assert await store.get_summaries_by_conversation("c2") == []
        assert await store.get_chunks_by_conversation("c2") == []
        assert partial.stopped_early is True
        assert partial.l0_created == 1
        assert len(await store.get_summaries_by_conversation("c1")) == 1

    asyncio.run(scenario())


def test_summary_hierarchy_of_empty_conversation() -> None:
    hierarchy = build_summary_hierarchy([])

    assert hierarchy.l0 == [] and hierarchy.l1 == [] and hierarchy.l2 == []
    assert hierarchy.total_messages == 0

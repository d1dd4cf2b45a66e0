from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Sequence

from .json_loader import load_prompt_json

if TYPE_CHECKING:
    from ..memory.models import ChatMessage, Summary, SummaryLevel, WorldState

BASE_FACT_CATEGORIES = (
    "event",
    "relationship",
    "item",
    "location",
    "lore",
    "consequence",
    "dialogue",
)

_DEFAULTS = {
    "fact_extraction_system_prompt_template": (
        "You are a RPG chronicle keeper. Extract atomic facts from this roleplay exchange.\n\n"
        "RULES:\n"
        "- Each fact must be a single, self-contained statement\n"
        "- Facts should capture WHO did WHAT, WHERE, and consequences\n"
        "- Rate importance 1-10: 1=trivial dialog, 5=notable event, 8=major plot point, 10=world-changing\n"
        "- List entities involved (character names, item names, location names)\n"
        "- Categorize each fact accurately\n"
        "- Output ONLY valid JSON array, no markdown\n\n"
        "Categories: {categories}\n\n"
        "Output format:\n"
        "[\n"
        '  {{"fact": "description of what happened", "category": "event", "importance": 7, '
        '"entities": ["Character1", "ItemName"], "tags": ["combat", "discovery"]}}\n'
        "]\n\n"
        "IMPORTANT: Only extract facts that represent NEW information or changes. Skip:\n"
        "- Routine greetings or small talk (unless establishing a new relationship)\n"
        "- Descriptions that don't advance the story\n"
        "- Repetitions of known information"
    ),
    "fact_extraction_user_prompt_template": (
        "Current world state:\n"
        "- Location: {location}\n"
        "- Inventory: {inventory}\n"
        "- Key relationships: {relationships}\n\n"
        "Characters: {character_name} (NPC), {user_name} (Player)\n\n"
        'Message to analyze:\n"{message}"\n\n'
        "Extract all new atomic facts:"
    ),
    "summary_l0_system_prompt": (
        "You are a RPG session chronicler. Summarize this chunk of roleplay messages into a concise "
        "narrative paragraph.\n\n"
        "RULES:\n"
        "- Write in past tense, third person\n"
        "- Capture: WHO did WHAT, WHERE, key decisions, important dialogue\n"
        "- Include specific names, items, locations\n"
        "- Max 3-4 sentences\n"
        "- Also extract 3-5 KEY FACTS as a separate list (atomic, searchable statements)\n"
        "- Output in this JSON format:\n\n"
        '{"summary": "narrative summary paragraph...", "keyFacts": ["fact 1", "fact 2", "fact 3"]}'
    ),
    "summary_l1_system_prompt": (
        "You are a RPG story arc compiler. Combine these chapter summaries into a broader section summary.\n\n"
        "RULES:\n"
        "- Write in past tense, third person\n"
        "- Focus on overarching plot progression, character development, and consequences\n"
        "- Preserve critical names, items, and locations\n"
        "- Max 2-3 sentences\n"
        "- Extract 2-3 CRITICAL facts that define this section\n"
        "- Output JSON:\n\n"
        '{"summary": "section summary...", "keyFacts": ["critical fact 1", "critical fact 2"]}'
    ),
    "summary_l2_system_prompt": (
        "You are a RPG epic chronicler. Combine these section summaries into a grand arc summary.\n\n"
        "RULES:\n"
        "- Write in past tense, third person\n"
        "- Capture the overarching narrative arc, major turning points\n"
        "- This is the highest-level summary and should give someone a complete overview\n"
        "- Max 2-3 sentences\n"
        "- Extract 1-2 defining facts of the entire arc\n"
        "- Output JSON:\n\n"
        '{"summary": "arc summary...", "keyFacts": ["defining fact 1"]}'
    ),
    "summary_l0_user_prompt_template": (
        "Character: {character_name}\nPlayer: {user_name}\n\n"
        "--- Messages ---\n{messages}\n\n--- End Messages ---\n\nSummarize this chunk:"
    ),
    "summary_l1_user_prompt_template": (
        "--- Chapter Summaries ---\n{summaries}\n\n--- End ---\n\nCombine into a section summary:"
    ),
    "summary_l2_user_prompt_template": (
        "--- Section Summaries ---\n{summaries}\n\n--- End ---\n\nCombine into an arc summary:"
    ),
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("memory.json", _DEFAULTS)


def _template(key: str) -> str:
    return str(_cfg().get(key, _DEFAULTS[key]))


def build_fact_extraction_system_prompt(custom_categories: Iterable[str] = ()) -> str:
    categories = list(BASE_FACT_CATEGORIES)
    for raw in custom_categories:
        name = str(raw or "").strip()
        if name and name.casefold() not in {item.casefold() for item in categories}:
            categories.append(name)
    return _template("fact_extraction_system_prompt_template").format(categories=", ".join(categories))


def build_fact_extraction_prompt(
    message: str,
    world_state: WorldState | None,
    character_name: str,
    user_name: str,
) -> str:
    location = world_state.location if world_state is not None else None
    inventory = list(world_state.inventory) if world_state is not None else []
    relationship_map = dict(world_state.relationships) if world_state is not None else {}
    relationships = ", ".join(f"{name}: {value}" for name, value in relationship_map.items())
    return _template("fact_extraction_user_prompt_template").format(
        location=location or "Unknown",
        inventory=", ".join(inventory) or "Empty",
        relationships=relationships or "None",
        character_name=character_name,
        user_name=user_name,
        message=message,
    )


def summary_system_prompt(level: SummaryLevel) -> str:
    return _template(f"summary_l{int(level)}_system_prompt")


def build_l0_prompt(messages: Sequence[ChatMessage], character_name: str, user_name: str) -> str:
    formatted = "\n\n".join(
        f"{user_name if message.role == 'user' else character_name}: {message.content}" for message in messages
    )
    return _template("summary_l0_user_prompt_template").format(
        character_name=character_name,
        user_name=user_name,
        messages=formatted,
    )


def _format_summaries(summaries: Sequence[Summary], label: str) -> str:
    return "\n\n".join(
        f"{label} {index} (messages {summary.message_range[0]}-{summary.message_range[1]}):\n{summary.content}"
        for index, summary in enumerate(summaries, start=1)
    )


def build_l1_prompt(l0_summaries: Sequence[Summary]) -> str:
    return _template("summary_l1_user_prompt_template").format(summaries=_format_summaries(l0_summaries, "Chapter"))


def build_l2_prompt(l1_summaries: Sequence[Summary]) -> str:
    return _template("summary_l2_user_prompt_template").format(summaries=_format_summaries(l1_summaries, "Section"))

from __future__ import annotations

import math
import re
from typing import Iterable, Sequence

from .models import Fact, FactCategory, WorldState, WorldStateUpdate, clamp_relationship

_CHARACTER_ALIASES = frozenset({"player", "user", "you"})

_ITEM_KEYWORDS = (
    re.compile(
        r"\b(obtain|receive|find|pick up|acquire|loot|buy|purchase|craft|take|equip|give|lose|drop|sell|destroy"
        r"|broke|consumed)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(obtenir|recevoir|trouver|ramasser|acheter|fabriquer|prendre|équiper|donner|perdre|vendre|détruire"
        r"|casser|consommer)\b",
        re.IGNORECASE,
    ),
)
_LOCATION_KEYWORDS = (
    re.compile(r"\b(arrive|enter|reach|travel|move to|go to|depart|leave|explore|discover|visit)\b", re.IGNORECASE),
    re.compile(
        r"\b(arriver|entrer|atteindre|voyager|aller à|partir|quitter|explorer|découvrir|visiter)\b",
        re.IGNORECASE,
    ),
)
_RELATIONSHIP_KEYWORDS = (
    re.compile(
        r"\b(befriend|betray|ally|enemy|trust|love|hate|respect|fear|admire|forgive|insult|threaten|help|save)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(ami|trahir|allié|ennemi|confiance|aimer|haïr|respecter|craindre|admirer|pardonner|insulter|menacer"
        r"|aider|sauver)\b",
        re.IGNORECASE,
    ),
)
_OBTAIN_PATTERNS = (
    re.compile(
        r"\b(obtain|receive|find|pick up|acquire|loot|buy|purchase|craft|take|equip|reward|given)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(obtenir|recevoir|trouver|ramasser|acheter|fabriquer|prendre|équiper|récompense|donné)\b",
        re.IGNORECASE,
    ),
)
_LOSE_PATTERNS = (
    re.compile(
        r"\b(lose|drop|sell|destroy|broke|consumed|gave away|discard|stolen|sacrifice)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(perdre|jeter|vendre|détruire|casser|consommer|donné|sacrifier|volé)\b",
        re.IGNORECASE,
    ),
)
_POSITIVE_PATTERNS = (
    re.compile(
        r"\b(befriend|ally|trust|love|respect|admire|forgive|help|save|rescue|heal|protect|grateful|thank|praise)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(ami|allié|confiance|aimer|respecter|admirer|pardonner|aider|sauver|soigner|protéger|reconnaissant"
        r"|remercier|louer)\b",
        re.IGNORECASE,
    ),
)
_NEGATIVE_PATTERNS = (
    re.compile(
        r"\b(betray|enemy|hate|fear|insult|threaten|attack|kill|murder|steal|deceive|abandon|humiliate|curse)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(trahir|ennemi|haïr|craindre|insulter|menacer|attaquer|tuer|voler|tromper|abandonner|humilier|maudire)\b",
        re.IGNORECASE,
    ),
)


def _matches(patterns: Iterable[re.Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def _is_character(entity: str, character_name: str, user_name: str) -> bool:
    lowered = entity.strip().casefold()
    return lowered in _CHARACTER_ALIASES or lowered in {
        character_name.strip().casefold(),
        user_name.strip().casefold(),
    }


def relationship_delta(text: str, importance: int) -> int:
    base = math.ceil(importance / 2)
    if _matches(_POSITIVE_PATTERNS, text):
        return base
    if _matches(_NEGATIVE_PATTERNS, text):
        return -base
    return 0


def _held(inventory: Sequence[str]) -> set[str]:
    return {item.casefold() for item in inventory}


def _unique(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        key = item.casefold()
        if key not in seen:
            seen.add(key)
            result.append(item)
    return result


def _relationship_key(relationships: dict[str, int], entity: str) -> str:
    lowered = entity.casefold()
    for name in relationships:
        if name.casefold() == lowered:
            return name
    return entity


def derive_world_state_updates(
    facts: Sequence[Fact],
    current: WorldState,
    character_name: str,
    user_name: str,
) -> WorldStateUpdate:
    """Infer inventory, location and relationship changes from new facts."""
    to_add: list[str] = []
    to_remove: list[str] = []
    deltas: dict[str, int] = {}
    new_location: str | None = None

    for fact in facts:
        text = fact.text
        others = [
            entity for entity in fact.related_entities
            if entity.strip() and not _is_character(entity, character_name, user_name)
        ]

        if fact.category == FactCategory.ITEM or _matches(_ITEM_KEYWORDS, text):
            if _matches(_OBTAIN_PATTERNS, text):
                to_add.extend(others)
            if _matches(_LOSE_PATTERNS, text):
                to_remove.extend(others)

        if (fact.category == FactCategory.LOCATION or _matches(_LOCATION_KEYWORDS, text)) and others:
            new_location = others[-1]

        if (
            fact.category == FactCategory.RELATIONSHIP
            or _matches(_RELATIONSHIP_KEYWORDS, text)
            or (fact.category == FactCategory.CONSEQUENCE and fact.importance >= 7)
        ):
            delta = relationship_delta(text, fact.importance)
            if delta:
                for entity in others:
                    if len(entity) > 1:
                        key = _relationship_key(current.relationships, entity)
                        deltas[key] = deltas.get(key, 0) + delta

    held = _held(current.inventory)
    update = WorldStateUpdate(
        inventory_add=[item for item in _unique(to_add) if item.casefold() not in held],
        inventory_remove=[item for item in _unique(to_remove) if item.casefold() in held],
    )
    if new_location and new_location.casefold() != (current.location or "").casefold():
        update.location = new_location

    for entity, delta in deltas.items():
        previous = current.relationships.get(entity, 0)
        value = clamp_relationship(previous + delta)
        if value != previous:
            update.relationships[entity] = value
    return update


def apply_world_state_update(state: WorldState, update: WorldStateUpdate) -> WorldState | None:
    inventory = list(state.inventory)
    held = _held(inventory)
    for item in update.inventory_add:
        if item.casefold() not in held:
            inventory.append(item)
            held.add(item.casefold())
    if update.inventory_remove:
        removed = {item.casefold() for item in update.inventory_remove}
        inventory = [item for item in inventory if item.casefold() not in removed]

    relationships = dict(state.relationships)
    for entity, value in update.relationships.items():
        relationships[entity] = clamp_relationship(value)

    result = WorldState(
        inventory=inventory,
        location=update.location or state.location,
        relationships=relationships,
    )
    return None if result == state else result

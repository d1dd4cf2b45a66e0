from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterable


class FactCategory(str, Enum):
    EVENT = "event"
    RELATIONSHIP = "relationship"
    ITEM = "item"
    LOCATION = "location"
    LORE = "lore"
    CONSEQUENCE = "consequence"
    DIALOGUE = "dialogue"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: object) -> "FactCategory":
        if isinstance(value, FactCategory):
            return value
        raw = str(value or "").strip().casefold()
        if not raw:
            return cls.EVENT
        for member in cls:
            if member.value == raw:
                return member
        return cls.CUSTOM


class SummaryLevel(IntEnum):
    L0 = 0
    L1 = 1
    L2 = 2


class ContextSectionType(str, Enum):
    SYSTEM = "system"
    MEMORY = "memory"
    FACT = "fact"
    SUMMARY = "summary"
    LOREBOOK = "lorebook"
    HISTORY = "history"
    POST_HISTORY = "post-history"


def clamp_importance(value: object, default: int = 5) -> int:
    try:
        number = int(round(float(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        number = default
    return max(1, min(10, number))


def clamp_relationship(value: object) -> int:
    try:
        number = int(round(float(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        number = 0
    return max(-100, min(100, number))


@dataclass(slots=True)
class ChatMessage:
    id: str
    role: str
    content: str
    created_at: float = 0.0


@dataclass(slots=True)
class Fact:
    id: str
    conversation_id: str
    source_message_id: str
    text: str
    category: FactCategory = FactCategory.EVENT
    importance: int = 5
    embedding: list[float] = field(default_factory=list)
    active: bool = True
    branch_path: list[str] = field(default_factory=list)
    timestamp: float = 0.0
    last_accessed_at: float = 0.0
    access_count: int = 0
    related_entities: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Summary:
    id: str
    conversation_id: str
    level: SummaryLevel
    content: str
    key_facts: list[str] = field(default_factory=list)
    message_range: tuple[int, int] = (0, 0)
    child_ids: list[str] = field(default_factory=list)
    embedding: list[float] = field(default_factory=list)
    created_at: float = 0.0


@dataclass(slots=True)
class ChunkMetadata:
    characters: list[str] = field(default_factory=list)
    location: str = ""
    importance: int = 5
    tags: list[str] = field(default_factory=list)
    timestamp: float = 0.0


@dataclass(slots=True)
class VectorChunk:
    id: str
    conversation_id: str
    member_message_ids: list[str]
    text: str
    embedding: list[float] = field(default_factory=list)
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    branch_path: list[str] = field(default_factory=list)
    created_at: float = 0.0


@dataclass(slots=True)
class ContextSection:
    priority: int
    content: str
    token_cost: int
    label: str
    type: ContextSectionType
    confidence: float | None = None


@dataclass(slots=True)
class WorldState:
    inventory: list[str] = field(default_factory=list)
    location: str = ""
    relationships: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class WorldStateUpdate:
    inventory_add: list[str] = field(default_factory=list)
    inventory_remove: list[str] = field(default_factory=list)
    location: str | None = None
    relationships: dict[str, int] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.inventory_add or self.inventory_remove or self.location or self.relationships)


class BranchScope:
    """Active-branch message ids for one retrieval call.

    Records carrying an empty branch path predate branch tracking and are
    always in scope. An empty scope disables filtering entirely.
    """

    __slots__ = ("_active_ids",)

    def __init__(self, active_message_ids: Iterable[str] | None = None) -> None:
        self._active_ids = frozenset(str(item) for item in (active_message_ids or ()) if str(item))

    @property
    def active(self) -> bool:
        return bool(self._active_ids)

    def is_in_scope(self, branch_path: Iterable[str] | None) -> bool:
        if not self._active_ids:
            return True
        path = list(branch_path or ())
        if not path:
            return True
        return any(message_id in self._active_ids for message_id in path)

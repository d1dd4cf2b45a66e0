from .chunks import MemoryChunksMixin
from .facts import MemoryFactsMixin
from .schema import MemorySchemaMixin
from .summaries import MemorySummariesMixin

__all__ = [
    "MemorySchemaMixin",
    "MemorySummariesMixin",
    "MemoryChunksMixin",
    "MemoryFactsMixin",
]

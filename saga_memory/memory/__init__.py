from .embedding import Embedder
from .engine import MemoryEngine
from .facts import FactExtractor
from .retrieval import ContextAssembler
from .store import MemoryStore
from .summarizer import HierarchicalSummarizer

__all__ = [
    "ContextAssembler",
    "Embedder",
    "FactExtractor",
    "HierarchicalSummarizer",
    "MemoryEngine",
    "MemoryStore",
]

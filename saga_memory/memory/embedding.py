"""Text embeddings for facts, summaries and scene chunks.

The neural encoder (sentence-transformers) is optional. Whenever it is not
loaded, or an encode call fails, vectors come from a hashed bag-of-words and
bigram projection whose hash is a stable blake2b digest, so the same text maps
to the same vector in every process.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, Sequence, TypeVar

import numpy as np


logger = logging.getLogger("saga_memory")

T = TypeVar("T")

DEFAULT_DIMENSION = 384
DEFAULT_MODEL_NAME = "all-MiniLM-L6-v2"
_CACHE_KEY_PREFIX_CHARS = 200
_ENCODER_MAX_INPUT_CHARS = 512

_STOP_WORDS = frozenset(
    {
        # English
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "may", "might", "shall", "can",
        "to", "of", "in", "for", "on", "with", "at", "by", "from", "as", "into", "through",
        "during", "before", "after", "above", "below", "and", "but", "or", "not", "no", "this",
        "that", "these", "those", "it", "its", "he", "she", "they", "we", "you", "i", "me", "my",
        "your", "his", "her", "their", "our",
        # French
        "le", "la", "les", "un", "une", "des", "du", "de", "et", "ou", "je", "tu", "il", "elle",
        "nous", "vous", "ils", "elles", "ce", "qui", "que", "ne", "pas", "dans", "sur", "pour",
        "avec", "se",
    }
)


def _stable_hash(token: str) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _fallback_words(text: str) -> list[str]:
    lowered = re.sub(r"[^\w\s]", " ", (text or "").casefold())
    return [word for word in lowered.split() if len(word) > 2 and word not in _STOP_WORDS]


def hashed_embedding(text: str, dimension: int = DEFAULT_DIMENSION) -> list[float]:
    dim = max(1, int(dimension))
    vector = np.zeros(dim, dtype=np.float64)
    words = _fallback_words(text)
    if not words:
        return vector.tolist()

    weight = 1.0 / len(words)
    for word in words:
        h = _stable_hash(word)
        vector[abs(h) % dim] += (1.0 if h > 0 else -1.0) * weight

    for left, right in zip(words, words[1:]):
        h = _stable_hash(f"{left}_{right}")
        vector[abs(h) % dim] += (1.0 if h > 0 else -1.0) * 0.5 * weight

    norm = float(np.linalg.norm(vector))
    if norm > 0:
        vector /= norm
    return vector.tolist()


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    magnitude = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if magnitude == 0.0:
        return 0.0
    score = float(np.dot(va, vb)) / magnitude
    return max(-1.0, min(1.0, score))


@dataclass(slots=True)
class ScoredItem(Generic[T]):
    item: T
    score: float


def _default_embedding_of(item: Any) -> Sequence[float] | None:
    return getattr(item, "embedding", None)


def find_top_k(
    query: Sequence[float],
    items: Iterable[T],
    k: int = 5,
    min_score: float = 0.1,
    *,
    embedding_of: Callable[[T], Sequence[float] | None] = _default_embedding_of,
) -> list[ScoredItem[T]]:
    scored: list[ScoredItem[T]] = []
    for item in items:
        embedding = embedding_of(item)
        if not embedding:
            continue
        score = cosine_similarity(query, embedding)
        if score >= min_score:
            scored.append(ScoredItem(item=item, score=score))
    # list.sort is stable, so equal scores keep their input order.
    scored.sort(key=lambda entry: entry.score, reverse=True)
    return scored[: max(0, int(k))]


class Embedder:
    """Process-wide embedding service with an explicit start/close lifecycle."""

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL_NAME,
        *,
        enabled: bool = True,
        cache_size: int = 500,
        dimension: int = DEFAULT_DIMENSION,
    ) -> None:
        self.model_name = (model_name or "").strip()
        self.enabled = bool(enabled and self.model_name)
        self.cache_size = max(1, int(cache_size))
        self.dimension = max(1, int(dimension))
        self._model: Any = None
        self._load_error: str = ""
        self._cache: OrderedDict[str, list[float]] = OrderedDict()

    @property
    def status(self) -> str:
        if self._model is not None:
            return "ready"
        if self._load_error:
            return "fallback"
        return "idle"

    async def start(self) -> None:
        if self._model is not None or not self.enabled:
            return
        try:
            self._model = await asyncio.to_thread(self._load_model)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._model = None
            self._load_error = str(exc)[:220] or exc.__class__.__name__
            logger.warning("Embedding model %s unavailable, using hashed fallback: %s", self.model_name, exc)
            return

        model_dim = self._model_dimension(self._model)
        if model_dim and model_dim != self.dimension:
            logger.info("Embedding dimension set by model %s: %s -> %s", self.model_name, self.dimension, model_dim)
            self.dimension = model_dim
            self._cache.clear()
        logger.info("Embedding model %s loaded", self.model_name)

    async def close(self) -> None:
        self._model = None
        self._cache.clear()

    def _load_model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(self.model_name)

    @staticmethod
    def _model_dimension(model: Any) -> int:
        getter = getattr(model, "get_sentence_embedding_dimension", None)
        if not callable(getter):
            return 0
        try:
            return int(getter() or 0)
        except (TypeError, ValueError):
            return 0

    @staticmethod
    def _cache_key(text: str) -> str:
        if len(text) <= _CACHE_KEY_PREFIX_CHARS:
            return text
        digest = hashlib.blake2b(text.encode("utf-8"), digest_size=8).hexdigest()
        return f"{text[:_CACHE_KEY_PREFIX_CHARS]}#{digest}"

    def _cache_get(self, key: str) -> list[float] | None:
        cached = self._cache.get(key)
        if cached is None:
            return None
        self._cache.move_to_end(key)
        return list(cached)

    def _cache_put(self, key: str, vector: list[float]) -> None:
        self._cache[key] = list(vector)
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    async def _encode(self, text: str) -> list[float]:
        output = await asyncio.to_thread(
            self._model.encode,
            text[:_ENCODER_MAX_INPUT_CHARS],
            normalize_embeddings=True,
        )
        vector = np.asarray(output, dtype=np.float64).reshape(-1)
        if vector.size != self.dimension:
            raise ValueError(f"encoder returned {vector.size} dims, expected {self.dimension}")
        return vector.tolist()

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            return [0.0] * self.dimension

        key = self._cache_key(text)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        vector: list[float]
        if self._model is not None:
            try:
                vector = await self._encode(text)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Embedding encode failed, using hashed fallback: %s", exc)
                vector = hashed_embedding(text, self.dimension)
        else:
            vector = hashed_embedding(text, self.dimension)

        self._cache_put(key, vector)
        return list(vector)

    async def embed_many(self, texts: Iterable[str]) -> list[list[float]]:
        results: list[list[float]] = []
        for text in texts:
            results.append(await self.embed(text))
        return results

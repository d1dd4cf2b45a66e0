from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_list(name: str, aliases: tuple[str, ...] = ()) -> List[str]:
    raw = (_env_lookup(name, aliases) or "").strip()
    return [chunk.strip() for chunk in raw.split(",") if chunk.strip()]


@dataclass(slots=True)
class Settings:
    sqlite_path: Path

    embedding_enabled: bool
    embedding_model: str
    embedding_dimension: int
    embedding_cache_size: int
    tokenizer_encoding: str

    summary_chunk_size: int
    summary_l1_threshold: int
    summary_l2_threshold: int

    fact_merge_threshold: float
    fact_custom_categories: List[str] = field(default_factory=list)

    retrieval_top_k_facts: int = 10
    retrieval_top_k_chunks: int = 5
    retrieval_min_confidence: float = 0.0

    ollama_base_url: str = "http://127.0.0.1:11434"
    ollama_model: str = "qwen2.5:7b-instruct"
    ollama_timeout_seconds: int = 60
    ollama_temperature: float = 0.3

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/saga_memory.db")).expanduser(),
            embedding_enabled=_env_bool("EMBEDDING_ENABLED", True),
            embedding_model=_env_str("EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            embedding_dimension=_env_int("EMBEDDING_DIMENSION", 384),
            embedding_cache_size=_env_int("EMBEDDING_CACHE_SIZE", 500),
            tokenizer_encoding=_env_str("TOKENIZER_ENCODING", "cl100k_base"),
            summary_chunk_size=_env_int("SUMMARY_CHUNK_SIZE", 10),
            summary_l1_threshold=_env_int("SUMMARY_L1_THRESHOLD", 5),
            summary_l2_threshold=_env_int("SUMMARY_L2_THRESHOLD", 3),
            fact_merge_threshold=_env_float("FACT_MERGE_THRESHOLD", 0.7),
            fact_custom_categories=_env_list("FACT_CUSTOM_CATEGORIES"),
            retrieval_top_k_facts=_env_int("RETRIEVAL_TOP_K_FACTS", 10),
            retrieval_top_k_chunks=_env_int("RETRIEVAL_TOP_K_CHUNKS", 5),
            retrieval_min_confidence=_env_float("RETRIEVAL_MIN_CONFIDENCE", 0.0),
            ollama_base_url=_env_str("OLLAMA_BASE_URL", "http://127.0.0.1:11434"),
            ollama_model=_env_str("OLLAMA_MODEL", "qwen2.5:7b-instruct"),
            ollama_timeout_seconds=_env_int("OLLAMA_TIMEOUT_SECONDS", 60),
            ollama_temperature=_env_float("OLLAMA_TEMPERATURE", 0.3),
        )

    def validate(self) -> None:
        if self.embedding_dimension < 1:
            raise ValueError("EMBEDDING_DIMENSION must be >= 1")
        if self.embedding_cache_size < 1:
            raise ValueError("EMBEDDING_CACHE_SIZE must be >= 1")
        if self.embedding_enabled and not self.embedding_model:
            raise ValueError("EMBEDDING_MODEL cannot be empty when EMBEDDING_ENABLED is on")

        if self.summary_chunk_size < 2:
            raise ValueError("SUMMARY_CHUNK_SIZE must be >= 2")
        if self.summary_l1_threshold < 2:
            raise ValueError("SUMMARY_L1_THRESHOLD must be >= 2")
        if self.summary_l2_threshold < 2:
            raise ValueError("SUMMARY_L2_THRESHOLD must be >= 2")

        if not 0.0 < self.fact_merge_threshold <= 1.0:
            raise ValueError("FACT_MERGE_THRESHOLD must be in (0, 1]")

        if self.retrieval_top_k_facts < 1:
            raise ValueError("RETRIEVAL_TOP_K_FACTS must be >= 1")
        if self.retrieval_top_k_chunks < 1:
            raise ValueError("RETRIEVAL_TOP_K_CHUNKS must be >= 1")
        if not 0.0 <= self.retrieval_min_confidence <= 1.0:
            raise ValueError("RETRIEVAL_MIN_CONFIDENCE must be in [0, 1]")

        if not self.ollama_model:
            raise ValueError("OLLAMA_MODEL cannot be empty")
        if self.ollama_timeout_seconds < 5:
            raise ValueError("OLLAMA_TIMEOUT_SECONDS must be >= 5")
        if not 0.0 <= self.ollama_temperature <= 2.0:
            raise ValueError("OLLAMA_TEMPERATURE must be in [0, 2]")

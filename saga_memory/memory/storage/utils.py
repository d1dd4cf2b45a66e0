from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Sequence

import aiosqlite
import numpy as np

from ..models import (
    ChunkMetadata,
    Fact,
    FactCategory,
    Summary,
    SummaryLevel,
    VectorChunk,
    clamp_importance,
)


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        db.row_factory = aiosqlite.Row
        yield db


def encode_embedding(vector: Sequence[float] | None) -> bytes | None:
    if vector is None or len(vector) == 0:
        return None
    return np.asarray(vector, dtype=np.float32).tobytes()


def decode_embedding(blob: bytes | None) -> list[float]:
    if not blob:
        return []
    return np.frombuffer(blob, dtype=np.float32).astype(np.float64).tolist()


def encode_str_list(values: Iterable[object] | None) -> str:
    return json.dumps([str(value) for value in (values or ())], ensure_ascii=False)


def decode_str_list(raw: object) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(str(raw))
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(value) for value in parsed]


def fact_from_row(row: Any) -> Fact:
    return Fact(
        id=str(row["fact_id"]),
        conversation_id=str(row["conversation_id"]),
        source_message_id=str(row["source_message_id"] or ""),
        text=str(row["fact_text"]),
        category=FactCategory.parse(row["category"]),
        importance=clamp_importance(row["importance"]),
        embedding=decode_embedding(row["embedding"]),
        active=bool(int(row["active"])),
        branch_path=decode_str_list(row["branch_path"]),
        timestamp=float(row["created_at"] or 0.0),
        last_accessed_at=float(row["last_accessed_at"] or 0.0),
        access_count=max(0, int(row["access_count"] or 0)),
        related_entities=decode_str_list(row["related_entities"]),
    )


def summary_from_row(row: Any) -> Summary:
    return Summary(
        id=str(row["summary_id"]),
        conversation_id=str(row["conversation_id"]),
        level=SummaryLevel(int(row["level"])),
        content=str(row["content"]),
        key_facts=decode_str_list(row["key_facts"]),
        message_range=(int(row["range_start"]), int(row["range_end"])),
        child_ids=decode_str_list(row["child_ids"]),
        embedding=decode_embedding(row["embedding"]),
        created_at=float(row["created_at"] or 0.0),
    )


def chunk_from_row(row: Any) -> VectorChunk:
    return VectorChunk(
        id=str(row["chunk_id"]),
        conversation_id=str(row["conversation_id"]),
        member_message_ids=decode_str_list(row["member_message_ids"]),
        text=str(row["chunk_text"]),
        embedding=decode_embedding(row["embedding"]),
        metadata=ChunkMetadata(
            characters=decode_str_list(row["characters"]),
            location=str(row["location"] or ""),
            importance=clamp_importance(row["importance"]),
            tags=decode_str_list(row["tags"]),
            timestamp=float(row["created_at"] or 0.0),
        ),
        branch_path=decode_str_list(row["branch_path"]),
        created_at=float(row["created_at"] or 0.0),
    )

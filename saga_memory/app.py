from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Sequence

from .config import Settings
from .memory.embedding import Embedder
from .memory.engine import MemoryEngine
from .memory.facts import FactExtractor
from .memory.retrieval import ContextAssembler
from .memory.store import MemoryStore
from .memory.summarizer import HierarchicalSummarizer
from .services.ollama_client import OllamaChatClient
from .services.tokenizer import Tokenizer

logger = logging.getLogger("saga_memory")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("sentence_transformers").setLevel(logging.WARNING)


def build_memory_engine(settings: Settings) -> MemoryEngine:
    store = MemoryStore(settings.sqlite_path)
    embedder = Embedder(
        settings.embedding_model,
        enabled=settings.embedding_enabled,
        cache_size=settings.embedding_cache_size,
        dimension=settings.embedding_dimension,
    )
    tokenizer = Tokenizer(settings.tokenizer_encoding)
    llm = OllamaChatClient(
        base_url=settings.ollama_base_url,
        model=settings.ollama_model,
        timeout_seconds=settings.ollama_timeout_seconds,
        temperature=settings.ollama_temperature,
    )
    summarizer = HierarchicalSummarizer(
        store,
        embedder,
        llm,
        tokenizer,
        chunk_size=settings.summary_chunk_size,
        l1_threshold=settings.summary_l1_threshold,
        l2_threshold=settings.summary_l2_threshold,
    )
    return MemoryEngine(
        store,
        embedder,
        FactExtractor(llm, custom_categories=settings.fact_custom_categories),
        summarizer,
        ContextAssembler(store, embedder, summarizer),
        merge_threshold=settings.fact_merge_threshold,
        top_k_facts=settings.retrieval_top_k_facts,
        top_k_chunks=settings.retrieval_top_k_chunks,
        min_confidence=settings.retrieval_min_confidence,
    )


def _record(item: Any) -> dict[str, Any]:
    data = asdict(item)
    data.pop("embedding", None)
    return data


async def _run_command(engine: MemoryEngine, args: argparse.Namespace) -> Any:
    # Read-only commands: no model load and no LLM session.
    await engine.store.init()
    if args.command == "hierarchy":
        hierarchy = await engine.get_summary_hierarchy(args.conversation_id)
        return {
            "l0": [_record(item) for item in hierarchy.l0],
            "l1": [_record(item) for item in hierarchy.l1],
            "l2": [_record(item) for item in hierarchy.l2],
            "total_messages": hierarchy.total_messages,
        }
    if args.command == "summary":
        return {"summary": await engine.get_best_context_summary(args.conversation_id, args.max_tokens)}
    facts = await engine.get_facts(args.conversation_id, include_inactive=args.all)
    return [_record(fact) for fact in facts]


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="saga-memory", description="Inspect stored conversation memory.")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    hierarchy = commands.add_parser("hierarchy", help="print the L0/L1/L2 summary pyramid")
    hierarchy.add_argument("conversation_id")

    summary = commands.add_parser("summary", help="print the best context summary")
    summary.add_argument("conversation_id")
    summary.add_argument("--max-tokens", type=int, default=300)

    facts = commands.add_parser("facts", help="print stored facts")
    facts.add_argument("conversation_id")
    facts.add_argument("--all", action="store_true", help="include inactive facts")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    settings = Settings.from_env()
    try:
        settings.validate()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    engine = build_memory_engine(settings)
    payload = asyncio.run(_run_command(engine, args))
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import logging
import math
from typing import Any, Iterable

import tiktoken


logger = logging.getLogger("saga_memory")

DEFAULT_ENCODING = "cl100k_base"


def heuristic_token_count(text: str) -> int:
    return math.ceil(len(text) / 4) if text else 0


class Tokenizer:
    """Token counting with tiktoken, falling back to a 4-chars-per-token estimate."""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING) -> None:
        self.encoding_name = (encoding_name or DEFAULT_ENCODING).strip()
        self._encoding: Any = None
        self._load_failed = False

    def _get_encoding(self) -> Any:
        if self._encoding is not None or self._load_failed:
            return self._encoding
        try:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        except Exception as exc:
            self._load_failed = True
            logger.warning("Tokenizer %s unavailable, using character estimate: %s", self.encoding_name, exc)
        return self._encoding

    @property
    def exact(self) -> bool:
        return self._get_encoding() is not None

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        encoding = self._get_encoding()
        if encoding is None:
            return heuristic_token_count(text)
        return len(encoding.encode(text, disallowed_special=()))

    def count_tokens_batch(self, texts: Iterable[str]) -> int:
        return sum(self.count_tokens(text) for text in texts)

    def truncate_to_token_budget(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0 or not text:
            return ""
        encoding = self._get_encoding()
        if encoding is None:
            return text[: max_tokens * 4]
        tokens = encoding.encode(text, disallowed_special=())
        if len(tokens) <= max_tokens:
            return text
        return encoding.decode(tokens[:max_tokens])

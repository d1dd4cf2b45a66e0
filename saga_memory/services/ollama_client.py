from __future__ import annotations

import asyncio
import json
import random
import re
from typing import Any

import aiohttp


class OllamaRequestError(RuntimeError):
    """Non-retriable HTTP error from the Ollama server."""


class OllamaChatClient:
    """Minimal Ollama `/api/chat` client used for summaries and fact extraction."""

    backend_name = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: int = 60,
        temperature: float = 0.3,
        max_output_tokens: int = 0,
    ) -> None:
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Ollama model cannot be empty")
        self.timeout = aiohttp.ClientTimeout(total=max(5, int(timeout_seconds)))
        self.temperature = float(temperature)
        self.max_output_tokens = max(0, int(max_output_tokens or 0))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    @staticmethod
    def _sanitize_messages(messages: list[dict[str, str]]) -> list[dict[str, str]]:
        mapped_messages: list[dict[str, str]] = []
        for msg in messages:
            role = str(msg.get("role", "")).strip().lower() or "user"
            if role not in {"system", "user", "assistant"}:
                role = "user"
            content = str(msg.get("content", "")).strip()
            if not content:
                continue
            mapped_messages.append({"role": role, "content": content})
        return mapped_messages

    @staticmethod
    def _strip_reasoning_blocks(text: str) -> str:
        cleaned = str(text or "").strip()
        return re.sub(r"<think>.*?</think>\s*", "", cleaned, flags=re.IGNORECASE | re.DOTALL).strip()

    def _options(self, temperature: float | None, max_output_tokens: int | None) -> dict[str, Any]:
        options: dict[str, Any] = {
            "temperature": float(self.temperature if temperature is None else temperature),
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        try:
            selected = int(selected_tokens)
        except (TypeError, ValueError):
            selected = 0
        if selected > 0:
            options["num_predict"] = selected
        return options

    async def _request(self, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(self._endpoint(), json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        parsed = json.loads(text)
                        if isinstance(parsed, dict):
                            return parsed
                        raise RuntimeError("Ollama returned non-object JSON response")
                    retriable = response.status in {408, 409, 429, 500, 502, 503, 504}
                    if not retriable:
                        raise OllamaRequestError(f"Ollama error {response.status}: {text}")
                    last_error = RuntimeError(f"Ollama retriable error {response.status}: {text}")
            except (asyncio.CancelledError, OllamaRequestError):
                raise
            except Exception as exc:
                last_error = exc
            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.25))

        if last_error is not None:
            raise RuntimeError(f"Ollama request failed after retries: {last_error}")
        raise RuntimeError("Ollama request failed without explicit error")

    @staticmethod
    def _extract_message_text(data: dict[str, Any]) -> str:
        message = data.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
        response_text = data.get("response")
        if isinstance(response_text, str) and response_text.strip():
            return response_text
        raise RuntimeError("Ollama returned empty message content")

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        mapped_messages = self._sanitize_messages(messages)
        if not mapped_messages:
            return ""

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": mapped_messages,
            "stream": False,
            "think": False,
            "options": self._options(temperature, max_output_tokens),
        }
        data = await self._request(payload)
        return self._strip_reasoning_blocks(self._extract_message_text(data))

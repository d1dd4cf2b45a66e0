"""JSON overrides for prompt templates.

``<prompts dir>/<filename>`` is read once per modification time and laid over
the in-code defaults key by key, recursing into nested objects.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("saga_memory.prompts")

# path -> (mtime_ns or None when absent, parsed override object)
_OVERRIDES: dict[Path, tuple[int | None, dict[str, Any]]] = {}


def prompts_dir() -> Path:
    configured = os.getenv("SAGA_PROMPTS_DIR", "").strip()
    return Path(configured) if configured else Path(__file__).with_name("data")


def clear_prompt_cache() -> None:
    _OVERRIDES.clear()


def _overlay(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(defaults)
    for key, value in overrides.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = _overlay(current, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _read_overrides(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Failed to parse prompt JSON %s (%s). Using defaults.", path, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("Prompt JSON root must be an object: %s (using defaults)", path)
        return {}
    return payload


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    path = prompts_dir() / filename
    mtime_ns = _mtime_ns(path)
    cached = _OVERRIDES.get(path)
    if cached is None or cached[0] != mtime_ns:
        if mtime_ns is None:
            logger.warning("Prompt JSON not found: %s (using defaults)", path)
            overrides: dict[str, Any] = {}
        else:
            overrides = _read_overrides(path)
        cached = (mtime_ns, overrides)
        _OVERRIDES[path] = cached
    return _overlay(defaults, cached[1])

from __future__ import annotations

import time
import uuid
from typing import Any


def _coerce_str(val) -> str:
    """Coerce None to empty string and non-strings to str."""
    if val is None:
        return ""
    return val if isinstance(val, str) else str(val)


def _coerce_int(val, default: int = 0) -> int:
    if isinstance(val, bool):
        return default
    if isinstance(val, (int, float)):
        return int(val)
    try:
        return int(str(val))
    except (TypeError, ValueError):
        return default


def strip_reasoning(content: str, delimiter: str | None) -> str:
    """Drop an embedded reasoning trace that ends with ``delimiter``."""
    if not delimiter or delimiter not in content:
        return content
    return content.rpartition(delimiter)[2].lstrip()


def _normalize_choice(
    choice: Any, position: int, reasoning_delimiter: str | None
) -> dict[str, Any]:
    choice = choice if isinstance(choice, dict) else {}
    msg = choice.get("message")
    msg = msg if isinstance(msg, dict) else {}
    content = msg.get("content")
    if content is None and "text" in choice:
        # Legacy completions-style choice
        content = choice.get("text")
    message: dict[str, Any] = {
        "role": _coerce_str(msg.get("role")) or "assistant",
        "content": strip_reasoning(_coerce_str(content), reasoning_delimiter),
    }
    if msg.get("tool_calls"):
        message["tool_calls"] = msg["tool_calls"]
    index = choice.get("index")
    return {
        "index": _coerce_int(index, position) if index is not None else position,
        "message": message,
        "finish_reason": _coerce_str(choice.get("finish_reason")) or "stop",
    }


def _normalize_usage(usage: Any) -> dict[str, int]:
    usage = usage if isinstance(usage, dict) else {}
    prompt = _coerce_int(usage.get("prompt_tokens"))
    completion = _coerce_int(usage.get("completion_tokens"))
    total = usage.get("total_tokens")
    return {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": _coerce_int(total, prompt + completion)
        if total is not None
        else prompt + completion,
    }


def normalize_response(
    resp_dict: Any, *, model: str, reasoning_delimiter: str | None = None
) -> dict[str, Any]:
    """Map an upstream chat-completion body onto the canonical schema.

    Every canonical field is present in the result. ``id`` and ``created`` are
    generated when the upstream omits them, choices default to an assistant
    message with ``finish_reason="stop"``, and usage is zero-filled. Feeding
    the result back in returns an equal structure.
    """
    if not isinstance(resp_dict, dict):
        raise ValueError(
            f"Upstream body must be a JSON object, got {type(resp_dict).__name__}"
        )
    created = resp_dict.get("created")
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        created = int(time.time())
    choices = resp_dict.get("choices")
    if not isinstance(choices, list):
        choices = []
    return {
        "id": _coerce_str(resp_dict.get("id")) or f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": int(created),
        "model": _coerce_str(resp_dict.get("model")) or model,
        "choices": [
            _normalize_choice(c, i, reasoning_delimiter) for i, c in enumerate(choices)
        ],
        "usage": _normalize_usage(resp_dict.get("usage")),
        "system_fingerprint": resp_dict.get("system_fingerprint"),
    }


def as_stream_chunk(norm: dict[str, Any]) -> dict[str, Any]:
    """Re-shape a canonical response as one ``chat.completion.chunk`` event."""
    return {
        "id": norm["id"],
        "object": "chat.completion.chunk",
        "created": norm["created"],
        "model": norm["model"],
        "choices": [
            {
                "index": c["index"],
                "delta": dict(c["message"]),
                "finish_reason": c["finish_reason"],
            }
            for c in norm["choices"]
        ],
        "usage": norm["usage"],
    }

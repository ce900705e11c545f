"""Queued unit of work plus its reply sink."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class QueuedMessage:
    """One inbound message. The queue never inspects ``text``."""

    user_id: str
    text: str
    reply: Callable[[str], Awaitable[None]]
    send_file: Callable[..., Awaitable[None]] | None = None
    show_typing: Callable[[], Any] = field(default=lambda: None)
    platform: str = "unknown"


def digest_text(text: str, max_length: int) -> str:
    """Shorten long text to ``head...tail (length: N)`` for logging."""
    if len(text) <= max_length:
        return text
    head = (max_length + 1) // 2
    tail = max_length // 2
    return f"{text[:head]}...{text[-tail:] if tail else ''} (length: {len(text)})"

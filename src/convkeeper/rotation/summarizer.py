"""Session summaries and cumulative-summary condensation via the Messages API.

Both calls are best-effort: callers convert any ``SummarizationError`` into
fallback text so that rotation always completes.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from convkeeper.errors import SummarizationError
from convkeeper.store.models import ConversationEntry, SessionMetadata

log = structlog.get_logger()

FALLBACK_PREFIX = "[Summary generation failed]"

_SUMMARY_PROMPT = (
    "Please summarize the following conversation between a user and an AI "
    "assistant in 2-3 concise sentences. Focus on the key topics discussed, "
    "decisions made, and any important outcomes. Write the summary in the "
    "same language the user used.\n\n"
)

_CONDENSE_PROMPT = (
    "You are maintaining a long-term memory summary for a personal AI "
    "assistant. Below is the existing cumulative summary and/or new session "
    "summaries that need to be incorporated.\n\n"
    "Please produce a single, cohesive summary that:\n"
    "1. Preserves all important facts, decisions, preferences, and outcomes\n"
    "2. Removes redundant information\n"
    "3. Stays concise (aim for 3-8 sentences)\n"
    "4. Writes in the same language the user used\n"
    "5. Organizes by topic/theme rather than chronologically when possible\n\n"
)


class Summarizer(Protocol):
    async def summarize(self, entries: list[ConversationEntry]) -> str: ...

    async def condense(self, existing: str | None, new_summaries: list[str]) -> str: ...


def fallback_summary(session: SessionMetadata) -> str:
    """Deterministic stand-in used whenever summarization fails."""
    return (
        f"{FALLBACK_PREFIX} Session had {session.message_count} messages "
        f"over {session.total_turns} turns."
    )


def is_fallback_summary(text: str | None) -> bool:
    return bool(text) and text.startswith(FALLBACK_PREFIX)


def format_conversation(entries: list[ConversationEntry], max_chars: int = 8000) -> str:
    """Render a log as ``[role]: content`` blocks, truncated to max_chars."""
    text = ""
    for entry in entries:
        line = f"[{entry.role}]: {entry.content}\n\n"
        if len(text) + len(line) > max_chars:
            text += "... (conversation truncated)\n"
            break
        text += line
    return text


def build_condense_input(existing: str | None, new_summaries: list[str]) -> str:
    parts: list[str] = []
    if existing:
        parts.append(f"Existing cumulative summary:\n{existing}")
    if new_summaries:
        parts.append("New session summaries to incorporate:\n" + "\n".join(new_summaries))
    return "\n\n".join(parts)


class AnthropicSummarizer:
    """Summarizer backed by ``POST /v1/messages``."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        model: str,
        api_key: str | None = None,
        auth_token: str | None = None,
        max_chars: int = 8000,
        timeout: float = 120.0,
    ) -> None:
        self._http = http_client
        self._model = model
        self._api_key = api_key
        self._auth_token = auth_token
        self._max_chars = max_chars
        self._timeout = timeout

    async def summarize(self, entries: list[ConversationEntry]) -> str:
        if not entries:
            return "Empty session."
        conversation_text = format_conversation(entries, self._max_chars)
        log.debug("summary_requested", model=self._model, entries=len(entries))
        return await self._complete(_SUMMARY_PROMPT + conversation_text, max_tokens=512)

    async def condense(self, existing: str | None, new_summaries: list[str]) -> str:
        body = build_condense_input(existing, new_summaries)
        log.debug(
            "condense_requested",
            model=self._model,
            has_existing=bool(existing),
            new_summaries=len(new_summaries),
        )
        return await self._complete(_CONDENSE_PROMPT + body, max_tokens=1024)

    def _headers(self) -> dict[str, str]:
        headers = {
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        if self._auth_token:
            headers["authorization"] = f"Bearer {self._auth_token}"
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def _complete(self, prompt: str, max_tokens: int) -> str:
        request_body: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            response = await self._http.post(
                "/v1/messages",
                json=request_body,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise SummarizationError(f"summary request failed: {exc}") from exc

        if response.status_code != 200:
            log.error(
                "summary_api_error",
                status=response.status_code,
                body=response.text[:500],
            )
            raise SummarizationError(
                f"summary API call failed ({response.status_code})"
            )

        try:
            result = response.json()
        except ValueError as exc:
            raise SummarizationError("summary API returned malformed JSON") from exc

        for block in result.get("content", []):
            if block.get("type") == "text" and (block.get("text") or "").strip():
                return block["text"].strip()

        raise SummarizationError(
            f"summary API returned no text content, stop_reason={result.get('stop_reason')}"
        )

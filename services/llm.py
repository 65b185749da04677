"""
Thin async wrapper around the Anthropic Messages API.

Throttling is surfaced as RateLimitedError with a numeric ``retry_after`` so
callers (the job worker, the ranking endpoints) can pause instead of failing.
SDK-level retries are off by default: the queue owns the backoff.
"""

import json
import logging
import os
import re

import anthropic

logger = logging.getLogger(__name__)

LLM_MODEL: str = os.getenv("LLM_MODEL", "claude-sonnet-4-6")
LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "3000"))
LLM_DEFAULT_RETRY_AFTER: float = float(os.getenv("LLM_DEFAULT_RETRY_AFTER", "60"))

_client = anthropic.AsyncAnthropic(
    api_key=os.getenv("ANTHROPIC_API_KEY", ""),
    max_retries=int(os.getenv("LLM_MAX_RETRIES", "0")),
)

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\n?")


class LLMError(Exception):
    pass


class RateLimitedError(LLMError):
    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Rate limited, retry after {retry_after:g}s")
        self.retry_after = retry_after


def _retry_after_from(exc: anthropic.RateLimitError) -> float:
    header = exc.response.headers.get("retry-after") if exc.response is not None else None
    try:
        seconds = float(header) if header is not None else LLM_DEFAULT_RETRY_AFTER
    except ValueError:
        seconds = LLM_DEFAULT_RETRY_AFTER  # HTTP-date form; not worth parsing
    return seconds if seconds > 0 else LLM_DEFAULT_RETRY_AFTER


async def complete(
    prompt: str,
    system: str | None = None,
    max_tokens: int | None = None,
) -> str:
    """Send a single user message and return the concatenated text reply."""
    kwargs = {
        "model":      LLM_MODEL,
        "max_tokens": max_tokens or LLM_MAX_TOKENS,
        "messages":   [{"role": "user", "content": prompt}],
    }
    if system:
        kwargs["system"] = system

    try:
        resp = await _client.messages.create(**kwargs)
    except anthropic.RateLimitError as exc:
        retry_after = _retry_after_from(exc)
        logger.warning("LLM rate limited", extra={"retry_after": retry_after})
        raise RateLimitedError(retry_after) from exc
    except anthropic.APIError as exc:
        logger.error("LLM request failed", extra={"error": str(exc)})
        raise LLMError(f"LLM request failed: {exc}") from exc

    return "".join(b.text for b in resp.content if getattr(b, "type", None) == "text")


def parse_json_reply(text: str):
    """Strip markdown code fences if present and parse the reply as JSON."""
    cleaned = _FENCE_OPEN.sub("", text.strip()).rstrip("`").strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("LLM output is not JSON", extra={"error": str(exc), "output": text[:500]})
        raise LLMError(f"Failed to parse LLM response: {exc}") from exc

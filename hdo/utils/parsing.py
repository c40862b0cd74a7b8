"""Shared parsing and LLM utilities for service responses."""

import json
import logging
import re

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

_ANY_FENCE_RE = re.compile(r"```[\w+-]*[ \t]*\n([\s\S]*?)```")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def parse_json(text: str) -> dict | None:
    """Extract the outermost JSON object from free-form model output.

    Returns None when no object is present or it does not parse.
    """
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def extract_code_block(text: str, language: str) -> str:
    """Return the body of the first ```<language> block, else of any fenced block, else the text."""
    text = text or ""
    match = re.search(rf"```{re.escape(language)}[ \t]*\n([\s\S]*?)```", text)
    if match is None:
        match = _ANY_FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def _is_transient(exc: BaseException) -> bool:
    """Return True if the exception is a transient HTTP/network error worth retrying."""
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.ConnectError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in (429, 500, 502, 503)
    return False


async def ainvoke_with_retry(llm, messages, max_retries: int = 3):
    """Await llm.ainvoke(messages) with exponential backoff on transient errors.

    Retries on HTTP 429/500/502/503, connection errors, and timeouts.
    Non-transient errors (auth failures, bad requests) are raised immediately.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),  # +1 because first attempt counts
        wait=wait_exponential(multiplier=1, min=2, max=16),
        retry=retry_if_exception(_is_transient),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "[Services] Transient error: %r. Retrying in %.0fs (attempt %d/%d)...",
            rs.outcome.exception(),
            rs.next_action.sleep,
            rs.attempt_number,
            max_retries,
        ),
    ):
        with attempt:
            return await llm.ainvoke(messages)

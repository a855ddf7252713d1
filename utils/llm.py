"""
OpenAI chat helper used by the agent runners.
"""

from __future__ import annotations

import logging
import time

from openai import APIConnectionError, APITimeoutError, OpenAI, RateLimitError

import config

log = logging.getLogger(__name__)

_client: OpenAI | None = None

MAX_RETRIES = 4
BASE_DELAY = 5  # seconds

_TRANSIENT = (RateLimitError, APITimeoutError, APIConnectionError)


def get_client() -> OpenAI:
    global _client
    if _client is None:
        if not config.OPENAI_API_KEY:
            raise RuntimeError("OPENAI_API_KEY is not set")
        _client = OpenAI(api_key=config.OPENAI_API_KEY)
    return _client


def chat(system: str, user: str, *, temperature: float = 0.3,
         max_tokens: int | None = None) -> str:
    """Single system+user completion; backs off exponentially on transient API errors."""
    client = get_client()
    kwargs: dict = {
        "model": config.OPENAI_MODEL,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens or config.OPENAI_MAX_TOKENS,
    }

    for attempt in range(1, MAX_RETRIES + 1):
        try:
            resp = client.chat.completions.create(**kwargs)
            return resp.choices[0].message.content or ""
        except _TRANSIENT as e:
            if attempt == MAX_RETRIES:
                raise
            delay = BASE_DELAY * (2 ** (attempt - 1))
            log.warning(
                "OpenAI call failed (attempt %d/%d), retrying in %ds: %s",
                attempt, MAX_RETRIES, delay, e,
            )
            time.sleep(delay)
    return ""

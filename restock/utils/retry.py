"""Retry helpers for outbound HTTP."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable

import httpx

from restock.errors import TransportError

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS = (httpx.TransportError, asyncio.TimeoutError)
ATTEMPTS = 3


def retry_async(func: Callable[..., Awaitable]):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        delay = 1.0
        for attempt in range(ATTEMPTS):
            try:
                return await func(*args, **kwargs)
            except RETRY_EXCEPTIONS as exc:
                if attempt == ATTEMPTS - 1:
                    raise TransportError(str(exc) or exc.__class__.__name__) from exc
                logger.info("Transport error (%s), retrying in %.1fs", exc.__class__.__name__, delay)
                await asyncio.sleep(delay + random.random())
                delay *= 2
    return wrapper


def backoff_delay(attempt: int, retry_after: str | None = None) -> float:
    """Seconds to wait before retrying a 429."""
    if retry_after:
        try:
            seconds = float(retry_after)
        except ValueError:
            seconds = 0.0
        if seconds > 0:
            return seconds
    return 1.2 * (1.8 ** attempt) + random.random() * 0.2

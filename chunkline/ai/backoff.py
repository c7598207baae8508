"""Retry logic with exponential backoff for transient generation failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from chunkline.ai.errors import TransientGenerationError

T = TypeVar("T")
logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float) -> float:
  """Return the delay before retry `attempt` (1-based): base * 2^(attempt-1), capped."""
  return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def retry_with_backoff(
  func: Callable[[], Awaitable[T]],
  *,
  max_attempts: int,
  base_delay: float,
  max_delay: float,
  on_retry: Callable[[int, Exception], None] | None = None,
  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
  """
  Execute a coroutine factory, retrying only transient generation errors.

  Non-transient errors propagate immediately. The last transient error is re-raised
  once `max_attempts` calls have failed.
  """
  attempt = 1
  while True:
    try:
      return await func()
    except TransientGenerationError as exc:
      if attempt >= max_attempts:
        raise
      delay = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay)
      logger.warning("Retry attempt %s/%s needed. Error: %s. Retrying in %.1fs...", attempt, max_attempts, exc, delay)
      if on_retry is not None:
        on_retry(attempt, exc)
      await sleep(delay)
      attempt += 1

"""Transaction retry for multi-row writes, with retryable vs permanent failure classification."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from chunkline.core.errors import StoreUnavailableError

T = TypeVar("T")
logger = logging.getLogger(__name__)

_RETRYABLE_SQLSTATES = {"40001": "serialization_conflict", "40P01": "deadlock"}
_CONNECTIVITY_PATTERNS = ("connection", "timeout", "reset", "network", "broken pipe", "could not connect", "refused")


@dataclass(frozen=True)
class DBFailureClassification:
  retryable: bool
  category: str
  sqlstate: str | None
  unavailable: bool = False


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a wrapped driver error."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    for attr in ("pgcode", "sqlstate"):
      value = getattr(exc.orig, attr, None)
      if value:
        return str(value)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """
  Classify a database failure.

  Serialization failures and deadlocks are retried. Connection loss marks the
  store as unavailable. Everything else (integrity, schema, permissions) is permanent.
  """
  sqlstate = _extract_sqlstate(exc)
  if sqlstate in _RETRYABLE_SQLSTATES:
    return DBFailureClassification(retryable=True, category=_RETRYABLE_SQLSTATES[sqlstate], sqlstate=sqlstate)

  if isinstance(exc, IntegrityError) or (sqlstate and sqlstate.startswith("23")):
    return DBFailureClassification(retryable=False, category="integrity_error", sqlstate=sqlstate)

  if isinstance(exc, (OperationalError, InterfaceError, OSError, ConnectionError)):
    message = str(exc).lower()
    if isinstance(exc, (OSError, ConnectionError)) or any(pattern in message for pattern in _CONNECTIVITY_PATTERNS):
      return DBFailureClassification(retryable=False, category="connectivity_error", sqlstate=sqlstate, unavailable=True)
    return DBFailureClassification(retryable=False, category="operational_error_unknown", sqlstate=sqlstate)

  return DBFailureClassification(retryable=False, category="unknown_error", sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 50, max_backoff_ms: int = 1000, jitter: bool = True) -> T:
  """
  Run an idempotent transactional callable, retrying transient conflicts.

  Connectivity failures are re-raised as StoreUnavailableError; other failures propagate unchanged.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
      if attempt > 1:
        logger.info("DB operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
      return result
    except (DBAPIError, OSError, ConnectionError) as exc:
      classification = classify_db_failure(exc)
      logger.warning(
        "DB operation failed: operation=%s, attempt=%d/%d, category=%s, sqlstate=%s, retryable=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.sqlstate or "none",
        classification.retryable,
      )
      if classification.unavailable:
        raise StoreUnavailableError("Persistence layer unavailable.", operation=operation_name) from exc
      if not classification.retryable or attempt >= max_attempts:
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        backoff_ms += random.uniform(-backoff_ms * 0.25, backoff_ms * 0.25)
      await asyncio.sleep(backoff_ms / 1000.0)

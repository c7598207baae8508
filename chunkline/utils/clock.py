from __future__ import annotations

from datetime import UTC, datetime


def now_iso() -> str:
  """UTC timestamp with microseconds; lexical order matches time order."""
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

"""Errors raised by text-generation providers."""

from __future__ import annotations


class GenerationError(RuntimeError):
  """Generation failed and retrying will not help (bad request, auth, empty output)."""


class TransientGenerationError(GenerationError):
  """Timeout, rate limit or upstream outage; safe to retry with backoff."""

"""Domain error taxonomy shared by services, storage and the scheduler."""

from __future__ import annotations

from typing import Any


class ChunklineError(Exception):
  """Base class for errors surfaced to callers."""

  code = "error"

  def __init__(self, message: str, **context: Any) -> None:
    super().__init__(message)
    self.message = message
    self.context = context

  @property
  def detail(self) -> dict[str, Any]:
    """Return the caller-facing error payload."""
    return {"error": self.code, "message": self.message, **self.context}


class ValidationFailure(ChunklineError):
  """Malformed input, illegal transition, size cap or ownership violation. Never retried."""

  code = "VALIDATION_FAILED"


class NotFoundError(ValidationFailure):
  """Referenced record is missing or not owned by the caller. Reported as 404 without revealing which."""

  code = "NOT_FOUND"


class ConflictError(ChunklineError):
  """Concurrent claim lost, duplicate finalize or edit of a locked record."""

  code = "CONFLICT"

  def __init__(self, message: str, *, current_status: str | None = None, **context: Any) -> None:
    super().__init__(message, current_status=current_status, **context)
    self.current_status = current_status


class StoreUnavailableError(ChunklineError):
  """Persistence layer unreachable; surfaced as a generic internal error."""

  code = "STORE_UNAVAILABLE"

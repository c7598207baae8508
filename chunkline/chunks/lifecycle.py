"""Chunk state machine: legal transitions and the edit lock."""

from __future__ import annotations

from collections.abc import Iterable

from chunkline.chunks.models import CHUNK_STATUSES, ChunkRecord, ChunkStatus
from chunkline.core.errors import ConflictError, ValidationFailure

# Every edge of the lifecycle, user-initiated or scheduler-driven.
TRANSITIONS: dict[ChunkStatus, frozenset[ChunkStatus]] = {
  "draft": frozenset({"ready"}),
  "ready": frozenset({"draft", "queued"}),
  "queued": frozenset({"processing", "ready"}),
  "processing": frozenset({"done", "error"}),
  "done": frozenset({"draft"}),
  "error": frozenset({"draft", "queued"}),
}

# Edges a principal may request directly; the rest belong to the scheduler.
USER_TRANSITIONS: frozenset[tuple[ChunkStatus, ChunkStatus]] = frozenset({("draft", "ready"), ("ready", "draft"), ("done", "draft"), ("error", "draft")})

EDITABLE_STATUSES: frozenset[ChunkStatus] = frozenset({"draft", "ready", "error"})
LOCKED_STATUSES: frozenset[ChunkStatus] = frozenset({"queued", "processing"})
TERMINAL_STATUSES: frozenset[ChunkStatus] = frozenset({"done", "error"})
SUBMITTABLE_STATUSES: frozenset[ChunkStatus] = frozenset({"ready", "error"})


def parse_status(raw: str) -> ChunkStatus:
  """Validate a raw status string."""
  if raw not in CHUNK_STATUSES:
    raise ValidationFailure(f"Unknown chunk status '{raw}'.", allowed=list(CHUNK_STATUSES))
  return raw  # type: ignore[return-value]


def can_transition(current: ChunkStatus, target: ChunkStatus) -> bool:
  return target in TRANSITIONS.get(current, frozenset())


def is_user_transition(current: ChunkStatus, target: ChunkStatus) -> bool:
  return (current, target) in USER_TRANSITIONS


def ensure_editable(chunk: ChunkRecord) -> None:
  """Refuse content edits while the chunk is held by a batch job."""
  if chunk.status not in EDITABLE_STATUSES:
    raise ConflictError(f"Chunk {chunk.chunk_id} cannot be edited while '{chunk.status}'.", current_status=chunk.status, chunk_id=chunk.chunk_id)


def illegal_user_transitions(chunks: Iterable[ChunkRecord], target: ChunkStatus) -> list[dict[str, str]]:
  """Return the chunks whose current status cannot move to `target` on user request."""
  # A no-op (already in target) is reported too so the whole request stays all-or-nothing.
  return [{"chunk_id": chunk.chunk_id, "status": chunk.status, "target_status": target} for chunk in chunks if not is_user_transition(chunk.status, target)]

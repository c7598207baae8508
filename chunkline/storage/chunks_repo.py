"""Storage interface for projects, chunks, outputs and final artifacts."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from chunkline.chunks.models import ArtifactRecord, ChunkRecord, ChunkStatus, OutputRecord, ProjectRecord


class ChunkRepository(Protocol):
  """Repository contract for chunk persistence.

  Every multi-row method is atomic: it either applies completely or raises/returns
  a refusal without side effects.
  """

  async def create_project(self, record: ProjectRecord) -> None:
    """Persist a new project."""

  async def get_project(self, project_id: str) -> ProjectRecord | None:
    """Fetch a project by identifier."""

  async def cancel_project(self, project_id: str) -> ProjectRecord:
    """Move an active project to cancelled; Conflict when it is not active or chunks are locked."""

  async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
    """Fetch a chunk by identifier."""

  async def get_chunks(self, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
    """Fetch the chunks that exist among `chunk_ids`, in no particular order."""

  async def list_chunks(self, project_id: str) -> list[ChunkRecord]:
    """Return project chunks ordered by order_index."""

  async def append_chunks(self, project_id: str, records: Sequence[ChunkRecord], *, delete_ids: Sequence[str] = ()) -> list[ChunkRecord]:
    """Delete `delete_ids` (renumbering densely), then append `records` at the end.

    Order indexes come from the project's chunk counter; the project must be active.
    """

  async def delete_chunks(self, project_id: str, chunk_ids: Sequence[str]) -> int:
    """Delete chunks and renumber the rest 1..N; Conflict when any is locked by a batch job."""

  async def move_chunks(self, source_project_id: str, target_project_id: str, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
    """Move chunks to the end of another project, keeping their relative order.

    Both projects must be active and no chunk may be locked by a batch job. The source is
    renumbered 1..N in the same transaction.
    """

  async def update_chunk(self, chunk_id: str, fields: Mapping[str, Any], *, allowed_statuses: frozenset[str]) -> ChunkRecord:
    """Apply field updates when the chunk status is in `allowed_statuses`; Conflict otherwise."""

  async def reorder(self, project_id: str, ordered_ids: Sequence[str]) -> list[ChunkRecord]:
    """Reassign order indexes 1..N following `ordered_ids`, which must match membership exactly."""

  async def swap_statuses(self, project_id: str, expected: Mapping[str, ChunkStatus], new_status: ChunkStatus) -> list[str]:
    """Move every chunk in `expected` from its expected status to `new_status`.

    All-or-nothing: returns the ids whose current status differs (nothing applied), or [] on success.
    """

  async def claim(self, chunk_id: str, expected_status: ChunkStatus, new_status: ChunkStatus) -> bool:
    """Conditional status update; False when zero rows matched."""

  async def release(self, chunk_ids: Sequence[str], expected_status: ChunkStatus, new_status: ChunkStatus) -> int:
    """Conditionally move each chunk still in `expected_status`; returns the number moved."""

  async def list_outputs(self, chunk_ids: Sequence[str], *, batch_job_id: str | None = None) -> list[OutputRecord]:
    """Return outputs for the chunks, oldest first."""

  async def finalize_project(self, project_id: str, artifact: ArtifactRecord, *, snapshot: Mapping[str, ChunkStatus]) -> bool:
    """Atomically mark the project completed and store its artifact.

    Returns False when the project was no longer active. Raises ConflictError when the
    project's chunks no longer match ``snapshot`` (the statuses the artifact was rendered from).
    """

  async def get_artifact(self, project_id: str) -> ArtifactRecord | None:
    """Fetch the final artifact of a project."""

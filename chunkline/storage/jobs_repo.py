"""Storage interface for batch jobs and their unit results."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from chunkline.chunks.models import ChunkStatus, OutputRecord
from chunkline.jobs.models import BatchJobRecord, BatchJobStatus


class BatchJobRepository(Protocol):
  """Repository contract for batch job persistence."""

  async def create_job(self, record: BatchJobRecord, *, queue_from: Mapping[str, ChunkStatus]) -> list[str]:
    """Queue the chunks (expected status per id) and insert the job in one transaction.

    Returns the ids that were no longer in their expected status; nothing is written then.
    """

  async def get_job(self, job_id: str) -> BatchJobRecord | None:
    """Fetch a job by identifier."""

  async def list_jobs(self, project_id: str) -> list[BatchJobRecord]:
    """Return the project's jobs, newest first."""

  async def find_active(self) -> list[BatchJobRecord]:
    """Return queued and running jobs, oldest first."""

  async def transition_job(self, job_id: str, expected: frozenset[str], new_status: BatchJobStatus, **fields: Any) -> bool:
    """Conditional job status update; False when the job was not in `expected`."""

  async def cancel_job(self, job_id: str) -> BatchJobRecord | None:
    """Cancel an active job and revert its queued chunks to ready. None when not active."""

  async def existing_kinds(self, job_id: str, chunk_id: str) -> set[str]:
    """Analysis kinds already written for a unit of this job."""

  async def save_output(self, output: OutputRecord, *, complete_chunk: bool) -> bool:
    """Insert a write-once output and count its unit; move the chunk to done when `complete_chunk`.

    False (and nothing counted) when the unit already had an output.
    """

  async def fail_chunk(self, job_id: str, chunk_id: str, *, error: str, remaining_units: int) -> None:
    """Move a processing chunk to error and count its remaining units as processed and failed."""

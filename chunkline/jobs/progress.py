"""Batch progress tracking and cooperative cancellation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from chunkline.storage.jobs_repo import BatchJobRepository

logger = logging.getLogger(__name__)


class JobCancelledError(Exception):
  """Raised when the persisted job status says the batch was cancelled."""


@dataclass
class ChunkOutcomes:
  """Per-run tally of how each chunk of a batch ended."""

  done: list[str] = field(default_factory=list)
  failed: list[str] = field(default_factory=list)
  skipped: list[str] = field(default_factory=list)
  cancelled: list[str] = field(default_factory=list)

  def failure_ratio(self, total_chunks: int) -> float:
    if total_chunks <= 0:
      return 0.0
    return len(self.failed) / total_chunks


class BatchProgressTracker:
  """Read the job record between units so cancellation is observed cooperatively."""

  def __init__(self, *, job_id: str, jobs_repo: BatchJobRepository) -> None:
    self._job_id = job_id
    self._jobs_repo = jobs_repo
    self.outcomes = ChunkOutcomes()
    self.started = False

  async def ensure_active(self) -> None:
    """Raise JobCancelledError once the job has been cancelled."""
    record = await self._jobs_repo.get_job(self._job_id)
    if record is None or record.status == "cancelled":
      raise JobCancelledError(f"Batch job {self._job_id} was cancelled.")

  def chunk_done(self, chunk_id: str) -> None:
    self.outcomes.done.append(chunk_id)

  def chunk_failed(self, chunk_id: str, message: str) -> None:
    self.outcomes.failed.append(chunk_id)
    logger.warning("Chunk failed job_id=%s chunk_id=%s error=%s", self._job_id, chunk_id, message)

  def chunk_skipped(self, chunk_id: str) -> None:
    self.outcomes.skipped.append(chunk_id)
    logger.info("Claim lost, skipping chunk job_id=%s chunk_id=%s", self._job_id, chunk_id)

  def chunk_cancelled(self, chunk_id: str) -> None:
    self.outcomes.cancelled.append(chunk_id)

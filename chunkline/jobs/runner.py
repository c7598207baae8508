"""Process-wide scheduler for batch jobs."""

from __future__ import annotations

import asyncio
import logging

from chunkline.ai.providers.base import TextGenerator
from chunkline.config import Settings
from chunkline.jobs.worker import BatchProcessor
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.jobs_repo import BatchJobRepository

logger = logging.getLogger(__name__)


class BatchRunner:
  """Run batch jobs as background tasks sharing one bounded worker pool."""

  def __init__(self, *, chunk_repo: ChunkRepository, jobs_repo: BatchJobRepository, generator: TextGenerator, settings: Settings) -> None:
    self._jobs_repo = jobs_repo
    self._chunk_repo = chunk_repo
    self._semaphore = asyncio.Semaphore(settings.worker_concurrency)
    self._processor = BatchProcessor(chunk_repo=chunk_repo, jobs_repo=jobs_repo, generator=generator, settings=settings, semaphore=self._semaphore)
    self._tasks: dict[str, asyncio.Task[None]] = {}
    self._stopping = False

  def schedule(self, job_id: str) -> bool:
    """Start processing a job unless it is already running in this process."""
    if self._stopping:
      logger.warning("Runner stopping; job %s left queued for the next start.", job_id)
      return False
    if job_id in self._tasks:
      return False
    task = asyncio.create_task(self._run(job_id), name=f"batch-job-{job_id}")
    self._tasks[job_id] = task
    return True

  async def _run(self, job_id: str) -> None:
    try:
      await self._processor.run(job_id)
    except asyncio.CancelledError:
      logger.info("Batch job task cancelled job_id=%s", job_id)
      raise
    except Exception:  # noqa: BLE001
      # State stays as last committed; the job is resumed on the next start.
      logger.error("Batch job aborted job_id=%s", job_id, exc_info=True)
    finally:
      self._tasks.pop(job_id, None)

  async def resume(self) -> int:
    """Reschedule queued and running jobs left behind by a previous process."""
    resumed = 0
    for job in await self._jobs_repo.find_active():
      # A claim can land just before the process dies, while the job still reads queued.
      stranded = await self._chunk_repo.release(job.chunk_ids, "processing", "queued")
      if stranded:
        logger.info("Re-queued stranded chunks job_id=%s count=%s", job.job_id, stranded)
      if self.schedule(job.job_id):
        resumed += 1
    if resumed:
      logger.info("Resumed %s batch job(s).", resumed)
    return resumed

  async def wait_idle(self) -> None:
    """Wait until every scheduled job task has finished."""
    while self._tasks:
      await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

  async def stop(self) -> None:
    """Cancel in-flight job tasks; committed state is resumed on the next start."""
    self._stopping = True
    tasks = list(self._tasks.values())
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)
    self._tasks.clear()

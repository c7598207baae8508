"""Execution of a single batch job: claim chunks, generate each analysis, record results."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from chunkline.ai.backoff import retry_with_backoff
from chunkline.ai.errors import GenerationError, TransientGenerationError
from chunkline.ai.prompts import SYSTEM_PROMPT, build_prompt
from chunkline.ai.providers.base import GenerationResult, TextGenerator
from chunkline.chunks.models import OutputRecord, ProjectRecord
from chunkline.config import Settings
from chunkline.jobs.models import ACTIVE_JOB_STATUSES, BatchJobRecord
from chunkline.jobs.progress import BatchProgressTracker, JobCancelledError
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.jobs_repo import BatchJobRepository
from chunkline.utils.clock import now_iso
from chunkline.utils.ids import generate_record_id


class BatchProcessor:
  """Coordinates execution of one batch job against the shared worker pool."""

  def __init__(
    self,
    *,
    chunk_repo: ChunkRepository,
    jobs_repo: BatchJobRepository,
    generator: TextGenerator,
    settings: Settings,
    semaphore: asyncio.Semaphore | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self._chunk_repo = chunk_repo
    self._jobs_repo = jobs_repo
    self._generator = generator
    self._settings = settings
    self._semaphore = semaphore or asyncio.Semaphore(settings.worker_concurrency)
    self._sleep = sleep
    self._logger = logging.getLogger(__name__)

  async def run(self, job_id: str) -> BatchJobRecord | None:
    """Process every unit of a job and settle its terminal status."""
    job = await self._jobs_repo.get_job(job_id)
    if job is None or job.status not in ACTIVE_JOB_STATUSES:
      return job

    project = await self._chunk_repo.get_project(job.project_id)
    if project is None:
      await self._jobs_repo.transition_job(job_id, ACTIVE_JOB_STATUSES, "failed", completed_at=now_iso(), error_detail={"message": "Project no longer exists."})
      return await self._jobs_repo.get_job(job_id)

    tracker = BatchProgressTracker(job_id=job_id, jobs_repo=self._jobs_repo)
    results = await asyncio.gather(*(self._run_chunk(job, project, chunk_id, tracker) for chunk_id in job.chunk_ids), return_exceptions=True)
    for chunk_id, result in zip(job.chunk_ids, results):
      if isinstance(result, Exception):
        self._logger.error("Chunk processing crashed job_id=%s chunk_id=%s", job_id, chunk_id, exc_info=result)
        await self._fail_crashed_chunk(job, chunk_id, tracker, result)
    return await self._settle(job, tracker)

  async def _fail_crashed_chunk(self, job: BatchJobRecord, chunk_id: str, tracker: BatchProgressTracker, exc: Exception) -> None:
    message = f"Unexpected processing failure: {exc.__class__.__name__}."
    existing = await self._jobs_repo.existing_kinds(job.job_id, chunk_id)
    remaining = len([kind for kind in job.analysis_kinds if kind not in existing])
    await self._jobs_repo.fail_chunk(job.job_id, chunk_id, error=message, remaining_units=remaining)
    tracker.chunk_failed(chunk_id, message)

  async def _mark_started(self, job: BatchJobRecord, tracker: BatchProgressTracker) -> None:
    # queued -> running happens once, on the first successful claim.
    if tracker.started:
      return
    tracker.started = True
    if await self._jobs_repo.transition_job(job.job_id, frozenset({"queued"}), "running", started_at=now_iso()):
      self._logger.info("Batch job started job_id=%s chunks=%s kinds=%s", job.job_id, len(job.chunk_ids), ",".join(job.analysis_kinds))

  async def _run_chunk(self, job: BatchJobRecord, project: ProjectRecord, chunk_id: str, tracker: BatchProgressTracker) -> None:
    async with self._semaphore:
      # Cancellation is only observed before a claim; a claimed chunk runs every pending kind.
      try:
        await tracker.ensure_active()
      except JobCancelledError:
        tracker.chunk_cancelled(chunk_id)
        return

      if not await self._chunk_repo.claim(chunk_id, "queued", "processing"):
        tracker.chunk_skipped(chunk_id)
        return
      await self._mark_started(job, tracker)

      chunk = await self._chunk_repo.get_chunk(chunk_id)
      if chunk is None:
        tracker.chunk_skipped(chunk_id)
        return

      existing = await self._jobs_repo.existing_kinds(job.job_id, chunk_id)
      pending = [kind for kind in job.analysis_kinds if kind not in existing]
      if not pending:
        # Every unit was written before a restart; only the status flip was lost.
        await self._chunk_repo.claim(chunk_id, "processing", "done")
        tracker.chunk_done(chunk_id)
        return

      for position, kind in enumerate(pending):
        remaining = len(pending) - position
        try:
          prompt = build_prompt(kind, chunk, project)
          result = await self._generate_with_retry(prompt, job_id=job.job_id, chunk_id=chunk_id, kind=kind)
        except GenerationError as exc:
          await self._jobs_repo.fail_chunk(job.job_id, chunk_id, error=str(exc), remaining_units=remaining)
          tracker.chunk_failed(chunk_id, str(exc))
          return
        except Exception as exc:  # noqa: BLE001
          self._logger.error("Generation crashed job_id=%s chunk_id=%s kind=%s", job.job_id, chunk_id, kind, exc_info=True)
          message = f"Unexpected generation failure: {exc.__class__.__name__}."
          await self._jobs_repo.fail_chunk(job.job_id, chunk_id, error=message, remaining_units=remaining)
          tracker.chunk_failed(chunk_id, message)
          return

        output = OutputRecord(
          output_id=generate_record_id(),
          chunk_id=chunk_id,
          batch_job_id=job.job_id,
          analysis_kind=kind,
          text=result.content,
          created_at=now_iso(),
          input_tokens=result.input_tokens,
          output_tokens=result.output_tokens,
        )
        saved = await self._jobs_repo.save_output(output, complete_chunk=position == len(pending) - 1)
        if not saved:
          self._logger.warning("Output already recorded job_id=%s chunk_id=%s kind=%s", job.job_id, chunk_id, kind)
          if position == len(pending) - 1:
            await self._chunk_repo.claim(chunk_id, "processing", "done")

      tracker.chunk_done(chunk_id)

  async def _generate_with_retry(self, prompt: str, *, job_id: str, chunk_id: str, kind: str) -> GenerationResult:
    timeout = self._settings.generation_timeout_seconds

    async def _call() -> GenerationResult:
      try:
        return await asyncio.wait_for(self._generator.generate(prompt, system=SYSTEM_PROMPT), timeout=timeout)
      except asyncio.TimeoutError as exc:
        raise TransientGenerationError(f"Generation timed out after {timeout}s.") from exc

    def _on_retry(attempt: int, exc: Exception) -> None:
      self._logger.info("Retrying unit job_id=%s chunk_id=%s kind=%s attempt=%s error=%s", job_id, chunk_id, kind, attempt, exc)

    return await retry_with_backoff(
      _call,
      max_attempts=self._settings.retry_max_attempts,
      base_delay=self._settings.retry_base_delay_seconds,
      max_delay=self._settings.retry_max_delay_seconds,
      on_retry=_on_retry,
      sleep=self._sleep,
    )

  async def _settle(self, job: BatchJobRecord, tracker: BatchProgressTracker) -> BatchJobRecord | None:
    outcomes = tracker.outcomes
    if outcomes.skipped:
      # Chunks that failed before a restart show up here as lost claims.
      for chunk in await self._chunk_repo.get_chunks(outcomes.skipped):
        if chunk.status == "error" and chunk.chunk_id not in outcomes.failed:
          outcomes.failed.append(chunk.chunk_id)
    failure_ratio = outcomes.failure_ratio(len(job.chunk_ids))
    status = "completed" if failure_ratio <= self._settings.batch_error_threshold else "failed"
    error_detail = None
    if outcomes.failed:
      error_detail = {"failed_chunks": list(outcomes.failed), "failure_ratio": round(failure_ratio, 4), "threshold": self._settings.batch_error_threshold}

    # A job whose chunks were never claimed settles straight from queued.
    settled = await self._jobs_repo.transition_job(job.job_id, ACTIVE_JOB_STATUSES, status, completed_at=now_iso(), error_detail=error_detail)
    if settled:
      self._logger.info(
        "Batch job %s job_id=%s done=%s failed=%s skipped=%s", status, job.job_id, len(outcomes.done), len(outcomes.failed), len(outcomes.skipped)
      )
    else:
      self._logger.info("Batch job ended without settling job_id=%s (cancelled=%s)", job.job_id, len(outcomes.cancelled))
    return await self._jobs_repo.get_job(job.job_id)

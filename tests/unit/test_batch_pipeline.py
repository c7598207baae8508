from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from chunkline.ai.errors import GenerationError, TransientGenerationError
from chunkline.chunks.models import OutputRecord
from chunkline.config import Settings
from chunkline.core.errors import ConflictError, NotFoundError, ValidationFailure
from chunkline.jobs.runner import BatchRunner
from chunkline.jobs.worker import BatchProcessor
from chunkline.services import batches as batch_service
from chunkline.services import chunks as chunk_service
from chunkline.services import projects as project_service
from chunkline.storage.memory_repo import MemoryBatchJobRepository, MemoryChunkRepository

OWNER = "alice"


class RecordingScheduler:
  def __init__(self) -> None:
    self.scheduled: list[str] = []

  def schedule(self, job_id: str) -> bool:
    self.scheduled.append(job_id)
    return True


async def _ready_project(repo: MemoryChunkRepository, count: int) -> tuple[str, list[str]]:
  project = await project_service.create_project(repo, OWNER, title="Thesis", faculty="Law", topic="Contracts")
  ids = []
  for number in range(1, count + 1):
    chunk = await chunk_service.create_chunk(repo, OWNER, project.project_id, title=f"Part {number}", content=f"Marker-{number} body text for the analysis.")
    ids.append(chunk.chunk_id)
  await chunk_service.bulk_update_status(repo, OWNER, project.project_id, ids, "ready")
  return project.project_id, ids


async def _submit(chunk_repo, jobs_repo, settings: Settings, project_id: str, ids: list[str], kinds: list[str]) -> str:
  job, _ = await batch_service.submit_batch(chunk_repo, jobs_repo, RecordingScheduler(), settings, OWNER, project_id, ids, kinds)
  return job.job_id


def _processor(chunk_repo, jobs_repo, generator, settings: Settings) -> BatchProcessor:
  async def _no_sleep(delay: float) -> None:
    return None

  return BatchProcessor(chunk_repo=chunk_repo, jobs_repo=jobs_repo, generator=generator, settings=settings, sleep=_no_sleep)


@pytest.mark.anyio
async def test_submit_queues_chunks_and_schedules(chunk_repo: MemoryChunkRepository, jobs_repo: MemoryBatchJobRepository, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 3)
  scheduler = RecordingScheduler()

  job, quote = await batch_service.submit_batch(chunk_repo, jobs_repo, scheduler, settings, OWNER, project_id, ids, ["summary", "content_analysis"])

  assert job.total_units == 6
  assert job.status == "queued"
  assert scheduler.scheduled == [job.job_id]
  assert quote.estimated_cost == pytest.approx(quote.raw_cost * 0.5 * 0.75)
  assert quote.savings_percentage == 62.5
  assert {chunk.status for chunk in await chunk_repo.get_chunks(ids)} == {"queued"}


@pytest.mark.anyio
async def test_preview_does_not_mutate(chunk_repo: MemoryChunkRepository, jobs_repo: MemoryBatchJobRepository, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  quote = await batch_service.preview_batch(chunk_repo, settings, OWNER, project_id, ids, ["summary"])
  assert quote.total_units == 2
  assert len(quote.chunks) == 2
  assert {chunk.status for chunk in await chunk_repo.get_chunks(ids)} == {"ready"}
  assert await jobs_repo.list_jobs(project_id) == []


@pytest.mark.anyio
@pytest.mark.parametrize(
  "kinds",
  [[], ["summary", "summary"], ["poetry"]],
)
async def test_intake_rejects_bad_kinds(chunk_repo: MemoryChunkRepository, jobs_repo: MemoryBatchJobRepository, settings: Settings, kinds: list[str]) -> None:
  project_id, ids = await _ready_project(chunk_repo, 1)
  with pytest.raises(ValidationFailure):
    await batch_service.submit_batch(chunk_repo, jobs_repo, RecordingScheduler(), settings, OWNER, project_id, ids, kinds)
  assert (await chunk_repo.get_chunk(ids[0])).status == "ready"


@pytest.mark.anyio
async def test_intake_rejects_chunks_that_are_not_ready(chunk_repo: MemoryChunkRepository, jobs_repo: MemoryBatchJobRepository, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 3)
  await chunk_service.bulk_update_status(chunk_repo, OWNER, project_id, [ids[1]], "draft")
  with pytest.raises(ValidationFailure) as excinfo:
    await batch_service.submit_batch(chunk_repo, jobs_repo, RecordingScheduler(), settings, OWNER, project_id, ids, ["summary"])
  assert excinfo.value.context["chunks"] == [{"chunk_id": ids[1], "status": "draft"}]
  assert [chunk.status for chunk in await chunk_repo.list_chunks(project_id)] == ["ready", "draft", "ready"]


@pytest.mark.anyio
async def test_intake_enforces_batch_size_and_ownership(chunk_repo: MemoryChunkRepository, jobs_repo: MemoryBatchJobRepository, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 3)
  with pytest.raises(ValidationFailure):
    await batch_service.submit_batch(chunk_repo, jobs_repo, RecordingScheduler(), replace(settings, max_chunks_per_batch=2), OWNER, project_id, ids, ["summary"])
  with pytest.raises(NotFoundError):
    await batch_service.submit_batch(chunk_repo, jobs_repo, RecordingScheduler(), settings, "bob", project_id, ids, ["summary"])


@pytest.mark.anyio
async def test_intake_race_is_a_conflict_and_queues_nothing(chunk_repo: MemoryChunkRepository, store, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 3)

  class RacingJobsRepo(MemoryBatchJobRepository):
    async def create_job(self, record, *, queue_from):
      # Another request unmarks one chunk between validation and the swap.
      await chunk_repo.claim(ids[2], "ready", "draft")
      return await super().create_job(record, queue_from=queue_from)

  racing = RacingJobsRepo(store)
  with pytest.raises(ConflictError) as excinfo:
    await batch_service.submit_batch(chunk_repo, racing, RecordingScheduler(), settings, OWNER, project_id, ids, ["summary"])
  assert excinfo.value.context["chunk_ids"] == [ids[2]]
  assert [chunk.status for chunk in await chunk_repo.list_chunks(project_id)] == ["ready", "ready", "draft"]
  assert await racing.list_jobs(project_id) == []


@pytest.mark.anyio
async def test_run_processes_every_unit(chunk_repo, jobs_repo, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 3)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary", "structural_analysis"])

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  assert job.status == "completed"
  assert job.processed_units == job.total_units == 6
  assert job.failed_units == 0
  assert job.progress_percentage == 100.0
  assert job.started_at is not None and job.completed_at is not None
  chunks = await chunk_repo.get_chunks(ids)
  assert {chunk.status for chunk in chunks} == {"done"}
  assert all(chunk.processed_at for chunk in chunks)
  assert len(await chunk_repo.list_outputs(ids, batch_job_id=job_id)) == 6
  assert len(generator.calls) == 6


@pytest.mark.anyio
async def test_transient_failures_are_retried(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 1)
  generator = make_generator(script={"Marker-1": [TransientGenerationError("429"), TransientGenerationError("503"), "recovered"]})
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  assert job.status == "completed"
  assert len(generator.calls) == 3
  (output,) = await chunk_repo.list_outputs(ids)
  assert output.text == "recovered"
  assert output.input_tokens == 10


@pytest.mark.anyio
async def test_exhausted_retries_fail_only_that_chunk(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 3)
  generator = make_generator(script={"Marker-2": [TransientGenerationError("timeout")] * 3})
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary", "content_analysis"])

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  assert job.status == "completed"
  assert job.processed_units == 6
  assert job.failed_units == 2
  assert job.error_detail["failed_chunks"] == [ids[1]]
  failed = await chunk_repo.get_chunk(ids[1])
  assert failed.status == "error"
  assert "timeout" in failed.last_error
  assert [chunk.status for chunk in await chunk_repo.get_chunks([ids[0], ids[2]])] == ["done", "done"]


@pytest.mark.anyio
async def test_non_retryable_failure_counts_remaining_units(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 1)
  # First kind succeeds, second fails permanently; the third is never attempted.
  generator = make_generator(script={"Marker-1": ["ok", GenerationError("invalid request")]})
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary", "structural_analysis", "content_analysis"])

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  assert job.processed_units == 3
  assert job.failed_units == 2
  assert len(generator.calls) == 2
  assert job.status == "failed"


@pytest.mark.anyio
async def test_failure_ratio_above_threshold_fails_job(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 3)
  generator = make_generator(script={"Marker-1": [GenerationError("bad")], "Marker-2": [GenerationError("bad")]})
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  assert job.status == "failed"
  assert job.error_detail["failure_ratio"] == pytest.approx(2 / 3, abs=1e-4)
  assert job.error_detail["threshold"] == settings.batch_error_threshold


@pytest.mark.anyio
async def test_progress_is_monotonic_and_bounded(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 4)
  snapshots: list[int] = []
  holder: dict[str, str] = {}

  async def _observe(prompt: str) -> None:
    job = await jobs_repo.get_job(holder["job_id"])
    snapshots.append(job.processed_units)

  generator = make_generator(script={"Marker-3": [GenerationError("bad")]}, on_call=_observe)
  holder["job_id"] = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary", "content_analysis"])

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(holder["job_id"])

  snapshots.append(job.processed_units)
  assert snapshots == sorted(snapshots)
  assert all(0 <= value <= job.total_units for value in snapshots)
  assert job.processed_units == job.total_units


@pytest.mark.anyio
async def test_concurrent_claims_have_one_winner(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _ready_project(chunk_repo, 1)
  await chunk_repo.swap_statuses(project_id, {ids[0]: "ready"}, "queued")
  results = await asyncio.gather(*(chunk_repo.claim(ids[0], "queued", "processing") for _ in range(10)))
  assert results.count(True) == 1


@pytest.mark.anyio
async def test_chunk_claimed_elsewhere_is_skipped(chunk_repo, jobs_repo, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])
  assert await chunk_repo.claim(ids[0], "queued", "processing")

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  assert job.processed_units == 1
  assert (await chunk_repo.get_chunk(ids[0])).status == "processing"
  assert len(generator.calls) == 1


@pytest.mark.anyio
async def test_cancel_reverts_queued_chunks(chunk_repo, jobs_repo, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])

  cancelled = await batch_service.cancel_batch(jobs_repo, OWNER, job_id)
  assert cancelled.status == "cancelled"
  assert {chunk.status for chunk in await chunk_repo.get_chunks(ids)} == {"ready"}

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)
  assert job.status == "cancelled"
  assert generator.calls == []

  with pytest.raises(ConflictError) as excinfo:
    await batch_service.cancel_batch(jobs_repo, OWNER, job_id)
  assert excinfo.value.current_status == "cancelled"


@pytest.mark.anyio
async def test_cancel_lets_a_claimed_chunk_finish(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  holder: dict[str, str] = {}

  async def _cancel_on_first_call(prompt: str) -> None:
    if "Marker-1" in prompt and "job_id" in holder:
      await jobs_repo.cancel_job(holder.pop("job_id"))

  generator = make_generator(on_call=_cancel_on_first_call)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary", "content_analysis"])
  holder["job_id"] = job_id

  job = await _processor(chunk_repo, jobs_repo, generator, replace(settings, worker_concurrency=1)).run(job_id)

  assert job.status == "cancelled"
  first, second = await chunk_repo.get_chunks(ids)
  # The claimed chunk runs every kind; the queued one went back to ready and is never claimed.
  assert first.status == "done"
  assert first.last_error is None
  assert second.status == "ready"
  assert len(generator.calls) == 2
  assert job.processed_units == 2
  assert len(await chunk_repo.list_outputs([ids[0]], batch_job_id=job_id)) == 2


@pytest.mark.anyio
async def test_generation_timeout_is_retried_then_fails_the_chunk(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 1)

  async def _hang(prompt: str) -> None:
    await asyncio.sleep(1)

  generator = make_generator(on_call=_hang)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])

  job = await _processor(chunk_repo, jobs_repo, generator, replace(settings, generation_timeout_seconds=0.05, retry_max_attempts=3)).run(job_id)

  assert len(generator.calls) == 3
  assert job.status == "failed"
  assert job.processed_units == job.total_units == 1
  chunk = await chunk_repo.get_chunk(ids[0])
  assert chunk.status == "error"
  assert chunk.last_error == "Generation timed out after 0.05s."


@pytest.mark.anyio
async def test_unexpected_generator_error_fails_only_that_chunk(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  generator = make_generator(script={"Marker-1": [KeyError("usage")]})
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])

  job = await _processor(chunk_repo, jobs_repo, generator, replace(settings, batch_error_threshold=0.6)).run(job_id)

  assert job.status == "completed"
  assert job.processed_units == 2
  assert job.failed_units == 1
  assert job.error_detail["failed_chunks"] == [ids[0]]
  first, second = await chunk_repo.get_chunks(ids)
  assert first.status == "error"
  assert first.last_error == "Unexpected generation failure: KeyError."
  assert second.status == "done"


@pytest.mark.anyio
async def test_storage_crash_on_one_chunk_still_settles_the_job(chunk_repo, store, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)

  class FlakyJobsRepo(MemoryBatchJobRepository):
    async def save_output(self, output, *, complete_chunk):
      if output.chunk_id == ids[1]:
        raise RuntimeError("disk full")
      return await super().save_output(output, complete_chunk=complete_chunk)

  flaky = FlakyJobsRepo(store)
  job_id = await _submit(chunk_repo, flaky, settings, project_id, ids, ["summary"])

  job = await _processor(chunk_repo, flaky, generator, replace(settings, batch_error_threshold=0.6)).run(job_id)

  assert job.status == "completed"
  assert job.processed_units == job.total_units == 2
  assert job.error_detail["failed_chunks"] == [ids[1]]
  first, second = await chunk_repo.get_chunks(ids)
  assert first.status == "done"
  assert second.status == "error"
  assert second.last_error == "Unexpected processing failure: RuntimeError."


@pytest.mark.anyio
async def test_job_starts_running_on_first_claim(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 1)
  seen: list[str] = []
  holder: dict[str, str] = {}

  async def _observe(prompt: str) -> None:
    seen.append((await jobs_repo.get_job(holder["job_id"])).status)

  generator = make_generator(on_call=_observe)
  holder["job_id"] = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(holder["job_id"])

  assert seen == ["running"]
  assert job.status == "completed"
  assert job.started_at is not None


@pytest.mark.anyio
async def test_job_with_no_claimed_chunks_never_runs(chunk_repo, jobs_repo, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])
  for chunk_id in ids:
    assert await chunk_repo.claim(chunk_id, "queued", "processing")

  job = await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  assert job.status == "completed"
  assert job.started_at is None
  assert job.completed_at is not None
  assert generator.calls == []


@pytest.mark.anyio
async def test_error_chunks_can_be_resubmitted(chunk_repo, jobs_repo, make_generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  generator = make_generator(script={"Marker-2": [GenerationError("bad")]})
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])
  await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  scheduler = RecordingScheduler()
  retry_job, _ = await batch_service.retry_failed(chunk_repo, jobs_repo, scheduler, settings, OWNER, job_id)

  assert retry_job.chunk_ids == [ids[1]]
  assert retry_job.analysis_kinds == ["summary"]
  assert scheduler.scheduled == [retry_job.job_id]
  finished = await _processor(chunk_repo, jobs_repo, generator, settings).run(retry_job.job_id)
  assert finished.status == "completed"
  assert (await chunk_repo.get_chunk(ids[1])).status == "done"


@pytest.mark.anyio
async def test_retry_failed_requires_a_terminal_job(chunk_repo, jobs_repo, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 1)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])
  with pytest.raises(ConflictError):
    await batch_service.retry_failed(chunk_repo, jobs_repo, RecordingScheduler(), settings, OWNER, job_id)


@pytest.mark.anyio
async def test_progress_lists_chunks_in_job_order(chunk_repo, jobs_repo, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, [ids[1], ids[0]], ["summary"])
  await _processor(chunk_repo, jobs_repo, generator, settings).run(job_id)

  job, per_chunk = await batch_service.get_progress(chunk_repo, jobs_repo, OWNER, job_id)

  assert job.status == "completed"
  assert [entry["chunk_id"] for entry in per_chunk] == [ids[1], ids[0]]
  assert [entry["order_index"] for entry in per_chunk] == [2, 1]
  assert all(entry["has_output"] for entry in per_chunk)
  with pytest.raises(NotFoundError):
    await batch_service.get_progress(chunk_repo, jobs_repo, "bob", job_id)


@pytest.mark.anyio
async def test_resume_requeues_stranded_chunks_and_skips_written_kinds(chunk_repo, jobs_repo, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary", "content_analysis"])

  # Simulate a crash after the first chunk's first unit was written.
  await jobs_repo.transition_job(job_id, frozenset({"queued"}), "running")
  await chunk_repo.claim(ids[0], "queued", "processing")
  await jobs_repo.save_output(OutputRecord(output_id="o1", chunk_id=ids[0], batch_job_id=job_id, analysis_kind="summary", text="before crash", created_at="2026-01-01T00:00:00"), complete_chunk=False)

  runner = BatchRunner(chunk_repo=chunk_repo, jobs_repo=jobs_repo, generator=generator, settings=settings)
  assert await runner.resume() == 1
  await runner.wait_idle()

  finished = await jobs_repo.get_job(job_id)
  assert finished.status == "completed"
  assert finished.processed_units == 4
  assert len(generator.calls) == 3
  assert {chunk.status for chunk in await chunk_repo.get_chunks(ids)} == {"done"}


@pytest.mark.anyio
async def test_resumed_job_counts_failures_from_before_the_restart(chunk_repo, jobs_repo, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 2)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])

  # The first chunk failed for good before the process went down.
  await jobs_repo.transition_job(job_id, frozenset({"queued"}), "running")
  await chunk_repo.claim(ids[0], "queued", "processing")
  await jobs_repo.fail_chunk(job_id, ids[0], error="provider refused", remaining_units=1)

  strict = replace(settings, batch_error_threshold=0.4)
  job = await _processor(chunk_repo, jobs_repo, generator, strict).run(job_id)

  assert job.status == "failed"
  assert job.error_detail["failed_chunks"] == [ids[0]]
  assert job.processed_units == 2
  assert len(generator.calls) == 1


@pytest.mark.anyio
async def test_resume_releases_a_claim_made_before_the_job_started(chunk_repo, jobs_repo, generator, settings: Settings) -> None:
  project_id, ids = await _ready_project(chunk_repo, 1)
  job_id = await _submit(chunk_repo, jobs_repo, settings, project_id, ids, ["summary"])
  # The process died between the claim and the queued -> running flip.
  await chunk_repo.claim(ids[0], "queued", "processing")

  runner = BatchRunner(chunk_repo=chunk_repo, jobs_repo=jobs_repo, generator=generator, settings=settings)
  assert await runner.resume() == 1
  await runner.wait_idle()

  finished = await jobs_repo.get_job(job_id)
  assert finished.status == "completed"
  assert finished.started_at is not None
  assert (await chunk_repo.get_chunk(ids[0])).status == "done"

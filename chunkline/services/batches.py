"""Batch intake, cost preview, progress, cancellation and retry."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from chunkline.ai.utils.estimation import apply_discounts, check_limits, estimate, resolve_profile
from chunkline.chunks.lifecycle import SUBMITTABLE_STATUSES
from chunkline.chunks.models import ChunkRecord, ChunkStatus, ProjectRecord
from chunkline.config import Settings
from chunkline.core.errors import ConflictError, NotFoundError, ValidationFailure
from chunkline.jobs.models import ANALYSIS_KINDS, TERMINAL_JOB_STATUSES, BatchJobRecord
from chunkline.services.chunks import load_owned_project
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.jobs_repo import BatchJobRepository
from chunkline.utils.clock import now_iso
from chunkline.utils.ids import generate_job_id

logger = logging.getLogger(__name__)


class JobScheduler(Protocol):
  def schedule(self, job_id: str) -> bool: ...


@dataclass(frozen=True)
class BatchQuote:
  """Cost and size estimate for a chunk x analysis-kind selection."""

  total_units: int
  estimated_tokens: int
  raw_cost: float
  estimated_cost: float
  savings_percentage: float
  model: str
  chunks: list[dict[str, Any]] = field(default_factory=list)
  warnings: list[str] = field(default_factory=list)

  def as_dict(self) -> dict[str, Any]:
    return asdict(self)


def _validate_kinds(analysis_kinds: Sequence[str]) -> list[str]:
  if not analysis_kinds:
    raise ValidationFailure("At least one analysis kind is required.", allowed=list(ANALYSIS_KINDS))
  duplicates = sorted(kind for kind, count in Counter(analysis_kinds).items() if count > 1)
  if duplicates:
    raise ValidationFailure("Analysis kinds must be unique.", duplicates=duplicates)
  unknown = [kind for kind in analysis_kinds if kind not in ANALYSIS_KINDS]
  if unknown:
    raise ValidationFailure("Unknown analysis kinds.", unknown=unknown, allowed=list(ANALYSIS_KINDS))
  return list(analysis_kinds)


async def _validate_selection(repo: ChunkRepository, settings: Settings, principal_id: str, project_id: str, chunk_ids: Sequence[str], analysis_kinds: Sequence[str]) -> tuple[ProjectRecord, list[ChunkRecord], list[str]]:
  """Check project, chunk selection and analysis kinds before anything is written."""
  project = await load_owned_project(repo, project_id, principal_id)
  if project.status != "active":
    raise ConflictError(f"Project {project_id} is {project.status}.", current_status=project.status, project_id=project_id)

  if not chunk_ids:
    raise ValidationFailure("At least one chunk id is required.")
  duplicates = sorted(chunk_id for chunk_id, count in Counter(chunk_ids).items() if count > 1)
  if duplicates:
    raise ValidationFailure("Chunk ids must be unique.", duplicates=duplicates)
  if len(chunk_ids) > settings.max_chunks_per_batch:
    raise ValidationFailure(f"A batch can hold at most {settings.max_chunks_per_batch} chunks.", requested=len(chunk_ids), limit=settings.max_chunks_per_batch)

  kinds = _validate_kinds(analysis_kinds)

  found = {chunk.chunk_id: chunk for chunk in await repo.get_chunks(chunk_ids)}
  foreign = [chunk_id for chunk_id in chunk_ids if chunk_id not in found or found[chunk_id].project_id != project_id]
  if foreign:
    raise ValidationFailure("Chunks do not belong to the project.", chunk_ids=foreign)
  chunks = [found[chunk_id] for chunk_id in chunk_ids]
  not_submittable = [{"chunk_id": chunk.chunk_id, "status": chunk.status} for chunk in chunks if chunk.status not in SUBMITTABLE_STATUSES]
  if not_submittable:
    raise ValidationFailure("Only ready or error chunks can be submitted.", chunks=not_submittable)
  return project, chunks, kinds


def quote_batch(project: ProjectRecord, chunks: Sequence[ChunkRecord], analysis_kinds: Sequence[str], settings: Settings) -> BatchQuote:
  """Sum the estimator over the chunk x kind cross product and apply discounts."""
  profile = resolve_profile(settings.generation_model)
  per_chunk: list[dict[str, Any]] = []
  warnings: list[str] = []
  raw_cost = 0.0
  tokens = 0
  for chunk in chunks:
    unit = estimate(chunk.content, project.faculty, project.topic, profile)
    unit_tokens = unit.total_input_units + unit.max_output_units
    chunk_cost = (unit.estimated_cost or 0.0) * len(analysis_kinds)
    raw_cost += chunk_cost
    tokens += unit_tokens * len(analysis_kinds)
    limits = check_limits(unit, profile)
    warnings.extend(f"{chunk.title}: {warning}" for warning in limits.warnings)
    per_chunk.append({"chunk_id": chunk.chunk_id, "title": chunk.title, "estimated_tokens": unit_tokens * len(analysis_kinds), "estimated_cost": chunk_cost, "is_valid": limits.is_valid})

  final_cost = apply_discounts(raw_cost, batch_discount=settings.batch_discount, provider_discount=settings.provider_discount)
  savings = round((1 - final_cost / raw_cost) * 100, 2) if raw_cost > 0 else 0.0
  return BatchQuote(
    total_units=len(chunks) * len(analysis_kinds),
    estimated_tokens=tokens,
    raw_cost=raw_cost,
    estimated_cost=final_cost,
    savings_percentage=savings,
    model=profile.name,
    chunks=per_chunk,
    warnings=warnings,
  )


async def preview_batch(repo: ChunkRepository, settings: Settings, principal_id: str, project_id: str, chunk_ids: Sequence[str], analysis_kinds: Sequence[str]) -> BatchQuote:
  """Validate and estimate a batch without persisting or mutating anything."""
  project, chunks, kinds = await _validate_selection(repo, settings, principal_id, project_id, chunk_ids, analysis_kinds)
  return quote_batch(project, chunks, kinds, settings)


async def submit_batch(
  chunk_repo: ChunkRepository,
  jobs_repo: BatchJobRepository,
  scheduler: JobScheduler,
  settings: Settings,
  principal_id: str,
  project_id: str,
  chunk_ids: Sequence[str],
  analysis_kinds: Sequence[str],
) -> tuple[BatchJobRecord, BatchQuote]:
  """Queue the selected chunks, persist the job and hand it to the scheduler."""
  project, chunks, kinds = await _validate_selection(chunk_repo, settings, principal_id, project_id, chunk_ids, analysis_kinds)
  quote = quote_batch(project, chunks, kinds, settings)

  timestamp = now_iso()
  record = BatchJobRecord(
    job_id=generate_job_id(),
    project_id=project_id,
    owner_id=principal_id,
    chunk_ids=[chunk.chunk_id for chunk in chunks],
    analysis_kinds=kinds,
    status="queued",
    total_units=quote.total_units,
    created_at=timestamp,
    updated_at=timestamp,
    estimated_cost=quote.estimated_cost,
    estimated_tokens=quote.estimated_tokens,
    model=quote.model,
    config={"temperature": settings.generation_temperature, "max_tokens": settings.generation_max_tokens, "raw_cost": quote.raw_cost, "savings_percentage": quote.savings_percentage},
  )
  expected: dict[str, ChunkStatus] = {chunk.chunk_id: chunk.status for chunk in chunks}
  mismatched = await jobs_repo.create_job(record, queue_from=expected)
  if mismatched:
    raise ConflictError("Chunks changed status before they could be queued; nothing was submitted.", chunk_ids=mismatched)

  logger.info("Batch job queued job_id=%s project_id=%s units=%s cost=%.6f", record.job_id, project_id, record.total_units, record.estimated_cost)
  scheduler.schedule(record.job_id)
  return record, quote


async def load_owned_job(jobs_repo: BatchJobRepository, job_id: str, principal_id: str) -> BatchJobRecord:
  job = await jobs_repo.get_job(job_id)
  if job is None or job.owner_id != principal_id:
    raise NotFoundError(f"Batch job {job_id} not found.", batch_job_id=job_id)
  return job


async def get_progress(chunk_repo: ChunkRepository, jobs_repo: BatchJobRepository, principal_id: str, job_id: str) -> tuple[BatchJobRecord, list[dict[str, Any]]]:
  """Return the job with the current status of each of its chunks, in job order."""
  job = await load_owned_job(jobs_repo, job_id, principal_id)
  chunks = {chunk.chunk_id: chunk for chunk in await chunk_repo.get_chunks(job.chunk_ids)}
  outputs = await chunk_repo.list_outputs(job.chunk_ids, batch_job_id=job.job_id)
  kinds_by_chunk: dict[str, list[str]] = {}
  for output in outputs:
    kinds_by_chunk.setdefault(output.chunk_id, []).append(output.analysis_kind)

  per_chunk: list[dict[str, Any]] = []
  for chunk_id in job.chunk_ids:
    chunk = chunks.get(chunk_id)
    per_chunk.append(
      {
        "chunk_id": chunk_id,
        "title": chunk.title if chunk else None,
        "order_index": chunk.order_index if chunk else None,
        "status": chunk.status if chunk else "deleted",
        "last_error": chunk.last_error if chunk else None,
        "completed_kinds": kinds_by_chunk.get(chunk_id, []),
        "has_output": bool(kinds_by_chunk.get(chunk_id)),
      }
    )
  return job, per_chunk


async def list_jobs(chunk_repo: ChunkRepository, jobs_repo: BatchJobRepository, principal_id: str, project_id: str) -> list[BatchJobRecord]:
  await load_owned_project(chunk_repo, project_id, principal_id)
  return await jobs_repo.list_jobs(project_id)


async def cancel_batch(jobs_repo: BatchJobRepository, principal_id: str, job_id: str) -> BatchJobRecord:
  """Cancel a queued or running job; its queued chunks return to ready."""
  job = await load_owned_job(jobs_repo, job_id, principal_id)
  cancelled = await jobs_repo.cancel_job(job.job_id)
  if cancelled is None:
    current = await jobs_repo.get_job(job.job_id)
    current_status = current.status if current else job.status
    raise ConflictError(f"Batch job {job_id} is {current_status} and cannot be cancelled.", current_status=current_status, batch_job_id=job_id)
  logger.info("Batch job cancelled job_id=%s", job_id)
  return cancelled


async def retry_failed(
  chunk_repo: ChunkRepository,
  jobs_repo: BatchJobRepository,
  scheduler: JobScheduler,
  settings: Settings,
  principal_id: str,
  job_id: str,
) -> tuple[BatchJobRecord, BatchQuote]:
  """Submit a new batch for the job's chunks that ended in error, with the same analysis kinds."""
  job = await load_owned_job(jobs_repo, job_id, principal_id)
  if job.status not in TERMINAL_JOB_STATUSES:
    raise ConflictError(f"Batch job {job_id} is still {job.status}.", current_status=job.status, batch_job_id=job_id)

  failed_ids = [chunk.chunk_id for chunk in await chunk_repo.get_chunks(job.chunk_ids) if chunk.status == "error"]
  if not failed_ids:
    raise ValidationFailure("Batch job has no failed chunks to retry.", batch_job_id=job_id)
  ordered = [chunk_id for chunk_id in job.chunk_ids if chunk_id in set(failed_ids)]
  return await submit_batch(chunk_repo, jobs_repo, scheduler, settings, principal_id, job.project_id, ordered, job.analysis_kinds)

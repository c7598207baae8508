import logging

from fastapi import APIRouter, Depends, status

from chunkline.api.deps import get_chunk_repo, get_jobs_repo, get_runner
from chunkline.api.models import BatchCreateResponse, BatchJobResponse, BatchPreviewResponse, BatchProgressResponse, BatchRequest, ChunkProgress
from chunkline.config import Settings, get_settings
from chunkline.core.security import Principal, get_current_principal
from chunkline.jobs.runner import BatchRunner
from chunkline.services import batches as batch_service
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.jobs_repo import BatchJobRepository

router = APIRouter()
logger = logging.getLogger("chunkline.api.routes.batches")


@router.post("/preview", response_model=BatchPreviewResponse)
async def preview_batch(  # noqa: B008
  request: BatchRequest,
  settings: Settings = Depends(get_settings),  # noqa: B008
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> BatchPreviewResponse:
  """Validate and price a batch without queuing anything."""
  quote = await batch_service.preview_batch(repo, settings, principal.principal_id, request.project_id, request.chunk_ids, request.analysis_kinds)
  return BatchPreviewResponse(**quote.as_dict())


@router.post("", response_model=BatchCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_batch(  # noqa: B008
  request: BatchRequest,
  settings: Settings = Depends(get_settings),  # noqa: B008
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  chunk_repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
  jobs_repo: BatchJobRepository = Depends(get_jobs_repo),  # noqa: B008
  runner: BatchRunner = Depends(get_runner),  # noqa: B008
) -> BatchCreateResponse:
  """Queue the selected chunks and start the batch job in the background."""
  job, quote = await batch_service.submit_batch(chunk_repo, jobs_repo, runner, settings, principal.principal_id, request.project_id, request.chunk_ids, request.analysis_kinds)
  return BatchCreateResponse(
    batch_job_id=job.job_id,
    status=job.status,
    total_units=job.total_units,
    estimated_cost=job.estimated_cost,
    estimated_tokens=job.estimated_tokens,
    savings_percentage=quote.savings_percentage,
  )


@router.get("/{job_id}", response_model=BatchProgressResponse)
async def get_batch(  # noqa: B008
  job_id: str,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  chunk_repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
  jobs_repo: BatchJobRepository = Depends(get_jobs_repo),  # noqa: B008
) -> BatchProgressResponse:
  """Fetch job counters and per-chunk status."""
  job, per_chunk = await batch_service.get_progress(chunk_repo, jobs_repo, principal.principal_id, job_id)
  base = BatchJobResponse.from_record(job)
  return BatchProgressResponse(**base.model_dump(), per_chunk_status=[ChunkProgress(**entry) for entry in per_chunk])


@router.post("/{job_id}/cancel", response_model=BatchJobResponse)
async def cancel_batch(  # noqa: B008
  job_id: str,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  jobs_repo: BatchJobRepository = Depends(get_jobs_repo),  # noqa: B008
) -> BatchJobResponse:
  """Request cancellation; in-flight generator calls finish first."""
  job = await batch_service.cancel_batch(jobs_repo, principal.principal_id, job_id)
  return BatchJobResponse.from_record(job)


@router.post("/{job_id}/retry-failed", response_model=BatchCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_failed(  # noqa: B008
  job_id: str,
  settings: Settings = Depends(get_settings),  # noqa: B008
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  chunk_repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
  jobs_repo: BatchJobRepository = Depends(get_jobs_repo),  # noqa: B008
  runner: BatchRunner = Depends(get_runner),  # noqa: B008
) -> BatchCreateResponse:
  """Submit a new batch for the chunks this job left in error."""
  job, quote = await batch_service.retry_failed(chunk_repo, jobs_repo, runner, settings, principal.principal_id, job_id)
  logger.info("Retry batch submitted source_job_id=%s job_id=%s", job_id, job.job_id)
  return BatchCreateResponse(
    batch_job_id=job.job_id,
    status=job.status,
    total_units=job.total_units,
    estimated_cost=job.estimated_cost,
    estimated_tokens=job.estimated_tokens,
    savings_percentage=quote.savings_percentage,
  )

import logging

from fastapi import APIRouter, Depends, status

from chunkline.api.deps import get_chunk_repo, get_jobs_repo
from chunkline.api.models import ArtifactResponse, BatchJobResponse, BatchListResponse, FinalizeResponse, ProjectCreateRequest, ProjectResponse
from chunkline.core.security import Principal, get_current_principal
from chunkline.services import batches as batch_service
from chunkline.services import finalizer
from chunkline.services import projects as project_service
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.jobs_repo import BatchJobRepository

router = APIRouter()
logger = logging.getLogger("chunkline.api.routes.projects")


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(  # noqa: B008
  request: ProjectCreateRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> ProjectResponse:
  """Create an empty active project owned by the caller."""
  record = await project_service.create_project(repo, principal.principal_id, title=request.title, faculty=request.faculty, topic=request.topic, level=request.level)
  return ProjectResponse.from_record(record)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(  # noqa: B008
  project_id: str,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> ProjectResponse:
  """Fetch a project with its chunk statistics."""
  record, stats = await project_service.get_project_overview(repo, principal.principal_id, project_id)
  return ProjectResponse.from_record(record, stats)


@router.post("/{project_id}/cancel", response_model=ProjectResponse)
async def cancel_project(  # noqa: B008
  project_id: str,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> ProjectResponse:
  """Cancel an active project that no batch job is holding."""
  record = await project_service.cancel_project(repo, principal.principal_id, project_id)
  return ProjectResponse.from_record(record)


@router.post("/{project_id}/finalize", response_model=FinalizeResponse)
async def finalize_project(  # noqa: B008
  project_id: str,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> FinalizeResponse:
  """Merge chunk outputs into the final artifact; a second call is a Conflict."""
  artifact = await finalizer.finalize_project(repo, principal.principal_id, project_id)
  return FinalizeResponse(final_artifact_id=artifact.artifact_id, missing_count=artifact.metadata.get("missing_count", 0))


@router.get("/{project_id}/artifact", response_model=ArtifactResponse)
async def get_artifact(  # noqa: B008
  project_id: str,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> ArtifactResponse:
  record = await project_service.get_artifact(repo, principal.principal_id, project_id)
  return ArtifactResponse.from_record(record)


@router.get("/{project_id}/batches", response_model=BatchListResponse)
async def list_batches(  # noqa: B008
  project_id: str,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  chunk_repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
  jobs_repo: BatchJobRepository = Depends(get_jobs_repo),  # noqa: B008
) -> BatchListResponse:
  """List the project's batch jobs, newest first."""
  jobs = await batch_service.list_jobs(chunk_repo, jobs_repo, principal.principal_id, project_id)
  return BatchListResponse(jobs=[BatchJobResponse.from_record(job) for job in jobs])

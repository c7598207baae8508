from fastapi import APIRouter, Depends, status

from chunkline.api.deps import get_chunk_repo
from chunkline.api.models import (
  BulkStatusRequest,
  ChunkCreateRequest,
  ChunkIdsRequest,
  ChunkListResponse,
  ChunkResponse,
  ChunkStats,
  ChunkUpdateRequest,
  DeleteResponse,
  MergeRequest,
  MoveRequest,
  ReorderRequest,
)
from chunkline.core.security import Principal, get_current_principal
from chunkline.services import chunks as chunk_service
from chunkline.storage.chunks_repo import ChunkRepository

router = APIRouter()


@router.get("/projects/{project_id}/chunks", response_model=ChunkListResponse)
async def list_chunks(  # noqa: B008
  project_id: str,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> ChunkListResponse:
  """List a project's chunks in order_index order."""
  chunks, stats = await chunk_service.list_chunks(repo, principal.principal_id, project_id)
  return ChunkListResponse(chunks=[ChunkResponse.from_record(chunk) for chunk in chunks], stats=ChunkStats(**stats))


@router.post("/projects/{project_id}/chunks", response_model=ChunkResponse, status_code=status.HTTP_201_CREATED)
async def create_chunk(  # noqa: B008
  project_id: str,
  request: ChunkCreateRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> ChunkResponse:
  """Append a draft chunk at the end of the project."""
  record = await chunk_service.create_chunk(
    repo,
    principal.principal_id,
    project_id,
    title=request.title,
    content=request.content,
    section=request.section,
    page_range=request.page_range,
    source_metadata=request.source_metadata,
  )
  return ChunkResponse.from_record(record)


@router.put("/projects/{project_id}/chunks/order", response_model=list[ChunkResponse])
async def reorder_chunks(  # noqa: B008
  project_id: str,
  request: ReorderRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> list[ChunkResponse]:
  """Reassign order indexes 1..N following the supplied id list."""
  chunks = await chunk_service.reorder_chunks(repo, principal.principal_id, project_id, request.chunk_ids)
  return [ChunkResponse.from_record(chunk) for chunk in chunks]


@router.patch("/projects/{project_id}/chunks/status", response_model=list[ChunkResponse])
async def bulk_update_status(  # noqa: B008
  project_id: str,
  request: BulkStatusRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> list[ChunkResponse]:
  """Move every selected chunk to the target status, or none of them."""
  chunks = await chunk_service.bulk_update_status(repo, principal.principal_id, project_id, request.chunk_ids, request.status)
  return [ChunkResponse.from_record(chunk) for chunk in chunks]


@router.patch("/chunks/{chunk_id}", response_model=ChunkResponse)
async def update_chunk(  # noqa: B008
  chunk_id: str,
  request: ChunkUpdateRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> ChunkResponse:
  record = await chunk_service.update_chunk(repo, principal.principal_id, chunk_id, request.model_dump(exclude_unset=True))
  return ChunkResponse.from_record(record)


@router.post("/chunks/delete", response_model=DeleteResponse)
async def delete_chunks(  # noqa: B008
  request: ChunkIdsRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> DeleteResponse:
  """Delete chunks and renumber the remaining ones densely."""
  project_id, deleted = await chunk_service.delete_chunks(repo, principal.principal_id, request.chunk_ids)
  return DeleteResponse(project_id=project_id, deleted=deleted)


@router.post("/chunks/duplicate", response_model=list[ChunkResponse], status_code=status.HTTP_201_CREATED)
async def duplicate_chunks(  # noqa: B008
  request: ChunkIdsRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> list[ChunkResponse]:
  chunks = await chunk_service.duplicate_chunks(repo, principal.principal_id, request.chunk_ids)
  return [ChunkResponse.from_record(chunk) for chunk in chunks]


@router.post("/chunks/merge", response_model=ChunkResponse, status_code=status.HTTP_201_CREATED)
async def merge_chunks(  # noqa: B008
  request: MergeRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> ChunkResponse:
  """Merge chunks into a new draft appended at the end."""
  record = await chunk_service.merge_chunks(repo, principal.principal_id, request.chunk_ids, title=request.title, section=request.section, delete_originals=request.delete_originals)
  return ChunkResponse.from_record(record)


@router.post("/chunks/move", response_model=list[ChunkResponse])
async def move_chunks(  # noqa: B008
  request: MoveRequest,
  principal: Principal = Depends(get_current_principal),  # noqa: B008
  repo: ChunkRepository = Depends(get_chunk_repo),  # noqa: B008
) -> list[ChunkResponse]:
  """Move chunks to the end of another project; both projects stay densely ordered."""
  chunks = await chunk_service.move_chunks(repo, principal.principal_id, request.chunk_ids, request.target_project_id)
  return [ChunkResponse.from_record(chunk) for chunk in chunks]

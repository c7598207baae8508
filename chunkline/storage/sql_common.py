"""Helpers shared by the SQLAlchemy repositories."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chunkline.chunks.models import ArtifactRecord, ChunkRecord, ChunkStatus, OutputRecord, ProjectRecord
from chunkline.core.database import get_session_factory
from chunkline.core.errors import ConflictError, NotFoundError
from chunkline.jobs.models import BatchJobRecord
from chunkline.schema.tables import BatchJob, Chunk, ChunkOutput, FinalArtifact, Project
from chunkline.utils.clock import now_iso
from chunkline.utils.db_retry import execute_with_retry

T = TypeVar("T")


class StaleStatusesError(Exception):
  """Internal signal used to roll back an all-or-nothing status swap."""


class SqlRepositoryBase:
  """Holds the session factory and routes every operation through the DB retry policy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def _run(self, operation_name: str, func: Callable[[], Awaitable[T]]) -> T:
    return await execute_with_retry(operation_name=operation_name, func=func)


async def require_active_project(session: AsyncSession, project_id: str) -> Project:
  """Load and lock the project row; chunk mutations need it active."""
  row = (await session.execute(select(Project).where(Project.project_id == project_id).with_for_update())).scalar_one_or_none()
  if row is None:
    raise NotFoundError(f"Project {project_id} not found.", project_id=project_id)
  if row.status != "active":
    raise ConflictError(f"Project {project_id} is {row.status}.", current_status=row.status, project_id=project_id)
  return row


async def swap_in_session(session: AsyncSession, project_id: str, expected: Mapping[str, ChunkStatus], new_status: ChunkStatus) -> None:
  """Conditionally move every chunk from its expected status; raise StaleStatusesError on any miss."""
  grouped: dict[str, list[str]] = defaultdict(list)
  for chunk_id, status in expected.items():
    grouped[status].append(chunk_id)

  timestamp = now_iso()
  moved = 0
  for status, chunk_ids in grouped.items():
    stmt = update(Chunk).where(Chunk.project_id == project_id, Chunk.chunk_id.in_(chunk_ids), Chunk.status == status).values(status=new_status, updated_at=timestamp).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    moved += result.rowcount
  if moved != len(expected):
    raise StaleStatusesError()


async def mismatched_statuses(session: AsyncSession, project_id: str, expected: Mapping[str, ChunkStatus]) -> list[str]:
  rows = (await session.execute(select(Chunk.chunk_id, Chunk.project_id, Chunk.status).where(Chunk.chunk_id.in_(list(expected))))).all()
  current = {row.chunk_id: (row.project_id, row.status) for row in rows}
  return [chunk_id for chunk_id, status in expected.items() if current.get(chunk_id) != (project_id, status)]


async def release_in_session(session: AsyncSession, chunk_ids: Sequence[str], expected_status: ChunkStatus, new_status: ChunkStatus) -> int:
  if not chunk_ids:
    return 0
  stmt = update(Chunk).where(Chunk.chunk_id.in_(list(chunk_ids)), Chunk.status == expected_status).values(status=new_status, updated_at=now_iso()).execution_options(synchronize_session=False)
  result = await session.execute(stmt)
  return result.rowcount


def project_to_record(row: Project) -> ProjectRecord:
  return ProjectRecord(
    project_id=row.project_id,
    owner_id=row.owner_id,
    title=row.title,
    faculty=row.faculty,
    topic=row.topic,
    status=row.status,  # type: ignore[arg-type]
    created_at=row.created_at,
    level=row.level,
    chunk_count=row.chunk_count,
    final_artifact_id=row.final_artifact_id,
    completed_at=row.completed_at,
  )


def chunk_to_record(row: Chunk) -> ChunkRecord:
  return ChunkRecord(
    chunk_id=row.chunk_id,
    project_id=row.project_id,
    owner_id=row.owner_id,
    title=row.title,
    order_index=row.order_index,
    content=row.content,
    char_count=row.char_count,
    word_count=row.word_count,
    status=row.status,  # type: ignore[arg-type]
    created_at=row.created_at,
    updated_at=row.updated_at,
    section=row.section,
    page_range=row.page_range,
    processed_at=row.processed_at,
    last_error=row.last_error,
    source_metadata=row.source_metadata,
  )


def record_to_chunk(record: ChunkRecord) -> Chunk:
  return Chunk(
    chunk_id=record.chunk_id,
    project_id=record.project_id,
    owner_id=record.owner_id,
    title=record.title,
    section=record.section,
    page_range=record.page_range,
    order_index=record.order_index,
    content=record.content,
    char_count=record.char_count,
    word_count=record.word_count,
    status=record.status,
    last_error=record.last_error,
    source_metadata=record.source_metadata,
    created_at=record.created_at,
    updated_at=record.updated_at,
    processed_at=record.processed_at,
  )


def output_to_record(row: ChunkOutput) -> OutputRecord:
  return OutputRecord(
    output_id=row.output_id,
    chunk_id=row.chunk_id,
    batch_job_id=row.batch_job_id,
    analysis_kind=row.analysis_kind,
    text=row.text,
    created_at=row.created_at,
    input_tokens=row.input_tokens,
    output_tokens=row.output_tokens,
  )


def artifact_to_record(row: FinalArtifact) -> ArtifactRecord:
  return ArtifactRecord(artifact_id=row.artifact_id, project_id=row.project_id, owner_id=row.owner_id, title=row.title, text=row.text, created_at=row.created_at, metadata=dict(row.metadata_json or {}))


def job_to_record(row: BatchJob) -> BatchJobRecord:
  return BatchJobRecord(
    job_id=row.job_id,
    project_id=row.project_id,
    owner_id=row.owner_id,
    chunk_ids=list(row.chunk_ids or []),
    analysis_kinds=list(row.analysis_kinds or []),
    status=row.status,  # type: ignore[arg-type]
    total_units=row.total_units,
    created_at=row.created_at,
    updated_at=row.updated_at,
    processed_units=row.processed_units,
    failed_units=row.failed_units,
    estimated_cost=row.estimated_cost,
    estimated_tokens=row.estimated_tokens,
    model=row.model,
    started_at=row.started_at,
    completed_at=row.completed_at,
    error_detail=row.error_json,
    config=dict(row.config_json or {}),
  )

"""Postgres-backed repository for batch jobs using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from chunkline.chunks.models import ChunkStatus, OutputRecord
from chunkline.jobs.models import ACTIVE_JOB_STATUSES, BatchJobRecord, BatchJobStatus
from chunkline.schema.tables import BatchJob, Chunk, ChunkOutput
from chunkline.storage.jobs_repo import BatchJobRepository
from chunkline.storage.sql_common import SqlRepositoryBase, StaleStatusesError, job_to_record, mismatched_statuses, release_in_session, require_active_project, swap_in_session
from chunkline.utils.clock import now_iso

# Record attribute -> column name where they differ.
_JOB_COLUMNS = {"error_detail": "error_json", "config": "config_json"}


def _bounded_increment(column: Any, amount: int) -> Any:
  """column + amount, never above total_units."""
  return case((column + amount > BatchJob.total_units, BatchJob.total_units), else_=column + amount)


class PostgresBatchJobRepository(SqlRepositoryBase, BatchJobRepository):
  """Persist batch jobs and unit outputs to Postgres."""

  async def create_job(self, record: BatchJobRecord, *, queue_from: Mapping[str, ChunkStatus]) -> list[str]:
    async def _op() -> list[str]:
      async with self._session_factory() as session:
        try:
          async with session.begin():
            await require_active_project(session, record.project_id)
            await swap_in_session(session, record.project_id, queue_from, "queued")
            session.add(
              BatchJob(
                job_id=record.job_id,
                project_id=record.project_id,
                owner_id=record.owner_id,
                chunk_ids=list(record.chunk_ids),
                analysis_kinds=list(record.analysis_kinds),
                status=record.status,
                total_units=record.total_units,
                processed_units=record.processed_units,
                failed_units=record.failed_units,
                estimated_cost=record.estimated_cost,
                estimated_tokens=record.estimated_tokens,
                model=record.model,
                config_json=record.config,
                error_json=record.error_detail,
                created_at=record.created_at,
                updated_at=record.updated_at,
                started_at=record.started_at,
                completed_at=record.completed_at,
              )
            )
        except StaleStatusesError:
          return await mismatched_statuses(session, record.project_id, queue_from)
        return []

    return await self._run("create_batch_job", _op)

  async def get_job(self, job_id: str) -> BatchJobRecord | None:
    async def _op() -> BatchJobRecord | None:
      async with self._session_factory() as session:
        row = await session.get(BatchJob, job_id)
        return None if row is None else job_to_record(row)

    return await self._run("get_batch_job", _op)

  async def list_jobs(self, project_id: str) -> list[BatchJobRecord]:
    async def _op() -> list[BatchJobRecord]:
      async with self._session_factory() as session:
        rows = (await session.execute(select(BatchJob).where(BatchJob.project_id == project_id).order_by(BatchJob.created_at.desc()))).scalars().all()
        return [job_to_record(row) for row in rows]

    return await self._run("list_batch_jobs", _op)

  async def find_active(self) -> list[BatchJobRecord]:
    async def _op() -> list[BatchJobRecord]:
      async with self._session_factory() as session:
        rows = (await session.execute(select(BatchJob).where(BatchJob.status.in_(ACTIVE_JOB_STATUSES)).order_by(BatchJob.created_at.asc()))).scalars().all()
        return [job_to_record(row) for row in rows]

    return await self._run("find_active_batch_jobs", _op)

  async def transition_job(self, job_id: str, expected: frozenset[str], new_status: BatchJobStatus, **fields: Any) -> bool:
    values = {_JOB_COLUMNS.get(name, name): value for name, value in fields.items()}

    async def _op() -> bool:
      async with self._session_factory() as session, session.begin():
        stmt = update(BatchJob).where(BatchJob.job_id == job_id, BatchJob.status.in_(expected)).values(status=new_status, updated_at=now_iso(), **values).execution_options(synchronize_session=False)
        result = await session.execute(stmt)
        return result.rowcount == 1

    return await self._run("transition_batch_job", _op)

  async def cancel_job(self, job_id: str) -> BatchJobRecord | None:
    async def _op() -> BatchJobRecord | None:
      async with self._session_factory() as session, session.begin():
        timestamp = now_iso()
        stmt = (
          update(BatchJob)
          .where(BatchJob.job_id == job_id, BatchJob.status.in_(ACTIVE_JOB_STATUSES))
          .values(status="cancelled", completed_at=timestamp, updated_at=timestamp)
          .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
          return None
        row = (await session.execute(select(BatchJob).where(BatchJob.job_id == job_id).execution_options(populate_existing=True))).scalar_one()
        await release_in_session(session, list(row.chunk_ids), "queued", "ready")
        return job_to_record(row)

    return await self._run("cancel_batch_job", _op)

  async def existing_kinds(self, job_id: str, chunk_id: str) -> set[str]:
    async def _op() -> set[str]:
      async with self._session_factory() as session:
        kinds = (await session.execute(select(ChunkOutput.analysis_kind).where(ChunkOutput.batch_job_id == job_id, ChunkOutput.chunk_id == chunk_id))).scalars().all()
        return set(kinds)

    return await self._run("existing_output_kinds", _op)

  async def save_output(self, output: OutputRecord, *, complete_chunk: bool) -> bool:
    async def _op() -> bool:
      async with self._session_factory() as session:
        try:
          async with session.begin():
            session.add(
              ChunkOutput(
                output_id=output.output_id,
                chunk_id=output.chunk_id,
                batch_job_id=output.batch_job_id,
                analysis_kind=output.analysis_kind,
                text=output.text,
                input_tokens=output.input_tokens,
                output_tokens=output.output_tokens,
                created_at=output.created_at,
              )
            )
            await session.flush()
            await session.execute(
              update(BatchJob)
              .where(BatchJob.job_id == output.batch_job_id)
              .values(processed_units=_bounded_increment(BatchJob.processed_units, 1), updated_at=output.created_at)
              .execution_options(synchronize_session=False)
            )
            if complete_chunk:
              await session.execute(
                update(Chunk)
                .where(Chunk.chunk_id == output.chunk_id, Chunk.status == "processing")
                .values(status="done", processed_at=output.created_at, updated_at=output.created_at, last_error=None)
                .execution_options(synchronize_session=False)
              )
        except IntegrityError:
          # Unit already written; write-once.
          return False
        return True

    return await self._run("save_chunk_output", _op)

  async def fail_chunk(self, job_id: str, chunk_id: str, *, error: str, remaining_units: int) -> None:
    async def _op() -> None:
      async with self._session_factory() as session, session.begin():
        timestamp = now_iso()
        await session.execute(
          update(Chunk).where(Chunk.chunk_id == chunk_id, Chunk.status == "processing").values(status="error", last_error=error, updated_at=timestamp).execution_options(synchronize_session=False)
        )
        await session.execute(
          update(BatchJob)
          .where(BatchJob.job_id == job_id)
          .values(
            processed_units=_bounded_increment(BatchJob.processed_units, remaining_units),
            failed_units=_bounded_increment(BatchJob.failed_units, remaining_units),
            updated_at=timestamp,
          )
          .execution_options(synchronize_session=False)
        )

    await self._run("fail_chunk", _op)

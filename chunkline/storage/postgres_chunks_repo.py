"""Postgres-backed repository for projects and chunks using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import bindparam, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chunkline.chunks.lifecycle import LOCKED_STATUSES
from chunkline.chunks.models import ArtifactRecord, ChunkRecord, ChunkStatus, OutputRecord, ProjectRecord
from chunkline.core.errors import ConflictError, NotFoundError, ValidationFailure
from chunkline.schema.tables import Chunk, ChunkOutput, FinalArtifact, Project
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.ordering import ensure_exact_membership
from chunkline.storage.sql_common import (
  SqlRepositoryBase,
  StaleStatusesError,
  artifact_to_record,
  chunk_to_record,
  mismatched_statuses,
  output_to_record,
  project_to_record,
  record_to_chunk,
  release_in_session,
  require_active_project,
  swap_in_session,
)
from chunkline.utils.clock import now_iso


async def _assign_positions(session: AsyncSession, project_id: str, ordered_ids: Sequence[str]) -> None:
  """Rewrite order indexes to 1..N in two phases so the unique index never sees a collision."""
  negate = update(Chunk).where(Chunk.project_id == project_id).values(order_index=-Chunk.order_index).execution_options(synchronize_session=False)
  await session.execute(negate)
  if ordered_ids:
    table = Chunk.__table__
    assign = update(table).where(table.c.chunk_id == bindparam("target_id")).values(order_index=bindparam("position"))
    await session.execute(assign, [{"target_id": chunk_id, "position": position} for position, chunk_id in enumerate(ordered_ids, start=1)])


class PostgresChunkRepository(SqlRepositoryBase, ChunkRepository):
  """Persist projects, chunks, outputs and artifacts to Postgres."""

  async def create_project(self, record: ProjectRecord) -> None:
    async def _op() -> None:
      async with self._session_factory() as session, session.begin():
        session.add(
          Project(
            project_id=record.project_id,
            owner_id=record.owner_id,
            title=record.title,
            faculty=record.faculty,
            topic=record.topic,
            level=record.level,
            status=record.status,
            chunk_count=record.chunk_count,
            final_artifact_id=record.final_artifact_id,
            created_at=record.created_at,
            completed_at=record.completed_at,
          )
        )

    await self._run("create_project", _op)

  async def get_project(self, project_id: str) -> ProjectRecord | None:
    async def _op() -> ProjectRecord | None:
      async with self._session_factory() as session:
        row = await session.get(Project, project_id)
        return None if row is None else project_to_record(row)

    return await self._run("get_project", _op)

  async def cancel_project(self, project_id: str) -> ProjectRecord:
    async def _op() -> ProjectRecord:
      async with self._session_factory() as session, session.begin():
        project = await require_active_project(session, project_id)
        locked = (await session.execute(select(Chunk.chunk_id).where(Chunk.project_id == project_id, Chunk.status.in_(LOCKED_STATUSES)))).scalars().all()
        if locked:
          raise ConflictError("Project has chunks held by an active batch job.", current_status=project.status, blocking_count=len(locked), blocking_ids=list(locked))
        project.status = "cancelled"
        await session.flush()
        return project_to_record(project)

    return await self._run("cancel_project", _op)

  async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
    async def _op() -> ChunkRecord | None:
      async with self._session_factory() as session:
        row = await session.get(Chunk, chunk_id)
        return None if row is None else chunk_to_record(row)

    return await self._run("get_chunk", _op)

  async def get_chunks(self, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
    async def _op() -> list[ChunkRecord]:
      if not chunk_ids:
        return []
      async with self._session_factory() as session:
        rows = (await session.execute(select(Chunk).where(Chunk.chunk_id.in_(list(chunk_ids))))).scalars().all()
        return [chunk_to_record(row) for row in rows]

    return await self._run("get_chunks", _op)

  async def list_chunks(self, project_id: str) -> list[ChunkRecord]:
    async def _op() -> list[ChunkRecord]:
      async with self._session_factory() as session:
        rows = (await session.execute(select(Chunk).where(Chunk.project_id == project_id).order_by(Chunk.order_index.asc()))).scalars().all()
        return [chunk_to_record(row) for row in rows]

    return await self._run("list_chunks", _op)

  async def _delete_in_session(self, session: AsyncSession, project: Project, chunk_ids: Sequence[str]) -> int:
    wanted = list(dict.fromkeys(chunk_ids))
    rows = (await session.execute(select(Chunk.chunk_id, Chunk.project_id, Chunk.status).where(Chunk.chunk_id.in_(wanted)).with_for_update())).all()
    found = {row.chunk_id: row for row in rows}
    unknown = [chunk_id for chunk_id in wanted if chunk_id not in found or found[chunk_id].project_id != project.project_id]
    if unknown:
      raise ValidationFailure("Chunks do not belong to the project.", chunk_ids=unknown)
    blocking = [chunk_id for chunk_id in wanted if found[chunk_id].status in LOCKED_STATUSES]
    if blocking:
      raise ConflictError("Chunks are held by an active batch job.", blocking_count=len(blocking), blocking_ids=blocking)

    await session.execute(delete(ChunkOutput).where(ChunkOutput.chunk_id.in_(wanted)))
    await session.execute(delete(Chunk).where(Chunk.chunk_id.in_(wanted)))

    remaining = (await session.execute(select(Chunk.chunk_id).where(Chunk.project_id == project.project_id).order_by(Chunk.order_index.asc()))).scalars().all()
    await _assign_positions(session, project.project_id, remaining)
    project.chunk_count = len(remaining)
    await session.flush()
    return len(wanted)

  async def append_chunks(self, project_id: str, records: Sequence[ChunkRecord], *, delete_ids: Sequence[str] = ()) -> list[ChunkRecord]:
    async def _op() -> list[ChunkRecord]:
      async with self._session_factory() as session, session.begin():
        project = await require_active_project(session, project_id)
        if delete_ids:
          await self._delete_in_session(session, project, delete_ids)
        if not records:
          return []

        # Increment-and-read on the project row serialises concurrent appenders.
        stmt = update(Project).where(Project.project_id == project_id).values(chunk_count=Project.chunk_count + len(records)).returning(Project.chunk_count).execution_options(synchronize_session=False)
        new_count = (await session.execute(stmt)).scalar_one()
        first_index = new_count - len(records) + 1

        rows = []
        for offset, record in enumerate(records):
          row = record_to_chunk(record)
          row.project_id = project_id
          row.order_index = first_index + offset
          session.add(row)
          rows.append(row)
        await session.flush()
        return [chunk_to_record(row) for row in rows]

    return await self._run("append_chunks", _op)

  async def delete_chunks(self, project_id: str, chunk_ids: Sequence[str]) -> int:
    async def _op() -> int:
      async with self._session_factory() as session, session.begin():
        project = await require_active_project(session, project_id)
        return await self._delete_in_session(session, project, chunk_ids)

    return await self._run("delete_chunks", _op)

  async def move_chunks(self, source_project_id: str, target_project_id: str, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
    async def _op() -> list[ChunkRecord]:
      async with self._session_factory() as session, session.begin():
        # Lock both project rows in id order so opposite moves cannot deadlock.
        locked = {project_id: await require_active_project(session, project_id) for project_id in sorted({source_project_id, target_project_id})}
        source, target = locked[source_project_id], locked[target_project_id]

        wanted = list(dict.fromkeys(chunk_ids))
        rows = (await session.execute(select(Chunk.chunk_id, Chunk.project_id, Chunk.status, Chunk.order_index).where(Chunk.chunk_id.in_(wanted)).with_for_update())).all()
        found = {row.chunk_id: row for row in rows}
        unknown = [chunk_id for chunk_id in wanted if chunk_id not in found or found[chunk_id].project_id != source_project_id]
        if unknown:
          raise ValidationFailure("Chunks do not belong to the project.", chunk_ids=unknown)
        blocking = [chunk_id for chunk_id in wanted if found[chunk_id].status in LOCKED_STATUSES]
        if blocking:
          raise ConflictError("Chunks are held by an active batch job.", blocking_count=len(blocking), blocking_ids=blocking)

        # New positions sit past the target's last index, so the unique index never collides.
        ordered = sorted(wanted, key=lambda chunk_id: found[chunk_id].order_index)
        table = Chunk.__table__
        relocate = update(table).where(table.c.chunk_id == bindparam("target_id")).values(project_id=target_project_id, order_index=bindparam("position"), updated_at=now_iso())
        await session.execute(relocate, [{"target_id": chunk_id, "position": target.chunk_count + offset} for offset, chunk_id in enumerate(ordered, start=1)])
        target.chunk_count += len(ordered)

        remaining = (await session.execute(select(Chunk.chunk_id).where(Chunk.project_id == source_project_id).order_by(Chunk.order_index.asc()))).scalars().all()
        await _assign_positions(session, source_project_id, remaining)
        source.chunk_count = len(remaining)
        await session.flush()

        moved = (await session.execute(select(Chunk).where(Chunk.chunk_id.in_(ordered)).order_by(Chunk.order_index.asc()).execution_options(populate_existing=True))).scalars().all()
        return [chunk_to_record(row) for row in moved]

    return await self._run("move_chunks", _op)

  async def update_chunk(self, chunk_id: str, fields: Mapping[str, Any], *, allowed_statuses: frozenset[str]) -> ChunkRecord:
    async def _op() -> ChunkRecord:
      async with self._session_factory() as session, session.begin():
        row = await session.get(Chunk, chunk_id)
        if row is None:
          raise NotFoundError(f"Chunk {chunk_id} not found.", chunk_id=chunk_id)
        await require_active_project(session, row.project_id)
        stmt = update(Chunk).where(Chunk.chunk_id == chunk_id, Chunk.status.in_(allowed_statuses)).values(**fields, updated_at=now_iso()).execution_options(synchronize_session=False)
        result = await session.execute(stmt)
        await session.refresh(row)
        if result.rowcount == 0:
          raise ConflictError(f"Chunk {chunk_id} cannot be edited while '{row.status}'.", current_status=row.status, chunk_id=chunk_id)
        return chunk_to_record(row)

    return await self._run("update_chunk", _op)

  async def reorder(self, project_id: str, ordered_ids: Sequence[str]) -> list[ChunkRecord]:
    async def _op() -> list[ChunkRecord]:
      async with self._session_factory() as session, session.begin():
        await require_active_project(session, project_id)
        members = (await session.execute(select(Chunk.chunk_id).where(Chunk.project_id == project_id).with_for_update())).scalars().all()
        ensure_exact_membership(members, ordered_ids)
        await _assign_positions(session, project_id, ordered_ids)
        rows = (await session.execute(select(Chunk).where(Chunk.project_id == project_id).order_by(Chunk.order_index.asc()).execution_options(populate_existing=True))).scalars().all()
        return [chunk_to_record(row) for row in rows]

    return await self._run("reorder_chunks", _op)

  async def swap_statuses(self, project_id: str, expected: Mapping[str, ChunkStatus], new_status: ChunkStatus) -> list[str]:
    async def _op() -> list[str]:
      async with self._session_factory() as session:
        try:
          async with session.begin():
            await require_active_project(session, project_id)
            await swap_in_session(session, project_id, expected, new_status)
        except StaleStatusesError:
          return await mismatched_statuses(session, project_id, expected)
        return []

    return await self._run("swap_chunk_statuses", _op)

  async def claim(self, chunk_id: str, expected_status: ChunkStatus, new_status: ChunkStatus) -> bool:
    async def _op() -> bool:
      async with self._session_factory() as session, session.begin():
        stmt = update(Chunk).where(Chunk.chunk_id == chunk_id, Chunk.status == expected_status).values(status=new_status, updated_at=now_iso()).execution_options(synchronize_session=False)
        result = await session.execute(stmt)
        return result.rowcount == 1

    return await self._run("claim_chunk", _op)

  async def release(self, chunk_ids: Sequence[str], expected_status: ChunkStatus, new_status: ChunkStatus) -> int:
    async def _op() -> int:
      async with self._session_factory() as session, session.begin():
        return await release_in_session(session, chunk_ids, expected_status, new_status)

    return await self._run("release_chunks", _op)

  async def list_outputs(self, chunk_ids: Sequence[str], *, batch_job_id: str | None = None) -> list[OutputRecord]:
    async def _op() -> list[OutputRecord]:
      if not chunk_ids:
        return []
      async with self._session_factory() as session:
        stmt = select(ChunkOutput).where(ChunkOutput.chunk_id.in_(list(chunk_ids)))
        if batch_job_id is not None:
          stmt = stmt.where(ChunkOutput.batch_job_id == batch_job_id)
        rows = (await session.execute(stmt.order_by(ChunkOutput.created_at.asc(), ChunkOutput.output_id.asc()))).scalars().all()
        return [output_to_record(row) for row in rows]

    return await self._run("list_outputs", _op)

  async def finalize_project(self, project_id: str, artifact: ArtifactRecord, *, snapshot: Mapping[str, ChunkStatus]) -> bool:
    async def _op() -> bool:
      async with self._session_factory() as session, session.begin():
        rows = (await session.execute(select(Chunk.chunk_id, Chunk.status).where(Chunk.project_id == project_id).with_for_update())).all()
        if {row.chunk_id: row.status for row in rows} != dict(snapshot):
          project = await session.get(Project, project_id)
          if project is None or project.status != "active":
            return False
          raise ConflictError("Chunks changed while the project was being finalized.", current_status=project.status, project_id=project_id)
        stmt = (
          update(Project)
          .where(Project.project_id == project_id, Project.status == "active")
          .values(status="completed", final_artifact_id=artifact.artifact_id, completed_at=artifact.created_at)
          .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
          return False
        session.add(
          FinalArtifact(
            artifact_id=artifact.artifact_id,
            project_id=project_id,
            owner_id=artifact.owner_id,
            title=artifact.title,
            text=artifact.text,
            metadata_json=artifact.metadata,
            created_at=artifact.created_at,
          )
        )
        return True

    return await self._run("finalize_project", _op)

  async def get_artifact(self, project_id: str) -> ArtifactRecord | None:
    async def _op() -> ArtifactRecord | None:
      async with self._session_factory() as session:
        row = (await session.execute(select(FinalArtifact).where(FinalArtifact.project_id == project_id))).scalar_one_or_none()
        return None if row is None else artifact_to_record(row)

    return await self._run("get_artifact", _op)


"""In-process storage backend for local development and tests.

All mutations run under a single asyncio.Lock, which gives every repository method
the same all-or-nothing behaviour the Postgres backend gets from transactions.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from chunkline.chunks.lifecycle import LOCKED_STATUSES
from chunkline.chunks.models import ArtifactRecord, ChunkRecord, ChunkStatus, OutputRecord, ProjectRecord
from chunkline.core.errors import ConflictError, NotFoundError, ValidationFailure
from chunkline.jobs.models import ACTIVE_JOB_STATUSES, BatchJobRecord, BatchJobStatus
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.jobs_repo import BatchJobRepository
from chunkline.storage.ordering import ensure_exact_membership
from chunkline.utils.clock import now_iso


@dataclass
class MemoryStore:
  """Shared tables for the memory repositories."""

  projects: dict[str, ProjectRecord] = field(default_factory=dict)
  chunks: dict[str, ChunkRecord] = field(default_factory=dict)
  jobs: dict[str, BatchJobRecord] = field(default_factory=dict)
  outputs: dict[tuple[str, str, str], OutputRecord] = field(default_factory=dict)
  artifacts: dict[str, ArtifactRecord] = field(default_factory=dict)
  lock: asyncio.Lock = field(default_factory=asyncio.Lock)

  def project_chunks(self, project_id: str) -> list[ChunkRecord]:
    return sorted((chunk for chunk in self.chunks.values() if chunk.project_id == project_id), key=lambda chunk: chunk.order_index)

  def require_active_project(self, project_id: str) -> ProjectRecord:
    project = self.projects.get(project_id)
    if project is None:
      raise NotFoundError(f"Project {project_id} not found.", project_id=project_id)
    if project.status != "active":
      raise ConflictError(f"Project {project_id} is {project.status}.", current_status=project.status, project_id=project_id)
    return project

  def renumber(self, project: ProjectRecord) -> None:
    remaining = self.project_chunks(project.project_id)
    for position, chunk in enumerate(remaining, start=1):
      chunk.order_index = position
    project.chunk_count = len(remaining)


def _copy(record: Any) -> Any:
  return replace(record) if record is not None else None


class MemoryChunkRepository(ChunkRepository):
  """Chunk repository over a shared MemoryStore."""

  def __init__(self, store: MemoryStore) -> None:
    self._store = store

  async def create_project(self, record: ProjectRecord) -> None:
    async with self._store.lock:
      self._store.projects[record.project_id] = replace(record)

  async def get_project(self, project_id: str) -> ProjectRecord | None:
    return _copy(self._store.projects.get(project_id))

  async def cancel_project(self, project_id: str) -> ProjectRecord:
    async with self._store.lock:
      project = self._store.require_active_project(project_id)
      locked = [chunk.chunk_id for chunk in self._store.project_chunks(project_id) if chunk.status in LOCKED_STATUSES]
      if locked:
        raise ConflictError("Project has chunks held by an active batch job.", current_status=project.status, blocking_count=len(locked), blocking_ids=locked)
      project.status = "cancelled"
      return replace(project)

  async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
    return _copy(self._store.chunks.get(chunk_id))

  async def get_chunks(self, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
    return [replace(self._store.chunks[chunk_id]) for chunk_id in dict.fromkeys(chunk_ids) if chunk_id in self._store.chunks]

  async def list_chunks(self, project_id: str) -> list[ChunkRecord]:
    return [replace(chunk) for chunk in self._store.project_chunks(project_id)]

  def _delete_locked(self, project: ProjectRecord, chunk_ids: Sequence[str]) -> int:
    targets = {chunk_id: self._store.chunks.get(chunk_id) for chunk_id in chunk_ids}
    unknown = [chunk_id for chunk_id, chunk in targets.items() if chunk is None or chunk.project_id != project.project_id]
    if unknown:
      raise ValidationFailure("Chunks do not belong to the project.", chunk_ids=unknown)
    blocking = [chunk.chunk_id for chunk in targets.values() if chunk is not None and chunk.status in LOCKED_STATUSES]
    if blocking:
      raise ConflictError("Chunks are held by an active batch job.", blocking_count=len(blocking), blocking_ids=blocking)

    removed = set(targets)
    for chunk_id in removed:
      del self._store.chunks[chunk_id]
    for key in [key for key in self._store.outputs if key[1] in removed]:
      del self._store.outputs[key]
    self._store.renumber(project)
    return len(removed)

  async def append_chunks(self, project_id: str, records: Sequence[ChunkRecord], *, delete_ids: Sequence[str] = ()) -> list[ChunkRecord]:
    async with self._store.lock:
      project = self._store.require_active_project(project_id)
      if delete_ids:
        self._delete_locked(project, delete_ids)
      created: list[ChunkRecord] = []
      for record in records:
        project.chunk_count += 1
        stored = replace(record, project_id=project_id, order_index=project.chunk_count)
        self._store.chunks[stored.chunk_id] = stored
        created.append(replace(stored))
      return created

  async def delete_chunks(self, project_id: str, chunk_ids: Sequence[str]) -> int:
    async with self._store.lock:
      project = self._store.require_active_project(project_id)
      return self._delete_locked(project, chunk_ids)

  async def move_chunks(self, source_project_id: str, target_project_id: str, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
    async with self._store.lock:
      source = self._store.require_active_project(source_project_id)
      target = self._store.require_active_project(target_project_id)
      moving = [self._store.chunks.get(chunk_id) for chunk_id in dict.fromkeys(chunk_ids)]
      unknown = [chunk_id for chunk_id, chunk in zip(dict.fromkeys(chunk_ids), moving) if chunk is None or chunk.project_id != source_project_id]
      if unknown:
        raise ValidationFailure("Chunks do not belong to the project.", chunk_ids=unknown)
      blocking = [chunk.chunk_id for chunk in moving if chunk.status in LOCKED_STATUSES]
      if blocking:
        raise ConflictError("Chunks are held by an active batch job.", blocking_count=len(blocking), blocking_ids=blocking)

      timestamp = now_iso()
      for chunk in sorted(moving, key=lambda chunk: chunk.order_index):
        target.chunk_count += 1
        chunk.project_id = target_project_id
        chunk.order_index = target.chunk_count
        chunk.updated_at = timestamp
      self._store.renumber(source)
      return [replace(chunk) for chunk in sorted(moving, key=lambda chunk: chunk.order_index)]

  async def update_chunk(self, chunk_id: str, fields: Mapping[str, Any], *, allowed_statuses: frozenset[str]) -> ChunkRecord:
    async with self._store.lock:
      chunk = self._store.chunks.get(chunk_id)
      if chunk is None:
        raise NotFoundError(f"Chunk {chunk_id} not found.", chunk_id=chunk_id)
      self._store.require_active_project(chunk.project_id)
      if chunk.status not in allowed_statuses:
        raise ConflictError(f"Chunk {chunk_id} cannot be edited while '{chunk.status}'.", current_status=chunk.status, chunk_id=chunk_id)
      for name, value in fields.items():
        setattr(chunk, name, value)
      chunk.updated_at = now_iso()
      return replace(chunk)

  async def reorder(self, project_id: str, ordered_ids: Sequence[str]) -> list[ChunkRecord]:
    async with self._store.lock:
      self._store.require_active_project(project_id)
      members = {chunk.chunk_id: chunk for chunk in self._store.project_chunks(project_id)}
      ensure_exact_membership(members.keys(), ordered_ids)
      for position, chunk_id in enumerate(ordered_ids, start=1):
        members[chunk_id].order_index = position
      return [replace(chunk) for chunk in self._store.project_chunks(project_id)]

  async def swap_statuses(self, project_id: str, expected: Mapping[str, ChunkStatus], new_status: ChunkStatus) -> list[str]:
    async with self._store.lock:
      self._store.require_active_project(project_id)
      return _swap_locked(self._store, project_id, expected, new_status)

  async def claim(self, chunk_id: str, expected_status: ChunkStatus, new_status: ChunkStatus) -> bool:
    async with self._store.lock:
      chunk = self._store.chunks.get(chunk_id)
      if chunk is None or chunk.status != expected_status:
        return False
      chunk.status = new_status
      chunk.updated_at = now_iso()
      return True

  async def release(self, chunk_ids: Sequence[str], expected_status: ChunkStatus, new_status: ChunkStatus) -> int:
    async with self._store.lock:
      return _release_locked(self._store, chunk_ids, expected_status, new_status)

  async def list_outputs(self, chunk_ids: Sequence[str], *, batch_job_id: str | None = None) -> list[OutputRecord]:
    wanted = set(chunk_ids)
    outputs = [output for output in self._store.outputs.values() if output.chunk_id in wanted and (batch_job_id is None or output.batch_job_id == batch_job_id)]
    return [replace(output) for output in sorted(outputs, key=lambda output: output.created_at)]

  async def finalize_project(self, project_id: str, artifact: ArtifactRecord, *, snapshot: Mapping[str, ChunkStatus]) -> bool:
    async with self._store.lock:
      project = self._store.projects.get(project_id)
      if project is None or project.status != "active":
        return False
      current = {chunk.chunk_id: chunk.status for chunk in self._store.project_chunks(project_id)}
      if current != dict(snapshot):
        raise ConflictError("Chunks changed while the project was being finalized.", current_status=project.status, project_id=project_id)
      project.status = "completed"
      project.final_artifact_id = artifact.artifact_id
      project.completed_at = artifact.created_at
      self._store.artifacts[project_id] = replace(artifact)
      return True

  async def get_artifact(self, project_id: str) -> ArtifactRecord | None:
    return _copy(self._store.artifacts.get(project_id))


class MemoryBatchJobRepository(BatchJobRepository):
  """Batch job repository over a shared MemoryStore."""

  def __init__(self, store: MemoryStore) -> None:
    self._store = store

  async def create_job(self, record: BatchJobRecord, *, queue_from: Mapping[str, ChunkStatus]) -> list[str]:
    async with self._store.lock:
      self._store.require_active_project(record.project_id)
      mismatched = _swap_locked(self._store, record.project_id, queue_from, "queued")
      if mismatched:
        return mismatched
      self._store.jobs[record.job_id] = replace(record, chunk_ids=list(record.chunk_ids), analysis_kinds=list(record.analysis_kinds))
      return []

  async def get_job(self, job_id: str) -> BatchJobRecord | None:
    return _copy(self._store.jobs.get(job_id))

  async def list_jobs(self, project_id: str) -> list[BatchJobRecord]:
    jobs = [job for job in self._store.jobs.values() if job.project_id == project_id]
    return [replace(job) for job in sorted(jobs, key=lambda job: job.created_at, reverse=True)]

  async def find_active(self) -> list[BatchJobRecord]:
    jobs = [job for job in self._store.jobs.values() if job.status in ACTIVE_JOB_STATUSES]
    return [replace(job) for job in sorted(jobs, key=lambda job: job.created_at)]

  async def transition_job(self, job_id: str, expected: frozenset[str], new_status: BatchJobStatus, **fields: Any) -> bool:
    async with self._store.lock:
      job = self._store.jobs.get(job_id)
      if job is None or job.status not in expected:
        return False
      job.status = new_status
      for name, value in fields.items():
        setattr(job, name, value)
      job.updated_at = now_iso()
      return True

  async def cancel_job(self, job_id: str) -> BatchJobRecord | None:
    async with self._store.lock:
      job = self._store.jobs.get(job_id)
      if job is None or job.status not in ACTIVE_JOB_STATUSES:
        return None
      timestamp = now_iso()
      job.status = "cancelled"
      job.completed_at = timestamp
      job.updated_at = timestamp
      _release_locked(self._store, job.chunk_ids, "queued", "ready")
      return replace(job)

  async def existing_kinds(self, job_id: str, chunk_id: str) -> set[str]:
    return {kind for (output_job, output_chunk, kind) in self._store.outputs if output_job == job_id and output_chunk == chunk_id}

  async def save_output(self, output: OutputRecord, *, complete_chunk: bool) -> bool:
    async with self._store.lock:
      key = (output.batch_job_id, output.chunk_id, output.analysis_kind)
      if key in self._store.outputs:
        return False
      job = self._store.jobs[output.batch_job_id]
      self._store.outputs[key] = replace(output)
      job.processed_units = min(job.processed_units + 1, job.total_units)
      job.updated_at = output.created_at
      chunk = self._store.chunks.get(output.chunk_id)
      if complete_chunk and chunk is not None and chunk.status == "processing":
        chunk.status = "done"
        chunk.processed_at = output.created_at
        chunk.updated_at = output.created_at
        chunk.last_error = None
      return True

  async def fail_chunk(self, job_id: str, chunk_id: str, *, error: str, remaining_units: int) -> None:
    async with self._store.lock:
      timestamp = now_iso()
      chunk = self._store.chunks.get(chunk_id)
      if chunk is not None and chunk.status == "processing":
        chunk.status = "error"
        chunk.last_error = error
        chunk.updated_at = timestamp
      job = self._store.jobs[job_id]
      job.processed_units = min(job.processed_units + remaining_units, job.total_units)
      job.failed_units = min(job.failed_units + remaining_units, job.total_units)
      job.updated_at = timestamp


def _swap_locked(store: MemoryStore, project_id: str, expected: Mapping[str, ChunkStatus], new_status: ChunkStatus) -> list[str]:
  mismatched = [
    chunk_id
    for chunk_id, status in expected.items()
    if (chunk := store.chunks.get(chunk_id)) is None or chunk.project_id != project_id or chunk.status != status
  ]
  if mismatched:
    return mismatched
  timestamp = now_iso()
  for chunk_id in expected:
    chunk = store.chunks[chunk_id]
    chunk.status = new_status
    chunk.updated_at = timestamp
  return []


def _release_locked(store: MemoryStore, chunk_ids: Sequence[str], expected_status: ChunkStatus, new_status: ChunkStatus) -> int:
  moved = 0
  timestamp = now_iso()
  for chunk_id in chunk_ids:
    chunk = store.chunks.get(chunk_id)
    if chunk is not None and chunk.status == expected_status:
      chunk.status = new_status
      chunk.updated_at = timestamp
      moved += 1
  return moved

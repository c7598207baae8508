"""Project lifecycle operations."""

from __future__ import annotations

import logging
from typing import Any

from chunkline.chunks.models import ArtifactRecord, ProjectRecord
from chunkline.core.errors import NotFoundError, ValidationFailure
from chunkline.services.chunks import chunk_stats, load_owned_project
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.utils.clock import now_iso
from chunkline.utils.ids import generate_project_id

logger = logging.getLogger(__name__)


def _required(value: str, field: str) -> str:
  cleaned = (value or "").strip()
  if not cleaned:
    raise ValidationFailure(f"{field} must not be empty.", field=field)
  return cleaned


async def create_project(repo: ChunkRepository, principal_id: str, *, title: str, faculty: str, topic: str, level: str | None = None) -> ProjectRecord:
  record = ProjectRecord(
    project_id=generate_project_id(),
    owner_id=principal_id,
    title=_required(title, "title"),
    faculty=_required(faculty, "faculty"),
    topic=_required(topic, "topic"),
    status="active",
    created_at=now_iso(),
    level=(level or "").strip() or None,
  )
  await repo.create_project(record)
  logger.info("Project created project_id=%s owner_id=%s", record.project_id, principal_id)
  return record


async def get_project_overview(repo: ChunkRepository, principal_id: str, project_id: str) -> tuple[ProjectRecord, dict[str, Any]]:
  project = await load_owned_project(repo, project_id, principal_id)
  return project, chunk_stats(await repo.list_chunks(project_id))


async def cancel_project(repo: ChunkRepository, principal_id: str, project_id: str) -> ProjectRecord:
  """Cancel an active project; refused while a batch job holds any of its chunks."""
  await load_owned_project(repo, project_id, principal_id)
  project = await repo.cancel_project(project_id)
  logger.info("Project cancelled project_id=%s", project_id)
  return project


async def get_artifact(repo: ChunkRepository, principal_id: str, project_id: str) -> ArtifactRecord:
  await load_owned_project(repo, project_id, principal_id)
  artifact = await repo.get_artifact(project_id)
  if artifact is None:
    raise NotFoundError(f"Project {project_id} has no final artifact yet.", project_id=project_id)
  return artifact

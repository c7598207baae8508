"""Merge chunk outputs into a project's single final artifact."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from chunkline.chunks.lifecycle import TERMINAL_STATUSES
from chunkline.chunks.models import ArtifactRecord, ChunkRecord, OutputRecord
from chunkline.core.errors import ConflictError
from chunkline.jobs.models import ANALYSIS_KINDS
from chunkline.services.chunks import load_owned_project
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.utils.clock import now_iso
from chunkline.utils.ids import generate_record_id

logger = logging.getLogger(__name__)

MISSING_OUTPUT = "[Output missing]"
SECTION_SEPARATOR = "\n\n---\n\n"


def latest_outputs(outputs: Sequence[OutputRecord]) -> dict[str, dict[str, OutputRecord]]:
  """Map chunk id -> analysis kind -> most recent output."""
  latest: dict[str, dict[str, OutputRecord]] = {}
  for output in outputs:
    by_kind = latest.setdefault(output.chunk_id, {})
    current = by_kind.get(output.analysis_kind)
    if current is None or output.created_at >= current.created_at:
      by_kind[output.analysis_kind] = output
  return latest


def render_section(chunk: ChunkRecord, outputs: dict[str, OutputRecord]) -> tuple[str, bool]:
  """Render one chunk; the flag reports whether its output was missing."""
  heading = f"## {chunk.title or f'Section {chunk.order_index}'}"
  ordered = [outputs[kind] for kind in ANALYSIS_KINDS if kind in outputs]
  if chunk.status == "error" or not ordered:
    return f"{heading}\n\n{MISSING_OUTPUT}{SECTION_SEPARATOR}", True
  if len(ordered) == 1:
    return f"{heading}\n\n{ordered[0].text}{SECTION_SEPARATOR}", False
  parts = [f"### {ANALYSIS_KINDS[output.analysis_kind]}\n\n{output.text}" for output in ordered]
  return f"{heading}\n\n" + "\n\n".join(parts) + SECTION_SEPARATOR, False


def render_document(chunks: Sequence[ChunkRecord], outputs: Sequence[OutputRecord]) -> tuple[str, int]:
  """Concatenate chunk sections in order_index order; returns the text and the missing count."""
  latest = latest_outputs(outputs)
  sections: list[str] = []
  missing = 0
  for chunk in sorted(chunks, key=lambda item: item.order_index):
    section, was_missing = render_section(chunk, latest.get(chunk.chunk_id, {}))
    sections.append(section)
    missing += int(was_missing)
  return "".join(sections), missing


async def finalize_project(repo: ChunkRepository, principal_id: str, project_id: str) -> ArtifactRecord:
  """Render and persist the final artifact exactly once; a second call is a Conflict."""
  project = await load_owned_project(repo, project_id, principal_id)
  if project.status != "active":
    raise ConflictError(f"Project {project_id} is already {project.status}.", current_status=project.status, project_id=project_id)

  chunks = await repo.list_chunks(project_id)
  pending = [{"chunk_id": chunk.chunk_id, "status": chunk.status} for chunk in chunks if chunk.status not in TERMINAL_STATUSES]
  if pending:
    raise ConflictError("Every chunk must be done or error before finalizing.", current_status=project.status, chunks=pending)
  if not any(chunk.status == "done" for chunk in chunks):
    raise ConflictError("At least one chunk must be done before finalizing.", current_status=project.status)

  text, missing = render_document(chunks, await repo.list_outputs([chunk.chunk_id for chunk in chunks]))
  artifact = ArtifactRecord(
    artifact_id=generate_record_id(),
    project_id=project_id,
    owner_id=project.owner_id,
    title=f"{project.title} (Final Summary)",
    text=text,
    created_at=now_iso(),
    metadata={"chunks_count": len(chunks), "missing_count": missing},
  )
  finalized = await repo.finalize_project(project_id, artifact, snapshot={chunk.chunk_id: chunk.status for chunk in chunks})
  if not finalized:
    current = await repo.get_project(project_id)
    current_status = current.status if current else project.status
    raise ConflictError(f"Project {project_id} is already {current_status}.", current_status=current_status, project_id=project_id)

  logger.info("Project finalized project_id=%s artifact_id=%s chunks=%s missing=%s", project_id, artifact.artifact_id, len(chunks), missing)
  return artifact

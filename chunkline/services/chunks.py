"""Chunk CRUD, ordering and bulk operations on top of the chunk repository."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from typing import Any

from chunkline.chunks.lifecycle import EDITABLE_STATUSES, ensure_editable, illegal_user_transitions, parse_status
from chunkline.chunks.models import MAX_CHUNK_CHARS, MAX_TITLE_CHARS, MIN_CHUNK_CHARS, MIN_TITLE_CHARS, ChunkRecord, ProjectRecord, count_words
from chunkline.core.errors import ConflictError, NotFoundError, ValidationFailure
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.utils.clock import now_iso
from chunkline.utils.ids import generate_chunk_id

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({"title", "section", "content", "page_range"})


async def load_owned_project(repo: ChunkRepository, project_id: str, principal_id: str) -> ProjectRecord:
  """Return the project when the caller owns it; otherwise NotFound."""
  project = await repo.get_project(project_id)
  if project is None or project.owner_id != principal_id:
    raise NotFoundError(f"Project {project_id} not found.", project_id=project_id)
  return project


async def load_owned_chunks(repo: ChunkRepository, chunk_ids: Sequence[str], principal_id: str) -> list[ChunkRecord]:
  """Return the chunks in request order; every id must exist, be owned, and share one project."""
  if not chunk_ids:
    raise ValidationFailure("At least one chunk id is required.")
  duplicates = sorted(chunk_id for chunk_id, count in Counter(chunk_ids).items() if count > 1)
  if duplicates:
    raise ValidationFailure("Chunk ids must be unique.", duplicates=duplicates)

  found = {chunk.chunk_id: chunk for chunk in await repo.get_chunks(chunk_ids)}
  missing = [chunk_id for chunk_id in chunk_ids if chunk_id not in found or found[chunk_id].owner_id != principal_id]
  if missing:
    raise NotFoundError("Chunks not found.", chunk_ids=missing)
  projects = {chunk.project_id for chunk in found.values()}
  if len(projects) > 1:
    raise ValidationFailure("Chunks must belong to a single project.", project_ids=sorted(projects))
  return [found[chunk_id] for chunk_id in chunk_ids]


def normalize_title(raw: str) -> str:
  title = (raw or "").strip()
  if len(title) < MIN_TITLE_CHARS:
    raise ValidationFailure(f"Title must be at least {MIN_TITLE_CHARS} characters.", field="title")
  return title[:MAX_TITLE_CHARS]


def normalize_content(raw: str) -> str:
  content = (raw or "").strip()
  if len(content) < MIN_CHUNK_CHARS:
    raise ValidationFailure(f"Content must be at least {MIN_CHUNK_CHARS} characters.", field="content")
  if len(content) > MAX_CHUNK_CHARS:
    raise ValidationFailure(f"Content exceeds {MAX_CHUNK_CHARS} characters.", field="content", char_count=len(content), limit=MAX_CHUNK_CHARS)
  return content


def _optional(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  return value or None


def build_chunk(project: ProjectRecord, *, title: str, content: str, section: str | None = None, page_range: str | None = None, source_metadata: dict[str, Any] | None = None) -> ChunkRecord:
  """Build a draft chunk; the repository assigns its order index on append."""
  timestamp = now_iso()
  return ChunkRecord(
    chunk_id=generate_chunk_id(),
    project_id=project.project_id,
    owner_id=project.owner_id,
    title=title,
    order_index=0,
    content=content,
    char_count=len(content),
    word_count=count_words(content),
    status="draft",
    created_at=timestamp,
    updated_at=timestamp,
    section=_optional(section),
    page_range=_optional(page_range),
    source_metadata=source_metadata,
  )


def chunk_stats(chunks: Sequence[ChunkRecord]) -> dict[str, Any]:
  breakdown = Counter(chunk.status for chunk in chunks)
  return {
    "total_chunks": len(chunks),
    "total_chars": sum(chunk.char_count for chunk in chunks),
    "total_words": sum(chunk.word_count for chunk in chunks),
    "status_breakdown": dict(breakdown),
    "ready_for_processing": breakdown.get("ready", 0),
  }


async def create_chunk(repo: ChunkRepository, principal_id: str, project_id: str, *, title: str, content: str, section: str | None = None, page_range: str | None = None, source_metadata: dict[str, Any] | None = None) -> ChunkRecord:
  """Append a new draft chunk at the end of the project."""
  project = await load_owned_project(repo, project_id, principal_id)
  record = build_chunk(project, title=normalize_title(title), content=normalize_content(content), section=section, page_range=page_range, source_metadata=source_metadata)
  (created,) = await repo.append_chunks(project_id, [record])
  logger.info("Chunk created project_id=%s chunk_id=%s order_index=%s", project_id, created.chunk_id, created.order_index)
  return created


async def list_chunks(repo: ChunkRepository, principal_id: str, project_id: str) -> tuple[list[ChunkRecord], dict[str, Any]]:
  await load_owned_project(repo, project_id, principal_id)
  chunks = await repo.list_chunks(project_id)
  return chunks, chunk_stats(chunks)


async def update_chunk(repo: ChunkRepository, principal_id: str, chunk_id: str, changes: dict[str, Any]) -> ChunkRecord:
  """Edit title, section, content or page range of an editable chunk."""
  unknown = sorted(set(changes) - EDITABLE_FIELDS)
  if unknown:
    raise ValidationFailure("Only title, section, content and page_range can be edited.", fields=unknown)
  if not changes:
    raise ValidationFailure("No changes supplied.")

  (chunk,) = await load_owned_chunks(repo, [chunk_id], principal_id)
  ensure_editable(chunk)

  fields: dict[str, Any] = {}
  if "title" in changes:
    fields["title"] = normalize_title(changes["title"])
  if "section" in changes:
    fields["section"] = _optional(changes["section"])
  if "page_range" in changes:
    fields["page_range"] = _optional(changes["page_range"])
  if "content" in changes:
    content = normalize_content(changes["content"])
    fields.update(content=content, char_count=len(content), word_count=count_words(content))

  # The repository re-checks the status so a concurrent claim still wins.
  return await repo.update_chunk(chunk_id, fields, allowed_statuses=EDITABLE_STATUSES)


async def delete_chunks(repo: ChunkRepository, principal_id: str, chunk_ids: Sequence[str]) -> tuple[str, int]:
  """Delete chunks of one project and renumber the rest."""
  chunks = await load_owned_chunks(repo, chunk_ids, principal_id)
  project_id = chunks[0].project_id
  deleted = await repo.delete_chunks(project_id, [chunk.chunk_id for chunk in chunks])
  logger.info("Chunks deleted project_id=%s count=%s", project_id, deleted)
  return project_id, deleted


async def reorder_chunks(repo: ChunkRepository, principal_id: str, project_id: str, ordered_ids: Sequence[str]) -> list[ChunkRecord]:
  await load_owned_project(repo, project_id, principal_id)
  return await repo.reorder(project_id, ordered_ids)


async def bulk_update_status(repo: ChunkRepository, principal_id: str, project_id: str, chunk_ids: Sequence[str], target: str) -> list[ChunkRecord]:
  """Apply a user transition to every chunk or to none of them."""
  target_status = parse_status(target)
  await load_owned_project(repo, project_id, principal_id)
  if not chunk_ids:
    raise ValidationFailure("At least one chunk id is required.")

  found = {chunk.chunk_id: chunk for chunk in await repo.get_chunks(chunk_ids)}
  foreign = [chunk_id for chunk_id in chunk_ids if chunk_id not in found or found[chunk_id].project_id != project_id]
  if foreign:
    raise ValidationFailure("Chunks do not belong to the project.", chunk_ids=foreign)

  chunks = [found[chunk_id] for chunk_id in dict.fromkeys(chunk_ids)]
  illegal = illegal_user_transitions(chunks, target_status)
  if illegal:
    raise ValidationFailure(f"Illegal transition to '{target_status}'.", chunks=illegal)

  mismatched = await repo.swap_statuses(project_id, {chunk.chunk_id: chunk.status for chunk in chunks}, target_status)
  if mismatched:
    raise ConflictError("Chunk status changed concurrently; nothing was updated.", chunk_ids=mismatched)
  return await repo.get_chunks([chunk.chunk_id for chunk in chunks])


async def duplicate_chunks(repo: ChunkRepository, principal_id: str, chunk_ids: Sequence[str]) -> list[ChunkRecord]:
  """Append draft copies of the chunks, in their current order."""
  chunks = sorted(await load_owned_chunks(repo, chunk_ids, principal_id), key=lambda chunk: chunk.order_index)
  project = await load_owned_project(repo, chunks[0].project_id, principal_id)
  copies = [
    build_chunk(
      project,
      title=f"{chunk.title} (Copy)"[:MAX_TITLE_CHARS],
      content=chunk.content,
      section=chunk.section,
      page_range=chunk.page_range,
      source_metadata={**(chunk.source_metadata or {}), "duplicated_from": chunk.chunk_id, "duplicated_at": now_iso()},
    )
    for chunk in chunks
  ]
  return await repo.append_chunks(project.project_id, copies)


async def merge_chunks(repo: ChunkRepository, principal_id: str, chunk_ids: Sequence[str], *, title: str | None = None, section: str | None = None, delete_originals: bool = False) -> ChunkRecord:
  """Merge chunks in order_index order into one new draft chunk appended at the end."""
  if len(chunk_ids) < 2:
    raise ValidationFailure("At least two chunks are required to merge.")
  chunks = sorted(await load_owned_chunks(repo, chunk_ids, principal_id), key=lambda chunk: chunk.order_index)
  project = await load_owned_project(repo, chunks[0].project_id, principal_id)

  merged_content = "\n\n".join(chunk.content for chunk in chunks)
  if len(merged_content) > MAX_CHUNK_CHARS:
    raise ValidationFailure(f"Merged content exceeds {MAX_CHUNK_CHARS} characters.", char_count=len(merged_content), limit=MAX_CHUNK_CHARS)

  merged_title = normalize_title(title) if title else f"{chunks[0].title} (Merged)"[:MAX_TITLE_CHARS]
  record = build_chunk(
    project,
    title=merged_title,
    content=merged_content,
    section=section if section is not None else chunks[0].section,
    source_metadata={"merged_from": [chunk.chunk_id for chunk in chunks], "merged_at": now_iso()},
  )
  delete_ids = [chunk.chunk_id for chunk in chunks] if delete_originals else []
  (merged,) = await repo.append_chunks(project.project_id, [record], delete_ids=delete_ids)
  logger.info("Chunks merged project_id=%s merged_chunk_id=%s sources=%s deleted=%s", project.project_id, merged.chunk_id, len(chunks), delete_originals)
  return merged


async def move_chunks(repo: ChunkRepository, principal_id: str, chunk_ids: Sequence[str], target_project_id: str) -> list[ChunkRecord]:
  """Move chunks of one project to the end of another project of the same owner."""
  chunks = await load_owned_chunks(repo, chunk_ids, principal_id)
  source_project_id = chunks[0].project_id
  if source_project_id == target_project_id:
    raise ValidationFailure("Chunks already belong to the target project.", project_id=target_project_id)
  await load_owned_project(repo, target_project_id, principal_id)
  moved = await repo.move_chunks(source_project_id, target_project_id, [chunk.chunk_id for chunk in chunks])
  logger.info("Chunks moved source_project_id=%s target_project_id=%s count=%s", source_project_id, target_project_id, len(moved))
  return moved

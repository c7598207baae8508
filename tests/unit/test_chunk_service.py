from __future__ import annotations

import asyncio

import pytest

from chunkline.core.errors import ConflictError, NotFoundError, ValidationFailure
from chunkline.services import chunks as chunk_service
from chunkline.services import projects as project_service
from chunkline.storage.memory_repo import MemoryChunkRepository

OWNER = "alice"


async def _project_with_chunks(repo: MemoryChunkRepository, count: int) -> tuple[str, list[str]]:
  project = await project_service.create_project(repo, OWNER, title="Thesis", faculty="Law", topic="Contracts")
  ids = []
  for number in range(1, count + 1):
    chunk = await chunk_service.create_chunk(repo, OWNER, project.project_id, title=f"Part {number}", content=f"Body of part {number} " * 5)
    ids.append(chunk.chunk_id)
  return project.project_id, ids


async def _orders(repo: MemoryChunkRepository, project_id: str) -> list[int]:
  return [chunk.order_index for chunk in await repo.list_chunks(project_id)]


@pytest.mark.anyio
async def test_create_appends_with_dense_order(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 3)
  chunks = await chunk_repo.list_chunks(project_id)
  assert [chunk.chunk_id for chunk in chunks] == ids
  assert await _orders(chunk_repo, project_id) == [1, 2, 3]
  assert all(chunk.status == "draft" for chunk in chunks)


@pytest.mark.anyio
async def test_concurrent_creates_never_share_an_index(chunk_repo: MemoryChunkRepository) -> None:
  project_id, _ = await _project_with_chunks(chunk_repo, 0)
  await asyncio.gather(*(chunk_service.create_chunk(chunk_repo, OWNER, project_id, title=f"Part {n}", content="x" * 40) for n in range(10)))
  assert sorted(await _orders(chunk_repo, project_id)) == list(range(1, 11))


@pytest.mark.anyio
async def test_content_cap_and_minimums(chunk_repo: MemoryChunkRepository) -> None:
  project_id, _ = await _project_with_chunks(chunk_repo, 0)
  with pytest.raises(ValidationFailure):
    await chunk_service.create_chunk(chunk_repo, OWNER, project_id, title="Big", content="x" * 50_001)
  with pytest.raises(ValidationFailure):
    await chunk_service.create_chunk(chunk_repo, OWNER, project_id, title="ab", content="x" * 40)
  with pytest.raises(ValidationFailure):
    await chunk_service.create_chunk(chunk_repo, OWNER, project_id, title="Tiny", content="short")


@pytest.mark.anyio
async def test_other_principals_see_not_found(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 1)
  with pytest.raises(NotFoundError):
    await chunk_service.list_chunks(chunk_repo, "bob", project_id)
  with pytest.raises(NotFoundError):
    await chunk_service.update_chunk(chunk_repo, "bob", ids[0], {"title": "Stolen"})


@pytest.mark.anyio
async def test_reorder_reassigns_dense_positions(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 3)
  reordered = await chunk_service.reorder_chunks(chunk_repo, OWNER, project_id, [ids[2], ids[0], ids[1]])
  assert [chunk.chunk_id for chunk in reordered] == [ids[2], ids[0], ids[1]]
  assert [chunk.order_index for chunk in reordered] == [1, 2, 3]


@pytest.mark.anyio
async def test_partial_reorder_reports_missing_and_extra(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 3)
  with pytest.raises(ValidationFailure) as excinfo:
    await chunk_service.reorder_chunks(chunk_repo, OWNER, project_id, [ids[0], ids[1], "ghost"])
  assert excinfo.value.context["missing"] == [ids[2]]
  assert excinfo.value.context["extra"] == ["ghost"]
  assert await _orders(chunk_repo, project_id) == [1, 2, 3]


@pytest.mark.anyio
async def test_delete_renumbers_remaining_chunks(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 4)
  _, deleted = await chunk_service.delete_chunks(chunk_repo, OWNER, [ids[1]])
  assert deleted == 1
  chunks = await chunk_repo.list_chunks(project_id)
  assert [chunk.chunk_id for chunk in chunks] == [ids[0], ids[2], ids[3]]
  assert [chunk.order_index for chunk in chunks] == [1, 2, 3]

  # Appending after a delete continues from the dense maximum.
  created = await chunk_service.create_chunk(chunk_repo, OWNER, project_id, title="Appendix", content="x" * 40)
  assert created.order_index == 4


@pytest.mark.anyio
async def test_delete_refused_while_chunks_are_queued(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 3)
  await chunk_repo.swap_statuses(project_id, {ids[0]: "draft"}, "queued")
  with pytest.raises(ConflictError) as excinfo:
    await chunk_service.delete_chunks(chunk_repo, OWNER, ids[:2])
  assert excinfo.value.context["blocking_count"] == 1
  assert excinfo.value.context["blocking_ids"] == [ids[0]]
  assert len(await chunk_repo.list_chunks(project_id)) == 3


@pytest.mark.anyio
async def test_edit_lock_while_processing(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 1)
  await chunk_repo.swap_statuses(project_id, {ids[0]: "draft"}, "processing")
  before = await chunk_repo.get_chunk(ids[0])
  with pytest.raises(ConflictError) as excinfo:
    await chunk_service.update_chunk(chunk_repo, OWNER, ids[0], {"content": "y" * 40})
  assert excinfo.value.current_status == "processing"
  assert (await chunk_repo.get_chunk(ids[0])).content == before.content


@pytest.mark.anyio
async def test_edit_recounts_derived_fields(chunk_repo: MemoryChunkRepository) -> None:
  _, ids = await _project_with_chunks(chunk_repo, 1)
  updated = await chunk_service.update_chunk(chunk_repo, OWNER, ids[0], {"content": "  one two three four five  ", "section": ""})
  assert updated.content == "one two three four five"
  assert updated.char_count == 23
  assert updated.word_count == 5
  assert updated.section is None


@pytest.mark.anyio
async def test_edit_rejects_unknown_fields(chunk_repo: MemoryChunkRepository) -> None:
  _, ids = await _project_with_chunks(chunk_repo, 1)
  with pytest.raises(ValidationFailure):
    await chunk_service.update_chunk(chunk_repo, OWNER, ids[0], {"status": "done"})


@pytest.mark.anyio
async def test_bulk_update_with_foreign_id_changes_nothing(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 5)
  other_project, other_ids = await _project_with_chunks(chunk_repo, 1)
  with pytest.raises(ValidationFailure) as excinfo:
    await chunk_service.bulk_update_status(chunk_repo, OWNER, project_id, [*ids, other_ids[0]], "ready")
  assert excinfo.value.context["chunk_ids"] == [other_ids[0]]
  assert {chunk.status for chunk in await chunk_repo.list_chunks(project_id)} == {"draft"}
  assert other_project != project_id


@pytest.mark.anyio
async def test_bulk_update_with_illegal_transition_changes_nothing(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 5)
  await chunk_repo.swap_statuses(project_id, {ids[4]: "draft"}, "queued")
  with pytest.raises(ValidationFailure) as excinfo:
    await chunk_service.bulk_update_status(chunk_repo, OWNER, project_id, ids, "ready")
  assert [entry["chunk_id"] for entry in excinfo.value.context["chunks"]] == [ids[4]]
  statuses = [chunk.status for chunk in await chunk_repo.list_chunks(project_id)]
  assert statuses == ["draft", "draft", "draft", "draft", "queued"]


@pytest.mark.anyio
async def test_bulk_update_moves_every_chunk(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 3)
  updated = await chunk_service.bulk_update_status(chunk_repo, OWNER, project_id, ids, "ready")
  assert {chunk.status for chunk in updated} == {"ready"}


@pytest.mark.anyio
async def test_scheduler_statuses_cannot_be_requested(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 1)
  with pytest.raises(ValidationFailure):
    await chunk_service.bulk_update_status(chunk_repo, OWNER, project_id, ids, "done")


@pytest.mark.anyio
async def test_duplicate_appends_draft_copies(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 2)
  copies = await chunk_service.duplicate_chunks(chunk_repo, OWNER, [ids[1], ids[0]])
  assert [copy.title for copy in copies] == ["Part 1 (Copy)", "Part 2 (Copy)"]
  assert [copy.order_index for copy in copies] == [3, 4]
  assert copies[0].source_metadata["duplicated_from"] == ids[0]
  assert all(copy.status == "draft" for copy in copies)


@pytest.mark.anyio
async def test_merge_joins_in_order_and_can_drop_originals(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 3)
  await chunk_service.reorder_chunks(chunk_repo, OWNER, project_id, [ids[2], ids[0], ids[1]])

  merged = await chunk_service.merge_chunks(chunk_repo, OWNER, [ids[0], ids[2]], delete_originals=True)

  assert merged.content.startswith("Body of part 3")
  assert "\n\nBody of part 1" in merged.content
  assert merged.title == "Part 3 (Merged)"
  assert merged.source_metadata["merged_from"] == [ids[2], ids[0]]
  assert [chunk.chunk_id for chunk in await chunk_repo.list_chunks(project_id)] == [ids[1], merged.chunk_id]
  assert await _orders(chunk_repo, project_id) == [1, 2]


@pytest.mark.anyio
async def test_merge_rejects_content_over_cap(chunk_repo: MemoryChunkRepository) -> None:
  project_id, _ = await _project_with_chunks(chunk_repo, 0)
  big = [await chunk_service.create_chunk(chunk_repo, OWNER, project_id, title=f"Big {n}", content="x" * 30_000) for n in range(2)]
  with pytest.raises(ValidationFailure):
    await chunk_service.merge_chunks(chunk_repo, OWNER, [chunk.chunk_id for chunk in big])


@pytest.mark.anyio
async def test_cancelled_project_rejects_mutations(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 1)
  await project_service.cancel_project(chunk_repo, OWNER, project_id)
  with pytest.raises(ConflictError) as excinfo:
    await chunk_service.create_chunk(chunk_repo, OWNER, project_id, title="Late", content="x" * 40)
  assert excinfo.value.current_status == "cancelled"
  with pytest.raises(ConflictError):
    await chunk_service.update_chunk(chunk_repo, OWNER, ids[0], {"title": "Late edit"})


@pytest.mark.anyio
async def test_stats_report_status_breakdown(chunk_repo: MemoryChunkRepository) -> None:
  project_id, ids = await _project_with_chunks(chunk_repo, 3)
  await chunk_service.bulk_update_status(chunk_repo, OWNER, project_id, ids[:2], "ready")
  _, stats = await project_service.get_project_overview(chunk_repo, OWNER, project_id)
  assert stats["total_chunks"] == 3
  assert stats["status_breakdown"] == {"ready": 2, "draft": 1}
  assert stats["ready_for_processing"] == 2


@pytest.mark.anyio
async def test_move_appends_to_target_and_renumbers_source(chunk_repo: MemoryChunkRepository) -> None:
  source_id, source_ids = await _project_with_chunks(chunk_repo, 4)
  target_id, target_ids = await _project_with_chunks(chunk_repo, 2)

  moved = await chunk_service.move_chunks(chunk_repo, OWNER, [source_ids[3], source_ids[1]], target_id)

  # Moved chunks keep their relative order, not the request order.
  assert [(chunk.chunk_id, chunk.order_index, chunk.project_id) for chunk in moved] == [(source_ids[1], 3, target_id), (source_ids[3], 4, target_id)]
  assert [chunk.chunk_id for chunk in await chunk_repo.list_chunks(target_id)] == [*target_ids, source_ids[1], source_ids[3]]
  assert [chunk.chunk_id for chunk in await chunk_repo.list_chunks(source_id)] == [source_ids[0], source_ids[2]]
  assert await _orders(chunk_repo, source_id) == [1, 2]
  assert await _orders(chunk_repo, target_id) == [1, 2, 3, 4]
  assert (await chunk_repo.get_project(source_id)).chunk_count == 2
  assert (await chunk_repo.get_project(target_id)).chunk_count == 4


@pytest.mark.anyio
async def test_move_refuses_locked_chunks_and_changes_nothing(chunk_repo: MemoryChunkRepository) -> None:
  source_id, source_ids = await _project_with_chunks(chunk_repo, 2)
  target_id, _ = await _project_with_chunks(chunk_repo, 1)
  await chunk_repo.swap_statuses(source_id, {source_ids[1]: "draft"}, "processing")

  with pytest.raises(ConflictError) as excinfo:
    await chunk_service.move_chunks(chunk_repo, OWNER, source_ids, target_id)

  assert excinfo.value.context["blocking_ids"] == [source_ids[1]]
  assert await _orders(chunk_repo, source_id) == [1, 2]
  assert await _orders(chunk_repo, target_id) == [1]


@pytest.mark.anyio
async def test_move_requires_an_owned_active_other_project(chunk_repo: MemoryChunkRepository) -> None:
  source_id, source_ids = await _project_with_chunks(chunk_repo, 1)
  target_id, _ = await _project_with_chunks(chunk_repo, 1)
  foreign = await project_service.create_project(chunk_repo, "bob", title="Other thesis", faculty="Law", topic="Torts")

  with pytest.raises(ValidationFailure):
    await chunk_service.move_chunks(chunk_repo, OWNER, source_ids, source_id)
  with pytest.raises(NotFoundError):
    await chunk_service.move_chunks(chunk_repo, OWNER, source_ids, foreign.project_id)

  await project_service.cancel_project(chunk_repo, OWNER, target_id)
  with pytest.raises(ConflictError) as excinfo:
    await chunk_service.move_chunks(chunk_repo, OWNER, source_ids, target_id)
  assert excinfo.value.current_status == "cancelled"
  assert (await chunk_repo.get_chunk(source_ids[0])).project_id == source_id

from __future__ import annotations

import pytest

from chunkline.ai.backoff import backoff_delay, retry_with_backoff
from chunkline.ai.errors import GenerationError, TransientGenerationError
from chunkline.chunks.lifecycle import can_transition, ensure_editable, illegal_user_transitions, is_user_transition, parse_status
from chunkline.chunks.models import ChunkRecord
from chunkline.core.errors import ConflictError, ValidationFailure


def _chunk(status: str, chunk_id: str = "c1") -> ChunkRecord:
  return ChunkRecord(chunk_id=chunk_id, project_id="p", owner_id="o", title="Title", order_index=1, content="x" * 20, char_count=20, word_count=1, status=status, created_at="t", updated_at="t")  # type: ignore[arg-type]


def test_user_transitions_are_a_subset_of_the_lifecycle() -> None:
  for current, target in [("draft", "ready"), ("ready", "draft"), ("done", "draft"), ("error", "draft")]:
    assert is_user_transition(current, target)
    assert can_transition(current, target)
  assert not is_user_transition("ready", "queued")
  assert can_transition("ready", "queued")
  assert not can_transition("done", "ready")


@pytest.mark.parametrize("status", ["queued", "processing"])
def test_locked_chunks_are_not_editable(status: str) -> None:
  with pytest.raises(ConflictError) as excinfo:
    ensure_editable(_chunk(status))
  assert excinfo.value.current_status == status


@pytest.mark.parametrize("status", ["draft", "ready", "error"])
def test_editable_chunks_pass(status: str) -> None:
  ensure_editable(_chunk(status))


def test_illegal_user_transitions_names_each_offender() -> None:
  chunks = [_chunk("draft", "a"), _chunk("queued", "b"), _chunk("ready", "c")]
  illegal = illegal_user_transitions(chunks, "ready")
  assert [entry["chunk_id"] for entry in illegal] == ["b", "c"]


def test_parse_status_rejects_unknown_values() -> None:
  with pytest.raises(ValidationFailure):
    parse_status("finished")


def test_backoff_delay_doubles_and_caps() -> None:
  assert [backoff_delay(attempt, base_delay=2, max_delay=10) for attempt in (1, 2, 3, 4)] == [2, 4, 8, 10]


@pytest.mark.anyio
async def test_retry_recovers_after_transient_failures() -> None:
  delays: list[float] = []
  attempts = {"count": 0}

  async def _sleep(delay: float) -> None:
    delays.append(delay)

  async def _call() -> str:
    attempts["count"] += 1
    if attempts["count"] < 3:
      raise TransientGenerationError("rate limited")
    return "ok"

  assert await retry_with_backoff(_call, max_attempts=3, base_delay=1, max_delay=30, sleep=_sleep) == "ok"
  assert delays == [1, 2]


@pytest.mark.anyio
async def test_retry_gives_up_after_max_attempts() -> None:
  attempts = {"count": 0}

  async def _sleep(delay: float) -> None:
    return None

  async def _call() -> str:
    attempts["count"] += 1
    raise TransientGenerationError("timeout")

  with pytest.raises(TransientGenerationError):
    await retry_with_backoff(_call, max_attempts=3, base_delay=1, max_delay=30, sleep=_sleep)
  assert attempts["count"] == 3


@pytest.mark.anyio
async def test_non_transient_errors_are_not_retried() -> None:
  attempts = {"count": 0}

  async def _call() -> str:
    attempts["count"] += 1
    raise GenerationError("bad request")

  with pytest.raises(GenerationError):
    await retry_with_backoff(_call, max_attempts=3, base_delay=1, max_delay=30)
  assert attempts["count"] == 1

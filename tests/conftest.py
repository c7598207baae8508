"""Shared fixtures: memory storage, a scripted generator and fast retry settings."""

from __future__ import annotations

import os

# Settings are cached on first import; pin a backend that needs no database.
os.environ["CHUNKLINE_STORAGE_BACKEND"] = "memory"
os.environ.setdefault("CHUNKLINE_AUTH_TOKENS", '{"token-alice": "alice", "token-bob": "bob"}')

import inspect  # noqa: E402
from collections.abc import Callable  # noqa: E402
from dataclasses import replace  # noqa: E402

import pytest  # noqa: E402

from chunkline.ai.providers.base import GenerationResult, TextGenerator  # noqa: E402
from chunkline.config import Settings, get_settings  # noqa: E402
from chunkline.storage.memory_repo import MemoryBatchJobRepository, MemoryChunkRepository, MemoryStore  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class ScriptedGenerator(TextGenerator):
  """Fake completion client; `script` maps a prompt marker to a list of outcomes consumed in order."""

  name = "fake-model"

  def __init__(self, *, script: dict[str, list[object]] | None = None, on_call: Callable[[str], object] | None = None) -> None:
    self.script = script or {}
    self.on_call = on_call
    self.calls: list[str] = []

  async def generate(self, prompt: str, *, system: str | None = None) -> GenerationResult:
    self.calls.append(prompt)
    if self.on_call is not None:
      hook = self.on_call(prompt)
      if inspect.isawaitable(hook):
        await hook
    for marker, outcomes in self.script.items():
      if marker in prompt and outcomes:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
          raise outcome
        return GenerationResult(content=str(outcome), usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15})
    return GenerationResult(content=f"analysis of {len(prompt)} chars", usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15})


@pytest.fixture
def settings() -> Settings:
  return replace(get_settings(), retry_base_delay_seconds=0.01, retry_max_delay_seconds=0.02, generation_timeout_seconds=5, worker_concurrency=2)


@pytest.fixture
def store() -> MemoryStore:
  return MemoryStore()


@pytest.fixture
def chunk_repo(store: MemoryStore) -> MemoryChunkRepository:
  return MemoryChunkRepository(store)


@pytest.fixture
def jobs_repo(store: MemoryStore) -> MemoryBatchJobRepository:
  return MemoryBatchJobRepository(store)


@pytest.fixture
def generator() -> ScriptedGenerator:
  return ScriptedGenerator()


@pytest.fixture
def make_generator() -> type[ScriptedGenerator]:
  return ScriptedGenerator

"""Domain records for projects, chunks and their generated outputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ProjectStatus = Literal["active", "completed", "cancelled"]
ChunkStatus = Literal["draft", "ready", "queued", "processing", "done", "error"]

CHUNK_STATUSES: tuple[ChunkStatus, ...] = ("draft", "ready", "queued", "processing", "done", "error")
MAX_CHUNK_CHARS = 50_000
MIN_CHUNK_CHARS = 10
MIN_TITLE_CHARS = 3
MAX_TITLE_CHARS = 200


@dataclass
class ProjectRecord:
  """A document being split, processed and finally merged."""

  project_id: str
  owner_id: str
  title: str
  faculty: str
  topic: str
  status: ProjectStatus
  created_at: str
  level: str | None = None
  chunk_count: int = 0
  final_artifact_id: str | None = None
  completed_at: str | None = None


@dataclass
class ChunkRecord:
  """An addressable, ordered unit of source text within a project."""

  chunk_id: str
  project_id: str
  owner_id: str
  title: str
  order_index: int
  content: str
  char_count: int
  word_count: int
  status: ChunkStatus
  created_at: str
  updated_at: str
  section: str | None = None
  page_range: str | None = None
  processed_at: str | None = None
  last_error: str | None = None
  source_metadata: dict[str, Any] | None = None


@dataclass
class OutputRecord:
  """Generated text for one (chunk, analysis kind) unit. Written once."""

  output_id: str
  chunk_id: str
  batch_job_id: str
  analysis_kind: str
  text: str
  created_at: str
  input_tokens: int | None = None
  output_tokens: int | None = None


@dataclass
class ArtifactRecord:
  """The merged final document of a project."""

  artifact_id: str
  project_id: str
  owner_id: str
  title: str
  text: str
  created_at: str
  metadata: dict[str, Any] = field(default_factory=dict)


def count_words(content: str) -> int:
  """Count whitespace-separated words."""
  return len(content.split())

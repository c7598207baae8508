from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from chunkline.chunks.models import MAX_CHUNK_CHARS, ArtifactRecord, ChunkRecord, ProjectRecord
from chunkline.jobs.models import BatchJobRecord

AnalysisKind = Literal["summary", "structural_analysis", "methodological_analysis", "content_analysis"]
UserChunkStatus = Literal["draft", "ready"]


class ProjectCreateRequest(BaseModel):
  """Request payload for creating a project."""

  title: StrictStr = Field(min_length=1, max_length=300)
  faculty: StrictStr = Field(min_length=1, max_length=200, description="Faculty or discipline, used for prompts and estimates.")
  topic: StrictStr = Field(min_length=1, max_length=300)
  level: StrictStr | None = Field(default=None, max_length=100, description="Optional degree level hint used in prompts.")
  model_config = ConfigDict(extra="forbid")


class ChunkStats(BaseModel):
  total_chunks: int
  total_chars: int
  total_words: int
  status_breakdown: dict[str, int]
  ready_for_processing: int


class ProjectResponse(BaseModel):
  """Project state with chunk statistics."""

  project_id: str
  title: str
  faculty: str
  topic: str
  level: str | None = None
  status: str
  chunk_count: int
  final_artifact_id: str | None = None
  created_at: str
  completed_at: str | None = None
  stats: ChunkStats | None = None

  @classmethod
  def from_record(cls, record: ProjectRecord, stats: dict[str, Any] | None = None) -> ProjectResponse:
    return cls(
      project_id=record.project_id,
      title=record.title,
      faculty=record.faculty,
      topic=record.topic,
      level=record.level,
      status=record.status,
      chunk_count=record.chunk_count,
      final_artifact_id=record.final_artifact_id,
      created_at=record.created_at,
      completed_at=record.completed_at,
      stats=ChunkStats(**stats) if stats is not None else None,
    )


class ChunkCreateRequest(BaseModel):
  """Request payload for appending a chunk to a project."""

  title: StrictStr = Field(min_length=1)
  content: StrictStr = Field(min_length=1, max_length=MAX_CHUNK_CHARS + 1000, description="Chunk text; trimmed and capped server-side.")
  section: StrictStr | None = None
  page_range: StrictStr | None = Field(default=None, max_length=50, examples=["12-18"])
  source_metadata: dict[str, Any] | None = None
  model_config = ConfigDict(extra="forbid")


class ChunkUpdateRequest(BaseModel):
  """Partial edit of a chunk; omitted fields are left untouched."""

  title: StrictStr | None = None
  content: StrictStr | None = None
  section: StrictStr | None = None
  page_range: StrictStr | None = None
  model_config = ConfigDict(extra="forbid")


class ChunkResponse(BaseModel):
  chunk_id: str
  project_id: str
  title: str
  section: str | None = None
  page_range: str | None = None
  order_index: int
  content: str
  char_count: int
  word_count: int
  status: str
  last_error: str | None = None
  source_metadata: dict[str, Any] | None = None
  created_at: str
  updated_at: str
  processed_at: str | None = None

  @classmethod
  def from_record(cls, record: ChunkRecord) -> ChunkResponse:
    return cls(
      chunk_id=record.chunk_id,
      project_id=record.project_id,
      title=record.title,
      section=record.section,
      page_range=record.page_range,
      order_index=record.order_index,
      content=record.content,
      char_count=record.char_count,
      word_count=record.word_count,
      status=record.status,
      last_error=record.last_error,
      source_metadata=record.source_metadata,
      created_at=record.created_at,
      updated_at=record.updated_at,
      processed_at=record.processed_at,
    )


class ChunkListResponse(BaseModel):
  chunks: list[ChunkResponse]
  stats: ChunkStats


class ChunkIdsRequest(BaseModel):
  """A selection of chunk ids."""

  chunk_ids: list[StrictStr] = Field(min_length=1)
  model_config = ConfigDict(extra="forbid")


class ReorderRequest(BaseModel):
  """The full ordered list of a project's chunk ids."""

  chunk_ids: list[StrictStr] = Field(description="Every chunk id of the project, in the new order.")
  model_config = ConfigDict(extra="forbid")


class BulkStatusRequest(BaseModel):
  """Apply a user transition to every chunk or none."""

  chunk_ids: list[StrictStr] = Field(min_length=1)
  status: UserChunkStatus
  model_config = ConfigDict(extra="forbid")


class MergeRequest(BaseModel):
  chunk_ids: list[StrictStr] = Field(min_length=2)
  title: StrictStr | None = None
  section: StrictStr | None = None
  delete_originals: bool = False
  model_config = ConfigDict(extra="forbid")


class MoveRequest(BaseModel):
  """Chunks to move and the project that receives them."""

  chunk_ids: list[StrictStr] = Field(min_length=1)
  target_project_id: StrictStr = Field(min_length=1)
  model_config = ConfigDict(extra="forbid")


class DeleteResponse(BaseModel):
  project_id: str
  deleted: int


class EstimateRequest(BaseModel):
  """Raw text to estimate before it becomes a chunk."""

  text: StrictStr = Field(min_length=1, max_length=MAX_CHUNK_CHARS)
  faculty: StrictStr = ""
  topic: StrictStr = ""
  model: StrictStr | None = Field(default=None, description="Model profile to estimate against; defaults to the configured model.")
  model_config = ConfigDict(extra="forbid", protected_namespaces=())


class BatchRequest(BaseModel):
  """Selection of chunks and analyses for intake or preview."""

  project_id: StrictStr
  chunk_ids: list[StrictStr] = Field(min_length=1)
  analysis_kinds: list[AnalysisKind] = Field(min_length=1)
  model_config = ConfigDict(extra="forbid")


class ChunkQuote(BaseModel):
  chunk_id: str
  title: str
  estimated_tokens: int
  estimated_cost: float
  is_valid: bool


class BatchPreviewResponse(BaseModel):
  total_units: int
  estimated_tokens: int
  raw_cost: float
  estimated_cost: float
  savings_percentage: float
  model: str
  chunks: list[ChunkQuote]
  warnings: list[str]
  model_config = ConfigDict(protected_namespaces=())


class BatchCreateResponse(BaseModel):
  """Response payload for batch intake."""

  batch_job_id: str
  status: str
  total_units: int
  estimated_cost: float
  estimated_tokens: int
  savings_percentage: float


class BatchJobResponse(BaseModel):
  batch_job_id: str
  project_id: str
  status: str
  chunk_ids: list[str]
  analysis_kinds: list[str]
  total_units: int
  processed_units: int
  failed_units: int
  progress_percentage: float
  estimated_cost: float
  estimated_tokens: int
  model: str | None = None
  error_detail: dict[str, Any] | None = None
  created_at: str
  started_at: str | None = None
  completed_at: str | None = None
  model_config = ConfigDict(protected_namespaces=())

  @classmethod
  def from_record(cls, record: BatchJobRecord) -> BatchJobResponse:
    return cls(
      batch_job_id=record.job_id,
      project_id=record.project_id,
      status=record.status,
      chunk_ids=list(record.chunk_ids),
      analysis_kinds=list(record.analysis_kinds),
      total_units=record.total_units,
      processed_units=record.processed_units,
      failed_units=record.failed_units,
      progress_percentage=record.progress_percentage,
      estimated_cost=record.estimated_cost,
      estimated_tokens=record.estimated_tokens,
      model=record.model,
      error_detail=record.error_detail,
      created_at=record.created_at,
      started_at=record.started_at,
      completed_at=record.completed_at,
    )


class ChunkProgress(BaseModel):
  chunk_id: str
  title: str | None = None
  order_index: int | None = None
  status: str
  last_error: str | None = None
  completed_kinds: list[str]
  has_output: bool


class BatchProgressResponse(BatchJobResponse):
  """Job counters plus the current status of each selected chunk."""

  per_chunk_status: list[ChunkProgress]


class BatchListResponse(BaseModel):
  jobs: list[BatchJobResponse]


class FinalizeResponse(BaseModel):
  final_artifact_id: str
  missing_count: int


class ArtifactResponse(BaseModel):
  artifact_id: str
  project_id: str
  title: str
  text: str
  metadata: dict[str, Any]
  created_at: str

  @classmethod
  def from_record(cls, record: ArtifactRecord) -> ArtifactResponse:
    return cls(artifact_id=record.artifact_id, project_id=record.project_id, title=record.title, text=record.text, metadata=dict(record.metadata), created_at=record.created_at)

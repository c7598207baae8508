from __future__ import annotations

from sqlalchemy import JSON, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from chunkline.core.database import Base

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Project(Base):
  __tablename__ = "projects"

  project_id: Mapped[str] = mapped_column(String, primary_key=True)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  faculty: Mapped[str] = mapped_column(String, nullable=False)
  topic: Mapped[str] = mapped_column(String, nullable=False)
  level: Mapped[str | None] = mapped_column(String, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  final_artifact_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)


class Chunk(Base):
  __tablename__ = "chunks"
  __table_args__ = (UniqueConstraint("project_id", "order_index", name="ux_chunks_project_order"),)

  chunk_id: Mapped[str] = mapped_column(String, primary_key=True)
  project_id: Mapped[str] = mapped_column(ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  section: Mapped[str | None] = mapped_column(String, nullable=True)
  page_range: Mapped[str | None] = mapped_column(String, nullable=True)
  order_index: Mapped[int] = mapped_column(Integer, nullable=False)
  content: Mapped[str] = mapped_column(Text, nullable=False)
  char_count: Mapped[int] = mapped_column(Integer, nullable=False)
  word_count: Mapped[int] = mapped_column(Integer, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  source_metadata: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)
  processed_at: Mapped[str | None] = mapped_column(String, nullable=True)


class BatchJob(Base):
  __tablename__ = "batch_jobs"
  __table_args__ = (Index("ix_batch_jobs_project_created", "project_id", "created_at"),)

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  project_id: Mapped[str] = mapped_column(ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  chunk_ids: Mapped[list] = mapped_column(JSONType, nullable=False)
  analysis_kinds: Mapped[list] = mapped_column(JSONType, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  total_units: Mapped[int] = mapped_column(Integer, nullable=False)
  processed_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  failed_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  estimated_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
  estimated_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  model: Mapped[str | None] = mapped_column(String, nullable=True)
  config_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
  error_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)
  started_at: Mapped[str | None] = mapped_column(String, nullable=True)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)


class ChunkOutput(Base):
  __tablename__ = "chunk_outputs"
  __table_args__ = (UniqueConstraint("batch_job_id", "chunk_id", "analysis_kind", name="ux_chunk_outputs_unit"),)

  output_id: Mapped[str] = mapped_column(String, primary_key=True)
  chunk_id: Mapped[str] = mapped_column(ForeignKey("chunks.chunk_id", ondelete="CASCADE"), nullable=False, index=True)
  batch_job_id: Mapped[str] = mapped_column(ForeignKey("batch_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  analysis_kind: Mapped[str] = mapped_column(String, nullable=False)
  text: Mapped[str] = mapped_column(Text, nullable=False)
  input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
  output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False)


class FinalArtifact(Base):
  __tablename__ = "final_artifacts"

  artifact_id: Mapped[str] = mapped_column(String, primary_key=True)
  project_id: Mapped[str] = mapped_column(ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, unique=True)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  text: Mapped[str] = mapped_column(Text, nullable=False)
  metadata_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False)

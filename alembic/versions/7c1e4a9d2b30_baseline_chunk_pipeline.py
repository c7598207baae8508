"""Baseline schema for projects, chunks, batch jobs, outputs and artifacts.

Revision ID: 7c1e4a9d2b30
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "7c1e4a9d2b30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "projects",
    sa.Column("project_id", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("faculty", sa.String(), nullable=False),
    sa.Column("topic", sa.String(), nullable=False),
    sa.Column("level", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("chunk_count", sa.Integer(), nullable=False),
    sa.Column("final_artifact_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.String(), nullable=False),
    sa.Column("completed_at", sa.String(), nullable=True),
    sa.PrimaryKeyConstraint("project_id"),
  )
  op.create_index(op.f("ix_projects_owner_id"), "projects", ["owner_id"], unique=False)
  op.create_index(op.f("ix_projects_status"), "projects", ["status"], unique=False)

  op.create_table(
    "chunks",
    sa.Column("chunk_id", sa.String(), nullable=False),
    sa.Column("project_id", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("section", sa.String(), nullable=True),
    sa.Column("page_range", sa.String(), nullable=True),
    sa.Column("order_index", sa.Integer(), nullable=False),
    sa.Column("content", sa.Text(), nullable=False),
    sa.Column("char_count", sa.Integer(), nullable=False),
    sa.Column("word_count", sa.Integer(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("source_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.String(), nullable=False),
    sa.Column("updated_at", sa.String(), nullable=False),
    sa.Column("processed_at", sa.String(), nullable=True),
    sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("chunk_id"),
    sa.UniqueConstraint("project_id", "order_index", name="ux_chunks_project_order"),
  )
  op.create_index(op.f("ix_chunks_project_id"), "chunks", ["project_id"], unique=False)
  op.create_index(op.f("ix_chunks_owner_id"), "chunks", ["owner_id"], unique=False)
  op.create_index(op.f("ix_chunks_status"), "chunks", ["status"], unique=False)

  op.create_table(
    "batch_jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("project_id", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(), nullable=False),
    sa.Column("chunk_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("analysis_kinds", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("total_units", sa.Integer(), nullable=False),
    sa.Column("processed_units", sa.Integer(), nullable=False),
    sa.Column("failed_units", sa.Integer(), nullable=False),
    sa.Column("estimated_cost", sa.Float(), nullable=False),
    sa.Column("estimated_tokens", sa.Integer(), nullable=False),
    sa.Column("model", sa.String(), nullable=True),
    sa.Column("config_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("error_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.String(), nullable=False),
    sa.Column("updated_at", sa.String(), nullable=False),
    sa.Column("started_at", sa.String(), nullable=True),
    sa.Column("completed_at", sa.String(), nullable=True),
    sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("job_id"),
  )
  op.create_index("ix_batch_jobs_project_created", "batch_jobs", ["project_id", "created_at"], unique=False)
  op.create_index(op.f("ix_batch_jobs_owner_id"), "batch_jobs", ["owner_id"], unique=False)
  op.create_index(op.f("ix_batch_jobs_status"), "batch_jobs", ["status"], unique=False)

  op.create_table(
    "chunk_outputs",
    sa.Column("output_id", sa.String(), nullable=False),
    sa.Column("chunk_id", sa.String(), nullable=False),
    sa.Column("batch_job_id", sa.String(), nullable=False),
    sa.Column("analysis_kind", sa.String(), nullable=False),
    sa.Column("text", sa.Text(), nullable=False),
    sa.Column("input_tokens", sa.Integer(), nullable=True),
    sa.Column("output_tokens", sa.Integer(), nullable=True),
    sa.Column("created_at", sa.String(), nullable=False),
    sa.ForeignKeyConstraint(["chunk_id"], ["chunks.chunk_id"], ondelete="CASCADE"),
    sa.ForeignKeyConstraint(["batch_job_id"], ["batch_jobs.job_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("output_id"),
    sa.UniqueConstraint("batch_job_id", "chunk_id", "analysis_kind", name="ux_chunk_outputs_unit"),
  )
  op.create_index(op.f("ix_chunk_outputs_chunk_id"), "chunk_outputs", ["chunk_id"], unique=False)
  op.create_index(op.f("ix_chunk_outputs_batch_job_id"), "chunk_outputs", ["batch_job_id"], unique=False)

  op.create_table(
    "final_artifacts",
    sa.Column("artifact_id", sa.String(), nullable=False),
    sa.Column("project_id", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("text", sa.Text(), nullable=False),
    sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.String(), nullable=False),
    sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("artifact_id"),
    sa.UniqueConstraint("project_id"),
  )
  op.create_index(op.f("ix_final_artifacts_owner_id"), "final_artifacts", ["owner_id"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index(op.f("ix_final_artifacts_owner_id"), table_name="final_artifacts")
  op.drop_table("final_artifacts")
  op.drop_index(op.f("ix_chunk_outputs_batch_job_id"), table_name="chunk_outputs")
  op.drop_index(op.f("ix_chunk_outputs_chunk_id"), table_name="chunk_outputs")
  op.drop_table("chunk_outputs")
  op.drop_index(op.f("ix_batch_jobs_status"), table_name="batch_jobs")
  op.drop_index(op.f("ix_batch_jobs_owner_id"), table_name="batch_jobs")
  op.drop_index("ix_batch_jobs_project_created", table_name="batch_jobs")
  op.drop_table("batch_jobs")
  op.drop_index(op.f("ix_chunks_status"), table_name="chunks")
  op.drop_index(op.f("ix_chunks_owner_id"), table_name="chunks")
  op.drop_index(op.f("ix_chunks_project_id"), table_name="chunks")
  op.drop_table("chunks")
  op.drop_index(op.f("ix_projects_status"), table_name="projects")
  op.drop_index(op.f("ix_projects_owner_id"), table_name="projects")
  op.drop_table("projects")

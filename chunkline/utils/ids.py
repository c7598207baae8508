"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_project_id() -> str:
  """Return a new project identifier."""
  return str(uuid.uuid4())


def generate_chunk_id() -> str:
  """Return a new chunk identifier."""
  return str(uuid.uuid4())


def generate_job_id() -> str:
  """Return a new batch job identifier."""
  return str(uuid.uuid4())


def generate_record_id() -> str:
  """Return a new identifier for output and artifact records."""
  return str(uuid.uuid4())

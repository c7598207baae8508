"""Shared FastAPI dependencies for repositories and the batch runner."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from chunkline.jobs.runner import BatchRunner
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.jobs_repo import BatchJobRepository


def _from_state(request: Request, name: str) -> object:
  value = getattr(request.app.state, name, None)
  if value is None:
    # Lifespan did not run or failed to build the component.
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
  return value


def get_chunk_repo(request: Request) -> ChunkRepository:
  """Dependency to get the chunk repository built at startup."""
  return _from_state(request, "chunk_repo")  # type: ignore[return-value]


def get_jobs_repo(request: Request) -> BatchJobRepository:
  """Dependency to get the batch job repository built at startup."""
  return _from_state(request, "jobs_repo")  # type: ignore[return-value]


def get_runner(request: Request) -> BatchRunner:
  """Dependency to get the process-wide batch runner."""
  return _from_state(request, "runner")  # type: ignore[return-value]

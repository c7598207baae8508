from functools import lru_cache

from chunkline.config import Settings
from chunkline.storage.chunks_repo import ChunkRepository
from chunkline.storage.jobs_repo import BatchJobRepository
from chunkline.storage.memory_repo import MemoryBatchJobRepository, MemoryChunkRepository, MemoryStore
from chunkline.storage.postgres_chunks_repo import PostgresChunkRepository
from chunkline.storage.postgres_jobs_repo import PostgresBatchJobRepository


@lru_cache(maxsize=1)
def _memory_store() -> MemoryStore:
  """Process-wide memory tables shared by both repositories."""
  return MemoryStore()


def _get_chunk_repo(settings: Settings) -> ChunkRepository:
  """Return the active chunk repository."""
  if settings.storage_backend == "memory":
    return MemoryChunkRepository(_memory_store())

  if not settings.pg_dsn:
    raise ValueError("CHUNKLINE_PG_DSN must be set to enable Postgres persistence.")

  return PostgresChunkRepository()


def _get_jobs_repo(settings: Settings) -> BatchJobRepository:
  """Return the active batch jobs repository."""
  if settings.storage_backend == "memory":
    return MemoryBatchJobRepository(_memory_store())

  if not settings.pg_dsn:
    raise ValueError("CHUNKLINE_PG_DSN must be set to enable Postgres persistence.")

  return PostgresBatchJobRepository()

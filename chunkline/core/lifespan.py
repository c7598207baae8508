import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from chunkline.ai.providers.openai_compat import OpenAICompatibleGenerator
from chunkline.config import get_settings
from chunkline.core.database import Base, dispose_engine, get_db_engine
from chunkline.core.logging import initialize_logging
from chunkline.jobs.runner import BatchRunner
from chunkline.storage.factory import _get_chunk_repo, _get_jobs_repo


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Build repositories, the generator and the batch runner; resume unfinished jobs."""
  settings = get_settings()
  logger = logging.getLogger("chunkline.core.lifespan")

  initialize_logging(settings)
  logger.info("Startup: environment=%s storage=%s dsn=%s", settings.environment, settings.storage_backend, _redact_dsn(settings.pg_dsn))

  if settings.storage_backend == "postgres" and settings.auto_create_schema:
    await _create_schema(logger=logger)

  chunk_repo = _get_chunk_repo(settings)
  jobs_repo = _get_jobs_repo(settings)
  generator = OpenAICompatibleGenerator.from_settings(settings)
  if not settings.generation_api_key:
    logger.warning("Generation API key is not configured; batch units will fail until it is set.")
  runner = BatchRunner(chunk_repo=chunk_repo, jobs_repo=jobs_repo, generator=generator, settings=settings)

  app.state.chunk_repo = chunk_repo
  app.state.jobs_repo = jobs_repo
  app.state.runner = runner

  await runner.resume()
  logger.info("Startup complete.")

  try:
    yield
  finally:
    await runner.stop()
    await generator.aclose()
    await dispose_engine()
    logger.info("Shutdown complete.")


async def _create_schema(*, logger: logging.Logger) -> None:
  """Create missing tables for local development; production uses alembic."""
  # Import for side effects so every table is registered on Base.metadata.
  import chunkline.schema.tables  # noqa: F401

  engine = get_db_engine()
  if engine is None:
    logger.warning("Database engine unavailable; skipping schema creation.")
    return
  async with engine.begin() as connection:
    await connection.run_sync(Base.metadata.create_all)
  logger.info("Schema ensured.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"

import asyncio
import logging
from logging.config import fileConfig
from time import perf_counter

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

config = context.config

if config.config_file_name is not None:
  fileConfig(config.config_file_name)

# Table classes register themselves on Base.metadata at import.
import chunkline.schema.tables  # noqa: E402, F401
from chunkline.config import get_database_settings  # noqa: E402
from chunkline.core.database import Base, normalize_database_url  # noqa: E402

logger = logging.getLogger("alembic.runtime.migration")


def _database_url() -> str:
  url = normalize_database_url(get_database_settings().pg_dsn)
  if not url:
    raise RuntimeError("CHUNKLINE_PG_DSN must be set to run migrations.")
  return url


class _RevisionClock:
  """Log how long each applied revision took."""

  def __init__(self) -> None:
    self.started = perf_counter()

  def __call__(self, *, ctx: object, step: object, heads: set[str], run_args: dict[str, object]) -> None:
    elapsed = perf_counter() - self.started
    logger.info("Applied revision %s in %.3fs", getattr(step, "up_revision_id", None) or "unknown", elapsed)
    self.started = perf_counter()


def _configure(**kwargs: object) -> None:
  context.configure(target_metadata=Base.metadata, compare_type=True, compare_server_default=True, on_version_apply=_RevisionClock(), **kwargs)


def run_migrations_offline() -> None:
  """Render SQL for the configured database without connecting."""
  _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
  with context.begin_transaction():
    context.run_migrations()


def _migrate(connection: Connection) -> None:
  _configure(connection=connection)
  migration_context = context.get_context()
  logger.info("Migrating chunkline schema from %s", migration_context.get_current_revision() or "base")
  with context.begin_transaction():
    context.run_migrations()
  logger.info("Chunkline schema now at %s", ", ".join(migration_context.get_current_heads()) or "none")


async def run_async_migrations() -> None:
  """Use the asyncpg driver the service itself runs on."""
  section = config.get_section(config.config_ini_section) or {}
  section["sqlalchemy.url"] = _database_url()
  engine = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
  try:
    async with engine.connect() as connection:
      await connection.run_sync(_migrate)
  finally:
    await engine.dispose()


if context.is_offline_mode():
  run_migrations_offline()
else:
  asyncio.run(run_async_migrations())

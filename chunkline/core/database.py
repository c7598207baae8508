from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from chunkline.config import get_database_settings


class Base(DeclarativeBase):
  pass


engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def normalize_database_url(dsn: str | None) -> str | None:
  """Rewrite plain postgres DSNs to the asyncpg driver."""
  if dsn and dsn.startswith("postgresql://"):
    return dsn.replace("postgresql://", "postgresql+asyncpg://", 1)
  if dsn and dsn.startswith("postgres://"):
    return dsn.replace("postgres://", "postgresql+asyncpg://", 1)
  return dsn


def create_engine_for(database_url: str, *, echo: bool = False, connect_timeout: int | None = None) -> AsyncEngine:
  connect_args: dict[str, Any] = {}
  if connect_timeout and database_url.startswith("postgresql+asyncpg://"):
    connect_args["timeout"] = connect_timeout
  return create_async_engine(database_url, echo=echo, pool_pre_ping=database_url.startswith("postgresql"), connect_args=connect_args)


def get_db_engine() -> AsyncEngine | None:
  global engine
  settings = get_database_settings()
  database_url = normalize_database_url(settings.pg_dsn)
  if engine is None and database_url:
    engine = create_engine_for(database_url, echo=settings.debug, connect_timeout=settings.pg_connect_timeout)
  return engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  global SessionLocal
  if SessionLocal is None:
    db_engine = get_db_engine()
    if db_engine:
      SessionLocal = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return SessionLocal


async def dispose_engine() -> None:
  """Close pooled connections on shutdown."""
  global engine, SessionLocal
  if engine is not None:
    await engine.dispose()
  engine = None
  SessionLocal = None

"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache

from chunkline.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_STORAGE_BACKENDS = {"postgres", "memory"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Chunkline service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  storage_backend: str
  pg_dsn: str | None
  pg_connect_timeout: int
  auto_create_schema: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  generation_base_url: str
  generation_api_key: str | None
  generation_model: str
  generation_temperature: float
  generation_max_tokens: int
  generation_timeout_seconds: float
  retry_max_attempts: int
  retry_base_delay_seconds: float
  retry_max_delay_seconds: float
  worker_concurrency: int
  batch_error_threshold: float
  max_chunks_per_batch: int
  batch_discount: float
  provider_discount: float
  auth_tokens: dict[str, str] = field(hash=False, repr=False)


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ()

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("CHUNKLINE_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_auth_tokens(raw: str | None) -> dict[str, str]:
  """Parse the bearer token to principal id mapping."""
  if not raw:
    return {}
  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError("CHUNKLINE_AUTH_TOKENS must be a JSON object of token -> principal id.") from exc
  if not isinstance(parsed, dict):
    raise ValueError("CHUNKLINE_AUTH_TOKENS must be a JSON object of token -> principal id.")
  return {str(token): str(principal) for token, principal in parsed.items()}


def _parse_ratio(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value < 0 or value > 1:
    raise ValueError(f"{name} must be between 0 and 1.")
  return value


def _parse_positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("CHUNKLINE_ENV", "development").lower()
  debug = _parse_bool(os.getenv("CHUNKLINE_DEBUG"))

  storage_backend = (os.getenv("CHUNKLINE_STORAGE_BACKEND") or "postgres").strip().lower()
  if storage_backend not in _STORAGE_BACKENDS:
    raise ValueError(f"CHUNKLINE_STORAGE_BACKEND must be one of {sorted(_STORAGE_BACKENDS)}.")

  pg_dsn = _optional_str(os.getenv("CHUNKLINE_PG_DSN") or os.getenv("DATABASE_URL"))
  if storage_backend == "postgres" and not pg_dsn:
    raise ValueError("CHUNKLINE_PG_DSN must be set when the postgres storage backend is enabled.")

  log_backup_count = int(os.getenv("CHUNKLINE_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("CHUNKLINE_LOG_BACKUP_COUNT must be zero or a positive integer.")

  retry_max_attempts = _parse_positive_int("CHUNKLINE_RETRY_MAX_ATTEMPTS", "3")
  retry_base_delay_seconds = _parse_positive_float("CHUNKLINE_RETRY_BASE_DELAY_SECONDS", "2")
  retry_max_delay_seconds = _parse_positive_float("CHUNKLINE_RETRY_MAX_DELAY_SECONDS", "30")
  if retry_max_delay_seconds < retry_base_delay_seconds:
    raise ValueError("CHUNKLINE_RETRY_MAX_DELAY_SECONDS must not be lower than the base delay.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("CHUNKLINE_ALLOWED_ORIGINS")),
    storage_backend=storage_backend,
    pg_dsn=pg_dsn,
    pg_connect_timeout=_parse_positive_int("CHUNKLINE_PG_CONNECT_TIMEOUT", "5"),
    auto_create_schema=_parse_bool(os.getenv("CHUNKLINE_AUTO_CREATE_SCHEMA")),
    log_max_bytes=_parse_positive_int("CHUNKLINE_LOG_MAX_BYTES", "5242880"),
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("CHUNKLINE_LOG_HTTP_4XX")),
    generation_base_url=(os.getenv("CHUNKLINE_GENERATION_BASE_URL") or "https://api.groq.com/openai/v1").strip(),
    generation_api_key=_optional_str(os.getenv("CHUNKLINE_GENERATION_API_KEY") or os.getenv("GROQ_API_KEY")),
    generation_model=(os.getenv("CHUNKLINE_GENERATION_MODEL") or "meta-llama/llama-4-maverick-17b-128e-instruct").strip(),
    generation_temperature=float(os.getenv("CHUNKLINE_GENERATION_TEMPERATURE", "0.1")),
    generation_max_tokens=_parse_positive_int("CHUNKLINE_GENERATION_MAX_TOKENS", "4000"),
    generation_timeout_seconds=_parse_positive_float("CHUNKLINE_GENERATION_TIMEOUT_SECONDS", "120"),
    retry_max_attempts=retry_max_attempts,
    retry_base_delay_seconds=retry_base_delay_seconds,
    retry_max_delay_seconds=retry_max_delay_seconds,
    worker_concurrency=_parse_positive_int("CHUNKLINE_WORKER_CONCURRENCY", "4"),
    batch_error_threshold=_parse_ratio("CHUNKLINE_BATCH_ERROR_THRESHOLD", "0.5"),
    max_chunks_per_batch=_parse_positive_int("CHUNKLINE_MAX_CHUNKS_PER_BATCH", "50"),
    batch_discount=_parse_ratio("CHUNKLINE_BATCH_DISCOUNT", "0.5"),
    provider_discount=_parse_ratio("CHUNKLINE_PROVIDER_DISCOUNT", "0.25"),
    auth_tokens=_parse_auth_tokens(os.getenv("CHUNKLINE_AUTH_TOKENS")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration."""
  # Migrations and offline scripts only need the DSN.
  debug = _parse_bool(os.getenv("CHUNKLINE_DEBUG"))
  pg_connect_timeout = int(os.getenv("CHUNKLINE_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("CHUNKLINE_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("CHUNKLINE_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)

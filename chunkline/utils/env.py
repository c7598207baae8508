"""Local .env support so development runs pick up CHUNKLINE_* settings."""

from __future__ import annotations

import os
from pathlib import Path


def default_env_path() -> Path:
  """CHUNKLINE_ENV_FILE when set, else the .env beside pyproject.toml."""
  explicit = os.getenv("CHUNKLINE_ENV_FILE")
  if explicit:
    return Path(explicit).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
  if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
    return value[1:-1]
  return value


def parse_env_lines(lines: list[str]) -> dict[str, str]:
  """Parse KEY=value lines; comments, blanks and malformed lines are skipped."""
  values: dict[str, str] = {}
  for raw_line in lines:
    line = raw_line.strip()
    if line.startswith("export "):
      line = line.removeprefix("export ").lstrip()
    if not line or line.startswith("#") or "=" not in line:
      continue
    key, _, value = line.partition("=")
    if key.strip():
      values[key.strip()] = _unquote(value.strip())
  return values


def load_env_file(path: Path, *, override: bool = False) -> None:
  """Export a .env file into os.environ; existing variables win unless override is set."""
  if not path.is_file():
    return
  for key, value in parse_env_lines(path.read_text(encoding="utf-8").splitlines()).items():
    if override or key not in os.environ:
      os.environ[key] = value

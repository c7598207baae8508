"""Domain models for batch processing jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

BatchJobStatus = Literal["queued", "running", "completed", "failed", "cancelled"]

ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({"queued", "running"})
TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

# Closed catalog of analyses a batch can request, in rendering order.
ANALYSIS_KINDS: dict[str, str] = {
  "summary": "Summary",
  "structural_analysis": "Structural analysis",
  "methodological_analysis": "Methodological analysis",
  "content_analysis": "Content analysis",
}


@dataclass
class BatchJobRecord:
  """Represents a scheduled pairing of chunks with analysis kinds."""

  job_id: str
  project_id: str
  owner_id: str
  chunk_ids: list[str]
  analysis_kinds: list[str]
  status: BatchJobStatus
  total_units: int
  created_at: str
  updated_at: str
  processed_units: int = 0
  failed_units: int = 0
  estimated_cost: float = 0.0
  estimated_tokens: int = 0
  model: str | None = None
  started_at: str | None = None
  completed_at: str | None = None
  error_detail: dict[str, Any] | None = None
  config: dict[str, Any] = field(default_factory=dict)

  @property
  def progress_percentage(self) -> float:
    """Return processed units as a percentage of the total."""
    if self.total_units <= 0:
      return 0.0
    return min(round(self.processed_units / self.total_units * 100, 2), 100.0)

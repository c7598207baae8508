"""Token and cost estimation for generation requests.

Everything here is pure: no I/O, no state. Intake and the preview endpoints call
these functions synchronously; results are never persisted on their own.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any

ACADEMIC_KEYWORDS: tuple[str, ...] = (
  "teoria",
  "principio",
  "definizione",
  "concetto",
  "approccio",
  "metodologia",
  "analisi",
  "studio",
  "ricerca",
  "bibliografia",
  "diritto",
  "legge",
  "articolo",
  "norma",
  "giurisprudenza",
  "theory",
  "principle",
  "definition",
  "concept",
  "approach",
  "methodology",
  "analysis",
  "research",
  "bibliography",
  "jurisprudence",
)

ACADEMIC_KEYWORD_THRESHOLD = 3
ACADEMIC_MULTIPLIER = 0.85
NUMERIC_RATIO_THRESHOLD = 0.1
NUMERIC_MULTIPLIER = 1.15
LONG_WORD_LENGTH = 12
LONG_WORD_RATIO_THRESHOLD = 0.05
LONG_WORD_MULTIPLIER = 0.9

OUTPUT_RATIO = 0.4
PROMPT_BASE_CHARS = 2800
PROMPT_DYNAMIC_CHARS = 100

CONTEXT_WARNING_RATIO = 0.8
MIN_USEFUL_INPUT_UNITS = 100
MAX_QUALITY_INPUT_UNITS = 6000

_NUMBER_RE = re.compile(r"\d+")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ModelProfile:
  """Constants describing how a model tokenizes and bills."""

  name: str
  avg_chars_per_unit: float
  context_window: int
  cost_per_1k_units: float | None = None


DEFAULT_PROFILE = ModelProfile(name="meta-llama/llama-4-maverick-17b-128e-instruct", avg_chars_per_unit=3.8, context_window=32768, cost_per_1k_units=0.00059)

_PROFILES: dict[str, ModelProfile] = {DEFAULT_PROFILE.name: DEFAULT_PROFILE}


def resolve_profile(model: str | None) -> ModelProfile:
  """Return the profile for a model, falling back to the default constants."""
  if model and model in _PROFILES:
    return _PROFILES[model]
  if model:
    # Unknown models share the default tokenizer assumptions under their own name.
    return ModelProfile(name=model, avg_chars_per_unit=DEFAULT_PROFILE.avg_chars_per_unit, context_window=DEFAULT_PROFILE.context_window, cost_per_1k_units=DEFAULT_PROFILE.cost_per_1k_units)
  return DEFAULT_PROFILE


@dataclass(frozen=True)
class TokenEstimate:
  input_units: int
  prompt_overhead_units: int
  total_input_units: int
  max_output_units: int
  estimated_cost: float | None
  model: str

  def as_dict(self) -> dict[str, Any]:
    return asdict(self)


@dataclass(frozen=True)
class LimitReport:
  """Advisory result of the guardrail check. Callers decide whether to block."""

  is_valid: bool
  context_usage: float
  warnings: list[str] = field(default_factory=list)
  suggestions: list[str] = field(default_factory=list)

  def as_dict(self) -> dict[str, Any]:
    return asdict(self)


def _is_academic(text: str) -> bool:
  lowered = text.lower()
  hits = sum(1 for keyword in ACADEMIC_KEYWORDS if keyword in lowered)
  return hits >= ACADEMIC_KEYWORD_THRESHOLD


def _has_many_numbers(text: str) -> bool:
  tokens = text.split(" ")
  return len(_NUMBER_RE.findall(text)) / len(tokens) > NUMERIC_RATIO_THRESHOLD


def _has_long_words(text: str) -> bool:
  words = _WHITESPACE_RE.split(text)
  long_words = sum(1 for word in words if len(word) > LONG_WORD_LENGTH)
  return long_words / len(words) > LONG_WORD_RATIO_THRESHOLD


def estimate_input_units(text: str, profile: ModelProfile = DEFAULT_PROFILE) -> int:
  """Estimate generation units for raw text with the density corrections applied."""
  base = math.ceil(len(text) / profile.avg_chars_per_unit)

  adjustment = 1.0
  if _is_academic(text):
    adjustment *= ACADEMIC_MULTIPLIER
  if _has_many_numbers(text):
    adjustment *= NUMERIC_MULTIPLIER
  if _has_long_words(text):
    adjustment *= LONG_WORD_MULTIPLIER

  return math.ceil(base * adjustment)


def estimate_prompt_units(faculty: str, topic: str, profile: ModelProfile = DEFAULT_PROFILE) -> int:
  """Estimate the fixed instructional scaffolding sent with every request."""
  prompt_chars = PROMPT_BASE_CHARS + len(faculty or "") + len(topic or "") + PROMPT_DYNAMIC_CHARS
  return math.ceil(prompt_chars / profile.avg_chars_per_unit)


def estimate(text: str, faculty: str, topic: str, profile: ModelProfile = DEFAULT_PROFILE) -> TokenEstimate:
  """Estimate units and cost for one generation request."""
  input_units = estimate_input_units(text, profile)
  prompt_units = estimate_prompt_units(faculty, topic, profile)
  total_input_units = input_units + prompt_units
  max_output_units = math.ceil(input_units * OUTPUT_RATIO)

  estimated_cost = None
  if profile.cost_per_1k_units is not None:
    estimated_cost = (total_input_units + max_output_units) / 1000 * profile.cost_per_1k_units

  return TokenEstimate(input_units=input_units, prompt_overhead_units=prompt_units, total_input_units=total_input_units, max_output_units=max_output_units, estimated_cost=estimated_cost, model=profile.name)


def check_limits(estimate_result: TokenEstimate, profile: ModelProfile = DEFAULT_PROFILE) -> LimitReport:
  """Return advisories for an estimate. Never raises."""
  warnings: list[str] = []
  suggestions: list[str] = []

  context_usage = estimate_result.total_input_units / profile.context_window if profile.context_window > 0 else 0.0
  if context_usage > CONTEXT_WARNING_RATIO:
    warnings.append(f"Context usage at {context_usage * 100:.1f}% of the model window.")
    suggestions.append("Shorten the text or split it into smaller chunks.")

  if estimate_result.input_units < MIN_USEFUL_INPUT_UNITS:
    warnings.append("Text is very short for a useful analysis.")
    suggestions.append("Add more content so the output is meaningful.")

  if estimate_result.input_units > MAX_QUALITY_INPUT_UNITS:
    warnings.append("Text is very long; output quality may degrade.")
    suggestions.append("Select only the most relevant sections or split the chunk.")

  return LimitReport(is_valid=estimate_result.total_input_units <= profile.context_window, context_usage=round(context_usage, 4), warnings=warnings, suggestions=suggestions)


def detailed_stats(text: str, faculty: str, topic: str, profile: ModelProfile = DEFAULT_PROFILE) -> dict[str, Any]:
  """Bundle estimate, limits and readability figures for preview screens."""
  result = estimate(text, faculty, topic, profile)
  limits = check_limits(result, profile)
  words = len(text.split())
  input_units = max(result.input_units, 1)

  return {
    "chars": len(text),
    "words": words,
    **result.as_dict(),
    "limits": limits.as_dict(),
    "readability": {"avg_words_per_unit": round(words / input_units, 2), "compression_ratio": round(result.max_output_units / input_units, 2)},
  }


def apply_discounts(raw_cost: float, *, batch_discount: float, provider_discount: float) -> float:
  """Apply the batch and provider discounts multiplicatively."""
  return raw_cost * (1 - batch_discount) * (1 - provider_discount)

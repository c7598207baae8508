"""Base interfaces for text-generation providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class GenerationResult:
  """Minimal generation response structure."""

  content: str
  usage: dict[str, int] | None = None

  @property
  def input_tokens(self) -> int | None:
    return None if self.usage is None else self.usage.get("prompt_tokens")

  @property
  def output_tokens(self) -> int | None:
    return None if self.usage is None else self.usage.get("completion_tokens")


class TextGenerator(ABC):
  """Abstract base class for stateless completion clients."""

  name: str

  @abstractmethod
  async def generate(self, prompt: str, *, system: str | None = None) -> GenerationResult:
    """Generate a completion for the given prompt.

    Raises TransientGenerationError for failures worth retrying and GenerationError otherwise.
    """

  async def aclose(self) -> None:
    """Release network resources held by the client."""
    return None

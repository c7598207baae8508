"""OpenAI-compatible chat completion client (Groq, OpenRouter, OpenAI)."""

from __future__ import annotations

import logging

import openai
from openai import AsyncOpenAI

from chunkline.ai.errors import GenerationError, TransientGenerationError
from chunkline.ai.providers.base import GenerationResult, TextGenerator
from chunkline.config import Settings

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)


class OpenAICompatibleGenerator(TextGenerator):
  """Chat completion client that maps SDK failures onto generation errors."""

  def __init__(self, model: str, *, api_key: str | None, base_url: str, temperature: float, max_tokens: int, timeout: float) -> None:
    self.name: str = model
    self._api_key = api_key
    self._base_url = base_url
    self._temperature = temperature
    self._max_tokens = max_tokens
    self._timeout = timeout
    self._client: AsyncOpenAI | None = None

  @classmethod
  def from_settings(cls, settings: Settings) -> OpenAICompatibleGenerator:
    return cls(
      settings.generation_model,
      api_key=settings.generation_api_key,
      base_url=settings.generation_base_url,
      temperature=settings.generation_temperature,
      max_tokens=settings.generation_max_tokens,
      timeout=settings.generation_timeout_seconds,
    )

  def _get_client(self) -> AsyncOpenAI:
    if not self._api_key:
      raise GenerationError("Generation API key is not configured.")
    if self._client is None:
      # SDK-level retries are disabled; the batch worker owns the retry policy.
      self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url, timeout=self._timeout, max_retries=0)
    return self._client

  async def generate(self, prompt: str, *, system: str | None = None) -> GenerationResult:
    client = self._get_client()
    messages = []
    if system:
      messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    try:
      response = await client.chat.completions.create(model=self.name, messages=messages, temperature=self._temperature, max_tokens=self._max_tokens)
    except _TRANSIENT_ERRORS as exc:
      raise TransientGenerationError(f"{type(exc).__name__}: {exc}") from exc
    except openai.OpenAIError as exc:
      raise GenerationError(f"{type(exc).__name__}: {exc}") from exc

    content = (response.choices[0].message.content or "").strip() if response.choices else ""
    if not content:
      raise GenerationError("Generation returned an empty completion.")

    usage = None
    if response.usage:
      usage = {"prompt_tokens": response.usage.prompt_tokens, "completion_tokens": response.usage.completion_tokens, "total_tokens": response.usage.total_tokens}

    logger.debug("Completion received model=%s chars=%s", self.name, len(content))
    return GenerationResult(content=content, usage=usage)

  async def aclose(self) -> None:
    if self._client is not None:
      await self._client.close()
      self._client = None

from __future__ import annotations

from types import SimpleNamespace

import httpx
import openai
import pytest

from chunkline.ai.errors import GenerationError, TransientGenerationError
from chunkline.ai.providers.openai_compat import OpenAICompatibleGenerator

_REQUEST = httpx.Request("POST", "https://llm.test/v1/chat/completions")


class FakeCompletions:
  def __init__(self, outcome: object) -> None:
    self.outcome = outcome
    self.kwargs: dict[str, object] = {}

  async def create(self, **kwargs: object) -> object:
    self.kwargs = kwargs
    if isinstance(self.outcome, Exception):
      raise self.outcome
    return self.outcome


def _generator(outcome: object) -> tuple[OpenAICompatibleGenerator, FakeCompletions]:
  generator = OpenAICompatibleGenerator("test-model", api_key="key", base_url="https://llm.test/v1", temperature=0.1, max_tokens=256, timeout=5)
  completions = FakeCompletions(outcome)

  async def _close() -> None:
    return None

  generator._client = SimpleNamespace(chat=SimpleNamespace(completions=completions), close=_close)  # type: ignore[assignment]
  return generator, completions


def _completion(content: str | None) -> SimpleNamespace:
  usage = SimpleNamespace(prompt_tokens=12, completion_tokens=4, total_tokens=16)
  return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))], usage=usage)


@pytest.mark.anyio
async def test_generate_sends_system_and_user_messages() -> None:
  generator, completions = _generator(_completion("  A summary.  "))

  result = await generator.generate("Summarise this.", system="You are an examiner.")

  assert result.content == "A summary."
  assert result.input_tokens == 12
  assert result.output_tokens == 4
  assert completions.kwargs["model"] == "test-model"
  assert completions.kwargs["messages"] == [{"role": "system", "content": "You are an examiner."}, {"role": "user", "content": "Summarise this."}]


@pytest.mark.anyio
@pytest.mark.parametrize(
  "error",
  [
    openai.APITimeoutError(request=_REQUEST),
    openai.APIConnectionError(request=_REQUEST),
    openai.RateLimitError("slow down", response=httpx.Response(429, request=_REQUEST), body=None),
    openai.InternalServerError("upstream", response=httpx.Response(503, request=_REQUEST), body=None),
  ],
)
async def test_transient_sdk_errors_are_retryable(error: Exception) -> None:
  generator, _ = _generator(error)
  with pytest.raises(TransientGenerationError):
    await generator.generate("prompt")


@pytest.mark.anyio
async def test_client_errors_are_permanent() -> None:
  generator, _ = _generator(openai.BadRequestError("too long", response=httpx.Response(400, request=_REQUEST), body=None))
  with pytest.raises(GenerationError) as excinfo:
    await generator.generate("prompt")
  assert not isinstance(excinfo.value, TransientGenerationError)


@pytest.mark.anyio
async def test_empty_completion_is_an_error() -> None:
  generator, _ = _generator(_completion(None))
  with pytest.raises(GenerationError):
    await generator.generate("prompt")


@pytest.mark.anyio
async def test_missing_api_key_fails_without_calling_out() -> None:
  generator = OpenAICompatibleGenerator("test-model", api_key=None, base_url="https://llm.test/v1", temperature=0.1, max_tokens=256, timeout=5)
  with pytest.raises(GenerationError):
    await generator.generate("prompt")
  await generator.aclose()

from typing import Any

from fastapi import APIRouter, Depends

from chunkline.ai.utils.estimation import detailed_stats, resolve_profile
from chunkline.api.models import EstimateRequest
from chunkline.config import Settings, get_settings
from chunkline.core.security import get_current_principal

router = APIRouter()


@router.post("", dependencies=[Depends(get_current_principal)])
async def estimate_text(  # noqa: B008
  request: EstimateRequest,
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> dict[str, Any]:
  """Estimate tokens, cost and context limits for raw text."""
  profile = resolve_profile(request.model or settings.generation_model)
  return detailed_stats(request.text, request.faculty, request.topic, profile)

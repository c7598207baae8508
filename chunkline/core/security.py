from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chunkline.config import Settings, get_settings

security_scheme = HTTPBearer()


@dataclass(frozen=True)
class Principal:
  """Verified caller identity supplied by the identity provider."""

  principal_id: str


def resolve_principal(token: str, settings: Settings) -> Principal | None:
  """Match a bearer token against the configured token map in constant time."""
  for candidate, principal_id in settings.auth_tokens.items():
    if hmac.compare_digest(candidate.encode("utf-8"), token.encode("utf-8")):
      return Principal(principal_id=principal_id)
  return None


async def get_current_principal(token: Annotated[HTTPAuthorizationCredentials, Depends(security_scheme)], settings: Annotated[Settings, Depends(get_settings)]) -> Principal:
  """Resolve the verified principal for the current request."""
  principal = resolve_principal(token.credentials, settings)
  if principal is None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials", headers={"WWW-Authenticate": "Bearer"})
  return principal

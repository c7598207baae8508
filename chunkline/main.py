from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from chunkline.api.routes import batches, chunks, estimates, projects
from chunkline.config import get_settings
from chunkline.core.errors import ChunklineError
from chunkline.core.exceptions import domain_exception_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from chunkline.core.lifespan import lifespan
from chunkline.core.middleware import RequestLoggingMiddleware

settings = get_settings()

app = FastAPI(title="Chunkline", version="0.1.0", lifespan=lifespan, docs_url="/docs" if settings.debug else None, redoc_url=None)

app.add_middleware(
  CORSMiddleware,
  allow_origins=list(settings.allowed_origins),
  allow_credentials=True,
  allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"],
  allow_headers=["content-type", "authorization", "x-request-id"],
  expose_headers=["content-length", "x-request-id"],
)


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(ChunklineError, domain_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(projects.router, prefix="/v1/projects", tags=["projects"])
app.include_router(chunks.router, prefix="/v1", tags=["chunks"])
app.include_router(batches.router, prefix="/v1/batches", tags=["batches"])
app.include_router(estimates.router, prefix="/v1/estimates", tags=["estimates"])

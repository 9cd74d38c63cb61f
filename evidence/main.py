"""
Evidence Verification API -- Application entry point.

Run with:
    uvicorn evidence.main:app --reload

Then open http://localhost:8000/docs for the interactive Swagger UI.

This file:
  1. Configures logging
  2. Creates the FastAPI application
  3. Mounts the route modules (uploads, verify, storage)
  4. Defines the health check endpoint
  5. Releases the shared gateway and client on shutdown
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from evidence import store
from evidence.config import Settings, get_settings
from evidence.dependencies import get_gateway, get_verification_client
from evidence.models.schemas import HealthResponse
from evidence.routes import storage, uploads, verify
from evidence.storage.gateway import TempStorageGateway
from evidence.vision.client import VerificationClient

VERSION = "0.1.0"

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """On shutdown, cancel pending temp cleanups and close HTTP clients."""
    yield
    if get_gateway.cache_info().currsize:
        await get_gateway().close()
    if get_verification_client.cache_info().currsize:
        await get_verification_client().aclose()
    logger.info("Shut down cleanly")


# ---------------------------------------------------------------------------
# Create the FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Evidence Verification API",
    version=VERSION,
    lifespan=lifespan,
    description=(
        "Attach a photo as evidence for a claim (\"court is flooded\"). "
        "The photo is staged, checked against the claim by a vision model, "
        "and promoted to permanent storage only if it matches.\n\n"
        "| Endpoint | Purpose |\n"
        "|----------|--------|\n"
        "| `POST /v1/uploads` | Upload a photo + claim, runs the pipeline in the background |\n"
        "| `GET /v1/uploads/{id}` | Status, progress and presentation view |\n"
        "| `POST /v1/uploads/{id}/cancel` | Cancel an in-flight upload |\n"
        "| `POST /v1/uploads/{id}/retry` | Retry a failed upload with the same photo |\n"
        "| `POST /v1/verify` | Verify an already-hosted photo |\n"
    ),
)

app.include_router(uploads.router)
app.include_router(verify.router)
app.include_router(storage.router)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get(
    "/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Service status, verification availability, rate-limit usage and storage counters.",
    tags=["System"],
)
async def health(
    settings: Settings = Depends(get_settings),
    gateway: TempStorageGateway = Depends(get_gateway),
    client: VerificationClient = Depends(get_verification_client),
) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=VERSION,
        verification_available=client.is_available(),
        rate_limit=client.rate_limit_status(),
        storage_backend=settings.storage_backend,
        storage_stats=gateway.stats.as_dict(),
        uploads_in_flight=store.in_flight_count(),
        uploads_tracked=len(store.uploads),
    )

"""
Evidence Verification -- Pydantic Data Models

Every entity the pipeline passes around is defined here: the verification
request and verdict, the staged image, the upload status the orchestrator
publishes, the presentation view derived from it, and the HTTP bodies.

Field() descriptions show up in the interactive docs at /docs.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class UploadPhase(str, Enum):
    """Phases of a single evidence upload.

    idle -> uploading -> analyzing -> verified | failed.
    verified and failed are terminal until the caller restarts or retries."""

    idle = "idle"
    uploading = "uploading"
    analyzing = "analyzing"
    verified = "verified"
    failed = "failed"


IN_FLIGHT_PHASES = frozenset({UploadPhase.uploading, UploadPhase.analyzing})
TERMINAL_PHASES = frozenset({UploadPhase.verified, UploadPhase.failed})


# ---------------------------------------------------------------------------
# Verification client
# ---------------------------------------------------------------------------

class VerificationRequest(BaseModel):
    """An image + claim pair to adjudicate.

    image_url must point at an object the inference service can fetch
    (normally a freshly staged temp object)."""

    image_url: str = Field(
        min_length=1,
        description="Fetchable URL of the staged photo.",
        examples=["https://firebasestorage.googleapis.com/v0/b/demo/o/temp%2Freport%2Fr.jpg?alt=media"],
    )
    claim_text: str = Field(
        min_length=1,
        description="The textual claim the photo is offered as evidence for.",
        examples=["court is flooded"],
    )
    context: str | None = Field(
        default=None,
        description="Optional extra context (e.g. which court, indoor/outdoor).",
        examples=["Outdoor court at Bishan Park"],
    )


class VerificationVerdict(BaseModel):
    """Structured result of one inference call."""

    is_match: bool = Field(description="Whether the photo supports the claim.")
    confidence: int = Field(ge=0, le=100, description="Model confidence, clamped to 0-100.")
    reasoning: str = Field(max_length=500, description="What the model saw (truncated to 500 chars).")
    feedback: str = Field(max_length=200, description="Short user-facing explanation (<= 200 chars).")
    timestamp: datetime = Field(description="When the verdict was parsed (UTC).")
    prompt_version: str = Field(description="Version of the prompt template that produced it.")


class ErrorInfo(BaseModel):
    """Serializable form of a VerificationError."""

    code: str = Field(examples=["network"])
    message: str = Field(examples=["Network connection failed"])
    retryable: bool = Field(examples=[True])
    retry_after: int | None = Field(
        default=None,
        description="Cooldown hint in seconds (rate limiting only).",
        examples=[60],
    )


class RateLimitStatus(BaseModel):
    minute: int = Field(description="Successful calls in the last 60 seconds.")
    hour: int = Field(description="Successful calls in the last hour.")
    available: bool = Field(description="True if both windows have headroom.")


# ---------------------------------------------------------------------------
# Orchestrator state
# ---------------------------------------------------------------------------

class StagedImage(BaseModel):
    """One photo moving through the pipeline.

    temp_url is authoritative while the photo is being adjudicated;
    permanent_url only after a positive verdict or an explicit
    unverified upload."""

    local_uri: str
    id: str
    temp_url: str | None = None
    permanent_url: str | None = None
    verified: bool = False
    verdict: VerificationVerdict | None = None


class UploadStatus(BaseModel):
    """What the orchestrator publishes on every transition."""

    phase: UploadPhase
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    verdict: VerificationVerdict | None = None
    error: ErrorInfo | None = None
    unverified: bool = Field(
        default=False,
        description="True when the photo was stored without inference (availability fallback).",
    )


class StatusView(BaseModel):
    """Presentation-ready projection of an UploadStatus."""

    icon: str
    color: str
    title: str
    message: str
    progress: int
    show_progress_bar: bool
    show_retry: bool
    show_cancel: bool
    hint: str | None = None
    confidence_color: str | None = None


# ---------------------------------------------------------------------------
# HTTP bodies
# ---------------------------------------------------------------------------

class UploadResponse(BaseModel):
    """State of one upload as returned by /v1/uploads endpoints."""

    upload_id: str = Field(examples=["upl_9f3a1c2b7d"])
    claim_text: str
    category: str
    context_id: str
    image: StagedImage
    status: UploadStatus
    view: StatusView


class HealthResponse(BaseModel):
    status: str = Field(examples=["healthy"])
    version: str
    verification_available: bool
    rate_limit: RateLimitStatus
    storage_backend: str
    storage_stats: dict[str, int]
    uploads_in_flight: int
    uploads_tracked: int

"""
Upload Orchestrator

Drives one photo through the evidence pipeline:

    idle -> uploading -> analyzing -> verified | failed

  uploading   stage the photo in temp storage (fine-grained progress)
  analyzing   ask the vision model whether the photo supports the claim
  verified    positive verdict; photo promoted to permanent storage
  failed      negative verdict (feedback, no error) or a VerificationError

If the verification client is unavailable (no credential, no rate-limit
headroom) and the caller allows it, the photo goes straight to permanent
storage and the upload ends verified with unverified=True. That is an
explicit, visible outcome; it never happens silently.

cancel() flips the state to idle immediately. Network calls already in
flight run to completion in the background; their results are dropped
because every step checks the run's generation number before acting.
retry() replays the whole pipeline from the same local photo.

One orchestrator per photo. The gateway and client are process-wide
singletons shared by all orchestrators.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable

from evidence.config import Settings
from evidence.errors import (
    ErrorCode,
    InvalidTransitionError,
    TempObjectUnavailableError,
    VerificationError,
)
from evidence.models.schemas import (
    IN_FLIGHT_PHASES,
    StagedImage,
    UploadPhase,
    UploadStatus,
    VerificationRequest,
    VerificationVerdict,
)
from evidence.storage.gateway import TempStorageGateway
from evidence.storage.images import load_local_image, prepare_image
from evidence.vision.client import VerificationClient

logger = logging.getLogger(__name__)

StatusListener = Callable[[UploadStatus], None]

ANALYZING_PROGRESS = 100


class UploadOrchestrator:
    def __init__(
        self,
        gateway: TempStorageGateway,
        client: VerificationClient,
        *,
        local_uri: str,
        claim_text: str,
        category: str,
        context_id: str,
        actor_id: str,
        context: str | None = None,
        allow_unverified: bool = True,
        compress: bool = True,
        image_quality: float = 0.8,
        max_image_bytes: int = 1024 * 1024,
        upload_id: str | None = None,
    ):
        self.gateway = gateway
        self.client = client
        self.claim_text = claim_text
        self.context = context
        self.category = category
        self.context_id = context_id
        self.actor_id = actor_id
        self.allow_unverified = allow_unverified
        self.compress = compress
        self.image_quality = image_quality
        self.max_image_bytes = max_image_bytes

        self.image = StagedImage(local_uri=local_uri, id=upload_id or uuid.uuid4().hex[:12])
        self._status = UploadStatus(phase=UploadPhase.idle, message="Ready")
        self._listeners: list[StatusListener] = []
        self._generation = 0
        self._task: asyncio.Task | None = None

    # ── Observation ────────────────────────────────────────────────────

    @property
    def status(self) -> UploadStatus:
        return self._status

    @property
    def phase(self) -> UploadPhase:
        return self._status.phase

    @property
    def in_flight(self) -> bool:
        return self._status.phase in IN_FLIGHT_PHASES

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Call `listener` with the current status now and on every change.

        Returns a function that unsubscribes.
        """
        self._listeners.append(listener)
        listener(self._status)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, status: UploadStatus) -> None:
        self._status = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed for upload %s", self.image.id)

    def _publish(self, gen: int, status: UploadStatus) -> bool:
        """Emit `status` if run `gen` is still current. Returns False if stale."""
        if gen != self._generation:
            return False
        self._emit(status)
        return True

    def _stale(self, gen: int, step: str) -> bool:
        if gen != self._generation:
            logger.info("Upload %s cancelled; discarding result of %s", self.image.id, step)
            return True
        return False

    # ── Caller operations ──────────────────────────────────────────────

    def start(self) -> asyncio.Task:
        """Run the pipeline in the background. Allowed from any non-running phase."""
        if self.in_flight:
            raise InvalidTransitionError(f"Upload {self.image.id} is already {self.phase.value}")
        self._generation += 1
        self.image = StagedImage(local_uri=self.image.local_uri, id=self.image.id)
        self._emit(UploadStatus(phase=UploadPhase.uploading, progress=0, message="Preparing photo..."))
        self._task = asyncio.create_task(self._run(self._generation))
        return self._task

    def retry(self) -> asyncio.Task:
        """Re-run the whole pipeline on the same photo after a failure."""
        if self.phase != UploadPhase.failed:
            raise InvalidTransitionError(f"Cannot retry upload {self.image.id} from {self.phase.value}")
        logger.info("Retrying upload %s", self.image.id)
        return self.start()

    def cancel(self) -> bool:
        """Return to idle if uploading/analyzing. Returns False otherwise."""
        if not self.in_flight:
            return False
        self._generation += 1
        logger.info("Upload %s cancelled during %s", self.image.id, self.phase.value)
        self._emit(UploadStatus(phase=UploadPhase.idle, message="Upload cancelled"))
        return True

    async def wait(self) -> UploadStatus:
        """Wait for the most recent run to finish and return the status."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self._status

    # ── Pipeline ───────────────────────────────────────────────────────

    async def _run(self, gen: int) -> None:
        try:
            if not self.client.is_available():
                await self._run_unverified(gen)
            else:
                await self._run_verified(gen)
        except VerificationError as e:
            self._fail(gen, e)
        except Exception:
            logger.exception("Unexpected error processing upload %s", self.image.id)
            self._fail(
                gen,
                VerificationError(
                    ErrorCode.service_error, "Failed to process image", retryable=True
                ),
            )

    async def _load(self) -> bytes:
        if self.compress:
            return await prepare_image(self.image.local_uri, self.image_quality, self.max_image_bytes)
        return await load_local_image(self.image.local_uri)

    def _progress_callback(self, gen: int) -> Callable[[float], None]:
        def on_progress(percent: float) -> None:
            if gen != self._generation or self.phase != UploadPhase.uploading:
                return
            value = max(self._status.progress, min(100, int(percent)))
            if value != self._status.progress:
                self._emit(self._status.model_copy(update={"progress": value}))

        return on_progress

    async def _run_unverified(self, gen: int) -> None:
        if not self.allow_unverified:
            if not self.client.api_key:
                raise VerificationError(
                    ErrorCode.service_error, "AI verification is not configured", retryable=False
                )
            raise VerificationError.rate_limited("AI verification is busy. Please try again later.")

        logger.warning("Verification unavailable; uploading %s without verification", self.image.id)
        self._publish(gen, UploadStatus(
            phase=UploadPhase.uploading,
            progress=0,
            message="Uploading image without AI verification...",
            unverified=True,
        ))
        data = await self._load()
        if self._stale(gen, "image load"):
            return

        url = await self.gateway.upload_permanent(
            data, self.category, self.context_id, self.actor_id,
            on_progress=self._progress_callback(gen),
        )
        if self._stale(gen, "direct upload"):
            return

        self.image.permanent_url = url
        self.image.verified = False
        self._publish(gen, UploadStatus(
            phase=UploadPhase.verified,
            progress=100,
            message="Image uploaded successfully (not AI verified)",
            unverified=True,
        ))

    async def _run_verified(self, gen: int) -> None:
        self._publish(gen, UploadStatus(
            phase=UploadPhase.uploading,
            progress=0,
            message="Uploading image for AI verification...",
        ))
        data = await self._load()
        if self._stale(gen, "image load"):
            return

        temp_url = await self.gateway.stage_to_temp(
            data, self.category, self.context_id, self.actor_id,
            on_progress=self._progress_callback(gen),
        )
        if self._stale(gen, "staging"):
            # The gateway's delayed delete owns the orphaned temp object.
            return
        self.image.temp_url = temp_url

        self._publish(gen, UploadStatus(
            phase=UploadPhase.analyzing,
            progress=ANALYZING_PROGRESS,
            message="AI is analyzing your photo to verify it matches the description...",
        ))
        verdict = await self.client.verify(VerificationRequest(
            image_url=temp_url,
            claim_text=self.claim_text,
            context=self.context,
        ))
        if self._stale(gen, "verification"):
            return
        self.image.verdict = verdict

        if verdict.is_match:
            await self._accept(gen, temp_url, data, verdict)
        else:
            await self._reject(gen, temp_url, verdict)

    async def _accept(self, gen: int, temp_url: str, data: bytes, verdict: VerificationVerdict) -> None:
        try:
            permanent_url = await self.gateway.promote_to_permanent(
                temp_url, self.category, self.context_id, self.actor_id
            )
        except (TempObjectUnavailableError, VerificationError) as e:
            logger.warning("Move failed (%s), uploading directly to permanent storage", e)
            permanent_url = await self.gateway.upload_permanent(
                data, self.category, self.context_id, self.actor_id
            )
            await self.gateway.delete_temp(temp_url)
        if self._stale(gen, "promotion"):
            return

        self.image.permanent_url = permanent_url
        self.image.temp_url = None
        self.image.verified = True
        logger.info("Upload %s verified (confidence %d)", self.image.id, verdict.confidence)
        self._publish(gen, UploadStatus(
            phase=UploadPhase.verified,
            progress=100,
            message=f"Photo verified with {verdict.confidence}% confidence!",
            verdict=verdict,
        ))

    async def _reject(self, gen: int, temp_url: str, verdict: VerificationVerdict) -> None:
        await self.gateway.delete_temp(temp_url)
        self.image.temp_url = None
        logger.info("Upload %s rejected: %s", self.image.id, verdict.feedback)
        self._publish(gen, UploadStatus(
            phase=UploadPhase.failed,
            progress=100,
            message=verdict.feedback,
            verdict=verdict,
        ))

    def _fail(self, gen: int, error: VerificationError) -> None:
        if self._stale(gen, "failure"):
            return
        logger.warning("Upload %s failed: %s", self.image.id, error.message)
        self._publish(gen, UploadStatus(
            phase=UploadPhase.failed,
            progress=0,
            message=error.message,
            error=error.to_info(),
        ))


def start_verified_upload(
    gateway: TempStorageGateway,
    client: VerificationClient,
    local_uri: str,
    claim_text: str,
    context: str | None,
    category: str,
    context_id: str,
    actor_id: str,
    *,
    settings: Settings | None = None,
    allow_unverified: bool | None = None,
    upload_id: str | None = None,
) -> UploadOrchestrator:
    """Create an orchestrator for one photo and start it.

    The returned orchestrator exposes subscribe(), cancel(), retry() and
    wait(). Must be called from a running event loop.
    """
    settings = settings or Settings()
    orchestrator = UploadOrchestrator(
        gateway,
        client,
        local_uri=local_uri,
        claim_text=claim_text,
        context=context,
        category=category,
        context_id=context_id,
        actor_id=actor_id,
        allow_unverified=(
            settings.allow_unverified_fallback if allow_unverified is None else allow_unverified
        ),
        image_quality=settings.image_compression_quality,
        max_image_bytes=settings.max_image_bytes,
        upload_id=upload_id,
    )
    orchestrator.start()
    return orchestrator

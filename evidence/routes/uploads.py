"""
/v1/uploads -- Evidence photo uploads.

A client posts a photo together with the claim it is evidence for. The
photo is spooled to local disk (so retry can replay it without the client
re-sending it; it is removed once the upload is verified) and handed to an UploadOrchestrator that runs in the
background. Clients poll GET /v1/uploads/{id} for the status and the
presentation view (icon, colour, which buttons to show).
"""

import asyncio
import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile

from evidence import store
from evidence.config import Settings, get_settings
from evidence.dependencies import get_gateway, get_verification_client
from evidence.errors import InvalidTransitionError, VerificationError
from evidence.models.schemas import UploadPhase, UploadResponse, UploadStatus
from evidence.pipeline.orchestrator import start_verified_upload
from evidence.pipeline.status import project_status
from evidence.storage.gateway import TempStorageGateway
from evidence.vision.client import VerificationClient

logger = logging.getLogger(__name__)

router = APIRouter()


def _write_spool(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _check_capacity(settings: Settings) -> None:
    if store.in_flight_count() >= settings.max_images:
        raise HTTPException(
            status_code=429,
            detail=f"Maximum {settings.max_images} photos can be processed at once.",
        )


def _release_spool_when_verified(upload_id: str, spool_path: Path):
    """Listener that drops the spooled photo once the upload is verified.

    retry() only runs from failed, so a verified upload never reads it again.
    """

    def listener(status: UploadStatus) -> None:
        if status.phase != UploadPhase.verified:
            return
        try:
            spool_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove spool file for %s: %s", upload_id, e)

    return listener


def _get_record(upload_id: str) -> store.UploadRecord:
    record = store.uploads.get(upload_id)
    if not record:
        raise HTTPException(
            status_code=404,
            detail=f"Upload '{upload_id}' not found. Uploads are tracked in memory and lost on server restart.",
        )
    return record


def _response(upload_id: str, record: store.UploadRecord) -> UploadResponse:
    orchestrator = record.orchestrator
    status = orchestrator.status
    return UploadResponse(
        upload_id=upload_id,
        claim_text=orchestrator.claim_text,
        category=orchestrator.category,
        context_id=orchestrator.context_id,
        image=orchestrator.image,
        status=status,
        view=project_status(status),
    )


@router.post(
    "/v1/uploads",
    response_model=UploadResponse,
    status_code=202,
    summary="Upload a photo as evidence for a claim",
    description=(
        "Stages the photo, asks the vision model whether it supports the claim, "
        "and promotes it to permanent storage if it does. Runs in the background; "
        "poll GET /v1/uploads/{upload_id} for progress."
    ),
    tags=["Uploads"],
)
async def create_upload(
    file: UploadFile = File(..., description="The photo (JPEG, PNG, WebP...)."),
    claim_text: str = Form(..., min_length=1, description="What the photo is evidence of."),
    context_id: str = Form(..., min_length=1, description="What the claim is about, e.g. a court id."),
    actor_id: str = Form(..., min_length=1, description="Who is uploading."),
    category: str = Form("report", min_length=1),
    context: str | None = Form(None),
    allow_unverified: bool | None = Form(
        None, description="Store the photo unverified if AI verification is unavailable."
    ),
    settings: Settings = Depends(get_settings),
    gateway: TempStorageGateway = Depends(get_gateway),
    client: VerificationClient = Depends(get_verification_client),
) -> UploadResponse:
    _check_capacity(settings)

    # Reject bad path components before anything is written.
    try:
        gateway.build_filename(category, context_id, actor_id)
    except VerificationError as e:
        raise HTTPException(status_code=400, detail=e.message) from e

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    upload_id = f"upl_{uuid.uuid4().hex[:10]}"
    spool_path = settings.spool_dir / f"{upload_id}.img"
    await asyncio.to_thread(_write_spool, spool_path, data)

    orchestrator = start_verified_upload(
        gateway,
        client,
        str(spool_path),
        claim_text,
        context,
        category,
        context_id,
        actor_id,
        settings=settings,
        allow_unverified=allow_unverified,
        upload_id=upload_id,
    )
    orchestrator.subscribe(_release_spool_when_verified(upload_id, spool_path))
    record = store.UploadRecord(orchestrator=orchestrator, spool_path=spool_path)
    store.uploads[upload_id] = record
    logger.info("Upload %s started for %s/%s", upload_id, category, context_id)
    return _response(upload_id, record)


@router.get(
    "/v1/uploads/{upload_id}",
    response_model=UploadResponse,
    summary="Get upload status",
    tags=["Uploads"],
)
async def get_upload(upload_id: str) -> UploadResponse:
    return _response(upload_id, _get_record(upload_id))


@router.post(
    "/v1/uploads/{upload_id}/cancel",
    response_model=UploadResponse,
    summary="Cancel an in-flight upload",
    description="Only uploads that are uploading or analyzing can be cancelled.",
    tags=["Uploads"],
)
async def cancel_upload(upload_id: str) -> UploadResponse:
    record = _get_record(upload_id)
    if not record.orchestrator.cancel():
        raise HTTPException(
            status_code=409,
            detail=f"Upload '{upload_id}' is {record.orchestrator.phase.value} and cannot be cancelled.",
        )
    return _response(upload_id, record)


@router.post(
    "/v1/uploads/{upload_id}/retry",
    response_model=UploadResponse,
    status_code=202,
    summary="Retry a failed upload with the same photo",
    tags=["Uploads"],
)
async def retry_upload(
    upload_id: str,
    settings: Settings = Depends(get_settings),
) -> UploadResponse:
    record = _get_record(upload_id)
    _check_capacity(settings)
    try:
        record.orchestrator.retry()
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _response(upload_id, record)


@router.delete(
    "/v1/uploads/{upload_id}",
    status_code=204,
    response_class=Response,
    summary="Forget an upload",
    description="Cancels it if still running and removes the spooled photo.",
    tags=["Uploads"],
)
async def delete_upload(upload_id: str) -> Response:
    record = _get_record(upload_id)
    record.orchestrator.cancel()
    del store.uploads[upload_id]
    await asyncio.to_thread(record.spool_path.unlink, missing_ok=True)
    return Response(status_code=204)

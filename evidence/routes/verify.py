"""
POST /v1/verify -- Direct photo verification.

For callers that already host the photo somewhere the vision model can
fetch it. No staging, no promotion: just the verdict.

Errors map to HTTP as follows:
  rate_limited                          -> 429 (with Retry-After)
  invalid_input                         -> 400
  network, service_error, parse_failure -> 502
"""

from fastapi import APIRouter, Depends, HTTPException

from evidence.dependencies import get_verification_client
from evidence.errors import ErrorCode, VerificationError
from evidence.models.schemas import VerificationRequest, VerificationVerdict
from evidence.vision.client import VerificationClient

router = APIRouter()


def _http_error(e: VerificationError) -> HTTPException:
    detail = e.to_info().model_dump()
    if e.code == ErrorCode.rate_limited:
        headers = {"Retry-After": str(e.retry_after)} if e.retry_after else None
        return HTTPException(status_code=429, detail=detail, headers=headers)
    if e.code == ErrorCode.invalid_input:
        return HTTPException(status_code=400, detail=detail)
    return HTTPException(status_code=502, detail=detail)


@router.post(
    "/v1/verify",
    response_model=VerificationVerdict,
    summary="Verify a hosted photo against a claim",
    description=(
        "Ask the vision model whether the photo at image_url supports claim_text. "
        "is_match=false is a normal answer, not an error."
    ),
    tags=["Verification"],
)
async def verify(
    request: VerificationRequest,
    client: VerificationClient = Depends(get_verification_client),
) -> VerificationVerdict:
    try:
        return await client.verify(request)
    except VerificationError as e:
        raise _http_error(e) from e

"""
Status projection: UploadStatus -> StatusView.

Pure function, no I/O. Rules:
  - progress bar only while uploading/analyzing
  - cancel only while uploading/analyzing
  - retry only when failed AND the error is retryable
"""

from __future__ import annotations

import math

from evidence.models.schemas import (
    IN_FLIGHT_PHASES,
    ErrorInfo,
    StatusView,
    UploadPhase,
    UploadStatus,
    VerificationVerdict,
)

BLUE = "#007AFF"
ORANGE = "#FF9500"
GREEN = "#4CAF50"
RED = "#FF3B30"
GREY = "#666"

_COLORS = {
    UploadPhase.uploading: BLUE,
    UploadPhase.analyzing: ORANGE,
    UploadPhase.verified: GREEN,
    UploadPhase.failed: RED,
}

_ICONS = {
    UploadPhase.uploading: "cloud-upload-outline",
    UploadPhase.analyzing: "scan-outline",
    UploadPhase.verified: "checkmark-circle",
    UploadPhase.failed: "close-circle",
}

_TITLES = {
    UploadPhase.uploading: "Uploading Image...",
    UploadPhase.analyzing: "AI Analyzing Image...",
    UploadPhase.verified: "Verification Complete!",
    UploadPhase.failed: "Verification Failed",
}


def error_hint(error: ErrorInfo | None) -> str | None:
    """Actionable text for mechanical failures."""
    if error is None:
        return None
    if error.code == "rate_limited":
        if error.retry_after:
            minutes = max(1, math.ceil(error.retry_after / 60))
            return f"Please wait {minutes} minute{'s' if minutes != 1 else ''} before trying again."
        return "Please wait a moment before trying again."
    if error.code == "network":
        return "Check your internet connection and try again."
    if error.code == "invalid_input":
        return "Please choose a photo that clearly shows the reported condition."
    if error.retryable:
        return "Something went wrong on our side. Please try again."
    return None


def confidence_color(verdict: VerificationVerdict | None) -> str | None:
    if verdict is None:
        return None
    if verdict.confidence >= 80:
        return GREEN
    if verdict.confidence >= 60:
        return ORANGE
    return RED


def project_status(status: UploadStatus) -> StatusView:
    phase = status.phase
    in_flight = phase in IN_FLIGHT_PHASES
    title = _TITLES.get(phase, "Processing...")
    if phase == UploadPhase.verified and status.unverified:
        title = "Upload Complete (not verified)"

    return StatusView(
        icon=_ICONS.get(phase, "help-circle-outline"),
        color=_COLORS.get(phase, GREY),
        title=title,
        message=status.message,
        progress=status.progress,
        show_progress_bar=in_flight,
        show_retry=bool(phase == UploadPhase.failed and status.error and status.error.retryable),
        show_cancel=in_flight,
        hint=error_hint(status.error) if phase == UploadPhase.failed else None,
        confidence_color=confidence_color(status.verdict),
    )

"""Tests for projecting an UploadStatus onto a StatusView."""

from datetime import datetime, timezone

import pytest

from evidence.models.schemas import ErrorInfo, UploadPhase, UploadStatus, VerificationVerdict
from evidence.pipeline.status import BLUE, GREEN, ORANGE, RED, error_hint, project_status


def verdict(confidence: int, is_match: bool = True) -> VerificationVerdict:
    return VerificationVerdict(
        is_match=is_match,
        confidence=confidence,
        reasoning="r",
        feedback="f",
        timestamp=datetime.now(timezone.utc),
        prompt_version="1.0",
    )


class TestAffordances:

    @pytest.mark.parametrize("phase, color", [
        (UploadPhase.uploading, BLUE),
        (UploadPhase.analyzing, ORANGE),
    ])
    def test_in_flight(self, phase, color):
        view = project_status(UploadStatus(phase=phase, progress=40, message="working"))
        assert view.show_progress_bar is True
        assert view.show_cancel is True
        assert view.show_retry is False
        assert view.color == color
        assert view.progress == 40

    @pytest.mark.parametrize("phase", [UploadPhase.idle, UploadPhase.verified, UploadPhase.failed])
    def test_not_in_flight(self, phase):
        view = project_status(UploadStatus(phase=phase, progress=100))
        assert view.show_progress_bar is False
        assert view.show_cancel is False

    def test_retry_only_for_retryable_failures(self):
        retryable = ErrorInfo(code="network", message="Network connection failed", retryable=True)
        final = ErrorInfo(code="parse_failure", message="bad reply", retryable=False)

        assert project_status(UploadStatus(phase=UploadPhase.failed, error=retryable)).show_retry is True
        assert project_status(UploadStatus(phase=UploadPhase.failed, error=final)).show_retry is False

    def test_content_mismatch_has_no_retry_button(self):
        status = UploadStatus(phase=UploadPhase.failed, message="The hoop looks intact.", verdict=verdict(92, False))
        view = project_status(status)
        assert view.show_retry is False
        assert view.hint is None
        assert view.message == "The hoop looks intact."
        assert view.color == RED


class TestTitles:

    def test_verified(self):
        view = project_status(UploadStatus(phase=UploadPhase.verified, progress=100, verdict=verdict(85)))
        assert view.title == "Verification Complete!"
        assert view.color == GREEN
        assert view.confidence_color == GREEN

    def test_unverified_is_labelled(self):
        view = project_status(UploadStatus(phase=UploadPhase.verified, progress=100, unverified=True))
        assert view.title == "Upload Complete (not verified)"
        assert view.confidence_color is None

    @pytest.mark.parametrize("confidence, color", [(80, GREEN), (79, ORANGE), (60, ORANGE), (59, RED)])
    def test_confidence_color(self, confidence, color):
        view = project_status(UploadStatus(phase=UploadPhase.verified, verdict=verdict(confidence)))
        assert view.confidence_color == color


class TestHints:

    def test_rate_limit_hint_in_minutes(self):
        assert error_hint(ErrorInfo(code="rate_limited", message="", retryable=True, retry_after=60)) == (
            "Please wait 1 minute before trying again."
        )
        assert "3 minutes" in error_hint(ErrorInfo(code="rate_limited", message="", retryable=True, retry_after=150))

    def test_network_hint(self):
        assert "internet connection" in error_hint(ErrorInfo(code="network", message="", retryable=True))

    def test_no_error_no_hint(self):
        assert error_hint(None) is None

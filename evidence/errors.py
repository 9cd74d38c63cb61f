"""
Error taxonomy for the evidence verification pipeline.

Every mechanical failure (transport, remote service, bad input, unparseable
model output) surfaces as a VerificationError with a stable code and a
retryable flag. A content mismatch (the model saying "this photo does not
show that") is NOT an error -- it is a normal verdict with is_match=False.
"""

from __future__ import annotations

from enum import Enum

from evidence.models.schemas import ErrorInfo

RATE_LIMIT_COOLDOWN_S = 60


class ErrorCode(str, Enum):
    """Stable error codes. Clients branch on these, never on message text."""

    rate_limited = "rate_limited"      # local window full, or remote 429
    network = "network"                # transport failure, timeout
    invalid_input = "invalid_input"    # remote 4xx, bad path, unreadable photo
    service_error = "service_error"    # remote 5xx, missing credential
    parse_failure = "parse_failure"    # model reply without a usable verdict


class VerificationError(Exception):
    """A classified pipeline failure."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        retryable: bool = False,
        retry_after: int | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.retry_after = retry_after

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(
            code=self.code.value,
            message=self.message,
            retryable=self.retryable,
            retry_after=self.retry_after,
        )

    def __repr__(self) -> str:
        return (
            f"VerificationError(code={self.code.value!r}, message={self.message!r}, "
            f"retryable={self.retryable})"
        )

    # ── Constructors for the common cases ─────────────────────────────

    @classmethod
    def rate_limited(cls, message: str, retry_after: int = RATE_LIMIT_COOLDOWN_S) -> "VerificationError":
        return cls(ErrorCode.rate_limited, message, retryable=True, retry_after=retry_after)

    @classmethod
    def network(cls, message: str) -> "VerificationError":
        return cls(ErrorCode.network, message, retryable=True)

    @classmethod
    def invalid_input(cls, message: str) -> "VerificationError":
        return cls(ErrorCode.invalid_input, message, retryable=False)

    @classmethod
    def parse_failure(cls, message: str) -> "VerificationError":
        return cls(ErrorCode.parse_failure, message, retryable=False)


class TempObjectUnavailableError(Exception):
    """The staged object could not be located (unparseable URL or expired).

    Promotion raises this instead of guessing; the orchestrator decides
    whether to fall back to a direct upload from the original bytes.
    """


class InvalidTransitionError(Exception):
    """An orchestrator operation was invoked from a phase that forbids it."""


def classify_http_status(
    status_code: int,
    message: str,
    retry_after: int | None = None,
) -> VerificationError:
    """Map a non-2xx HTTP status to a VerificationError.

    429 -> rate_limited (retryable), 5xx -> service_error (retryable),
    any other 4xx -> invalid_input (not retryable).
    """
    if status_code == 429:
        return VerificationError.rate_limited(message, retry_after or RATE_LIMIT_COOLDOWN_S)
    if status_code >= 500:
        return VerificationError(ErrorCode.service_error, message, retryable=True)
    return VerificationError.invalid_input(message)


def parse_retry_after(value: str | None) -> int | None:
    """Read a Retry-After header expressed in seconds. HTTP-date forms are ignored."""
    if not value:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None

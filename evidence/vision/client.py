"""
Vision Verification Client

Asks a multimodal chat-completions endpoint whether a photo supports a
textual claim. One instance is shared by the whole process; it owns:

  1. De-duplication  -- concurrent identical (image_url, claim) requests
                        share one in-flight call.
  2. Rate limiting   -- per-minute and per-hour sliding windows, checked
                        before dispatch. A full window fails fast with
                        rate_limited, no network call made.
  3. Retry/backoff   -- retryable failures are retried up to max_retries
                        total attempts, sleeping base * 2^(attempt-1)
                        between them. Non-retryable failures stop at once.
  4. Parsing         -- the reply is handed to parse_verdict().

Only successful calls (and remote 429s, which the provider already
counted) are recorded into the rate-limit windows.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from typing import Any, Awaitable, Callable

import httpx

from evidence.errors import (
    ErrorCode,
    VerificationError,
    classify_http_status,
    parse_retry_after,
)
from evidence.models.schemas import RateLimitStatus, VerificationRequest, VerificationVerdict
from evidence.vision.parser import parse_verdict
from evidence.vision.prompt import COURT_TAXONOMY, PROMPT_VERSION, Taxonomy, build_prompt
from evidence.vision.ratelimit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"

Sleep = Callable[[float], Awaitable[None]]


def request_key(request: VerificationRequest) -> str:
    """Bounded, collision-resistant de-duplication key for a request."""
    raw = f"{request.image_url}\x00{request.claim_text}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


class VerificationClient:
    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = DEFAULT_API_URL,
        model: str = "gpt-4o",
        max_tokens: int = 500,
        temperature: float = 0.1,
        image_detail: str = "low",
        max_retries: int = 3,
        retry_base_delay_s: float = 1.0,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        taxonomy: Taxonomy = COURT_TAXONOMY,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.image_detail = image_detail
        self.max_retries = max(1, max_retries)
        self.retry_base_delay_s = retry_base_delay_s
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.taxonomy = taxonomy
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Future] = {}
        self._inflight_lock = threading.Lock()
        self.dispatch_count = 0

        if not self.api_key:
            logger.warning("Vision API key not found. AI verification will be disabled.")

    # ── Public API ─────────────────────────────────────────────────────

    def is_available(self) -> bool:
        """True if a credential is configured and the rate limiter has headroom."""
        return bool(self.api_key) and self.rate_limiter.has_capacity()

    def rate_limit_status(self) -> RateLimitStatus:
        return self.rate_limiter.status()

    async def verify(self, request: VerificationRequest) -> VerificationVerdict:
        """Adjudicate an image + claim pair. Raises VerificationError."""
        if not self.api_key:
            raise VerificationError(
                ErrorCode.service_error, "Vision API key not configured", retryable=False
            )

        key = request_key(request)
        with self._inflight_lock:
            shared = self._inflight.get(key)
            if shared is None:
                if not self.rate_limiter.has_capacity():
                    raise VerificationError.rate_limited("Rate limit exceeded. Please try again later.")
                shared = asyncio.ensure_future(self._execute(request))
                self._inflight[key] = shared
                shared.add_done_callback(lambda _f, k=key: self._forget(k))
            else:
                logger.info("Joining in-flight verification %s", key[:12])

        # shield(): one caller giving up must not cancel the shared call.
        return await asyncio.shield(shared)

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Internals ──────────────────────────────────────────────────────

    def _forget(self, key: str) -> None:
        with self._inflight_lock:
            self._inflight.pop(key, None)

    async def _execute(self, request: VerificationRequest) -> VerificationVerdict:
        last_error: VerificationError | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                verdict = await self._dispatch(request)
            except VerificationError as e:
                last_error = e
                if e.code == ErrorCode.rate_limited:
                    # The provider already counted this call.
                    self.rate_limiter.record()
                if not e.retryable or attempt == self.max_retries:
                    logger.error(
                        "Verification failed after %d attempt(s): %s", attempt, e.message
                    )
                    raise
                delay = self.retry_base_delay_s * (2 ** (attempt - 1))
                logger.warning(
                    "Verification attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt, self.max_retries, e.code.value, delay,
                )
                await self._sleep(delay)
                continue

            self.rate_limiter.record()
            logger.info(
                "Verdict: match=%s confidence=%d (attempt %d)",
                verdict.is_match, verdict.confidence, attempt,
            )
            return verdict

        # Unreachable: the loop either returns or raises.
        raise last_error or VerificationError.network("Verification failed")

    def build_payload(self, request: VerificationRequest) -> dict[str, Any]:
        prompt = build_prompt(request.claim_text, request.context, self.taxonomy)
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": request.image_url, "detail": self.image_detail},
                        },
                    ],
                }
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

    async def _dispatch(self, request: VerificationRequest) -> VerificationVerdict:
        self.dispatch_count += 1
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = await self._http.post(self.api_url, json=self.build_payload(request), headers=headers)
        except httpx.TransportError as e:
            raise VerificationError.network(f"Network connection failed: {e}") from e

        if not resp.is_success:
            raise classify_http_status(
                resp.status_code,
                f"Vision API error: {resp.status_code}",
                parse_retry_after(resp.headers.get("Retry-After")),
            )

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise VerificationError.parse_failure("Invalid response from vision API") from e
        if not isinstance(content, str):
            raise VerificationError.parse_failure("Vision API returned no text content")

        return parse_verdict(content, PROMPT_VERSION)

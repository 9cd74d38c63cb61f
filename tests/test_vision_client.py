"""
Tests for the vision verification client.

Covers the behaviours that make the client safe to share across uploads:
de-duplication of identical requests, the sliding-window rate limit,
retry with exponential backoff, and error classification.
"""

import asyncio

import httpx
import pytest

from evidence.errors import ErrorCode, VerificationError
from evidence.models.schemas import VerificationRequest
from tests.fakes import FakeClock, FakeVisionAPI, RecordingSleep, completion, make_client, verdict_reply

pytestmark = pytest.mark.asyncio

IMAGE_URL = "https://firebasestorage.googleapis.com/v0/b/test-bucket/o/temp%2Freport%2Fr.jpg?alt=media&token=t"


def request(claim="court is flooded", url=IMAGE_URL) -> VerificationRequest:
    return VerificationRequest(image_url=url, claim_text=claim, context="Outdoor court")


class TestDispatch:

    async def test_positive_verdict(self):
        api = FakeVisionAPI(verdict_reply(True, confidence=88))
        client = make_client(api)
        verdict = await client.verify(request())
        assert verdict.is_match is True
        assert verdict.confidence == 88
        assert api.calls == 1

    async def test_payload_shape(self):
        api = FakeVisionAPI(verdict_reply(False))
        client = make_client(api, model="gpt-4o", max_tokens=500, temperature=0.1)
        await client.verify(request())

        payload = api.payload()
        assert payload["model"] == "gpt-4o"
        assert payload["max_tokens"] == 500
        assert payload["temperature"] == 0.1
        text, image = payload["messages"][0]["content"]
        assert 'REPORT DESCRIPTION: "court is flooded"' in text["text"]
        assert 'CONTEXT: "Outdoor court"' in text["text"]
        assert image["image_url"] == {"url": IMAGE_URL, "detail": "low"}
        assert api.requests[0].headers["Authorization"] == "Bearer sk-test"

    async def test_mismatch_is_not_an_error(self):
        api = FakeVisionAPI(verdict_reply(False, confidence=95, reasoning="The hoop is intact."))
        verdict = await make_client(api).verify(request("hoop is broken"))
        assert verdict.is_match is False
        assert verdict.feedback


class TestDeduplication:

    async def test_concurrent_identical_requests_share_one_call(self):
        api = FakeVisionAPI(verdict_reply(True, confidence=77))
        api.gate = asyncio.Event()
        client = make_client(api)

        first = asyncio.create_task(client.verify(request()))
        second = asyncio.create_task(client.verify(request()))
        await asyncio.sleep(0.01)
        api.gate.set()
        a, b = await asyncio.gather(first, second)

        assert api.calls == 1
        assert a == b
        assert a.confidence == 77

    async def test_different_claims_are_separate_calls(self):
        api = FakeVisionAPI(verdict_reply(True))
        client = make_client(api)
        await asyncio.gather(client.verify(request("court is flooded")), client.verify(request("court is crowded")))
        assert api.calls == 2

    async def test_key_released_after_completion(self):
        api = FakeVisionAPI(verdict_reply(True))
        client = make_client(api)
        await client.verify(request())
        await client.verify(request())
        assert api.calls == 2


class TestRateLimit:

    async def test_full_window_rejects_before_network(self):
        api = FakeVisionAPI(verdict_reply(True))
        clock = FakeClock()
        client = make_client(api, rpm=3, clock=clock)
        for i in range(3):
            await client.verify(request(f"claim {i}"))

        with pytest.raises(VerificationError) as exc:
            await client.verify(request("one too many"))
        assert exc.value.code == ErrorCode.rate_limited
        assert exc.value.retryable is True
        assert exc.value.retry_after == 60
        assert api.calls == 3
        assert client.is_available() is False

        clock.advance(61)
        assert client.is_available() is True
        await client.verify(request("after the window slid"))
        assert api.calls == 4

    async def test_failed_calls_not_charged(self):
        api = FakeVisionAPI(httpx.Response(400, text="bad image"))
        client = make_client(api, rpm=1)
        with pytest.raises(VerificationError):
            await client.verify(request())
        assert client.rate_limit_status().minute == 0
        assert client.is_available() is True

    async def test_remote_429_is_charged(self):
        api = FakeVisionAPI(httpx.Response(429, headers={"Retry-After": "30"}))
        client = make_client(api, rpm=10, max_retries=1)
        with pytest.raises(VerificationError) as exc:
            await client.verify(request())
        assert exc.value.code == ErrorCode.rate_limited
        assert exc.value.retry_after == 30
        assert client.rate_limit_status().minute == 1


class TestRetry:

    async def test_service_errors_then_success(self):
        api = FakeVisionAPI(
            httpx.Response(503, text="overloaded"),
            httpx.Response(502, text="bad gateway"),
            verdict_reply(True, confidence=81),
        )
        sleep = RecordingSleep()
        client = make_client(api, sleep=sleep, retry_base_delay_s=0.5)

        verdict = await client.verify(request())

        assert verdict.confidence == 81
        assert api.calls == 3
        assert sleep.delays == [0.5, 1.0]
        assert sum(sleep.delays) >= 0.5 + 2 * 0.5

    async def test_real_backoff_elapses(self):
        api = FakeVisionAPI(httpx.Response(500), httpx.Response(500), verdict_reply(True))
        client = make_client(api, sleep=asyncio.sleep, retry_base_delay_s=0.01)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await client.verify(request())
        assert loop.time() - started >= 0.03
        assert api.calls == 3

    async def test_network_errors_exhaust_retries(self):
        api = FakeVisionAPI(httpx.ConnectError("unreachable"))
        sleep = RecordingSleep()
        client = make_client(api, sleep=sleep)
        with pytest.raises(VerificationError) as exc:
            await client.verify(request())
        assert exc.value.code == ErrorCode.network
        assert exc.value.retryable is True
        assert api.calls == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_client_error_not_retried(self):
        api = FakeVisionAPI(httpx.Response(400, text="invalid image url"))
        sleep = RecordingSleep()
        client = make_client(api, sleep=sleep)
        with pytest.raises(VerificationError) as exc:
            await client.verify(request())
        assert exc.value.code == ErrorCode.invalid_input
        assert exc.value.retryable is False
        assert api.calls == 1
        assert sleep.delays == []

    async def test_parse_failure_not_retried(self):
        api = FakeVisionAPI(completion("I'm not able to judge this photo."))
        client = make_client(api)
        with pytest.raises(VerificationError) as exc:
            await client.verify(request())
        assert exc.value.code == ErrorCode.parse_failure
        assert api.calls == 1

    async def test_malformed_envelope(self):
        api = FakeVisionAPI(httpx.Response(200, json={"error": "nope"}))
        with pytest.raises(VerificationError) as exc:
            await make_client(api).verify(request())
        assert exc.value.code == ErrorCode.parse_failure


class TestAvailability:

    async def test_no_credential(self):
        api = FakeVisionAPI()
        client = make_client(api, api_key="")
        assert client.is_available() is False
        with pytest.raises(VerificationError) as exc:
            await client.verify(request())
        assert exc.value.code == ErrorCode.service_error
        assert exc.value.retryable is False
        assert api.calls == 0

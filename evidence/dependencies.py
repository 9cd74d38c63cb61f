"""
Process-wide singletons, built once and injected with FastAPI's Depends.

One storage gateway and one verification client serve every upload; the
client's rate-limit windows and in-flight map only work if it is shared.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from evidence.config import Settings, get_settings
from evidence.storage.backends import FirebaseObjectStore, MemoryObjectStore, ObjectStore
from evidence.storage.gateway import TempStorageGateway
from evidence.vision.client import VerificationClient
from evidence.vision.ratelimit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


def build_object_store(settings: Settings) -> ObjectStore:
    if settings.storage_backend == "firebase":
        logger.info("Using Firebase storage bucket %s", settings.storage_bucket)
        return FirebaseObjectStore(
            bucket=settings.storage_bucket,
            token=settings.storage_token,
            base_url=settings.storage_base_url,
        )
    logger.info("Using in-memory object storage (data is lost on restart)")
    return MemoryObjectStore(bucket=settings.storage_bucket, base_url=settings.storage_base_url)


def build_gateway(settings: Settings) -> TempStorageGateway:
    return TempStorageGateway(
        build_object_store(settings),
        cleanup_delay_s=settings.temp_cleanup_delay_s,
    )


def build_verification_client(settings: Settings) -> VerificationClient:
    return VerificationClient(
        settings.vision_api_key,
        api_url=settings.vision_api_url,
        model=settings.vision_model,
        max_tokens=settings.vision_max_tokens,
        temperature=settings.vision_temperature,
        image_detail=settings.vision_image_detail,
        max_retries=settings.max_retries,
        retry_base_delay_s=settings.retry_base_delay_s,
        rate_limiter=SlidingWindowRateLimiter(
            settings.requests_per_minute, settings.requests_per_hour
        ),
        timeout=settings.request_timeout_s,
    )


@lru_cache
def get_gateway() -> TempStorageGateway:
    return build_gateway(get_settings())


@lru_cache
def get_verification_client() -> VerificationClient:
    return build_verification_client(get_settings())

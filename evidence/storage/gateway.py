"""
Temporary Object Store Gateway

Photos offered as evidence are not trusted until the vision model has
looked at them, so they live in two namespaces:

  temp/<category>/<category>_<context>_<actor>_<ms>.jpg
      Staging area. Every staged object gets a delayed delete scheduled
      at upload time, so an abandoned pipeline never leaks storage.

  verified/<category>/<context>/<filename>
      Permanent area. Objects land here after a positive verdict
      (promotion) or an explicit unverified upload.

Backend failures are translated into VerificationError (network /
service_error / invalid_input). Temp deletion is best-effort: failures
are logged and never raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from evidence.errors import (
    TempObjectUnavailableError,
    VerificationError,
    classify_http_status,
)
from evidence.storage.backends import ObjectNotFoundError, ObjectStore, StorageError
from evidence.storage.paths import resolve_storage_path

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp/"
PERMANENT_PREFIX = "verified/"
DEFAULT_CLEANUP_DELAY_S = 10 * 60

# Percent complete, 0-100
ProgressCallback = Callable[[float], None]


@dataclass
class StorageStats:
    temp_uploads: int = 0
    promotions: int = 0
    direct_uploads: int = 0
    temp_deletes: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "temp_uploads": self.temp_uploads,
            "promotions": self.promotions,
            "direct_uploads": self.direct_uploads,
            "temp_deletes": self.temp_deletes,
        }


@dataclass
class _StagedEntry:
    staged_at: float
    handle: asyncio.TimerHandle | None = None
    tasks: set = field(default_factory=set)


def _component(name: str, value: str) -> str:
    value = (value or "").strip()
    if not value or "/" in value or value in (".", ".."):
        raise VerificationError.invalid_input(f"Invalid {name}: {value!r}")
    return value


def _to_verification_error(e: StorageError, action: str) -> VerificationError:
    if e.status_code is None:
        return VerificationError.network(f"Failed to {action}: {e}")
    return classify_http_status(e.status_code, f"Failed to {action}: {e}")


def _percent_reporter(on_progress: ProgressCallback | None):
    if on_progress is None:
        return None

    def report(sent: int, total: int) -> None:
        on_progress(100.0 if total <= 0 else sent * 100.0 / total)

    return report


class TempStorageGateway:
    """Staging, promotion and cleanup of evidence photos."""

    def __init__(
        self,
        store: ObjectStore,
        cleanup_delay_s: float = DEFAULT_CLEANUP_DELAY_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.cleanup_delay_s = cleanup_delay_s
        self._clock = clock
        self._staged: dict[str, _StagedEntry] = {}
        self.stats = StorageStats()

    # ── Paths ──────────────────────────────────────────────────────────

    @staticmethod
    def build_filename(category: str, context_id: str, actor_id: str, timestamp_ms: int | None = None) -> str:
        category = _component("category", category)
        context_id = _component("context id", context_id)
        actor_id = _component("actor id", actor_id)
        ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        return f"{category}_{context_id}_{actor_id}_{ts}.jpg"

    @staticmethod
    def temp_path(category: str, filename: str) -> str:
        return f"{TEMP_PREFIX}{_component('category', category)}/{filename}"

    @staticmethod
    def permanent_path(category: str, context_id: str, filename: str) -> str:
        return (
            f"{PERMANENT_PREFIX}{_component('category', category)}/"
            f"{_component('context id', context_id)}/{filename}"
        )

    # ── Staging ────────────────────────────────────────────────────────

    async def stage_to_temp(
        self,
        data: bytes,
        category: str,
        context_id: str,
        actor_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Upload bytes to the temp namespace and return a fetchable URL.

        Schedules a delayed delete of the same path as a safety net.
        """
        path = self.temp_path(category, self.build_filename(category, context_id, actor_id))
        logger.info("Staging %d bytes to %s", len(data), path)

        try:
            await self.store.upload(data, path, _percent_reporter(on_progress))
            url = await self.store.get_download_url(path)
        except StorageError as e:
            logger.error("Temp upload to %s failed: %s", path, e)
            raise _to_verification_error(e, "upload to temporary storage") from e

        self.stats.temp_uploads += 1
        self.schedule_cleanup(path)
        return url

    def schedule_cleanup(self, path: str, delay_s: float | None = None) -> None:
        """Delete `path` after `delay_s` seconds unless it is removed sooner."""
        delay = self.cleanup_delay_s if delay_s is None else delay_s
        entry = self._staged.setdefault(path, _StagedEntry(staged_at=self._clock()))
        if entry.handle is not None:
            entry.handle.cancel()

        loop = asyncio.get_running_loop()

        def fire() -> None:
            task = loop.create_task(self.delete_temp(path))
            entry.tasks.add(task)
            task.add_done_callback(entry.tasks.discard)

        entry.handle = loop.call_later(delay, fire)

    # ── Promotion ──────────────────────────────────────────────────────

    async def promote_to_permanent(
        self,
        temp_url_or_path: str,
        category: str,
        context_id: str,
        actor_id: str,
    ) -> str:
        """Copy a staged object into verified/ and delete the temp copy.

        Raises TempObjectUnavailableError if the temp object cannot be
        located; the caller decides whether to fall back to a direct upload.
        """
        temp_path = resolve_storage_path(temp_url_or_path)
        if not temp_path:
            raise TempObjectUnavailableError(f"Cannot resolve temp object from {temp_url_or_path!r}")

        try:
            data = await self.store.download(temp_path)
        except ObjectNotFoundError as e:
            raise TempObjectUnavailableError(f"Temp object {temp_path} has expired") from e
        except StorageError as e:
            raise _to_verification_error(e, "fetch staged image") from e

        filename = temp_path.rsplit("/", 1)[-1] or self.build_filename(category, context_id, actor_id)
        permanent = self.permanent_path(category, context_id, filename)
        logger.info("Promoting %s -> %s", temp_path, permanent)

        try:
            await self.store.upload(data, permanent)
            url = await self.store.get_download_url(permanent)
        except StorageError as e:
            logger.error("Promotion of %s failed: %s", temp_path, e)
            raise _to_verification_error(e, "move image to permanent storage") from e

        self.stats.promotions += 1
        await self.delete_temp(temp_path)
        return url

    async def upload_permanent(
        self,
        data: bytes,
        category: str,
        context_id: str,
        actor_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Upload straight into verified/, bypassing staging."""
        filename = self.build_filename(category, context_id, actor_id)
        path = self.permanent_path(category, context_id, filename)
        logger.info("Direct upload of %d bytes to %s", len(data), path)

        try:
            await self.store.upload(data, path, _percent_reporter(on_progress))
            url = await self.store.get_download_url(path)
        except StorageError as e:
            logger.error("Direct upload to %s failed: %s", path, e)
            raise _to_verification_error(e, "upload to permanent storage") from e

        self.stats.direct_uploads += 1
        return url

    # ── Cleanup ────────────────────────────────────────────────────────

    async def delete_temp(self, path_or_url: str) -> None:
        """Best-effort delete of a temp object. Never raises."""
        path = resolve_storage_path(path_or_url)
        if not path:
            logger.warning("Could not extract path for deletion: %s", path_or_url)
            return
        if not path.startswith(TEMP_PREFIX):
            logger.warning("Refusing to delete non-temp object %s", path)
            return

        entry = self._staged.pop(path, None)
        if entry is not None and entry.handle is not None:
            entry.handle.cancel()

        try:
            await self.store.delete(path)
        except ObjectNotFoundError:
            logger.debug("Temp object %s already gone", path)
            return
        except StorageError as e:
            logger.warning("Failed to delete temp file %s: %s", path, e)
            return
        self.stats.temp_deletes += 1
        logger.info("Deleted temp object %s", path)

    async def sweep_stale(self, older_than_s: float) -> int:
        """Delete tracked temp objects staged more than `older_than_s` ago."""
        now = self._clock()
        stale = [p for p, e in self._staged.items() if now - e.staged_at >= older_than_s]
        for path in stale:
            await self.delete_temp(path)
        if stale:
            logger.info("Swept %d stale temp object(s)", len(stale))
        return len(stale)

    @property
    def pending_cleanups(self) -> list[str]:
        return list(self._staged)

    async def close(self) -> None:
        """Cancel scheduled deletes and release the backend."""
        for entry in self._staged.values():
            if entry.handle is not None:
                entry.handle.cancel()
            for task in list(entry.tasks):
                task.cancel()
        self._staged.clear()
        await self.store.aclose()

"""
Tests for the temp storage gateway.

Staging, delayed cleanup, promotion, and the error translation from
backend failures into the verification error taxonomy.
"""

import asyncio
import json

import httpx
import pytest

from evidence.errors import ErrorCode, TempObjectUnavailableError, VerificationError
from evidence.storage.backends import FirebaseObjectStore, MemoryObjectStore, StorageError
from evidence.storage.gateway import TempStorageGateway
from evidence.storage.paths import resolve_storage_path
from tests.fakes import FakeClock

pytestmark = pytest.mark.asyncio


class FlakyStore(MemoryObjectStore):
    """Memory store whose operations can be made to fail on demand."""

    def __init__(self):
        super().__init__(bucket="test-bucket")
        self.fail_upload: StorageError | None = None
        self.fail_delete: StorageError | None = None
        self.fail_download: StorageError | None = None

    async def upload(self, data, path, on_progress=None, content_type="image/jpeg"):
        if self.fail_upload:
            raise self.fail_upload
        await super().upload(data, path, on_progress, content_type)

    async def download(self, path):
        if self.fail_download:
            raise self.fail_download
        return await super().download(path)

    async def delete(self, path):
        if self.fail_delete:
            raise self.fail_delete
        await super().delete(path)


class TestStaging:

    async def test_stage_writes_under_temp(self, gateway, memory_store):
        progress = []
        url = await gateway.stage_to_temp(b"x" * 200_000, "courts", "ctx1", "user1", progress.append)

        path = resolve_storage_path(url)
        assert path.startswith("temp/courts/courts_ctx1_user1_")
        assert path.endswith(".jpg")
        assert memory_store.objects[path] == b"x" * 200_000
        assert progress == sorted(progress)
        assert progress[-1] == 100.0
        assert gateway.pending_cleanups == [path]
        assert gateway.stats.temp_uploads == 1

    async def test_invalid_component(self, gateway):
        with pytest.raises(VerificationError) as exc:
            await gateway.stage_to_temp(b"x", "courts", "a/b", "user1")
        assert exc.value.code == ErrorCode.invalid_input

    async def test_scheduled_cleanup_deletes(self, memory_store):
        gateway = TempStorageGateway(memory_store, cleanup_delay_s=0.01)
        url = await gateway.stage_to_temp(b"data", "courts", "ctx1", "user1")
        await asyncio.sleep(0.05)
        assert resolve_storage_path(url) not in memory_store.objects
        assert gateway.pending_cleanups == []

    async def test_upload_failure_translated(self):
        store = FlakyStore()
        gateway = TempStorageGateway(store)

        store.fail_upload = StorageError("connection reset")
        with pytest.raises(VerificationError) as exc:
            await gateway.stage_to_temp(b"x", "courts", "c", "u")
        assert exc.value.code == ErrorCode.network
        assert exc.value.retryable is True

        store.fail_upload = StorageError("forbidden", status_code=403)
        with pytest.raises(VerificationError) as exc:
            await gateway.stage_to_temp(b"x", "courts", "c", "u")
        assert exc.value.code == ErrorCode.invalid_input

        store.fail_upload = StorageError("unavailable", status_code=503)
        with pytest.raises(VerificationError) as exc:
            await gateway.stage_to_temp(b"x", "courts", "c", "u")
        assert exc.value.code == ErrorCode.service_error
        assert gateway.pending_cleanups == []


class TestPromotion:

    async def test_promote_moves_object(self, gateway, memory_store):
        temp_url = await gateway.stage_to_temp(b"photo", "courts", "ctx1", "user1")
        temp_path = resolve_storage_path(temp_url)

        url = await gateway.promote_to_permanent(temp_url, "courts", "ctx1", "user1")

        permanent = resolve_storage_path(url)
        assert permanent == f"verified/courts/ctx1/{temp_path.rsplit('/', 1)[-1]}"
        assert memory_store.objects[permanent] == b"photo"
        assert temp_path not in memory_store.objects
        assert gateway.pending_cleanups == []
        assert gateway.stats.promotions == 1

    async def test_expired_temp_object(self, gateway, memory_store):
        temp_url = await gateway.stage_to_temp(b"photo", "courts", "ctx1", "user1")
        memory_store.objects.clear()
        with pytest.raises(TempObjectUnavailableError):
            await gateway.promote_to_permanent(temp_url, "courts", "ctx1", "user1")

    async def test_unresolvable_url(self, gateway):
        with pytest.raises(TempObjectUnavailableError):
            await gateway.promote_to_permanent("https://example.com/download?id=1", "courts", "c", "u")

    async def test_download_failure_translated(self):
        store = FlakyStore()
        gateway = TempStorageGateway(store)
        temp_url = await gateway.stage_to_temp(b"photo", "courts", "c", "u")
        store.fail_download = StorageError("timeout")
        with pytest.raises(VerificationError) as exc:
            await gateway.promote_to_permanent(temp_url, "courts", "c", "u")
        assert exc.value.code == ErrorCode.network

    async def test_direct_upload(self, gateway, memory_store):
        url = await gateway.upload_permanent(b"photo", "courts", "ctx1", "user1")
        path = resolve_storage_path(url)
        assert path.startswith("verified/courts/ctx1/courts_ctx1_user1_")
        assert gateway.pending_cleanups == []
        assert gateway.stats.direct_uploads == 1


class TestCleanup:

    async def test_delete_cancels_timer(self, gateway, memory_store):
        url = await gateway.stage_to_temp(b"photo", "courts", "c", "u")
        await gateway.delete_temp(url)
        assert memory_store.objects == {}
        assert gateway.pending_cleanups == []
        assert gateway.stats.temp_deletes == 1

    async def test_refuses_non_temp_paths(self, gateway, memory_store):
        url = await gateway.upload_permanent(b"photo", "courts", "c", "u")
        await gateway.delete_temp(url)
        assert resolve_storage_path(url) in memory_store.objects

    async def test_delete_failure_swallowed(self):
        store = FlakyStore()
        gateway = TempStorageGateway(store)
        url = await gateway.stage_to_temp(b"photo", "courts", "c", "u")
        store.fail_delete = StorageError("unavailable", status_code=503)
        await gateway.delete_temp(url)
        assert gateway.stats.temp_deletes == 0

    async def test_delete_missing_object(self, gateway):
        await gateway.delete_temp("temp/courts/never-uploaded.jpg")
        await gateway.delete_temp("https://example.com/nothing")
        assert gateway.stats.temp_deletes == 0

    async def test_sweep_stale(self, memory_store):
        clock = FakeClock()
        gateway = TempStorageGateway(memory_store, cleanup_delay_s=3600, clock=clock)
        old = await gateway.stage_to_temp(b"old", "courts", "c1", "u")
        clock.advance(45 * 60)
        fresh = await gateway.stage_to_temp(b"new", "courts", "c2", "u")

        deleted = await gateway.sweep_stale(30 * 60)

        assert deleted == 1
        assert resolve_storage_path(old) not in memory_store.objects
        assert gateway.pending_cleanups == [resolve_storage_path(fresh)]
        await gateway.close()


class TestFirebaseBackend:

    async def test_rest_round(self):
        objects = {}
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, dict(request.url.params)))
            if request.method == "POST":
                objects[request.url.params["name"]] = request.read()
                return httpx.Response(200, json={"name": request.url.params["name"]})
            name = request.url.path.split("/o/", 1)[1]
            if name not in objects:
                return httpx.Response(404, json={"error": {"code": 404}})
            if request.method == "DELETE":
                del objects[name]
                return httpx.Response(204)
            if request.url.params.get("alt") == "media":
                return httpx.Response(200, content=objects[name])
            return httpx.Response(200, content=json.dumps({"name": name, "downloadTokens": "t1,t2"}))

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = FirebaseObjectStore("bucket", token="secret", client=client)
        gateway = TempStorageGateway(store)

        temp_url = await gateway.stage_to_temp(b"photo-bytes", "courts", "c", "u")
        assert "token=t1" in temp_url
        url = await gateway.promote_to_permanent(temp_url, "courts", "c", "u")

        assert resolve_storage_path(url).startswith("verified/courts/c/")
        assert list(objects.values()) == [b"photo-bytes"]
        assert seen[0][0] == "POST"
        assert seen[0][2]["uploadType"] == "media"
        await gateway.close()

    async def test_server_error_maps_to_service_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
        gateway = TempStorageGateway(FirebaseObjectStore("bucket", client=client))
        with pytest.raises(VerificationError) as exc:
            await gateway.stage_to_temp(b"x", "courts", "c", "u")
        assert exc.value.code == ErrorCode.service_error

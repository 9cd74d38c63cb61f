"""
Object storage backends.

The gateway only needs four operations from a provider: upload bytes to a
path (with progress), produce a fetchable URL for a path, read the bytes
back, and delete. Two backends implement them:

  MemoryObjectStore    -- in-process dict, for local runs and tests. Issues
                          canonical download URLs so URL resolution is
                          exercised exactly as in production.
  FirebaseObjectStore  -- Firebase / Google Cloud Storage REST API over httpx.

Backends raise ObjectNotFoundError for a missing object and StorageError for
everything else. Translating those into the pipeline's error taxonomy is the
gateway's job.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import AsyncIterator, Callable, Protocol
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

# (bytes_sent, total_bytes)
ByteProgress = Callable[[int, int], None]

UPLOAD_CHUNK_SIZE = 64 * 1024
CANONICAL_BASE_URL = "https://firebasestorage.googleapis.com"


class StorageError(Exception):
    """A storage operation failed. status_code is None for transport failures."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ObjectNotFoundError(StorageError, LookupError):
    """The object does not exist (never uploaded, deleted, or expired)."""

    def __init__(self, path: str):
        super().__init__(f"Object not found: {path}", status_code=404)
        self.path = path


class ObjectStore(Protocol):
    async def upload(
        self,
        data: bytes,
        path: str,
        on_progress: ByteProgress | None = None,
        content_type: str = "image/jpeg",
    ) -> None: ...

    async def get_download_url(self, path: str) -> str: ...

    async def download(self, path: str) -> bytes: ...

    async def delete(self, path: str) -> None: ...

    async def aclose(self) -> None: ...


def canonical_download_url(base_url: str, bucket: str, path: str, token: str | None = None) -> str:
    url = f"{base_url.rstrip('/')}/v0/b/{bucket}/o/{quote(path, safe='')}?alt=media"
    if token:
        url += f"&token={token}"
    return url


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class MemoryObjectStore:
    """Dict-backed object store. Data is lost on restart."""

    def __init__(self, bucket: str = "evidence-local", base_url: str = CANONICAL_BASE_URL):
        self.bucket = bucket
        self.base_url = base_url
        self.objects: dict[str, bytes] = {}
        self._tokens: dict[str, str] = {}

    async def upload(
        self,
        data: bytes,
        path: str,
        on_progress: ByteProgress | None = None,
        content_type: str = "image/jpeg",
    ) -> None:
        total = len(data)
        sent = 0
        while sent < total:
            sent = min(total, sent + UPLOAD_CHUNK_SIZE)
            if on_progress:
                on_progress(sent, total)
            await asyncio.sleep(0)
        if total == 0 and on_progress:
            on_progress(0, 0)
        self.objects[path] = bytes(data)
        self._tokens[path] = uuid.uuid4().hex

    async def get_download_url(self, path: str) -> str:
        if path not in self.objects:
            raise ObjectNotFoundError(path)
        return canonical_download_url(self.base_url, self.bucket, path, self._tokens[path])

    async def download(self, path: str) -> bytes:
        try:
            return self.objects[path]
        except KeyError:
            raise ObjectNotFoundError(path) from None

    async def delete(self, path: str) -> None:
        if path not in self.objects:
            raise ObjectNotFoundError(path)
        del self.objects[path]
        self._tokens.pop(path, None)

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Firebase Storage REST backend
# ---------------------------------------------------------------------------

class FirebaseObjectStore:
    """Firebase Storage via its REST endpoints.

    upload   POST   /v0/b/<bucket>/o?uploadType=media&name=<path>
    metadata GET    /v0/b/<bucket>/o/<encoded path>
    media    GET    /v0/b/<bucket>/o/<encoded path>?alt=media
    delete   DELETE /v0/b/<bucket>/o/<encoded path>
    """

    def __init__(
        self,
        bucket: str,
        token: str = "",
        base_url: str = CANONICAL_BASE_URL,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.bucket = bucket
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._auth = {"Authorization": f"Bearer {token}"} if token else {}

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/v0/b/{self.bucket}/o/{quote(path, safe='')}"

    async def _send(
        self,
        method: str,
        url: str,
        path: str,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method, url, headers={**self._auth, **(headers or {})}, **kwargs
            )
        except httpx.HTTPError as e:
            raise StorageError(f"{method} {path} failed: {e}") from e
        if resp.status_code == 404:
            raise ObjectNotFoundError(path)
        if resp.status_code >= 400:
            raise StorageError(
                f"{method} {path} returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp

    async def upload(
        self,
        data: bytes,
        path: str,
        on_progress: ByteProgress | None = None,
        content_type: str = "image/jpeg",
    ) -> None:
        total = len(data)

        async def body() -> AsyncIterator[bytes]:
            for start in range(0, total, UPLOAD_CHUNK_SIZE):
                chunk = data[start:start + UPLOAD_CHUNK_SIZE]
                yield chunk
                if on_progress:
                    on_progress(start + len(chunk), total)

        await self._send(
            "POST",
            f"{self.base_url}/v0/b/{self.bucket}/o",
            path,
            headers={"Content-Type": content_type, "Content-Length": str(total)},
            params={"uploadType": "media", "name": path},
            content=body(),
        )

    async def get_download_url(self, path: str) -> str:
        resp = await self._send("GET", self._object_url(path), path)
        try:
            tokens = resp.json().get("downloadTokens") or ""
        except ValueError as e:
            raise StorageError(f"Invalid metadata for {path}: {e}") from e
        # Several tokens may be issued; any of them works.
        token = tokens.split(",")[0] if tokens else None
        return canonical_download_url(self.base_url, self.bucket, path, token)

    async def download(self, path: str) -> bytes:
        resp = await self._send("GET", self._object_url(path), path, params={"alt": "media"})
        return resp.content

    async def delete(self, path: str) -> None:
        await self._send("DELETE", self._object_url(path), path)

    async def aclose(self) -> None:
        await self._client.aclose()

"""
Local photo access and pre-upload compression.

The caller hands us a local image URI (a file path or file:// URI). We read
it fresh on every run so that retry() replays the same photo, and
re-encode it as JPEG before staging to keep upload and inference cheap.
"""

from __future__ import annotations

import asyncio
import io
import logging
from pathlib import Path
from urllib.parse import unquote, urlsplit

from PIL import Image, UnidentifiedImageError

from evidence.errors import VerificationError

logger = logging.getLogger(__name__)

MIN_EDGE_PX = 256
DOWNSCALE_STEP = 0.8


def local_path(uri: str) -> Path:
    """file:///tmp/a.jpg and /tmp/a.jpg both map to Path('/tmp/a.jpg')."""
    if uri.startswith("file://"):
        return Path(unquote(urlsplit(uri).path))
    return Path(uri)


async def load_local_image(uri: str) -> bytes:
    """Read the photo behind a local URI.

    A missing or unreadable file is a non-retryable invalid_input error:
    retrying cannot bring back a photo the caller no longer has.
    """
    path = local_path(uri)
    try:
        return await asyncio.to_thread(path.read_bytes)
    except OSError as e:
        logger.warning("Local image %s unavailable: %s", uri, e)
        raise VerificationError.invalid_input("The selected photo is no longer available") from e


def _encode(img: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def compress_image(data: bytes, quality: float = 0.8, max_bytes: int = 1024 * 1024) -> bytes:
    """Re-encode to JPEG at `quality` (0-1], shrinking until under max_bytes.

    Downscaling stops at MIN_EDGE_PX on the short edge; the result at that
    point is returned even if it is still over budget.
    """
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise VerificationError.invalid_input("The selected file is not a readable image") from e

    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    jpeg_quality = max(1, min(95, int(round(quality * 100))))
    out = _encode(img, jpeg_quality)

    while len(out) > max_bytes and min(img.size) > MIN_EDGE_PX:
        # One factor for both sides keeps the aspect ratio; the short edge stops at MIN_EDGE_PX.
        scale = max(DOWNSCALE_STEP, MIN_EDGE_PX / min(img.size))
        new_size = (
            max(1, round(img.width * scale)),
            max(1, round(img.height * scale)),
        )
        img = img.resize(new_size, Image.LANCZOS)
        out = _encode(img, jpeg_quality)

    logger.debug("Compressed image %d -> %d bytes (%dx%d)", len(data), len(out), *img.size)
    return out


async def prepare_image(uri: str, quality: float, max_bytes: int) -> bytes:
    """Load and compress the photo at `uri` without blocking the event loop."""
    raw = await load_local_image(uri)
    return await asyncio.to_thread(compress_image, raw, quality, max_bytes)

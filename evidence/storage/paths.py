"""
Storage path resolution.

Temp objects come back to us in whatever form the storage provider issued
them: a raw object path, a canonical download URL with the path encoded in
the query-style "/o/<path>" segment, or a flat "bucket/path" URL. Promotion
and cleanup need the raw object path, so we sniff the shape with an ordered
list of matchers and take the first hit.

To support a new provider, write a matcher and add it to PATH_MATCHERS.
A matcher that does not recognise the URL returns None.
"""

from __future__ import annotations

import logging
import re
from typing import Callable
from urllib.parse import SplitResult, unquote, urlsplit

logger = logging.getLogger(__name__)

PathMatcher = Callable[[SplitResult, str], "str | None"]

_FLAT_HOST = "storage.googleapis.com"

# /v0/b/<bucket>/o/<url-encoded object path>
_CANONICAL_PATH = re.compile(r"^/v0/b/[^/]+/o/(?P<object>[^/?]+)$")
# /<bucket>/<object path>
_FLAT_PATH = re.compile(r"^/[^/]+/(?P<object>.+)$")
# Any "<folder>/<file>.<image ext>" fragment, query string excluded
_GENERIC_PATH = re.compile(r"([^/?#]+/[^?#]+\.(?:jpg|jpeg|png|gif|webp))", re.IGNORECASE)


def match_canonical(parts: SplitResult, url: str) -> str | None:
    """https://firebasestorage.googleapis.com/v0/b/bucket/o/temp%2Fa.jpg?alt=media&token=...

    Matched on the path alone so emulators and custom hosts resolve too.
    """
    m = _CANONICAL_PATH.match(parts.path)
    if not m:
        return None
    return unquote(m.group("object"))


def match_flat(parts: SplitResult, url: str) -> str | None:
    """https://storage.googleapis.com/bucket/temp/report/a.jpg"""
    if parts.hostname != _FLAT_HOST:
        return None
    m = _FLAT_PATH.match(parts.path)
    if not m:
        return None
    return unquote(m.group("object"))


def match_generic(parts: SplitResult, url: str) -> str | None:
    """Last resort: the trailing folder/file.ext of any URL path."""
    path = unquote(parts.path).lstrip("/")
    m = _GENERIC_PATH.search(path)
    if not m:
        return None
    return m.group(1)


PATH_MATCHERS: list[PathMatcher] = [match_canonical, match_flat, match_generic]


def is_url(value: str) -> bool:
    return bool(re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", value))


def resolve_storage_path(path_or_url: str) -> str | None:
    """Return the raw object path for a path or provider URL, or None.

    A value without a URL scheme is taken as a raw path. URLs are handed
    to each matcher in turn; if none recognises the shape, we return None
    rather than guess.
    """
    value = (path_or_url or "").strip()
    if not value:
        return None
    if not is_url(value):
        return value.lstrip("/")

    try:
        parts = urlsplit(value)
    except ValueError:
        logger.warning("Unparseable storage URL: %s", value)
        return None

    for matcher in PATH_MATCHERS:
        path = matcher(parts, value)
        if path:
            logger.debug("Resolved %s via %s -> %s", value, matcher.__name__, path)
            return path

    logger.warning("Could not extract storage path from URL: %s", value)
    return None

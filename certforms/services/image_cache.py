from __future__ import annotations

import base64
import logging
import time
from io import BytesIO
from typing import Any, Callable, Iterable

import requests
from PIL import Image

from .cache import TTLCache, settle_all

logger = logging.getLogger("certforms.cache")

IMAGE_CACHE_TTL_SECONDS = 4 * 60 * 60
IMAGE_CACHE_MAX_ENTRIES = 200
IMAGE_STALE_SECONDS = 60 * 60
IMAGE_FETCH_TIMEOUT = 10
MAX_IMAGE_SIZE = (1920, 1080)
DEFAULT_CONTENT_TYPE = "image/jpeg"

_SAVE_FORMATS = {"image/png": "PNG", "image/jpeg": "JPEG", "image/webp": "WEBP"}


def _resample_filter():
    resampling = getattr(Image, "Resampling", None)
    return resampling.LANCZOS if resampling is not None else Image.LANCZOS


def normalize_image(raw: bytes, content_type: str, max_size: tuple[int, int] = MAX_IMAGE_SIZE) -> tuple[bytes, str]:
    """Check ``raw`` decodes as an image and shrink it to ``max_size``."""
    with Image.open(BytesIO(raw)) as img:
        img.load()
        if img.width <= max_size[0] and img.height <= max_size[1]:
            return raw, content_type
        fmt = _SAVE_FORMATS.get(content_type, "PNG")
        resized = img.convert("RGB") if fmt == "JPEG" else img.convert("RGBA")
        resized.thumbnail(max_size, _resample_filter())
        out = BytesIO()
        resized.save(out, format=fmt)
    content_type = content_type if content_type in _SAVE_FORMATS else "image/png"
    return out.getvalue(), content_type


def to_data_url(raw: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(raw).decode('ascii')}"


class ImageCache(TTLCache):
    """Remote image URL to base64 data URL, kept for a few hours.

    Failures are never cached and come back as an empty string.
    """

    name = "image"

    def __init__(
        self,
        *,
        ttl_seconds: float = IMAGE_CACHE_TTL_SECONDS,
        max_entries: int = IMAGE_CACHE_MAX_ENTRIES,
        stale_seconds: float = IMAGE_STALE_SECONDS,
        timeout: float = IMAGE_FETCH_TIMEOUT,
        max_size: tuple[int, int] = MAX_IMAGE_SIZE,
        session: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, max_entries=max_entries, clock=clock)
        self.stale_seconds = float(stale_seconds)
        self.timeout = timeout
        self.max_size = max_size
        self.session = session or requests.Session()

    def _fetch(self, url: str) -> str:
        resp = self.session.get(url, timeout=self.timeout)
        resp.raise_for_status()
        header = (resp.headers or {}).get("Content-Type") or DEFAULT_CONTENT_TYPE
        content_type = header.split(";")[0].strip().lower() or DEFAULT_CONTENT_TYPE
        raw, content_type = normalize_image(resp.content, content_type, self.max_size)
        return to_data_url(raw, content_type)

    def get_image_data_url(self, url: str | None) -> str:
        if not url:
            return ""
        if url.startswith("data:"):
            return url
        cached = self._lookup(url)
        if cached is not None:
            return cached
        try:
            data_url = self._fetch(url)
        except Exception as exc:
            logger.warning("[IMAGE-FAIL] url=%s error=%s", url, exc)
            return ""
        self._store(url, data_url, meta=url)
        return data_url

    def resolve_many(self, urls: Iterable[str | None]) -> dict[str, str]:
        unique = list(dict.fromkeys(url for url in urls if url))
        settled = settle_all(self.get_image_data_url, unique)
        return {
            url: (result.value or "") if result.ok else ""
            for url, result in zip(unique, settled)
        }

    def invalidate_url(self, url: str) -> bool:
        return self.remove(url)

    def invalidate_stale(self) -> int:
        now = self.clock()
        removed = self._remove_where(lambda entry: now - entry.created_at > self.stale_seconds)
        if removed:
            logger.info("[CACHE-STALE] cache=%s removed=%s", self.name, removed)
        return removed

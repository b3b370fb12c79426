from __future__ import annotations

import logging
import time
from io import BytesIO
from typing import Any, Callable, Mapping

import qrcode
import qrcode.constants
from PIL import Image

from .cache import TTLCache, fingerprint
from .image_cache import to_data_url

logger = logging.getLogger("certforms.cache")

QR_CACHE_TTL_SECONDS = 24 * 60 * 60
QR_CACHE_MAX_ENTRIES = 500

DEFAULT_QR_OPTIONS: dict[str, Any] = {
    "error_correction": "H",
    "margin": 2,
    "width": 256,
    "dark": "#000000",
    "light": "#ffffff",
}

ERROR_CORRECTION_LEVELS = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}


def merge_options(options: Mapping[str, Any] | None) -> dict[str, Any]:
    merged = dict(DEFAULT_QR_OPTIONS)
    for key, value in (options or {}).items():
        if key in merged and value is not None:
            merged[key] = value
    merged["error_correction"] = str(merged["error_correction"]).upper()
    merged["margin"] = int(merged["margin"])
    merged["width"] = int(merged["width"])
    return merged


def make_qr_png(text: str, options: Mapping[str, Any]) -> bytes:
    level = ERROR_CORRECTION_LEVELS.get(options["error_correction"])
    if level is None:
        raise ValueError(f"unknown error correction level {options['error_correction']!r}")
    if options["width"] <= 0:
        raise ValueError("QR width must be positive")
    qr = qrcode.QRCode(box_size=10, border=options["margin"], error_correction=level)
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color=options["dark"], back_color=options["light"])
    buf = BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    with Image.open(buf) as generated:
        size = (options["width"], options["width"])
        resized = generated.convert("RGB").resize(size, Image.NEAREST)
    out = BytesIO()
    resized.save(out, format="PNG")
    return out.getvalue()


class QRCodeCache(TTLCache):
    """QR code PNG data URLs keyed by encoded text plus options."""

    name = "qrcode"

    def __init__(
        self,
        *,
        ttl_seconds: float = QR_CACHE_TTL_SECONDS,
        max_entries: int = QR_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, max_entries=max_entries, clock=clock)

    @staticmethod
    def cache_key(url: str, options: Mapping[str, Any]) -> str:
        return f"{url}|{fingerprint(options)}"

    def get_qrcode_data_url(self, url: str | None, options: Mapping[str, Any] | None = None) -> str:
        if not url:
            return ""
        try:
            merged = merge_options(options)
        except (TypeError, ValueError) as exc:
            logger.warning("[QR-FAIL] url=%s error=%s", url, exc)
            return ""
        key = self.cache_key(url, merged)
        cached = self._lookup(key)
        if cached is not None:
            return cached
        try:
            data_url = to_data_url(make_qr_png(url, merged), "image/png")
        except Exception as exc:
            logger.warning("[QR-FAIL] url=%s error=%s", url, exc)
            return ""
        self._store(key, data_url, meta=url)
        return data_url

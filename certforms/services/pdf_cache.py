from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from .cache import TTLCache, fingerprint, sha256_hex

logger = logging.getLogger("certforms.cache")

PDF_CACHE_TTL_SECONDS = 2 * 60 * 60
PDF_CACHE_MAX_ENTRIES = 100
KEY_DIGEST_LENGTH = 32


class PdfCache(TTLCache):
    """Rendered PDF bytes keyed by template and recipient data.

    Overflow drops the single oldest entry. Any failure inside the cache is
    logged and behaves as a miss.
    """

    name = "pdf"

    def __init__(
        self,
        *,
        ttl_seconds: float = PDF_CACHE_TTL_SECONDS,
        max_entries: int = PDF_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(
            ttl_seconds=ttl_seconds,
            max_entries=max_entries,
            eviction_batch=1,
            clock=clock,
        )

    @staticmethod
    def generate_cache_key(template_id: str, data: Mapping[str, Any]) -> str:
        digest = sha256_hex(fingerprint(data))[:KEY_DIGEST_LENGTH]
        return f"{template_id}-{digest}"

    def get(self, template_id: str, data: Mapping[str, Any]) -> bytes | None:
        try:
            return self._lookup(self.generate_cache_key(template_id, data))
        except Exception:
            logger.exception("[CACHE-ERROR] cache=pdf op=get template=%s", template_id)
            return None

    def set(self, template_id: str, data: Mapping[str, Any], pdf: bytes) -> None:
        try:
            self._store(self.generate_cache_key(template_id, data), pdf, meta=str(template_id))
        except Exception:
            logger.exception("[CACHE-ERROR] cache=pdf op=set template=%s", template_id)

    def invalidate(self, template_id: str, data: Mapping[str, Any]) -> bool:
        return self.remove(self.generate_cache_key(template_id, data))

    def invalidate_template(self, template_id: str) -> int:
        removed = self._remove_where(lambda entry: entry.meta == str(template_id))
        if removed:
            logger.info("[CACHE-INVALIDATE] cache=pdf template=%s removed=%s", template_id, removed)
        return removed

    def force_invalidate(self, template_id: str, data: Mapping[str, Any] | None = None) -> int:
        removed = 0
        if data is not None and self.invalidate(template_id, data):
            removed += 1
        return removed + self.invalidate_template(template_id)

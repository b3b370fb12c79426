from __future__ import annotations

import base64
import threading
from io import BytesIO

import pytest
from PIL import Image

from certforms.services.cache import TTLCache, settle_all
from certforms.services.image_cache import IMAGE_CACHE_MAX_ENTRIES, ImageCache
from certforms.services.pdf_cache import PdfCache
from certforms.services.qrcode_cache import QR_CACHE_MAX_ENTRIES, QRCodeCache, merge_options

from conftest import FakeSession, make_png


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _decode(data_url: str) -> Image.Image:
    header, payload = data_url.split(",", 1)
    assert header.endswith(";base64")
    return Image.open(BytesIO(base64.b64decode(payload)))


# -- shared TTL behaviour ---------------------------------------------------


def test_batch_eviction_keeps_size_bounded():
    clock = Clock()
    cache = TTLCache(ttl_seconds=3600, max_entries=20, clock=clock)

    for index in range(50):
        clock.advance(1)
        cache._store(f"k{index}", index)
        assert len(cache) <= 20

    # the newest entry always survives; eviction removes the oldest first
    assert "k49" in cache
    assert "k0" not in cache


def test_batch_eviction_removes_ten_percent():
    clock = Clock()
    cache = TTLCache(ttl_seconds=3600, max_entries=20, clock=clock)
    for index in range(20):
        clock.advance(1)
        cache._store(f"k{index}", index)

    cache._store("new", 1)

    assert len(cache) == 19
    assert "k0" not in cache and "k1" not in cache
    assert "k2" in cache


def test_expired_entries_miss_and_are_cleaned():
    clock = Clock()
    cache = TTLCache(ttl_seconds=10, max_entries=5, clock=clock)
    cache._store("a", "A")
    clock.advance(5)
    cache._store("b", "B")

    clock.advance(6)
    assert cache._lookup("a") is None
    assert cache._lookup("b") == "B"
    clock.advance(10)
    assert cache.clean_expired() == 1
    assert len(cache) == 0

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5


def test_settle_all_collects_failures_without_cancelling():
    seen = []
    lock = threading.Lock()

    def work(value):
        with lock:
            seen.append(value)
        if value % 2:
            raise ValueError(f"odd {value}")
        return value * 10

    results = settle_all(work, [0, 1, 2, 3, 4])

    assert sorted(seen) == [0, 1, 2, 3, 4]
    assert [r.value for r in results if r.ok] == [0, 20, 40]
    assert [str(r.error) for r in results if not r.ok] == ["odd 1", "odd 3"]
    assert settle_all(work, []) == []


# -- image cache --------------------------------------------------------------


def test_image_cache_fetches_once_and_counts_hits():
    session = FakeSession()
    session.add("https://cdn.example.com/bg.png", make_png((10, 6)), "image/png; charset=binary")
    cache = ImageCache(session=session)

    first = cache.get_image_data_url("https://cdn.example.com/bg.png")
    second = cache.get_image_data_url("https://cdn.example.com/bg.png")

    assert first == second
    assert first.startswith("data:image/png;base64,")
    assert session.calls == ["https://cdn.example.com/bg.png"]
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


def test_image_cache_failure_returns_empty_and_is_not_cached():
    session = FakeSession()
    session.add("https://cdn.example.com/gone.png", b"", status=404)
    session.add("https://cdn.example.com/text.png", b"<html>", "text/html")
    cache = ImageCache(session=session)

    assert cache.get_image_data_url("https://cdn.example.com/gone.png") == ""
    assert cache.get_image_data_url("https://cdn.example.com/text.png") == ""
    assert cache.get_image_data_url("https://nowhere.example.com/x.png") == ""
    assert len(cache) == 0

    session.add("https://cdn.example.com/gone.png", make_png())
    assert cache.get_image_data_url("https://cdn.example.com/gone.png") != ""


def test_image_cache_defaults_content_type_and_passes_data_urls_through():
    session = FakeSession()
    session.add("https://cdn.example.com/photo", make_png(), content_type="")
    cache = ImageCache(session=session)

    assert cache.get_image_data_url("https://cdn.example.com/photo").startswith("data:image/jpeg;base64,")
    assert cache.get_image_data_url("data:image/png;base64,AAAA") == "data:image/png;base64,AAAA"
    assert cache.get_image_data_url("") == ""


def test_image_cache_downscales_oversized_images():
    session = FakeSession()
    session.add("https://cdn.example.com/huge.png", make_png((3840, 1080)))
    cache = ImageCache(session=session)

    img = _decode(cache.get_image_data_url("https://cdn.example.com/huge.png"))

    assert img.size == (1920, 540)


def test_image_cache_stale_invalidation_and_url_invalidation():
    clock = Clock()
    session = FakeSession()
    session.add("https://a.example.com/1.png", make_png())
    session.add("https://a.example.com/2.png", make_png())
    cache = ImageCache(session=session, clock=clock)

    cache.get_image_data_url("https://a.example.com/1.png")
    clock.advance(2 * 60 * 60)
    cache.get_image_data_url("https://a.example.com/2.png")

    assert cache.invalidate_stale() == 1
    assert "https://a.example.com/2.png" in cache
    assert cache.invalidate_url("https://a.example.com/2.png")
    assert len(cache) == 0


def test_image_cache_resolve_many_settles_all():
    session = FakeSession()
    session.add("https://a.example.com/ok.png", make_png())
    cache = ImageCache(session=session)

    resolved = cache.resolve_many(
        ["https://a.example.com/ok.png", "https://a.example.com/missing.png", None, "https://a.example.com/ok.png"]
    )

    assert set(resolved) == {"https://a.example.com/ok.png", "https://a.example.com/missing.png"}
    assert resolved["https://a.example.com/ok.png"].startswith("data:image/png")
    assert resolved["https://a.example.com/missing.png"] == ""


# -- pdf cache ----------------------------------------------------------------


def test_pdf_cache_key_ignores_key_order():
    a = PdfCache.generate_cache_key("tpl-1", {"name": "Ana", "course": "Python", "nested": {"x": 1, "y": 2}})
    b = PdfCache.generate_cache_key("tpl-1", {"nested": {"y": 2, "x": 1}, "course": "Python", "name": "Ana"})

    assert a == b
    assert a.startswith("tpl-1-")
    assert len(a) == len("tpl-1-") + 32
    assert PdfCache.generate_cache_key("tpl-1", {"name": "Bia"}) != a


def test_pdf_cache_round_trip_and_template_invalidation():
    cache = PdfCache()
    cache.set("tpl-1", {"n": 1}, b"%PDF-1")
    cache.set("tpl-1", {"n": 2}, b"%PDF-2")
    cache.set("tpl-10", {"n": 1}, b"%PDF-3")

    assert cache.get("tpl-1", {"n": 1}) == b"%PDF-1"
    assert cache.invalidate_template("tpl-1") == 2
    assert cache.get("tpl-1", {"n": 2}) is None
    assert cache.get("tpl-10", {"n": 1}) == b"%PDF-3"


def test_pdf_cache_single_oldest_eviction():
    clock = Clock()
    cache = PdfCache(max_entries=3, clock=clock)
    for n in range(4):
        clock.advance(1)
        cache.set("tpl", {"n": n}, f"pdf-{n}".encode())

    assert len(cache) == 3
    assert cache.get("tpl", {"n": 0}) is None
    assert cache.get("tpl", {"n": 1}) == b"pdf-1"


def test_pdf_cache_expires_after_ttl():
    clock = Clock()
    cache = PdfCache(clock=clock)
    cache.set("tpl", {"n": 1}, b"pdf")

    clock.advance(2 * 60 * 60 + 1)

    assert cache.get("tpl", {"n": 1}) is None


def test_pdf_cache_force_invalidate_removes_exact_and_template():
    cache = PdfCache()
    cache.set("tpl", {"n": 1}, b"a")
    cache.set("tpl", {"n": 2}, b"b")

    assert cache.force_invalidate("tpl", {"n": 1}) == 2
    assert len(cache) == 0


def test_pdf_cache_errors_degrade_to_miss(caplog, monkeypatch):
    cache = PdfCache()
    cache.set("tpl", {"n": 1}, b"a")

    def broken_key(template_id, data):
        raise RuntimeError("boom")

    monkeypatch.setattr(cache, "generate_cache_key", broken_key)
    with caplog.at_level("ERROR", logger="certforms.cache"):
        assert cache.get("tpl", {"n": 1}) is None
        cache.set("tpl", {"n": 2}, b"b")

    assert len(cache) == 1
    assert "[CACHE-ERROR]" in caplog.text


# -- qr cache -----------------------------------------------------------------


def test_qrcode_cache_defaults_and_reuse():
    cache = QRCodeCache()

    first = cache.get_qrcode_data_url("https://certs.example.com/certificates/CERT-1")
    second = cache.get_qrcode_data_url(
        "https://certs.example.com/certificates/CERT-1",
        {"width": 256, "margin": 2, "error_correction": "H"},
    )

    assert first == second
    assert _decode(first).size == (256, 256)
    assert cache.stats()["hits"] == 1


def test_qrcode_cache_options_change_the_key():
    cache = QRCodeCache()

    small = cache.get_qrcode_data_url("https://x.example.com/a", {"width": 128})
    large = cache.get_qrcode_data_url("https://x.example.com/a", {"width": 300})

    assert _decode(small).size == (128, 128)
    assert _decode(large).size == (300, 300)
    assert len(cache) == 2


def test_qrcode_cache_failure_returns_empty():
    cache = QRCodeCache()

    assert cache.get_qrcode_data_url("https://x.example.com/a", {"error_correction": "Z"}) == ""
    assert cache.get_qrcode_data_url("https://x.example.com/a", {"width": "wide"}) == ""
    assert cache.get_qrcode_data_url("") == ""
    assert len(cache) == 0


def test_ttl_cache_rejects_zero_capacity():
    with pytest.raises(ValueError):
        TTLCache(ttl_seconds=1, max_entries=0)


def test_image_cache_stays_within_configured_capacity():
    session = FakeSession()
    png = make_png()
    urls = [f"https://cdn.example.com/{index}.png" for index in range(IMAGE_CACHE_MAX_ENTRIES + 30)]
    for url in urls:
        session.add(url, png)
    clock = Clock()
    cache = ImageCache(session=session, clock=clock)

    for url in urls:
        clock.advance(1)
        assert cache.get_image_data_url(url)
        assert len(cache) <= IMAGE_CACHE_MAX_ENTRIES

    assert urls[-1] in cache
    assert urls[0] not in cache


def test_qrcode_cache_stays_within_configured_capacity(monkeypatch):
    monkeypatch.setattr(
        "certforms.services.qrcode_cache.make_qr_png", lambda text, options: make_png((4, 4))
    )
    clock = Clock()
    cache = QRCodeCache(clock=clock)

    for index in range(QR_CACHE_MAX_ENTRIES + 40):
        clock.advance(1)
        assert cache.get_qrcode_data_url(f"https://certs.example.com/certificates/CERT-{index}")
        assert len(cache) <= QR_CACHE_MAX_ENTRIES

    newest = cache.cache_key(
        f"https://certs.example.com/certificates/CERT-{QR_CACHE_MAX_ENTRIES + 39}",
        merge_options(None),
    )
    assert newest in cache

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from flask import Flask, abort, current_app, jsonify, send_from_directory
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from .models import AuditLog, CertificateTemplate, EmailLog, IssuedCertificate  # noqa: E402,F401

if TYPE_CHECKING:  # pragma: no cover
    from .services.image_cache import ImageCache
    from .services.issuance import CertificateIssuer
    from .services.pdf_cache import PdfCache
    from .services.qrcode_cache import QRCodeCache
    from .shared.storage import ObjectStore


@dataclass
class Services:
    image_cache: ImageCache
    pdf_cache: PdfCache
    qr_cache: QRCodeCache
    store: ObjectStore
    issuer: CertificateIssuer

    def caches(self):
        return (self.image_cache, self.pdf_cache, self.qr_cache)


def services() -> Services:
    return current_app.extensions["certforms"]


def _env_number(name: str, default, cast=int):
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return cast(raw)
    except ValueError:
        logging.getLogger("certforms").warning("ignoring invalid %s=%r", name, raw)
        return default


def build_services(app: Flask) -> Services:
    from .services.image_cache import ImageCache
    from .services.issuance import CertificateIssuer
    from .services.pdf_cache import PdfCache
    from .services.qrcode_cache import QRCodeCache
    from .shared.storage import ObjectStore

    config = app.config
    image_cache = ImageCache(
        ttl_seconds=config["IMAGE_CACHE_TTL_SECONDS"],
        max_entries=config["IMAGE_CACHE_MAX_ENTRIES"],
        timeout=config["IMAGE_FETCH_TIMEOUT"],
    )
    pdf_cache = PdfCache(
        ttl_seconds=config["PDF_CACHE_TTL_SECONDS"],
        max_entries=config["PDF_CACHE_MAX_ENTRIES"],
    )
    qr_cache = QRCodeCache(
        ttl_seconds=config["QR_CACHE_TTL_SECONDS"],
        max_entries=config["QR_CACHE_MAX_ENTRIES"],
    )
    store = ObjectStore(config["SITE_ROOT"], public_base_url=config["PUBLIC_BASE_URL"])
    issuer = CertificateIssuer(
        image_cache,
        pdf_cache,
        qr_cache,
        store,
        public_base_url=config["PUBLIC_BASE_URL"],
        font_scale=config["FONT_SCALE_FACTOR"],
    )
    return Services(image_cache, pdf_cache, qr_cache, store, issuer)


def create_app():
    from .services.image_cache import (
        IMAGE_CACHE_MAX_ENTRIES,
        IMAGE_CACHE_TTL_SECONDS,
        IMAGE_FETCH_TIMEOUT,
    )
    from .services.pdf_cache import PDF_CACHE_MAX_ENTRIES, PDF_CACHE_TTL_SECONDS
    from .services.qrcode_cache import QR_CACHE_MAX_ENTRIES, QR_CACHE_TTL_SECONDS
    from .shared.layout import FONT_SCALE_FACTOR

    app = Flask(__name__)
    app.secret_key = os.getenv("SECRET_KEY", "dev")

    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv(
        "DATABASE_URL", "sqlite:///certforms.db"
    )
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024

    app.config["SITE_ROOT"] = os.getenv("SITE_ROOT", "/srv")
    app.config["PUBLIC_BASE_URL"] = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")
    app.config["ADMIN_API_TOKEN"] = os.getenv("ADMIN_API_TOKEN")

    app.config["IMAGE_CACHE_TTL_SECONDS"] = _env_number("IMAGE_CACHE_TTL_SECONDS", IMAGE_CACHE_TTL_SECONDS)
    app.config["IMAGE_CACHE_MAX_ENTRIES"] = _env_number("IMAGE_CACHE_MAX_ENTRIES", IMAGE_CACHE_MAX_ENTRIES)
    app.config["IMAGE_FETCH_TIMEOUT"] = _env_number("IMAGE_FETCH_TIMEOUT", IMAGE_FETCH_TIMEOUT, float)
    app.config["PDF_CACHE_TTL_SECONDS"] = _env_number("PDF_CACHE_TTL_SECONDS", PDF_CACHE_TTL_SECONDS)
    app.config["PDF_CACHE_MAX_ENTRIES"] = _env_number("PDF_CACHE_MAX_ENTRIES", PDF_CACHE_MAX_ENTRIES)
    app.config["QR_CACHE_TTL_SECONDS"] = _env_number("QR_CACHE_TTL_SECONDS", QR_CACHE_TTL_SECONDS)
    app.config["QR_CACHE_MAX_ENTRIES"] = _env_number("QR_CACHE_MAX_ENTRIES", QR_CACHE_MAX_ENTRIES)
    app.config["FONT_SCALE_FACTOR"] = _env_number("FONT_SCALE_FACTOR", FONT_SCALE_FACTOR, float)

    db.init_app(app)
    app.extensions["certforms"] = build_services(app)

    from .routes.issue import bp as issue_bp
    from .routes.issue import verify_bp
    from .routes.templates import bp as templates_bp

    app.register_blueprint(issue_bp)
    app.register_blueprint(verify_bp)
    app.register_blueprint(templates_bp)

    @app.get("/health")
    def health():  # pragma: no cover - simple healthcheck
        return "OK", 200

    @app.get("/files/<bucket>/<path:filename>")
    def stored_file(bucket: str, filename: str):
        store = services().store
        if bucket != store.bucket:
            abort(404)
        return send_from_directory(os.path.abspath(store.root), filename)

    @app.errorhandler(413)
    def too_large(_exc):
        return jsonify({"error": "Request too large."}), 413

    return app

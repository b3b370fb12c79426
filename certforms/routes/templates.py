from __future__ import annotations

import hmac
from functools import wraps
from io import BytesIO

from flask import Blueprint, current_app, jsonify, request, send_file

from ..app import db, services
from ..models import AuditLog, CertificateTemplate, EmailLog
from ..services.issuance import load_template
from ..services.preview import render_template_preview
from ..shared.elements import TemplateValidationError, parse_template_design
from ..shared.errors import IssuanceError

bp = Blueprint("templates", __name__, url_prefix="/api")

EDITABLE_FIELDS = ("title", "description", "owner_id", "template_data", "placeholders", "form_design")


def admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_TOKEN")
        header = request.headers.get("Authorization", "")
        token = header[7:] if header.startswith("Bearer ") else ""
        if not expected or not token or not hmac.compare_digest(token, expected):
            return jsonify({"error": "Unauthorized."}), 401
        return fn(*args, **kwargs)

    return wrapper


def _apply_fields(template: CertificateTemplate, payload: dict) -> None:
    for name in EDITABLE_FIELDS:
        if name in payload:
            setattr(template, name, payload[name])
    if not template.title:
        raise TemplateValidationError("Template title is required")
    parse_template_design(template.template_data, template.placeholders)


@bp.get("/templates/public/<link_id>")
def public_template(link_id: str):
    template = (
        db.session.query(CertificateTemplate)
        .filter_by(public_link_id=link_id, is_active=True)
        .one_or_none()
    )
    if template is None:
        return jsonify({"error": "Certificate template not found or inactive."}), 404
    return jsonify(template.to_public_dict())


@bp.post("/templates")
@admin_required
def create_template():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid request payload."}), 400
    template = CertificateTemplate()
    try:
        _apply_fields(template, payload)
    except TemplateValidationError as exc:
        return jsonify({"error": exc.user_message()}), exc.status_code
    db.session.add(template)
    db.session.commit()
    current_app.logger.info("[TEMPLATE] created id=%s", template.id)
    return jsonify({"id": template.id, "public_link_id": template.public_link_id}), 201


@bp.put("/templates/<template_id>")
@admin_required
def update_template(template_id: str):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid request payload."}), 400
    try:
        template = load_template(template_id, active_only=False)
        _apply_fields(template, payload)
    except IssuanceError as exc:
        db.session.rollback()
        return jsonify({"error": exc.user_message()}), exc.status_code
    db.session.commit()
    svc = services()
    removed_pdfs = svc.pdf_cache.invalidate_template(template.id)
    removed_images = svc.image_cache.invalidate_stale()
    current_app.logger.info(
        "[TEMPLATE] updated id=%s pdf_evicted=%s images_evicted=%s",
        template.id,
        removed_pdfs,
        removed_images,
    )
    return jsonify({"id": template.id, "public_link_id": template.public_link_id})


@bp.delete("/templates/<template_id>")
@admin_required
def deactivate_template(template_id: str):
    try:
        template = load_template(template_id, active_only=False)
    except IssuanceError as exc:
        return jsonify({"error": exc.user_message()}), exc.status_code
    template.is_active = False
    db.session.commit()
    services().pdf_cache.invalidate_template(template.id)
    current_app.logger.info("[TEMPLATE] deactivated id=%s", template.id)
    return jsonify({"id": template.id, "is_active": False})


@bp.get("/templates/<template_id>/thumbnail")
@admin_required
def template_thumbnail(template_id: str):
    svc = services()
    try:
        template = load_template(template_id, active_only=False)
        preview = render_template_preview(
            template,
            image_cache=svc.image_cache,
            qr_cache=svc.qr_cache,
            pdf_cache=svc.pdf_cache,
            public_base_url=current_app.config["PUBLIC_BASE_URL"],
            font_scale=current_app.config["FONT_SCALE_FACTOR"],
        )
    except IssuanceError as exc:
        return jsonify({"error": exc.user_message()}), exc.status_code
    except Exception:
        current_app.logger.exception("Certificate preview failed")
        return jsonify({"error": "Preview could not be rendered."}), 500
    response = send_file(
        BytesIO(preview.pdf),
        mimetype="application/pdf",
        download_name=f"preview-{template.id}.pdf",
    )
    response.headers["X-Render-Warnings"] = str(len(preview.warnings))
    return response


@bp.get("/cache-stats")
@admin_required
def cache_stats():
    return jsonify({cache.name: cache.stats() for cache in services().caches()})


@bp.post("/cache/clean")
@admin_required
def clean_caches():
    return jsonify({cache.name: cache.clean_expired() for cache in services().caches()})


LOG_PAGE_SIZE = 50


@bp.get("/templates/<template_id>/email-logs")
@admin_required
def email_logs(template_id: str):
    logs = (
        db.session.query(EmailLog)
        .filter_by(template_id=template_id)
        .order_by(EmailLog.sent_at.desc(), EmailLog.id.desc())
        .limit(LOG_PAGE_SIZE)
        .all()
    )
    return jsonify([log.to_dict() for log in logs])


@bp.delete("/templates/<template_id>/email-logs")
@admin_required
def clear_email_logs(template_id: str):
    removed = db.session.query(EmailLog).filter_by(template_id=template_id).delete()
    db.session.commit()
    current_app.logger.info("[MAIL-LOG] cleared template=%s rows=%s", template_id, removed)
    return jsonify({"deleted": removed})


@bp.get("/audit-logs")
@admin_required
def audit_logs():
    query = db.session.query(AuditLog)
    for name in ("template_id", "certificate_number", "action"):
        value = request.args.get(name)
        if value:
            query = query.filter(getattr(AuditLog, name) == value)
    logs = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(LOG_PAGE_SIZE).all()
    return jsonify([log.to_dict() for log in logs])

from __future__ import annotations

from io import BytesIO

from flask import Blueprint, abort, current_app, jsonify, request, send_file
from sqlalchemy import func, or_

from ..app import db, services
from ..models import IssuedCertificate
from ..services.issuance import IssueRequest, load_template
from ..shared.errors import IssuanceError, StorageError
from ..shared.validation import (
    only_digits,
    parse_date,
    sanitize_input,
    submission_hash,
    validate_cpf,
    validate_date_of_birth,
)

bp = Blueprint("issue", __name__, url_prefix="/api")


def _error(exc: IssuanceError):
    return jsonify({"error": exc.user_message()}), exc.status_code


@bp.post("/issue-certificate")
def issue_certificate():
    payload = request.get_json(silent=True)
    try:
        result = services().issuer.issue(IssueRequest.from_payload(payload))
    except IssuanceError as exc:
        current_app.logger.warning(
            "[CERT-REJECT] status=%s error=%s", exc.status_code, exc
        )
        return _error(exc)
    except Exception:
        current_app.logger.exception("Certificate issuance failed")
        return jsonify({"error": "Certificate could not be issued."}), 500

    body = result.certificate.to_dict()
    body["reused"] = result.reused
    body["warnings"] = [
        {"element_id": w.element_id, "type": w.element_type, "reason": w.reason}
        for w in result.warnings
    ]
    return jsonify(body), 201 if result.created and not result.reused else 200


@bp.post("/check-certificate")
def check_certificate():
    payload = request.get_json(silent=True) or {}
    template_id = str(payload.get("template_id") or "")
    cpf = str(payload.get("cpf") or payload.get("recipient_cpf") or "")
    dob = str(payload.get("dob") or payload.get("recipient_dob") or "")
    if not validate_cpf(cpf):
        return jsonify({"error": "Invalid CPF."}), 400
    if not validate_date_of_birth(dob):
        return jsonify({"error": "Invalid date of birth."}), 400
    try:
        load_template(template_id)
    except IssuanceError as exc:
        return _error(exc)

    clean_cpf = only_digits(cpf)
    iso_dob = parse_date(dob).isoformat()
    certificate = (
        db.session.query(IssuedCertificate)
        .filter_by(template_id=template_id, recipient_cpf=clean_cpf, recipient_dob=iso_dob)
        .order_by(IssuedCertificate.issued_at.desc())
        .first()
    )
    if certificate is None:
        return jsonify({"error": "No certificate found."}), 404

    if certificate.data_hash:
        expected = submission_hash(
            template_id, clean_cpf, iso_dob, certificate.recipient_data or {}
        )
        if expected != certificate.data_hash:
            current_app.logger.error(
                "[CERT-INTEGRITY] number=%s stored=%s expected=%s",
                certificate.certificate_number,
                certificate.data_hash,
                expected,
            )
            return jsonify({"error": "Certificate data failed the integrity check."}), 400

    return jsonify(
        {
            "id": certificate.id,
            "certificate_number": certificate.certificate_number,
            "pdf_url": certificate.pdf_url,
            "recipient_data": certificate.recipient_data or {},
        }
    )


def _find_certificate(identifier: str) -> IssuedCertificate:
    certificate = (
        db.session.query(IssuedCertificate)
        .filter(
            or_(
                IssuedCertificate.id == identifier,
                IssuedCertificate.certificate_number == identifier,
            )
        )
        .first()
    )
    if certificate is None:
        abort(404)
    return certificate


@bp.get("/certificates/<identifier>")
def certificate_detail(identifier: str):
    return jsonify(_public_certificate(_find_certificate(identifier)))


@bp.get("/certificates/<identifier>/download")
def download_certificate(identifier: str):
    certificate = _find_certificate(identifier)
    if not certificate.pdf_path:
        return jsonify({"error": "Certificate PDF not available."}), 404
    try:
        data = services().store.read(certificate.pdf_path)
    except StorageError:
        current_app.logger.exception(
            "[CERT-DOWNLOAD] missing file number=%s path=%s",
            certificate.certificate_number,
            certificate.pdf_path,
        )
        return jsonify({"error": "Certificate PDF not available."}), 404
    return send_file(
        BytesIO(data),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"certificado-{certificate.certificate_number}.pdf",
    )


SEARCH_MIN_LENGTH = 3
SEARCH_MAX_LENGTH = 100
SEARCH_LIMIT = 50


@bp.get("/search-certificates")
def search_certificates():
    """Exact, case-insensitive lookup by certificate number, recipient email or CPF."""
    raw = (request.args.get("q") or "").strip()
    query = sanitize_input(raw)
    if not SEARCH_MIN_LENGTH <= len(query) <= SEARCH_MAX_LENGTH:
        current_app.logger.warning("[CERT-SEARCH] rejected query length=%s", len(raw))
        return jsonify({"error": "Invalid search query."}), 400

    needle = query.lower()
    clauses = [
        func.lower(IssuedCertificate.certificate_number) == needle,
        func.lower(IssuedCertificate.recipient_email) == needle,
    ]
    if validate_cpf(query):
        clauses.append(IssuedCertificate.recipient_cpf == only_digits(query))
    certificates = (
        db.session.query(IssuedCertificate)
        .filter(or_(*clauses))
        .order_by(IssuedCertificate.issued_at.desc())
        .limit(SEARCH_LIMIT)
        .all()
    )
    results = [_public_certificate(certificate) for certificate in certificates]
    return jsonify({"certificates": results, "total": len(results)})


def _public_certificate(certificate: IssuedCertificate) -> dict:
    body = certificate.to_dict()
    body.pop("data_hash", None)
    body["template_title"] = certificate.template.title if certificate.template else None
    return body


verify_bp = Blueprint("verify", __name__)


@verify_bp.get("/certificates/<certificate_number>")
def verify_certificate(certificate_number: str):
    """Target of the QR code printed on every certificate."""
    certificate = (
        db.session.query(IssuedCertificate)
        .filter_by(certificate_number=certificate_number)
        .one_or_none()
    )
    if certificate is None:
        return jsonify({"valid": False, "error": "Certificate not found."}), 404
    body = _public_certificate(certificate)
    body.pop("recipient_email", None)
    body["valid"] = True
    return jsonify(body)

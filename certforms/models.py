from __future__ import annotations

import hashlib
import json
import secrets
import uuid
from datetime import datetime, timezone

from .app import db
from .shared.elements import TemplateDesign, parse_template_design


def _uuid() -> str:
    return str(uuid.uuid4())


def _public_link_id() -> str:
    return secrets.token_urlsafe(12)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CertificateTemplate(db.Model):
    __tablename__ = "certificate_templates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    owner_id = db.Column(db.String(64))
    template_data = db.Column(db.JSON, nullable=False, default=dict)
    placeholders = db.Column(db.JSON, nullable=False, default=list)
    form_design = db.Column(db.JSON, nullable=False, default=dict)
    public_link_id = db.Column(
        db.String(64), unique=True, nullable=False, default=_public_link_id
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    certificates = db.relationship(
        "IssuedCertificate", back_populates="template", lazy="dynamic"
    )

    def design(self) -> TemplateDesign:
        return parse_template_design(self.template_data, self.placeholders)

    def design_version(self) -> str:
        """Short digest of everything that changes the rendered page."""
        raw = json.dumps(
            {"template_data": self.template_data, "placeholders": self.placeholders},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    def email_config(self) -> dict:
        config = (self.form_design or {}).get("emailConfig") or {}
        return config if isinstance(config, dict) else {}

    def form_fields(self) -> list[dict]:
        fields = (self.form_design or {}).get("fields") or []
        return [field for field in fields if isinstance(field, dict)]

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "placeholders": self.placeholders or [],
            "form_design": {
                key: value
                for key, value in (self.form_design or {}).items()
                if key != "emailConfig"
            },
            "public_link_id": self.public_link_id,
        }


class IssuedCertificate(db.Model):
    __tablename__ = "issued_certificates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    certificate_number = db.Column(db.String(64), unique=True, nullable=False)
    template_id = db.Column(
        db.String(36),
        db.ForeignKey("certificate_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    recipient_data = db.Column(db.JSON, nullable=False, default=dict)
    recipient_email = db.Column(db.String(254), index=True)
    recipient_cpf = db.Column(db.String(14), index=True)
    recipient_dob = db.Column(db.String(10))
    photo_url = db.Column(db.Text)
    pdf_url = db.Column(db.Text)
    pdf_path = db.Column(db.String(255))
    data_hash = db.Column(db.String(64))
    issued_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    template = db.relationship("CertificateTemplate", back_populates="certificates")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "certificate_number": self.certificate_number,
            "template_id": self.template_id,
            "recipient_data": self.recipient_data or {},
            "recipient_email": self.recipient_email,
            "photo_url": self.photo_url,
            "pdf_url": self.pdf_url,
            "data_hash": self.data_hash,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
        }


class EmailLog(db.Model):
    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.String(36),
        db.ForeignKey("certificate_templates.id", ondelete="CASCADE"),
        index=True,
    )
    certificate_number = db.Column(db.String(64), index=True)
    to_email = db.Column(db.String(320), nullable=False)
    subject = db.Column(db.String(255))
    status = db.Column(db.String(16), nullable=False)
    detail = db.Column(db.Text)
    message_id = db.Column(db.String(255))
    sent_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "certificate_number": self.certificate_number,
            "to_email": self.to_email,
            "subject": self.subject,
            "status": self.status,
            "detail": self.detail,
            "message_id": self.message_id,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }


class AuditLog(db.Model):
    """Issuance trail. Rows outlive their templates, so ``template_id`` is not a foreign key."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    template_id = db.Column(db.String(36), index=True)
    certificate_number = db.Column(db.String(64), index=True)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "template_id": self.template_id,
            "certificate_number": self.certificate_number,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

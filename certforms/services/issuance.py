"""Certificate issuance: validate, render (or reuse), store, record, notify."""

from __future__ import annotations

import html
import logging
import secrets
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Callable, Mapping, Optional

from flask import Flask, current_app
from sqlalchemy.exc import SQLAlchemyError

from .. import emailer
from ..app import db
from ..models import AuditLog, CertificateTemplate, EmailLog, IssuedCertificate, utcnow
from ..shared.elements import ImageElement, TemplateDesign
from ..shared.errors import (
    IssueValidationError,
    PersistenceError,
    StorageError,
    TemplateNotFoundError,
)
from ..shared.layout import FONT_SCALE_FACTOR
from ..shared.placeholders import expand_email_aliases, recipient_email, substitute
from ..shared.renderer import RenderWarning, is_remote_ref, render_certificate
from ..shared.storage import ObjectStore, certificate_pdf_path
from ..shared.validation import (
    generate_certificate_number,
    only_digits,
    parse_date,
    sanitize_recipient_data,
    submission_hash,
    validate_cpf,
    validate_date_of_birth,
    validate_email,
)
from .image_cache import ImageCache
from .pdf_cache import PdfCache
from .qrcode_cache import QRCodeCache

logger = logging.getLogger("certforms.issue")

VERIFICATION_QR_OPTIONS = {"error_correction": "H", "margin": 2, "width": 256}

AUDIT_ISSUED = "CERT_ISSUED"
AUDIT_REISSUED = "CERT_REISSUED"
AUDIT_REUSED = "CERT_REUSED"
AUDIT_FAILED = "CERT_FAILED"


@dataclass(frozen=True)
class IssueRequest:
    template_id: str
    recipient_data: Mapping[str, Any]
    recipient_cpf: str
    recipient_dob: str
    certificate_number_to_update: Optional[str] = None
    photo_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "IssueRequest":
        if not isinstance(payload, Mapping):
            raise IssueValidationError("Request body must be a JSON object.")
        recipient_data = payload.get("recipient_data")
        if not isinstance(recipient_data, Mapping):
            raise IssueValidationError("Recipient data is required.")
        return cls(
            template_id=str(payload.get("template_id") or ""),
            recipient_data=dict(recipient_data),
            recipient_cpf=str(payload.get("recipient_cpf") or ""),
            recipient_dob=str(payload.get("recipient_dob") or ""),
            certificate_number_to_update=payload.get("certificate_number_to_update") or None,
            photo_url=payload.get("photo_url") or None,
        )


@dataclass(frozen=True)
class IssuanceResult:
    certificate: IssuedCertificate
    created: bool = True
    reused: bool = False
    cache_hit: bool = False
    warnings: tuple[RenderWarning, ...] = ()
    notification: Optional[Future] = field(default=None, compare=False)


@dataclass(frozen=True)
class PreparedDesign:
    design: TemplateDesign
    recipient_data: dict[str, Any]
    resolved: dict[str, bool]


def load_template(template_id: str, *, active_only: bool = True) -> CertificateTemplate:
    template = db.session.get(CertificateTemplate, template_id) if template_id else None
    if template is None or (active_only and not template.is_active):
        raise TemplateNotFoundError(f"template {template_id!r} not found or inactive")
    return template


def embed_remote_images(
    design: TemplateDesign,
    recipient_data: Mapping[str, Any],
    image_cache: ImageCache,
) -> PreparedDesign:
    """Swap every remote image reference for a data URL from the image cache.

    Fetches run concurrently and all of them settle; a failed fetch leaves an
    empty reference so the renderer skips that element.
    """
    data = dict(recipient_data)
    urls: list[str] = []
    if is_remote_ref(design.background_image):
        urls.append(design.background_image)
    for element in design.elements:
        if isinstance(element, ImageElement) and is_remote_ref(element.image_ref):
            urls.append(element.image_ref)
    placeholder_ids = design.image_placeholder_ids()
    for placeholder_id in placeholder_ids:
        if is_remote_ref(data.get(placeholder_id)):
            urls.append(data[placeholder_id])

    embedded = image_cache.resolve_many(urls)

    def _swap(ref):
        return embedded.get(ref, "") if is_remote_ref(ref) else ref

    elements = tuple(
        replace(element, image_ref=_swap(element.image_ref))
        if isinstance(element, ImageElement)
        else element
        for element in design.elements
    )
    design = replace(
        design,
        background_image=_swap(design.background_image) or None,
        elements=elements,
    )
    for placeholder_id in placeholder_ids:
        if is_remote_ref(data.get(placeholder_id)):
            data[placeholder_id] = _swap(data[placeholder_id])
    return PreparedDesign(
        design=design,
        recipient_data=data,
        resolved={url: bool(embedded.get(url)) for url in sorted(set(urls))},
    )


class CertificateIssuer:
    def __init__(
        self,
        image_cache: ImageCache,
        pdf_cache: PdfCache,
        qr_cache: QRCodeCache,
        store: ObjectStore,
        *,
        public_base_url: str = "",
        font_scale: float = FONT_SCALE_FACTOR,
        notifier: Optional[Executor] = None,
        mailer: Callable[..., dict] = emailer.send,
        today: Callable[[], date] = date.today,
        number_factory: Callable[[], str] = generate_certificate_number,
    ) -> None:
        self.image_cache = image_cache
        self.pdf_cache = pdf_cache
        self.qr_cache = qr_cache
        self.store = store
        self.public_base_url = public_base_url.rstrip("/")
        self.font_scale = font_scale
        self.notifier = notifier or ThreadPoolExecutor(max_workers=2, thread_name_prefix="mail")
        self.mailer = mailer
        self.today = today
        self.number_factory = number_factory

    def verification_url(self, certificate_number: str) -> str:
        return f"{self.public_base_url}/certificates/{certificate_number}"

    def _validate(self, request: IssueRequest) -> tuple[dict[str, Any], str, str]:
        if not request.template_id:
            raise IssueValidationError("Template id is required.")
        if not request.recipient_data:
            raise IssueValidationError("Recipient data is required.")
        if not validate_cpf(request.recipient_cpf):
            raise IssueValidationError("Invalid CPF.")
        if not validate_date_of_birth(request.recipient_dob, today=self.today()):
            raise IssueValidationError("Invalid date of birth.")
        if request.photo_url and not is_remote_ref(request.photo_url):
            raise IssueValidationError("Photo URL must be an http(s) URL.")
        data = sanitize_recipient_data(request.recipient_data)
        dob = parse_date(request.recipient_dob).isoformat()
        return data, only_digits(request.recipient_cpf), dob

    @staticmethod
    def _with_form_aliases(template: CertificateTemplate, data: dict[str, Any]) -> dict[str, Any]:
        fields = template.form_fields()
        if fields:
            data = {**data, **expand_email_aliases(fields, data)}
        email = recipient_email(data)
        if email and not validate_email(email):
            raise IssueValidationError("Invalid email.")
        return data

    def _cache_data(
        self,
        template: CertificateTemplate,
        recipient_data: Mapping[str, Any],
        certificate_number: str,
        issue_date: date,
        resolved: Mapping[str, bool],
        has_qr: bool,
    ) -> dict[str, Any]:
        return {
            "recipient": dict(recipient_data),
            "certificate_number": certificate_number,
            "issue_date": issue_date.isoformat(),
            "template_version": template.design_version(),
            "images": dict(resolved),
            "qr": has_qr,
            "font_scale": self.font_scale,
        }

    def _find_duplicate(self, template_id: str, cpf: str, dob: str, data_hash: str):
        return (
            db.session.query(IssuedCertificate)
            .filter_by(
                template_id=template_id,
                recipient_cpf=cpf,
                recipient_dob=dob,
                data_hash=data_hash,
            )
            .order_by(IssuedCertificate.issued_at.desc())
            .first()
        )

    def _find_for_update(self, number: str, cpf: str, dob: str):
        return (
            db.session.query(IssuedCertificate)
            .filter_by(certificate_number=number, recipient_cpf=cpf, recipient_dob=dob)
            .one_or_none()
        )

    def issue(self, request: IssueRequest) -> IssuanceResult:
        try:
            return self._issue(request)
        except Exception as exc:
            self._audit(
                AUDIT_FAILED,
                template_id=request.template_id,
                certificate_number=request.certificate_number_to_update,
                details=f"status={getattr(exc, 'status_code', 500)} error={exc}",
            )
            raise

    def _issue(self, request: IssueRequest) -> IssuanceResult:
        data, cpf, dob = self._validate(request)
        template = load_template(request.template_id)
        data = self._with_form_aliases(template, data)
        design = template.design()
        data_hash = submission_hash(template.id, cpf, dob, data)

        existing = None
        if request.certificate_number_to_update:
            existing = self._find_for_update(request.certificate_number_to_update, cpf, dob)
            if existing is None:
                logger.info(
                    "[CERT-REISSUE-MISMATCH] number=%s template=%s; issuing a new certificate",
                    request.certificate_number_to_update,
                    template.id,
                )
        else:
            duplicate = self._find_duplicate(template.id, cpf, dob, data_hash)
            if duplicate is not None:
                logger.info(
                    "[CERT-DEDUP] number=%s template=%s",
                    duplicate.certificate_number,
                    template.id,
                )
                self._audit(
                    AUDIT_REUSED,
                    template_id=template.id,
                    certificate_number=duplicate.certificate_number,
                )
                return IssuanceResult(certificate=duplicate, created=False, reused=True)

        number = existing.certificate_number if existing is not None else self.number_factory()
        link = self.verification_url(number)
        issue_date = self.today()

        prepared = embed_remote_images(design, data, self.image_cache)
        qr_image = ""
        if design.has_qrcode():
            qr_image = self.qr_cache.get_qrcode_data_url(link, VERIFICATION_QR_OPTIONS)

        if existing is not None:
            old_issue_date = existing.issued_at.date() if existing.issued_at else issue_date
            self.pdf_cache.force_invalidate(
                template.id,
                self._cache_data(
                    template,
                    existing.recipient_data or {},
                    number,
                    old_issue_date,
                    prepared.resolved,
                    bool(qr_image),
                ),
            )

        cache_data = self._cache_data(
            template, data, number, issue_date, prepared.resolved, bool(qr_image)
        )
        pdf = self.pdf_cache.get(template.id, cache_data)
        cache_hit = pdf is not None
        warnings: tuple[RenderWarning, ...] = ()
        if pdf is None:
            outcome = render_certificate(
                prepared.design,
                prepared.recipient_data,
                qr_image or None,
                number,
                issue_date=issue_date,
                certificate_link=link,
                font_scale=self.font_scale,
            )
            pdf = outcome.pdf
            warnings = outcome.warnings
            self.pdf_cache.set(template.id, cache_data, pdf)

        # a re-issue writes a new revision; the old file stays until the row points away from it
        revision = secrets.token_hex(4) if existing is not None else None
        path = certificate_pdf_path(number, revision)
        try:
            pdf_url = self.store.upload(path, pdf, "application/pdf")
        except StorageError:
            logger.exception("[CERT-UPLOAD-FAIL] number=%s path=%s", number, path)
            raise
        except Exception as exc:
            logger.exception("[CERT-UPLOAD-FAIL] number=%s path=%s", number, path)
            raise StorageError(str(exc)) from exc

        certificate = self._persist(
            existing,
            template=template,
            number=number,
            data=data,
            cpf=cpf,
            dob=dob,
            photo_url=request.photo_url,
            pdf_url=pdf_url,
            pdf_path=path,
            data_hash=data_hash,
            audit_details=f"path={path} cache={'hit' if cache_hit else 'miss'} warnings={len(warnings)}",
        )
        logger.info(
            "[CERT] number=%s template=%s path=%s cache=%s warnings=%s reissue=%s",
            number,
            template.id,
            path,
            "hit" if cache_hit else "miss",
            len(warnings),
            existing is not None,
        )
        notification = self.notify(template, data, number, pdf_url, pdf)
        return IssuanceResult(
            certificate=certificate,
            created=existing is None,
            cache_hit=cache_hit,
            warnings=warnings,
            notification=notification,
        )

    def _persist(
        self,
        existing,
        *,
        template,
        number,
        data,
        cpf,
        dob,
        photo_url,
        pdf_url,
        pdf_path,
        data_hash,
        audit_details="",
    ):
        old_path = existing.pdf_path if existing is not None else None
        try:
            if existing is not None:
                certificate = existing
                certificate.recipient_data = data
                certificate.issued_at = utcnow()
            else:
                certificate = IssuedCertificate(
                    certificate_number=number,
                    template_id=template.id,
                    recipient_data=data,
                    recipient_cpf=cpf,
                    recipient_dob=dob,
                )
                db.session.add(certificate)
            certificate.recipient_email = recipient_email(data)
            certificate.photo_url = photo_url
            certificate.pdf_url = pdf_url
            certificate.pdf_path = pdf_path
            certificate.data_hash = data_hash
            db.session.add(
                AuditLog(
                    action=AUDIT_REISSUED if existing is not None else AUDIT_ISSUED,
                    template_id=template.id,
                    certificate_number=number,
                    details=audit_details,
                )
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("[CERT-DB-FAIL] number=%s template=%s", number, template.id)
            self._discard(pdf_path)
            raise PersistenceError(str(exc)) from exc
        if old_path and old_path != pdf_path:
            self._discard(old_path)
        return certificate

    def _discard(self, path: str) -> None:
        try:
            self.store.remove(path)
        except StorageError:
            logger.warning("[CERT-ORPHAN] could not remove %s", path)

    def _audit(self, action: str, *, template_id=None, certificate_number=None, details="") -> None:
        """Record an audit row in its own commit. A failing write is logged, never raised."""
        try:
            db.session.add(
                AuditLog(
                    action=action,
                    template_id=str(template_id or "")[:36] or None,
                    certificate_number=str(certificate_number or "")[:64] or None,
                    details=details,
                )
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("[AUDIT-FAIL] action=%s template=%s", action, template_id)

    def notify(
        self,
        template: CertificateTemplate,
        recipient_data: Mapping[str, Any],
        certificate_number: str,
        pdf_url: str,
        pdf: bytes,
    ) -> Optional[Future]:
        """Queue the notification email; the returned future is never awaited here."""
        config = template.email_config()
        if not config.get("enabled"):
            logger.info("[MAIL-SKIP] template=%s reason=disabled", template.id)
            return None
        to = recipient_email(recipient_data)
        if not to:
            logger.warning("[MAIL-SKIP] number=%s reason=no-recipient", certificate_number)
            return None
        subject, body = compose_email(config, recipient_data, certificate_number, pdf_url)
        attachments = None
        if config.get("attachPdf"):
            attachments = [emailer.Attachment(f"certificado-{certificate_number}.pdf", pdf)]
        sender = None
        if config.get("senderEmail"):
            sender = emailer.Sender(config["senderEmail"], config.get("senderName") or "")
        smtp = emailer.SmtpConfig.from_mapping(config.get("smtp"))
        return self.notifier.submit(
            _deliver,
            current_app._get_current_object(),
            self.mailer,
            template.id,
            certificate_number,
            to=to,
            subject=subject,
            html=body,
            attachments=attachments,
            smtp=smtp,
            sender=sender,
        )


def compose_email(
    config: Mapping[str, Any],
    recipient_data: Mapping[str, Any],
    certificate_number: str,
    pdf_url: str,
) -> tuple[str, str]:
    subject_values = {
        **recipient_data,
        "certificate_link": pdf_url,
        "certificate_id": certificate_number,
    }
    body_values = {
        key: html.escape(str(value)) if value is not None else ""
        for key, value in subject_values.items()
    }
    subject = substitute(config.get("subject") or "Seu certificado", subject_values)
    body = substitute(
        config.get("body") or '<p>Seu certificado: <a href="{{certificate_link}}">{{certificate_id}}</a></p>',
        body_values,
    )
    return subject, body


def _deliver(
    app: Flask,
    mailer: Callable[..., dict],
    template_id: str,
    certificate_number: str,
    **kwargs,
) -> dict:
    try:
        result = mailer(**kwargs)
    except Exception as exc:
        logger.exception("[MAIL-FAIL] number=%s", certificate_number)
        result = {"ok": False, "detail": str(exc), "message_id": None}
    else:
        if not result.get("ok"):
            logger.warning(
                "[MAIL-FAIL] number=%s detail=%s", certificate_number, result.get("detail")
            )
    record_email(app, template_id, certificate_number, kwargs.get("to"), kwargs.get("subject"), result)
    return result


def email_status(result: Mapping[str, Any]) -> str:
    if result.get("ok"):
        return "sent"
    if str(result.get("detail") or "").startswith("stub"):
        return "stub"
    return "failed"


def record_email(
    app: Flask,
    template_id: str,
    certificate_number: str,
    to: Any,
    subject: Optional[str],
    result: Mapping[str, Any],
) -> None:
    """Write one ``email_logs`` row from the mail worker thread."""
    to_email = ", ".join(to) if isinstance(to, (list, tuple)) else str(to or "")
    with app.app_context():
        try:
            db.session.add(
                EmailLog(
                    template_id=template_id,
                    certificate_number=certificate_number,
                    to_email=to_email[:320],
                    subject=(subject or "")[:255],
                    status=email_status(result),
                    detail=result.get("detail"),
                    message_id=result.get("message_id"),
                )
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("[MAIL-LOG-FAIL] number=%s", certificate_number)

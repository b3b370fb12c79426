from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

from ..models import CertificateTemplate
from ..shared.layout import FONT_SCALE_FACTOR
from ..shared.renderer import RenderWarning, render_certificate
from .image_cache import ImageCache
from .issuance import VERIFICATION_QR_OPTIONS, embed_remote_images
from .pdf_cache import PdfCache
from .qrcode_cache import QRCodeCache

PREVIEW_CERTIFICATE_NUMBER = "CERT-PREVIEW"


@dataclass(frozen=True)
class PreviewResult:
    pdf: bytes
    warnings: tuple[RenderWarning, ...]
    cached: bool = False


def sample_values(template: CertificateTemplate) -> dict[str, str]:
    design = template.design()
    values = {
        placeholder.id: f"[{placeholder.label}]"
        for placeholder in design.placeholders
        if placeholder.kind == "text"
    }
    values.setdefault("default_email", "[Email]")
    return values


def render_template_preview(
    template: CertificateTemplate,
    *,
    image_cache: ImageCache,
    qr_cache: QRCodeCache,
    pdf_cache: PdfCache,
    public_base_url: str = "",
    font_scale: float = FONT_SCALE_FACTOR,
    issue_date: Optional[date] = None,
) -> PreviewResult:
    issue_date = issue_date or date.today()
    cache_data = {
        "preview": True,
        "template_version": template.design_version(),
        "issue_date": issue_date.isoformat(),
        "font_scale": font_scale,
    }
    cached = pdf_cache.get(template.id, cache_data)
    if cached is not None:
        return PreviewResult(pdf=cached, warnings=(), cached=True)

    prepared = embed_remote_images(template.design(), sample_values(template), image_cache)
    qr_image = None
    if prepared.design.has_qrcode():
        link = f"{public_base_url.rstrip('/')}/certificates/{PREVIEW_CERTIFICATE_NUMBER}"
        qr_image = qr_cache.get_qrcode_data_url(link, VERIFICATION_QR_OPTIONS) or None
    outcome = render_certificate(
        prepared.design,
        prepared.recipient_data,
        qr_image,
        PREVIEW_CERTIFICATE_NUMBER,
        issue_date=issue_date,
        font_scale=font_scale,
    )
    if not outcome.warnings:
        pdf_cache.set(template.id, cache_data, outcome.pdf)
    return PreviewResult(pdf=outcome.pdf, warnings=outcome.warnings)

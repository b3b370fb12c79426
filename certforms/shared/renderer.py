from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import date
from io import BytesIO
from typing import Any, Mapping

from reportlab.lib.colors import Color, HexColor, black, white
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .elements import (
    Box,
    Element,
    ImageElement,
    ImagePlaceholderElement,
    PlaceholderElement,
    QRCodeElement,
    TemplateDesign,
    TextElement,
)
from .layout import (
    FONT_SCALE_FACTOR,
    VerticalPolicy,
    ascent_for,
    font_measure,
    layout_text_block,
    resolve_pdf_font,
    scaled_font_size,
)
from .placeholders import build_render_values, substitute

log = logging.getLogger("certforms.render")

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.\-]*)(?P<params>(;[^,;]+)*?),(?P<data>.*)$", re.S)

UNDERLINE_OFFSET = 0.12
STRIKE_OFFSET = 0.3


class ImageDecodeError(ValueError):
    """Raised when an image reference cannot be embedded."""


@dataclass(frozen=True)
class RenderWarning:
    element_id: str
    element_type: str
    reason: str


@dataclass(frozen=True)
class RenderOutcome:
    pdf: bytes
    warnings: tuple[RenderWarning, ...] = ()

    @property
    def degraded_elements(self) -> list[str]:
        return [warning.element_id for warning in self.warnings]


def is_remote_ref(value: Any) -> bool:
    return isinstance(value, str) and value.lower().startswith(("http://", "https://"))


def is_embeddable_image(value: Any) -> bool:
    if isinstance(value, (bytes, bytearray)):
        return bool(value)
    return isinstance(value, str) and value.startswith("data:image/")


def decode_data_url(value: str) -> tuple[str, bytes]:
    match = _DATA_URL_RE.match(value or "")
    if not match:
        raise ImageDecodeError("not a data URL")
    params = match.group("params") or ""
    payload = match.group("data")
    if ";base64" not in params:
        raise ImageDecodeError("only base64 data URLs are supported")
    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError(f"invalid base64 payload: {exc}") from None
    if not raw:
        raise ImageDecodeError("empty image payload")
    return match.group("mime") or "application/octet-stream", raw


def image_reader(value: Any) -> ImageReader:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif is_remote_ref(value):
        raise ImageDecodeError("remote image was not resolved before rendering")
    elif isinstance(value, str) and value:
        _, raw = decode_data_url(value)
    else:
        raise ImageDecodeError("no image supplied")
    return ImageReader(BytesIO(raw))


def parse_color(value: str | None, fallback: Color = black) -> Color:
    raw = (value or "").strip()
    if not raw:
        return fallback
    if raw.startswith("#") and len(raw) == 4:
        raw = "#" + "".join(ch * 2 for ch in raw[1:])
    return HexColor(raw)


class _PageRenderer:
    def __init__(
        self,
        design: TemplateDesign,
        values: Mapping[str, Any],
        recipient_data: Mapping[str, Any],
        qr_image: Any,
        font_scale: float,
    ) -> None:
        self.design = design
        self.values = values
        self.recipient_data = recipient_data
        self.qr_image = qr_image
        self.font_scale = font_scale
        self.width = design.canvas_width
        self.height = design.canvas_height
        self.warnings: list[RenderWarning] = []
        self.buffer = BytesIO()
        self.canvas = canvas.Canvas(
            self.buffer,
            pagesize=(self.width, self.height),
            invariant=1,
        )

    def warn(self, element_id: str, element_type: str, reason: str) -> None:
        log.warning(
            "[RENDER-SKIP] element=%s type=%s reason=%s",
            element_id,
            element_type,
            reason,
        )
        self.warnings.append(RenderWarning(element_id, element_type, reason))

    def _pdf_y(self, top: float, height: float = 0.0) -> float:
        return self.height - top - height

    def _draw_image(self, value: Any, box: Box) -> None:
        reader = image_reader(value)
        c = self.canvas
        c.drawImage(
            reader,
            box.x,
            self._pdf_y(box.y, box.height),
            width=box.width,
            height=box.height,
            mask="auto",
        )

    def draw_background(self) -> None:
        c = self.canvas
        try:
            fill = parse_color(self.design.background_color, fallback=white)
        except (ValueError, TypeError):
            self.warn("background", "background", f"invalid colour {self.design.background_color!r}")
            fill = white
        c.setFillColor(fill)
        c.rect(0, 0, self.width, self.height, stroke=0, fill=1)

        image = self.design.background_image
        if not image:
            return
        try:
            self._draw_image(image, Box(0, 0, self.width, self.height))
        except Exception as exc:
            self.warn("background", "background", str(exc))

    def draw_element(self, element: Element) -> None:
        if isinstance(element, QRCodeElement):
            if not self.qr_image:
                return
            self._draw_image(self.qr_image, element.box)
            return
        if isinstance(element, ImageElement):
            self._draw_image(element.image_ref, element.box)
            return
        if isinstance(element, ImagePlaceholderElement):
            value = self.recipient_data.get(element.placeholder_id)
            if not is_embeddable_image(value):
                self.warn(element.id, element.type, "no usable image for placeholder")
                return
            self._draw_image(value, element.box)
            return
        self._draw_text(element)

    def _draw_text(self, element: TextElement | PlaceholderElement) -> None:
        style = element.style
        text = substitute(element.content, self.values)
        if not text.strip():
            return
        font_notes: list[str] = []
        font_name = resolve_pdf_font(
            style.font_family, style.font_weight, style.font_style, font_notes
        )
        for note in font_notes:
            self.warn(element.id, element.type, note)
        font_size = scaled_font_size(style.font_size, self.font_scale)
        box = element.box
        block = layout_text_block(
            text,
            x=box.x,
            y=box.y,
            width=box.width,
            height=box.height,
            font_name=font_name,
            font_size=font_size,
            align=style.text_align,
            policy=VerticalPolicy.TOP,
        )
        try:
            color = parse_color(style.color)
        except (ValueError, TypeError):
            self.warn(element.id, element.type, f"invalid colour {style.color!r}; using black")
            color = black
        ascent = ascent_for(font_name, font_size)
        measure = font_measure(font_name, font_size)
        c = self.canvas
        c.setFont(font_name, font_size)
        c.setFillColor(color)
        c.setStrokeColor(color)
        c.setLineWidth(max(font_size / 18.0, 0.5))
        for line in block.lines:
            if not line.text:
                continue
            baseline = self._pdf_y(line.top + ascent)
            if style.text_align == "center":
                c.drawCentredString(line.x, baseline, line.text)
                start = line.x - measure(line.text) / 2
            elif style.text_align == "right":
                c.drawRightString(line.x, baseline, line.text)
                start = line.x - measure(line.text)
            else:
                c.drawString(line.x, baseline, line.text)
                start = line.x
            self._decorate(style.text_decoration, start, baseline, measure(line.text), font_size)

    def _decorate(self, decoration: str, start: float, baseline: float, width: float, size: float) -> None:
        if "underline" in decoration:
            y = baseline - size * UNDERLINE_OFFSET
            self.canvas.line(start, y, start + width, y)
        if "line-through" in decoration:
            y = baseline + size * STRIKE_OFFSET
            self.canvas.line(start, y, start + width, y)

    def render(self) -> RenderOutcome:
        self.draw_background()
        for element in self.design.ordered_elements():
            self.canvas.saveState()
            try:
                self.draw_element(element)
            except Exception as exc:
                log.exception("[RENDER-FAIL] element=%s type=%s", element.id, element.type)
                self.warnings.append(RenderWarning(element.id, element.type, str(exc)))
            finally:
                self.canvas.restoreState()
        self.canvas.showPage()
        self.canvas.save()
        return RenderOutcome(pdf=self.buffer.getvalue(), warnings=tuple(self.warnings))


def render_certificate(
    design: TemplateDesign,
    recipient_data: Mapping[str, Any],
    qr_image: Any = None,
    certificate_number: str = "",
    *,
    issue_date: date | None = None,
    certificate_link: str | None = None,
    font_scale: float = FONT_SCALE_FACTOR,
) -> RenderOutcome:
    """Render ``design`` to a single-page PDF sized to the canvas.

    All images must already be embeddable (data URLs or bytes). Any element
    that fails to draw is skipped and reported in ``RenderOutcome.warnings``.
    """
    values = build_render_values(
        recipient_data,
        certificate_number=certificate_number,
        issue_date=issue_date,
        certificate_link=certificate_link,
    )
    page = _PageRenderer(design, values, recipient_data, qr_image, font_scale)
    outcome = page.render()
    log.info(
        "[RENDER] size=%sx%s elements=%s warnings=%s bytes=%s",
        int(design.canvas_width),
        int(design.canvas_height),
        len(design.elements),
        len(outcome.warnings),
        len(outcome.pdf),
    )
    return outcome

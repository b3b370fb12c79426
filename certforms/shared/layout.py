from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Callable

from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.pdfmetrics import stringWidth

Measure = Callable[[str], float]

# The page is sized one PDF unit per editor pixel, so ReportLab needs no
# correction. The previous renderer measured in points on a pixel page and
# needed 4/3.
FONT_SCALE_FACTOR = 1.0
LEGACY_FONT_SCALE_FACTOR = 4 / 3

LINE_HEIGHT_FACTOR = 1.15

PDF_FONT_CHOICES: list[tuple[str, str]] = [
    ("Helvetica", "Helvetica"),
    ("Helvetica-Bold", "Helvetica Bold"),
    ("Helvetica-Oblique", "Helvetica Oblique"),
    ("Helvetica-BoldOblique", "Helvetica Bold Oblique"),
    ("Times-Roman", "Times Roman"),
    ("Times-Bold", "Times Bold"),
    ("Times-Italic", "Times Italic"),
    ("Times-BoldItalic", "Times Bold Italic"),
    ("Courier", "Courier"),
    ("Courier-Bold", "Courier Bold"),
    ("Courier-Oblique", "Courier Oblique"),
    ("Courier-BoldOblique", "Courier Bold Oblique"),
]

PDF_FONT_CODES: set[str] = {code for code, _ in PDF_FONT_CHOICES}

SAFE_FALLBACK_FAMILY = "helvetica"

# (regular, bold, italic, bold italic)
_FAMILY_VARIANTS: dict[str, tuple[str, str, str, str]] = {
    "helvetica": (
        "Helvetica",
        "Helvetica-Bold",
        "Helvetica-Oblique",
        "Helvetica-BoldOblique",
    ),
    "times": ("Times-Roman", "Times-Bold", "Times-Italic", "Times-BoldItalic"),
    "courier": ("Courier", "Courier-Bold", "Courier-Oblique", "Courier-BoldOblique"),
}

_FAMILY_ALIASES: dict[str, str] = {
    "helvetica": "helvetica",
    "arial": "helvetica",
    "verdana": "helvetica",
    "tahoma": "helvetica",
    "inter": "helvetica",
    "roboto": "helvetica",
    "opensans": "helvetica",
    "sansserif": "helvetica",
    "sans": "helvetica",
    "times": "times",
    "timesnewroman": "times",
    "timesroman": "times",
    "georgia": "times",
    "garamond": "times",
    "playfairdisplay": "times",
    "serif": "times",
    "courier": "courier",
    "couriernew": "courier",
    "monospace": "courier",
    "mono": "courier",
}

_WHITESPACE_RE = re.compile(r"[ \t\r\f\v]+")


class VerticalPolicy(str, enum.Enum):
    TOP = "top"
    CENTER = "center"


@dataclass(frozen=True)
class PlacedLine:
    text: str
    x: float
    top: float


@dataclass(frozen=True)
class TextBlock:
    lines: tuple[PlacedLine, ...]
    line_height: float
    font_size: float


def _normalize_family(family: str | None) -> str:
    first = (family or "").split(",")[0]
    return re.sub(r"[^a-z]", "", first.strip().strip("'\"").lower())


def is_bold(weight: str | int | None) -> bool:
    if weight is None:
        return False
    if isinstance(weight, int):
        return weight >= 600
    value = str(weight).strip().lower()
    if value.isdigit():
        return int(value) >= 600
    return value in {"bold", "bolder", "semibold", "extrabold", "black"}


def is_italic(style: str | None) -> bool:
    return (style or "").strip().lower() in {"italic", "oblique"}


def resolve_pdf_font(
    family: str | None,
    weight: str | int | None = None,
    style: str | None = None,
    warnings: list[str] | None = None,
) -> str:
    """Map an editor font description onto a PDF base font code."""
    if family in PDF_FONT_CODES:
        return family
    normalized = _normalize_family(family)
    base = _FAMILY_ALIASES.get(normalized)
    if base is None:
        base = SAFE_FALLBACK_FAMILY
        if warnings is not None and normalized:
            warnings.append(f"font {family!r} unavailable; using Helvetica")
    variants = _FAMILY_VARIANTS[base]
    bold = is_bold(weight)
    italic = is_italic(style)
    if bold and italic:
        return variants[3]
    if bold:
        return variants[1]
    if italic:
        return variants[2]
    return variants[0]


def font_measure(font_name: str, font_size: float) -> Measure:
    def _measure(text: str) -> float:
        return stringWidth(text, font_name, font_size)

    return _measure


def scaled_font_size(size: float, scale: float = FONT_SCALE_FACTOR) -> float:
    return float(size) * scale


def line_height_for(font_size: float) -> float:
    return font_size * LINE_HEIGHT_FACTOR


def wrap_text(text: str | None, max_width: float, measure: Measure) -> list[str]:
    """Greedy word wrap.

    A word is appended to the current line while the line still fits in
    ``max_width``; otherwise it starts a new line. Words are never split, so a
    word wider than ``max_width`` overflows on a line of its own.
    """
    if not text:
        return []
    lines: list[str] = []
    for paragraph in text.split("\n"):
        words = _WHITESPACE_RE.sub(" ", paragraph).strip().split(" ")
        words = [word for word in words if word]
        if not words:
            lines.append("")
            continue
        current = words[0]
        for word in words[1:]:
            candidate = f"{current} {word}"
            if measure(candidate) <= max_width:
                current = candidate
            else:
                lines.append(current)
                current = word
        lines.append(current)
    while lines and lines[-1] == "":
        lines.pop()
    return lines


def block_top(
    box_y: float,
    box_height: float,
    line_count: int,
    line_height: float,
    policy: VerticalPolicy = VerticalPolicy.TOP,
) -> float:
    if policy is VerticalPolicy.CENTER:
        return box_y + (box_height - line_count * line_height) / 2
    return box_y


def line_anchor_x(align: str | None, box_x: float, box_width: float) -> float:
    value = (align or "left").lower()
    if value == "center":
        return box_x + box_width / 2
    if value == "right":
        return box_x + box_width
    return box_x


def layout_text_block(
    text: str,
    *,
    x: float,
    y: float,
    width: float,
    height: float,
    font_name: str,
    font_size: float,
    align: str | None = "left",
    policy: VerticalPolicy = VerticalPolicy.TOP,
    measure: Measure | None = None,
) -> TextBlock:
    """Wrap ``text`` into the box and place every line (top-left origin)."""
    measure = measure or font_measure(font_name, font_size)
    lines = wrap_text(text, width, measure)
    line_height = line_height_for(font_size)
    top = block_top(y, height, len(lines), line_height, policy)
    anchor = line_anchor_x(align, x, width)
    placed = tuple(
        PlacedLine(text=line, x=anchor, top=top + index * line_height)
        for index, line in enumerate(lines)
    )
    return TextBlock(lines=placed, line_height=line_height, font_size=font_size)


def ascent_for(font_name: str, font_size: float) -> float:
    ascent, _ = pdfmetrics.getAscentDescent(font_name, font_size)
    return ascent

"""Typed template designs.

Template JSON coming from the editor is loosely shaped (camelCase and
snake_case keys, optional fields, numbers as strings). ``parse_template_design``
validates it once at the store boundary and produces frozen dataclasses the
renderer can trust.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .errors import IssuanceError

DEFAULT_CANVAS_WIDTH = 1200
DEFAULT_CANVAS_HEIGHT = 850
DEFAULT_BACKGROUND_COLOR = "#ffffff"

ELEMENT_TYPES = ("text", "placeholder", "image", "image-placeholder", "qrcode")
PLACEHOLDER_KINDS = ("text", "image")


class TemplateValidationError(IssuanceError, ValueError):
    """Raised when a stored template design cannot be rendered."""

    status_code = 422
    public_message = "Certificate template is malformed."

    def user_message(self) -> str:
        return str(self) or self.public_message


@dataclass(frozen=True)
class Box:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class TextStyle:
    font_family: str = "Helvetica"
    font_size: float = 16.0
    font_weight: str = "normal"
    font_style: str = "normal"
    color: str = "#000000"
    text_align: str = "left"
    text_decoration: str = "none"


@dataclass(frozen=True)
class TextElement:
    id: str
    box: Box
    content: str
    style: TextStyle
    z_index: int = 0
    type: str = "text"


@dataclass(frozen=True)
class PlaceholderElement:
    id: str
    box: Box
    placeholder_id: str
    content: str
    style: TextStyle
    z_index: int = 0
    type: str = "placeholder"


@dataclass(frozen=True)
class ImageElement:
    id: str
    box: Box
    image_ref: str
    z_index: int = 0
    type: str = "image"


@dataclass(frozen=True)
class ImagePlaceholderElement:
    id: str
    box: Box
    placeholder_id: str
    z_index: int = 0
    type: str = "image-placeholder"


@dataclass(frozen=True)
class QRCodeElement:
    id: str
    box: Box
    z_index: int = 0
    type: str = "qrcode"


Element = Union[
    TextElement,
    PlaceholderElement,
    ImageElement,
    ImagePlaceholderElement,
    QRCodeElement,
]


@dataclass(frozen=True)
class Placeholder:
    id: str
    label: str
    kind: str = "text"


@dataclass(frozen=True)
class TemplateDesign:
    canvas_width: float
    canvas_height: float
    background_color: str = DEFAULT_BACKGROUND_COLOR
    background_image: str | None = None
    elements: tuple[Element, ...] = ()
    placeholders: tuple[Placeholder, ...] = field(default_factory=tuple)

    @property
    def is_landscape(self) -> bool:
        return self.canvas_width > self.canvas_height

    def ordered_elements(self) -> list[Element]:
        indexed = list(enumerate(self.elements))
        indexed.sort(key=lambda item: (item[1].z_index, item[0]))
        return [element for _, element in indexed]

    def image_placeholder_ids(self) -> list[str]:
        ids: list[str] = []
        for element in self.elements:
            if isinstance(element, ImagePlaceholderElement) and element.placeholder_id not in ids:
                ids.append(element.placeholder_id)
        return ids

    def has_qrcode(self) -> bool:
        return any(isinstance(element, QRCodeElement) for element in self.elements)


def _first(raw: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return default


def _number(raw: Mapping[str, Any], key: str, element_id: str, default: float | None = None) -> float:
    value = raw.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise TemplateValidationError(
            f"Element {element_id!r} has an invalid {key}: {value!r}"
        ) from None
    if number != number:  # NaN
        raise TemplateValidationError(f"Element {element_id!r} has an invalid {key}")
    return number


def _parse_box(raw: Mapping[str, Any], element_id: str) -> Box:
    box = Box(
        x=_number(raw, "x", element_id, 0),
        y=_number(raw, "y", element_id, 0),
        width=_number(raw, "width", element_id),
        height=_number(raw, "height", element_id),
    )
    if box.width < 0 or box.height < 0:
        raise TemplateValidationError(
            f"Element {element_id!r} has a negative size"
        )
    return box


def _parse_style(raw: Mapping[str, Any], element_id: str) -> TextStyle:
    size_key = "fontSize" if "fontSize" in raw else "font_size"
    size = _number(raw, size_key, element_id, 16)
    if size <= 0:
        raise TemplateValidationError(f"Element {element_id!r} has a non-positive font size")
    return TextStyle(
        font_family=str(_first(raw, "fontFamily", "font_family", "font", default="Helvetica")),
        font_size=size,
        font_weight=str(_first(raw, "fontWeight", "font_weight", default="normal")),
        font_style=str(_first(raw, "fontStyle", "font_style", default="normal")),
        color=str(_first(raw, "color", default="#000000")),
        text_align=str(_first(raw, "textAlign", "text_align", default="left")).lower(),
        text_decoration=str(
            _first(raw, "textDecoration", "text_decoration", default="none")
        ).lower(),
    )


def _z_index(raw: Mapping[str, Any], element_id: str) -> int:
    value = _first(raw, "zIndex", "z_index", default=0)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise TemplateValidationError(
            f"Element {element_id!r} has an invalid z-index: {value!r}"
        ) from None


def parse_element(raw: Mapping[str, Any], index: int = 0) -> Element:
    if not isinstance(raw, Mapping):
        raise TemplateValidationError(f"Element #{index} is not an object")
    element_type = raw.get("type")
    element_id = str(raw.get("id") or f"element-{index}")
    if element_type not in ELEMENT_TYPES:
        raise TemplateValidationError(
            f"Element {element_id!r} has an unknown type: {element_type!r}"
        )
    box = _parse_box(raw, element_id)
    z_index = _z_index(raw, element_id)

    if element_type == "qrcode":
        return QRCodeElement(id=element_id, box=box, z_index=z_index)

    if element_type == "image":
        image_ref = _first(raw, "imageUrl", "image_url", "src", default="")
        return ImageElement(id=element_id, box=box, image_ref=str(image_ref), z_index=z_index)

    placeholder_id = _first(raw, "placeholderId", "placeholder_id")

    if element_type == "image-placeholder":
        if not placeholder_id:
            raise TemplateValidationError(
                f"Image placeholder {element_id!r} has no placeholder id"
            )
        return ImagePlaceholderElement(
            id=element_id, box=box, placeholder_id=str(placeholder_id), z_index=z_index
        )

    style = _parse_style(raw, element_id)
    content = str(_first(raw, "content", "text", default=""))
    if element_type == "placeholder":
        if not placeholder_id:
            raise TemplateValidationError(
                f"Placeholder {element_id!r} has no placeholder id"
            )
        if not content:
            content = "{{" + str(placeholder_id) + "}}"
        return PlaceholderElement(
            id=element_id,
            box=box,
            placeholder_id=str(placeholder_id),
            content=content,
            style=style,
            z_index=z_index,
        )
    return TextElement(id=element_id, box=box, content=content, style=style, z_index=z_index)


def parse_placeholders(raw: Any) -> tuple[Placeholder, ...]:
    placeholders: list[Placeholder] = []
    for item in raw or []:
        if not isinstance(item, Mapping) or not item.get("id"):
            raise TemplateValidationError(f"Invalid placeholder declaration: {item!r}")
        kind = str(item.get("kind") or item.get("type") or "text").lower()
        if kind not in PLACEHOLDER_KINDS:
            kind = "text"
        placeholders.append(
            Placeholder(
                id=str(item["id"]),
                label=str(item.get("label") or item["id"]),
                kind=kind,
            )
        )
    return tuple(placeholders)


def parse_template_design(
    template_data: Mapping[str, Any] | None,
    placeholders: Any = None,
) -> TemplateDesign:
    data = template_data or {}
    if not isinstance(data, Mapping):
        raise TemplateValidationError("Template data must be an object")
    canvas = data.get("canvasSize") or {}
    width = _first(canvas, "width") if isinstance(canvas, Mapping) else None
    height = _first(canvas, "height") if isinstance(canvas, Mapping) else None
    # only absent sizes fall back; an explicit 0 is rejected below
    if width is None:
        width = _first(data, "canvasWidth", "canvas_width", default=DEFAULT_CANVAS_WIDTH)
    if height is None:
        height = _first(data, "canvasHeight", "canvas_height", default=DEFAULT_CANVAS_HEIGHT)
    try:
        canvas_width = float(width)
        canvas_height = float(height)
    except (TypeError, ValueError):
        raise TemplateValidationError("Canvas size must be numeric") from None
    if canvas_width <= 0 or canvas_height <= 0:
        raise TemplateValidationError("Canvas size must be positive")

    raw_elements = data.get("elements") or []
    if not isinstance(raw_elements, list):
        raise TemplateValidationError("Template elements must be a list")
    elements = tuple(parse_element(raw, index) for index, raw in enumerate(raw_elements))

    ids = [element.id for element in elements]
    if len(ids) != len(set(ids)):
        raise TemplateValidationError("Element ids must be unique")
    if sum(1 for element in elements if isinstance(element, QRCodeElement)) > 1:
        raise TemplateValidationError("A template may contain at most one QR code")

    background_image = _first(data, "backgroundImage", "background_image")
    return TemplateDesign(
        canvas_width=canvas_width,
        canvas_height=canvas_height,
        background_color=str(
            _first(data, "backgroundColor", "background_color", default=DEFAULT_BACKGROUND_COLOR)
        ),
        background_image=str(background_image) if background_image else None,
        elements=elements,
        placeholders=parse_placeholders(
            placeholders if placeholders is not None else data.get("placeholders")
        ),
    )

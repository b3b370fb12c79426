from __future__ import annotations

import pytest

from certforms.shared.elements import (
    ImageElement,
    ImagePlaceholderElement,
    PlaceholderElement,
    QRCodeElement,
    TemplateValidationError,
    TextElement,
    parse_template_design,
)


def _design(elements, **extra):
    data = {"canvasSize": {"width": 1200, "height": 850}, "elements": elements}
    data.update(extra)
    return data


def test_parses_every_element_kind():
    design = parse_template_design(
        _design(
            [
                {"id": "t", "type": "text", "x": 1, "y": 2, "width": 3, "height": 4, "content": "Hi",
                 "fontSize": "24", "fontWeight": "bold", "textAlign": "Center"},
                {"id": "p", "type": "placeholder", "x": 0, "y": 0, "width": 10, "height": 10,
                 "placeholderId": "student_name"},
                {"id": "i", "type": "image", "x": 0, "y": 0, "width": 10, "height": 10,
                 "imageUrl": "https://cdn.example.com/logo.png"},
                {"id": "ip", "type": "image-placeholder", "x": 0, "y": 0, "width": 10, "height": 10,
                 "placeholderId": "photo"},
                {"id": "q", "type": "qrcode", "x": 0, "y": 0, "width": 10, "height": 10},
            ],
            backgroundColor="#fafafa",
        ),
        placeholders=[{"id": "student_name", "label": "Nome"}, {"id": "photo", "label": "Foto", "kind": "image"}],
    )

    kinds = [type(element) for element in design.elements]
    assert kinds == [TextElement, PlaceholderElement, ImageElement, ImagePlaceholderElement, QRCodeElement]
    text = design.elements[0]
    assert text.style.font_size == 24
    assert text.style.text_align == "center"
    assert design.elements[1].content == "{{student_name}}"
    assert design.background_color == "#fafafa"
    assert design.is_landscape
    assert design.has_qrcode()
    assert design.image_placeholder_ids() == ["photo"]
    assert [p.kind for p in design.placeholders] == ["text", "image"]


def test_snake_case_canvas_keys():
    design = parse_template_design({"canvas_width": 800, "canvas_height": 600, "elements": []})

    assert (design.canvas_width, design.canvas_height) == (800, 600)


def test_ordered_elements_is_stable_by_z_index():
    design = parse_template_design(
        _design(
            [
                {"id": "a", "type": "qrcode", "x": 0, "y": 0, "width": 1, "height": 1, "zIndex": 2},
                {"id": "b", "type": "text", "x": 0, "y": 0, "width": 1, "height": 1, "zIndex": 1},
                {"id": "c", "type": "text", "x": 0, "y": 0, "width": 1, "height": 1, "zIndex": 1},
            ]
        )
    )

    assert [element.id for element in design.ordered_elements()] == ["b", "c", "a"]


@pytest.mark.parametrize(
    "elements, message",
    [
        ([{"id": "x", "type": "video", "width": 1, "height": 1}], "unknown type"),
        ([{"id": "x", "type": "text", "width": "wide", "height": 1}], "invalid width"),
        ([{"id": "x", "type": "placeholder", "width": 1, "height": 1}], "no placeholder id"),
        (
            [
                {"id": "q1", "type": "qrcode", "width": 1, "height": 1},
                {"id": "q2", "type": "qrcode", "width": 1, "height": 1},
            ],
            "at most one QR code",
        ),
        (
            [
                {"id": "dup", "type": "text", "width": 1, "height": 1},
                {"id": "dup", "type": "text", "width": 1, "height": 1},
            ],
            "unique",
        ),
    ],
)
def test_rejects_malformed_templates(elements, message):
    with pytest.raises(TemplateValidationError) as excinfo:
        parse_template_design(_design(elements))

    assert message in str(excinfo.value)
    assert excinfo.value.status_code == 422


def test_rejects_non_positive_canvas():
    with pytest.raises(TemplateValidationError):
        parse_template_design({"canvasSize": {"width": -5, "height": 100}})


@pytest.mark.parametrize(
    "data",
    [
        {"canvasSize": {"width": 0, "height": 100}},
        {"canvasSize": {"width": 100, "height": 0}},
        {"canvasWidth": 0, "canvasHeight": 100},
    ],
)
def test_zero_canvas_is_rejected_not_defaulted(data):
    with pytest.raises(TemplateValidationError) as excinfo:
        parse_template_design(data)

    assert "positive" in str(excinfo.value)

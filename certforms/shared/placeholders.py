"""Placeholder substitution for certificate text and notification emails."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

ISSUE_DATE_FORMAT = "%d/%m/%Y"

EMAIL_ALIASES: tuple[str, ...] = ("email", "recipient_email")

SYSTEM_FIELDS: tuple[str, ...] = (
    "issue_date",
    "certificate_id",
    "certificate_link",
)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def substitute(text: str | None, values: Mapping[str, Any]) -> str:
    """Replace every ``{{key}}`` whose key is in ``values``.

    Single pass over the source text, so inserted values are never scanned
    again. Tokens without a value are kept verbatim.
    """
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        return _stringify(values[key])

    return TOKEN_RE.sub(_replace, text)


def find_tokens(text: str | None) -> list[str]:
    seen: list[str] = []
    for match in TOKEN_RE.finditer(text or ""):
        key = match.group(1)
        if key not in seen:
            seen.append(key)
    return seen


def format_issue_date(value: date) -> str:
    return value.strftime(ISSUE_DATE_FORMAT)


def recipient_email(data: Mapping[str, Any]) -> str | None:
    for key in ("default_email", "email", "recipient_email"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def build_render_values(
    recipient_data: Mapping[str, Any],
    *,
    certificate_number: str = "",
    issue_date: date | None = None,
    certificate_link: str | None = None,
) -> dict[str, Any]:
    """Merge recipient data with the system-generated fields.

    System fields take precedence over recipient keys with the same name.
    """
    values: dict[str, Any] = dict(recipient_data)
    values["issue_date"] = format_issue_date(issue_date or date.today())
    values["certificate_id"] = certificate_number or ""
    if certificate_link is not None:
        values["certificate_link"] = certificate_link
    values["default_email"] = recipient_email(recipient_data) or ""
    return values


def expand_email_aliases(
    fields: Iterable[Mapping[str, Any]], submitted: Mapping[str, Any]
) -> dict[str, Any]:
    """Map submitted form values onto the keys templates may reference.

    Email fields are exposed under the field id, the placeholder id, and the
    generic ``email`` / ``recipient_email`` aliases. Other fields use the
    placeholder id when present, else the field id.
    """
    data: dict[str, Any] = {}
    for field in fields:
        field_id = field.get("id")
        if not field_id:
            continue
        value = submitted.get(field_id)
        if not value:
            continue
        placeholder_id = field.get("placeholderId") or field.get("placeholder_id")
        if field_id == "default_email" or field.get("type") == "email":
            data[field_id] = value
            if placeholder_id:
                data[placeholder_id] = value
            for alias in EMAIL_ALIASES:
                data[alias] = value
        elif placeholder_id:
            data[placeholder_id] = value
        else:
            data[field_id] = value
    return data

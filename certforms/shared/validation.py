from __future__ import annotations

import hashlib
import html
import json
import re
import secrets
import time
from datetime import date, datetime
from typing import Any, Mapping

import bleach

MAX_INPUT_LENGTH = 1000
MAX_EMAIL_LENGTH = 254
MIN_AGE_YEARS = 13
MAX_AGE_YEARS = 120

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CERTIFICATE_NUMBER_RE = re.compile(r"^CERT-(\d+)-([0-9A-F]{16})-([0-9A-F]{4})$")

_SCRIPT_BLOCK_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.I)
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.I)
_INLINE_HANDLER_RE = re.compile(r"on\w+\s*=", re.I)


def only_digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def _cpf_check_digit(digits: str) -> int:
    weight = len(digits) + 1
    total = sum(int(d) * (weight - i) for i, d in enumerate(digits))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def validate_cpf(cpf: str | None) -> bool:
    digits = only_digits(cpf)
    if len(digits) != 11:
        return False
    if digits == digits[0] * 11:
        return False
    if _cpf_check_digit(digits[:9]) != int(digits[9]):
        return False
    return _cpf_check_digit(digits[:10]) == int(digits[10])


def parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        return None


def _years_before(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:  # 29 February
        return today.replace(year=today.year - years, day=28)


def validate_date_of_birth(value: Any, today: date | None = None) -> bool:
    dob = parse_date(value)
    if dob is None:
        return False
    today = today or date.today()
    return _years_before(today, MAX_AGE_YEARS) <= dob <= _years_before(today, MIN_AGE_YEARS)


def validate_email(email: str | None) -> bool:
    if not email:
        return False
    return bool(EMAIL_RE.match(email)) and len(email) <= MAX_EMAIL_LENGTH


def sanitize_input(value: Any) -> str:
    """Plain text safe to echo back: no markup, no script hooks."""
    if not isinstance(value, str) or not value:
        return ""
    text = _SCRIPT_BLOCK_RE.sub("", value.strip())
    text = html.unescape(bleach.clean(text, tags=[], attributes={}, strip=True))
    text = _JS_PROTOCOL_RE.sub("", text)
    text = _INLINE_HANDLER_RE.sub("", text)
    return text.strip()[:MAX_INPUT_LENGTH]


def sanitize_recipient_data(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: sanitize_input(value) if isinstance(value, str) else value
        for key, value in data.items()
    }


def generate_certificate_number(now_ms: int | None = None) -> str:
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    random_part = secrets.token_hex(8).upper()
    checksum = hashlib.sha256(f"{timestamp}-{random_part}".encode()).hexdigest()[:4].upper()
    return f"CERT-{timestamp}-{random_part}-{checksum}"


def is_certificate_number(value: str | None) -> bool:
    match = CERTIFICATE_NUMBER_RE.match(value or "")
    if not match:
        return False
    timestamp, random_part, checksum = match.groups()
    expected = hashlib.sha256(f"{timestamp}-{random_part}".encode()).hexdigest()[:4].upper()
    return checksum == expected


def secure_hash(payload: Mapping[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def submission_hash(
    template_id: str,
    cpf: str,
    dob: str,
    recipient_data: Mapping[str, Any],
) -> str:
    """Hash identifying a submission independent of when it was issued."""
    return secure_hash(
        {
            "template_id": template_id,
            "recipient_cpf": cpf,
            "recipient_dob": dob,
            "recipient_data": dict(recipient_data),
        }
    )

import json
import logging
import os
import smtplib
import sys
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Callable, Mapping, Optional, Sequence

from .shared.validation import validate_email

logger = logging.getLogger("certforms.mailer")
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

MAX_RETRIES = 3
BACKOFF_SECONDS = 2.0


@dataclass(frozen=True)
class SmtpConfig:
    host: Optional[str]
    port: Optional[int]
    user: Optional[str] = None
    password: Optional[str] = None
    secure: bool = False

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "SmtpConfig":
        """Per-template SMTP settings, falling back to the SMTP_* environment."""
        raw = raw or {}
        port = raw.get("port") or os.getenv("SMTP_PORT")
        try:
            port_int = int(port) if port else None
        except (TypeError, ValueError):
            port_int = None
        secure = raw.get("secure")
        if secure is None:
            secure = port_int == 465
        return cls(
            host=raw.get("host") or os.getenv("SMTP_HOST"),
            port=port_int,
            user=raw.get("user") or os.getenv("SMTP_USER"),
            password=raw.get("pass") or raw.get("password") or os.getenv("SMTP_PASS"),
            secure=bool(secure),
        )


@dataclass(frozen=True)
class Sender:
    email: Optional[str]
    name: str = ""

    @classmethod
    def default(cls) -> "Sender":
        return cls(os.getenv("SMTP_FROM_DEFAULT"), os.getenv("SMTP_FROM_NAME", ""))

    @property
    def header(self) -> str:
        return formataddr((self.name, self.email)) if self.name else (self.email or "")


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    mimetype: str = "application/pdf"


def normalize_recipients(recipients: Sequence[str] | str | None) -> list[str]:
    if not recipients:
        return []
    if isinstance(recipients, str):
        recipients = recipients.replace(";", ",").split(",")
    seen: list[str] = []
    for raw in recipients:
        address = (raw or "").strip()
        if validate_email(address) and address.lower() not in {s.lower() for s in seen}:
            seen.append(address)
    return seen


def _connect(smtp: SmtpConfig) -> smtplib.SMTP:
    if smtp.secure:
        server = smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=30)
    else:
        server = smtplib.SMTP(smtp.host, smtp.port, timeout=30)
        if smtp.port == 587:
            server.starttls()
    if smtp.user and smtp.password:
        server.login(smtp.user, smtp.password)
    return server


def build_message(
    envelope: Sequence[str],
    subject: str,
    html: str,
    sender: Sender,
    attachments: Sequence[Attachment] = (),
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["To"] = ", ".join(envelope)
    msg["From"] = sender.header
    msg["Message-ID"] = make_msgid()
    msg.set_content("This message requires an HTML-capable email client.")
    msg.add_alternative(html, subtype="html")
    for item in attachments:
        maintype, _, subtype = item.mimetype.partition("/")
        msg.add_attachment(
            item.content,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=item.filename,
        )
    return msg


def send(
    to: Sequence[str] | str | None,
    subject: str,
    html: str,
    attachments: Optional[Sequence[Attachment]] = None,
    smtp: Optional[SmtpConfig] = None,
    sender: Optional[Sender] = None,
    *,
    retries: int = MAX_RETRIES,
    backoff: float = BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
):
    """Send one HTML email, retrying transient failures with exponential backoff.

    Makes ``retries + 1`` attempts. With the defaults that is one send plus
    three retries after 2s, 4s and 8s, so every listed delay is actually used.
    Never raises. Returns ``{"ok": bool, "detail": str, "message_id": str | None}``.
    """
    smtp = smtp or SmtpConfig.from_mapping(None)
    sender = sender or Sender.default()
    envelope = normalize_recipients(to)
    mode = "real"
    if not smtp.host or not smtp.port or not sender.email:
        mode = "stub"
        logger.info(
            "[MAIL-OUT] mode=%s envelope=%s subject=\"%s\" host=%s result=stub",
            mode,
            json.dumps(envelope),
            subject,
            smtp.host,
        )
        return {"ok": False, "detail": "stub: missing config", "message_id": None}

    if not envelope:
        logger.warning("[MAIL-NO-RECIPIENTS] subject=\"%s\" host=%s", subject, smtp.host)
        return {"ok": False, "detail": "no valid recipients", "message_id": None}

    msg = build_message(envelope, subject, html, sender, attachments or ())
    last_error: Optional[Exception] = None
    for attempt in range(retries + 1):
        if attempt:
            delay = backoff * (2 ** (attempt - 1))
            logger.info(
                "[MAIL-RETRY] attempt=%s delay=%.1fs envelope=%s error=%s",
                attempt,
                delay,
                json.dumps(envelope),
                last_error,
            )
            sleep(delay)
        try:
            server = _connect(smtp)
            try:
                server.send_message(msg, from_addr=sender.email, to_addrs=envelope)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            last_error = exc
            continue
        logger.info(
            "[MAIL-OUT] mode=%s envelope=%s subject=\"%s\" host=%s result=sent message_id=%s",
            mode,
            json.dumps(envelope),
            subject,
            smtp.host,
            msg["Message-ID"],
        )
        return {"ok": True, "detail": "sent", "message_id": msg["Message-ID"]}

    logger.error(
        "[MAIL-FAIL] envelope=%s subject=\"%s\" host=%s attempts=%s error=%s",
        json.dumps(envelope),
        subject,
        smtp.host,
        retries + 1,
        last_error,
    )
    return {"ok": False, "detail": str(last_error), "message_id": None}

import smtplib

import pytest

from certforms import emailer
from certforms.emailer import Attachment, Sender, SmtpConfig, normalize_recipients, send

SMTP = SmtpConfig(host="smtp.example.com", port=2525, user="u", password="p")
SENDER = Sender("certificados@example.com", "Certificados")


class FakeSMTP:
    """Records deliveries; ``failures`` sends raise before one succeeds."""

    instances = []
    failures = 0
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.logged_in = None
        self.tls = False
        FakeSMTP.instances.append(self)

    def starttls(self):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg, from_addr=None, to_addrs=None):
        if FakeSMTP.failures:
            FakeSMTP.failures -= 1
            raise smtplib.SMTPServerDisconnected("connection dropped")
        FakeSMTP.sent.append((msg, from_addr, to_addrs))

    def quit(self):
        pass


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.failures = 0
    FakeSMTP.sent = []
    monkeypatch.setattr(emailer.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(emailer.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def no_smtp_env(monkeypatch):
    for name in ("SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "SMTP_FROM_DEFAULT", "SMTP_FROM_NAME"):
        monkeypatch.delenv(name, raising=False)


def test_stub_mode_without_config(no_smtp_env, fake_smtp, caplog):
    with caplog.at_level("INFO", logger="certforms.mailer"):
        result = send("ana@example.com", "Oi", "<p>oi</p>")

    assert result == {"ok": False, "detail": "stub: missing config", "message_id": None}
    assert fake_smtp.instances == []
    assert "result=stub" in caplog.text


def test_sends_with_attachment(fake_smtp):
    result = send(
        "ana@example.com",
        "Seu certificado",
        "<p>Parabens</p>",
        attachments=[Attachment("certificado.pdf", b"%PDF-1.4")],
        smtp=SMTP,
        sender=SENDER,
    )

    assert result["ok"] is True
    assert result["message_id"]
    msg, from_addr, to_addrs = fake_smtp.sent[0]
    assert from_addr == "certificados@example.com"
    assert to_addrs == ["ana@example.com"]
    assert msg["Subject"] == "Seu certificado"
    assert "Certificados" in msg["From"]
    names = [part.get_filename() for part in msg.iter_attachments()]
    assert names == ["certificado.pdf"]
    assert fake_smtp.instances[0].logged_in == ("u", "p")


def test_retries_with_exponential_backoff(fake_smtp, caplog):
    fake_smtp.failures = 2
    delays = []

    with caplog.at_level("INFO", logger="certforms.mailer"):
        result = send("ana@example.com", "s", "<p/>", smtp=SMTP, sender=SENDER, sleep=delays.append)

    assert result["ok"] is True
    assert delays == [2.0, 4.0]
    assert caplog.text.count("[MAIL-RETRY]") == 2


def test_gives_up_after_three_retries(fake_smtp, caplog):
    fake_smtp.failures = 10
    delays = []

    with caplog.at_level("INFO", logger="certforms.mailer"):
        result = send("ana@example.com", "s", "<p/>", smtp=SMTP, sender=SENDER, sleep=delays.append)

    assert result["ok"] is False
    assert "connection dropped" in result["detail"]
    assert delays == [2.0, 4.0, 8.0]
    assert len(fake_smtp.instances) == 4
    assert "[MAIL-FAIL]" in caplog.text


def test_no_valid_recipients(fake_smtp):
    result = send(["not-an-email", ""], "s", "<p/>", smtp=SMTP, sender=SENDER)

    assert result == {"ok": False, "detail": "no valid recipients", "message_id": None}
    assert fake_smtp.instances == []


def test_port_587_upgrades_to_tls(fake_smtp):
    send("ana@example.com", "s", "<p/>", smtp=SmtpConfig("smtp.example.com", 587), sender=SENDER)

    assert fake_smtp.instances[0].tls is True
    assert fake_smtp.instances[0].logged_in is None


def test_normalize_recipients_dedupes_and_splits():
    assert normalize_recipients("a@x.com; b@x.com, A@X.com,bad") == ["a@x.com", "b@x.com"]
    assert normalize_recipients(None) == []


def test_smtp_config_falls_back_to_env(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "env.example.com")
    monkeypatch.setenv("SMTP_PORT", "465")
    monkeypatch.setenv("SMTP_USER", "env-user")
    monkeypatch.setenv("SMTP_PASS", "env-pass")

    from_env = SmtpConfig.from_mapping(None)
    override = SmtpConfig.from_mapping({"host": "tpl.example.com", "port": "2525", "pass": "secret"})

    assert (from_env.host, from_env.port, from_env.secure) == ("env.example.com", 465, True)
    assert (override.host, override.port, override.secure) == ("tpl.example.com", 2525, False)
    assert override.user == "env-user"
    assert override.password == "secret"

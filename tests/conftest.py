import base64
import os
import pathlib
import sys
from datetime import date
from io import BytesIO

import pytest
import requests
from PIL import Image

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from certforms.app import create_app, db, services

TODAY = date(2026, 3, 15)
ADMIN_TOKEN = "admin-token"
VALID_CPF = "529.982.247-25"
OTHER_CPF = "111.444.777-35"
VALID_DOB = "1990-05-20"


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


def make_png(size=(8, 8), color=(200, 30, 30)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def png_data_url(size=(8, 8), color=(200, 30, 30)) -> str:
    return "data:image/png;base64," + base64.b64encode(make_png(size, color)).decode()


class FakeResponse:
    def __init__(self, content=b"", status_code=200, headers=None):
        self.content = content
        self.status_code = status_code
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Stands in for ``requests.Session``; unknown URLs are unreachable."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, url, content, content_type="image/png", status=200):
        self.routes[url] = FakeResponse(content, status, {"Content-Type": content_type})

    def get(self, url, timeout=None):
        self.calls.append(url)
        if url not in self.routes:
            raise requests.ConnectionError(f"unreachable: {url}")
        return self.routes[url]


class SentMail:
    def __init__(self):
        self.calls = []
        self.result = {"ok": True, "detail": "sent", "message_id": "<test@local>"}

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        return self.result


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("SITE_ROOT", str(tmp_path / "site"))
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://certs.example.com")
    monkeypatch.setenv("ADMIN_API_TOKEN", ADMIN_TOKEN)
    for name in ("SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "SMTP_FROM_DEFAULT"):
        monkeypatch.delenv(name, raising=False)
    application = create_app()
    with application.app_context():
        db.create_all()
        svc = services()
        svc.issuer.today = lambda: TODAY
        yield application
        svc.issuer.notifier.shutdown(wait=True)
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def fake_http(app):
    session = FakeSession()
    services().image_cache.session = session
    return session


@pytest.fixture
def sent_mail(app):
    mailer = SentMail()
    services().issuer.mailer = mailer
    return mailer


SCENARIO_DESIGN = {
    "canvasSize": {"width": 1200, "height": 850},
    "backgroundColor": "#ffffff",
    "elements": [
        {"id": "student", "type": "text", "x": 100, "y": 200, "width": 600, "height": 50,
         "content": "Certificamos que {{student_name}} concluiu o curso"},
        {"id": "qr", "type": "qrcode", "x": 1000, "y": 650, "width": 150, "height": 150},
    ],
}


def make_template(template_data=None, *, email_config=None, is_active=True, **fields):
    from certforms.models import CertificateTemplate

    form_design = {"fields": [{"id": "student_name", "type": "text", "placeholderId": "student_name"}]}
    if email_config is not None:
        form_design["emailConfig"] = email_config
    template = CertificateTemplate(
        title=fields.pop("title", "Curso de Python"),
        template_data=template_data or SCENARIO_DESIGN,
        placeholders=fields.pop("placeholders", [{"id": "student_name", "label": "Nome"}]),
        form_design=form_design,
        is_active=is_active,
        **fields,
    )
    db.session.add(template)
    db.session.commit()
    return template


@pytest.fixture
def template(app):
    return make_template()

import json
from io import BytesIO

import pytest
from PyPDF2 import PdfReader

from certforms.app import services
from certforms.services.issuance import IssueRequest
from manage import issue, purge_orphan_certs, render

from conftest import SCENARIO_DESIGN, VALID_CPF, VALID_DOB, make_template


@pytest.fixture
def runner(app):
    app.cli.add_command(issue)
    app.cli.add_command(render)
    app.cli.add_command(purge_orphan_certs)
    return app.test_cli_runner()


def test_render_writes_pdf(runner, tmp_path):
    template_path = tmp_path / "template.json"
    template_path.write_text(json.dumps({"template_data": SCENARIO_DESIGN}))
    data_path = tmp_path / "data.json"
    data_path.write_text(json.dumps({"student_name": "Joana Lima"}))
    out = tmp_path / "out" / "cert.pdf"

    res = runner.invoke(
        args=["render", str(template_path), str(out), "--data", str(data_path), "--number", "CERT-7"]
    )

    assert res.exit_code == 0, res.output
    text = PdfReader(BytesIO(out.read_bytes())).pages[0].extract_text()
    assert "Certificamos que Joana Lima concluiu o curso" in text


def test_render_rejects_invalid_template(runner, tmp_path):
    template_path = tmp_path / "template.json"
    template_path.write_text(json.dumps({"canvasSize": {"width": 0, "height": 10}}))

    res = runner.invoke(args=["render", str(template_path), str(tmp_path / "x.pdf")])

    assert res.exit_code == 1
    assert not (tmp_path / "x.pdf").exists()


def test_issue_command(runner, tmp_path):
    template = make_template()
    data_path = tmp_path / "data.json"
    data_path.write_text(json.dumps({"student_name": "Joana Lima"}))

    res = runner.invoke(
        args=["issue", "--template", template.id, "--cpf", VALID_CPF, "--dob", VALID_DOB, "--data", str(data_path)]
    )

    assert res.exit_code == 0, res.output
    assert "https://certs.example.com/files/certificates/public/certificado-CERT-" in res.output


def test_issue_command_reports_validation_errors(runner, tmp_path):
    template = make_template()
    data_path = tmp_path / "data.json"
    data_path.write_text(json.dumps({"student_name": "Joana Lima"}))

    res = runner.invoke(
        args=["issue", "--template", template.id, "--cpf", "000", "--dob", VALID_DOB, "--data", str(data_path)]
    )

    assert res.exit_code == 1


def test_purge_orphan_certs(runner, app):
    template = make_template()
    svc = services()
    data = {"student_name": "Joana Lima"}

    kept = svc.issuer.issue(IssueRequest(template.id, data, VALID_CPF, VALID_DOB)).certificate.pdf_path
    orphan = "public/certificado-CERT-ORPHAN.pdf"
    svc.store.upload(orphan, svc.store.read(kept))

    res = runner.invoke(args=["purge_orphan_certs", "--dry-run"])
    assert orphan in res.output
    assert "scanned=2 deleted=0 kept=1 errors=0" in res.output
    assert svc.store.exists(orphan)

    res = runner.invoke(args=["purge_orphan_certs"])
    assert res.exit_code == 0
    assert "deleted=1" in res.output
    assert not svc.store.exists(orphan)
    assert svc.store.exists(kept)

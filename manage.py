from certforms.app import create_app, db, services
import json
import os

from flask_migrate import Migrate
from flask.cli import FlaskGroup
import click
from flask import current_app
from certforms.models import IssuedCertificate
from certforms.services.issuance import IssueRequest
from certforms.shared.elements import parse_template_design
from certforms.shared.errors import IssuanceError
from certforms.shared.renderer import render_certificate
from certforms.shared.storage import write_atomic


migrate = Migrate()


def create_certforms_app():
    app = create_app()
    migrate.init_app(app, db)
    return app


cli = FlaskGroup(create_app=create_certforms_app)


def _load_json(path: str):
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


@cli.command("issue")
@click.option("--template", "template_id", required=True)
@click.option("--cpf", required=True)
@click.option("--dob", required=True, help="Date of birth, YYYY-MM-DD")
@click.option("--data", "data_path", required=True, type=click.Path(exists=True), help="Recipient data JSON file")
@click.option("--update", "number_to_update", default=None, help="Certificate number to re-issue")
def issue(template_id: str, cpf: str, dob: str, data_path: str, number_to_update):
    """Issue a certificate from the command line."""
    request = IssueRequest(
        template_id=template_id,
        recipient_data=_load_json(data_path),
        recipient_cpf=cpf,
        recipient_dob=dob,
        certificate_number_to_update=number_to_update,
    )
    try:
        result = services().issuer.issue(request)
    except IssuanceError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)
    cert = result.certificate
    click.echo(f"{cert.certificate_number} {cert.pdf_url}")
    for warning in result.warnings:
        click.echo(f"warning: {warning.element_id} ({warning.element_type}): {warning.reason}", err=True)
    if result.notification is not None:
        outcome = result.notification.result()
        click.echo(f"email: {outcome.get('detail')}")


@cli.command("render")
@click.argument("template_path", type=click.Path(exists=True))
@click.argument("output_path")
@click.option("--data", "data_path", default=None, type=click.Path(exists=True))
@click.option("--number", "certificate_number", default="")
def render(template_path: str, output_path: str, data_path, certificate_number: str):
    """Render a template JSON file to a PDF without touching the database."""
    raw = _load_json(template_path)
    try:
        design = parse_template_design(raw.get("template_data", raw), raw.get("placeholders"))
    except IssuanceError as exc:
        click.echo(f"Invalid template: {exc}", err=True)
        raise SystemExit(1)
    recipient_data = _load_json(data_path) if data_path else {}
    outcome = render_certificate(
        design,
        recipient_data,
        certificate_number=certificate_number,
        font_scale=current_app.config["FONT_SCALE_FACTOR"],
    )
    write_atomic(os.path.abspath(output_path), outcome.pdf)
    for warning in outcome.warnings:
        click.echo(f"warning: {warning.element_id} ({warning.element_type}): {warning.reason}", err=True)
    click.echo(output_path)


@cli.command("purge_orphan_certs")
@click.option(
    "--dry-run", is_flag=True, help="List orphaned certificate PDFs without deleting"
)
def purge_orphan_certs(dry_run: bool):
    store = services().store
    if (
        not dry_run
        and current_app.config.get("ENV") == "production"
        and os.getenv("ALLOW_CERT_PURGE") != "1"
    ):
        click.echo(
            "Refusing to delete in production without ALLOW_CERT_PURGE=1", err=True
        )
        return

    referenced = {
        path for (path,) in db.session.query(IssuedCertificate.pdf_path).all() if path
    }
    total = deleted = kept = errors = 0
    samples: list[str] = []
    for rel_path in store.list():
        if not rel_path.lower().endswith(".pdf"):
            continue
        total += 1
        if rel_path in referenced:
            kept += 1
            continue
        if len(samples) < 5:
            samples.append(rel_path)
        if dry_run:
            continue
        try:
            store.remove(rel_path)
            deleted += 1
        except IssuanceError:
            errors += 1
            current_app.logger.exception(
                "[CERT-PURGE] failed to remove %s", rel_path
            )
    summary = f"scanned={total} deleted={deleted} kept={kept} errors={errors}"
    for path in samples:
        click.echo(path)
    click.echo(summary)
    current_app.logger.info("[CERT-PURGE] %s", summary)


if __name__ == "__main__":
    cli()

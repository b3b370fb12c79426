"""create certificate templates and issued certificates

Revision ID: 0001_certificate_templates
Revises:
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_certificate_templates"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "certificate_templates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.String(length=64), nullable=True),
        sa.Column("template_data", sa.JSON(), nullable=False),
        sa.Column("placeholders", sa.JSON(), nullable=False),
        sa.Column("form_design", sa.JSON(), nullable=False),
        sa.Column("public_link_id", sa.String(length=64), nullable=False),
        sa.Column(
            "is_active",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("public_link_id", name="uq_certificate_templates_public_link_id"),
    )
    op.create_table(
        "issued_certificates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("certificate_number", sa.String(length=64), nullable=False),
        sa.Column(
            "template_id",
            sa.String(length=36),
            sa.ForeignKey("certificate_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("recipient_data", sa.JSON(), nullable=False),
        sa.Column("recipient_email", sa.String(length=254), nullable=True),
        sa.Column("recipient_cpf", sa.String(length=14), nullable=True),
        sa.Column("recipient_dob", sa.String(length=10), nullable=True),
        sa.Column("photo_url", sa.Text(), nullable=True),
        sa.Column("pdf_url", sa.Text(), nullable=True),
        sa.Column("pdf_path", sa.String(length=255), nullable=True),
        sa.Column("data_hash", sa.String(length=64), nullable=True),
        sa.Column("issued_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("certificate_number", name="uq_issued_certificates_number"),
    )
    op.create_index(
        "ix_issued_certificates_template_id", "issued_certificates", ["template_id"]
    )
    op.create_index(
        "ix_issued_certificates_recipient_cpf", "issued_certificates", ["recipient_cpf"]
    )


def downgrade() -> None:
    op.drop_index("ix_issued_certificates_recipient_cpf", table_name="issued_certificates")
    op.drop_index("ix_issued_certificates_template_id", table_name="issued_certificates")
    op.drop_table("issued_certificates")
    op.drop_table("certificate_templates")

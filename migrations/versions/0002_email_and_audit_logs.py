"""add email and audit logs

Revision ID: 0002_email_and_audit_logs
Revises: 0001_certificate_templates
Create Date: 2026-10-18 15:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_email_and_audit_logs"
down_revision = "0001_certificate_templates"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "email_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "template_id",
            sa.String(length=36),
            sa.ForeignKey("certificate_templates.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("certificate_number", sa.String(length=64), nullable=True),
        sa.Column("to_email", sa.String(length=320), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("message_id", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_email_logs_template_id", "email_logs", ["template_id"])
    op.create_index("ix_email_logs_certificate_number", "email_logs", ["certificate_number"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("template_id", sa.String(length=36), nullable=True),
        sa.Column("certificate_number", sa.String(length=64), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_template_id", "audit_logs", ["template_id"])
    op.create_index("ix_audit_logs_certificate_number", "audit_logs", ["certificate_number"])

    op.create_index(
        "ix_issued_certificates_recipient_email", "issued_certificates", ["recipient_email"]
    )


def downgrade() -> None:
    op.drop_index("ix_issued_certificates_recipient_email", table_name="issued_certificates")
    op.drop_index("ix_audit_logs_certificate_number", table_name="audit_logs")
    op.drop_index("ix_audit_logs_template_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_email_logs_certificate_number", table_name="email_logs")
    op.drop_index("ix_email_logs_template_id", table_name="email_logs")
    op.drop_table("email_logs")

"""external_assignment_sync

Creates the external assignment sync tables:
  - external_source_accounts     — one connection per (owner, source_name),
                                   Fernet-encrypted connection details
  - external_assignment_mappings — (source account, external id) → internal id,
                                   cascades with its source account

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a3f1c2d4e5b6
Revises:
Create Date: 2026-10-19 09:12:44.318201
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a3f1c2d4e5b6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── SourceAccount ─────────────────────────────────────────────────────
    if "external_source_accounts" not in existing:
        op.create_table(
            "external_source_accounts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column(
                "owner", sa.String(length=200), nullable=False,
                comment="Opaque reference to the owning user.",
            ),
            sa.Column(
                "source_type", sa.String(length=50), nullable=False,
                comment="Platform discriminator, e.g. Canvas.",
            ),
            sa.Column(
                "source_name", sa.String(length=200), nullable=False,
                comment="User-chosen label, e.g. '6.104 Canvas'.",
            ),
            sa.Column(
                "encrypted_connection_details", sa.Text(), nullable=False,
                comment="Fernet-encrypted JSON credential bundle. NEVER log or expose.",
            ),
            sa.Column("last_successful_poll", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("owner", "source_name", name="uq_source_owner_name"),
        )
        op.create_index(
            "ix_external_source_accounts_owner",
            "external_source_accounts",
            ["owner"],
        )

    # ── AssignmentMapping ─────────────────────────────────────────────────
    if "external_assignment_mappings" not in existing:
        op.create_table(
            "external_assignment_mappings",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("source_account_id", sa.String(length=36), nullable=False),
            sa.Column(
                "external_id", sa.String(length=100), nullable=False,
                comment="Platform-native item id, stringified.",
            ),
            sa.Column(
                "internal_record_id", sa.String(length=200), nullable=False,
                comment="Opaque reference into the owning application's domain.",
            ),
            sa.Column(
                "last_external_modified_at", sa.DateTime(timezone=True), nullable=False,
                comment="Platform's own last-modified time as of the last resolution.",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(
                ["source_account_id"], ["external_source_accounts.id"], ondelete="CASCADE"
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "source_account_id", "external_id", name="uq_mapping_source_external"
            ),
        )
        op.create_index(
            "ix_external_assignment_mappings_source_account_id",
            "external_assignment_mappings",
            ["source_account_id"],
        )


def downgrade():
    op.drop_index(
        "ix_external_assignment_mappings_source_account_id",
        table_name="external_assignment_mappings",
    )
    op.drop_table("external_assignment_mappings")
    op.drop_index("ix_external_source_accounts_owner", table_name="external_source_accounts")
    op.drop_table("external_source_accounts")

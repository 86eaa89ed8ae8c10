"""Create sync resource tables

Revision ID: 001_sync_resources
Revises:
Create Date: 2024-03-04

"""
import sqlalchemy as sa
from alembic import op

# revision identifiers
revision = "001_sync_resources"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sync_resources",
        sa.Column("uid", sa.String(36), primary_key=True),
        sa.Column("namespace", sa.String(253), nullable=False),
        sa.Column("name", sa.String(253), nullable=False),
        sa.Column("resource_version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("generation", sa.Integer, nullable=False, server_default="1"),
        sa.Column("labels", sa.JSON, nullable=False),
        sa.Column("annotations", sa.JSON, nullable=False),
        sa.Column("finalizers", sa.JSON, nullable=False),
        sa.Column("spec", sa.JSON, nullable=False),
        sa.Column("status", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("deletion_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("namespace", "name", name="uq_sync_resources_namespace_name"),
    )
    op.create_index("ix_sync_resources_namespace", "sync_resources", ["namespace"])

    op.create_table(
        "api_endpoints",
        sa.Column("uid", sa.String(36), primary_key=True),
        sa.Column("namespace", sa.String(253), nullable=False),
        sa.Column("name", sa.String(253), nullable=False),
        sa.Column("resource_version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("spec", sa.JSON, nullable=False),
        sa.Column("status", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("namespace", "name", name="uq_api_endpoints_namespace_name"),
    )


def downgrade() -> None:
    op.drop_table("api_endpoints")
    op.drop_index("ix_sync_resources_namespace", table_name="sync_resources")
    op.drop_table("sync_resources")

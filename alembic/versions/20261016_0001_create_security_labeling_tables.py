"""create security labeling tables

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 09:12:40.114512

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "topic_sources",
        sa.Column("id", sa.String(length=255), primary_key=True),
        sa.Column("resource", sa.Text(), nullable=False),
        sa.Column("source_date", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "labeling_metadata",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "labeling_stats",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("labeling_stats")
    op.drop_table("labeling_metadata")
    op.drop_table("topic_sources")

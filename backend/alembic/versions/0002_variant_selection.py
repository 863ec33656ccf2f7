"""add variant selection

Revision ID: 0002_variant_selection
Revises: 0001_scheduling_core
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_variant_selection"
down_revision = "0001_scheduling_core"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "post_variants",
        sa.Column("is_selected", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "uq_post_variants_selected_post",
        "post_variants",
        ["post_id"],
        unique=True,
        postgresql_where=sa.text("is_selected"),
    )


def downgrade() -> None:
    op.drop_index("uq_post_variants_selected_post", table_name="post_variants")
    op.drop_column("post_variants", "is_selected")

"""create_integrations

Revision ID: 7c1e2a9d4f30
Revises:
Create Date: 2026-10-18 09:12:41.118204

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "7c1e2a9d4f30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the integrations table (one row per user and provider)."""
    op.create_table(
        "integrations",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("access_token_ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("refresh_token_ciphertext", sa.LargeBinary(), nullable=True),
        sa.Column("id_token_ciphertext", sa.LargeBinary(), nullable=True),
        sa.Column(
            "token_type",
            sa.String(length=40),
            nullable=False,
            server_default="Bearer",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("provider_user_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "provider", name="uq_integrations_user_provider"
        ),
        sa.CheckConstraint(
            "provider IN ('google', 'zoom')", name="chk_integrations_provider"
        ),
    )

    op.create_index("ix_integrations_user_id", "integrations", ["user_id"])
    op.create_index("ix_integrations_expires_at", "integrations", ["expires_at"])


def downgrade() -> None:
    """Drop the integrations table."""
    op.drop_index("ix_integrations_expires_at", table_name="integrations")
    op.drop_index("ix_integrations_user_id", table_name="integrations")
    op.drop_table("integrations")

"""Clicks and campaigns tables

Revision ID: 001_clicks_campaigns
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_clicks_campaigns"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Campaigns first (clicks reference them)
    op.create_table(
        "campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("default_utm_source", sa.String(200), nullable=True),
        sa.Column("default_utm_medium", sa.String(200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "clicks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("utm_source", sa.String(200), nullable=True),
        sa.Column("utm_medium", sa.String(200), nullable=True),
        sa.Column("utm_campaign", sa.String(200), nullable=True),
        sa.Column("utm_content", sa.String(200), nullable=True),
        sa.Column("utm_term", sa.String(200), nullable=True),
        sa.Column("fbclid", sa.String(200), nullable=True, unique=True),
        sa.Column("gclid", sa.String(200), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("referer", sa.Text(), nullable=True),
        sa.Column("kommo_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("kommo_lead_id", sa.String(64), nullable=True),
        sa.Column("kommo_error", sa.Text(), nullable=True),
        sa.Column(
            "campaign_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("campaigns.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_index("ix_clicks_phone_number", "clicks", ["phone_number"])
    op.create_index("ix_clicks_utm_campaign", "clicks", ["utm_campaign"])
    op.create_index("ix_clicks_ip_address", "clicks", ["ip_address"])
    op.create_index("ix_clicks_kommo_status", "clicks", ["kommo_status"])
    op.create_index("ix_clicks_created_at", "clicks", ["created_at"])
    op.create_index("idx_clicks_phone_ip_created", "clicks", ["phone_number", "ip_address", "created_at"])
    op.create_index("idx_clicks_status_created", "clicks", ["kommo_status", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_clicks_status_created", table_name="clicks")
    op.drop_index("idx_clicks_phone_ip_created", table_name="clicks")
    op.drop_index("ix_clicks_created_at", table_name="clicks")
    op.drop_index("ix_clicks_kommo_status", table_name="clicks")
    op.drop_index("ix_clicks_ip_address", table_name="clicks")
    op.drop_index("ix_clicks_utm_campaign", table_name="clicks")
    op.drop_index("ix_clicks_phone_number", table_name="clicks")
    op.drop_table("clicks")
    op.drop_table("campaigns")

"""profiles, images, billing grants and webhook events

Revision ID: 4c1e9a7d2b30
Revises:
Create Date: 2026-10-16 09:12:05.418331+00:00

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "4c1e9a7d2b30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("user_id", sa.Text(), primary_key=True),  # identity-provider subject
        sa.Column("tier", sa.Text(), nullable=False, server_default="free"),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ai_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("billing_customer_id", sa.Text()),
        sa.Column("billing_subscription_id", sa.Text()),
        sa.Column("cancel_at_period_end", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Text()),
        sa.Column("updated_at", sa.Text()),
    )
    op.create_index("idx_profiles_customer", "profiles", ["billing_customer_id"])
    op.create_index("idx_profiles_subscription", "profiles", ["billing_subscription_id"])

    op.create_table(
        "images",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("original_url", sa.Text(), nullable=False),
        sa.Column("enhanced_url", sa.Text(), nullable=False),
        sa.Column("prompt_label", sa.Text()),
        sa.Column("mode", sa.Text(), nullable=False, server_default="basic"),
        sa.Column("likes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Text(), nullable=False),
    )
    op.create_index("idx_images_user_created", "images", ["user_id", "created_at"])
    op.create_index("idx_images_created", "images", ["created_at"])

    op.create_table(
        "billing_grants",
        sa.Column("grant_key", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),  # subscription | renewal | credit_pack | ...
        sa.Column("ai_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Text()),
    )
    op.create_index("idx_grants_user_kind", "billing_grants", ["user_id", "kind"])

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.Text(), primary_key=True),
        sa.Column("event_type", sa.Text()),
        sa.Column("received_at", sa.Text()),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_index("idx_grants_user_kind", table_name="billing_grants")
    op.drop_table("billing_grants")
    op.drop_index("idx_images_created", table_name="images")
    op.drop_index("idx_images_user_created", table_name="images")
    op.drop_table("images")
    op.drop_index("idx_profiles_subscription", table_name="profiles")
    op.drop_index("idx_profiles_customer", table_name="profiles")
    op.drop_table("profiles")

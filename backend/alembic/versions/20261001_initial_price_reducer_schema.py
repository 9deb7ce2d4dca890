"""Initial price reducer schema

Revision ID: price_reducer_initial_20261001
Revises:
Create Date: 2026-10-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "price_reducer_initial_20261001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create users, strategies, listings, price history, credentials and OAuth state tables."""

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("vacation_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("vacation_mode_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sku_prefix", sa.String(length=16), nullable=False, server_default="SKU-"),
        *_timestamps(),
    )

    op.create_table(
        "strategies",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False, server_default="fixed_percentage"),
        sa.Column("reduction_type", sa.String(length=16), nullable=False, server_default="percentage"),
        sa.Column("magnitude", sa.Numeric(12, 2), nullable=False),
        sa.Column("interval_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_strategies_user_name"),
    )
    op.create_index("idx_strategies_user_id", "strategies", ["user_id"])

    op.create_table(
        "listings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ebay_item_id", sa.String(length=64), nullable=True),
        sa.Column("sku", sa.String(length=80), nullable=True),
        sa.Column("offer_id", sa.String(length=64), nullable=True),
        sa.Column("catalog_id", sa.String(length=32), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="trading_api"),
        sa.Column("title", sa.Text(), nullable=False, server_default=""),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("ebay_url", sa.Text(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("listed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quantity_available", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("watch_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("listing_status", sa.String(length=16), nullable=False, server_default="Active"),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("original_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("minimum_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("price_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "strategy_id",
            sa.String(length=36),
            sa.ForeignKey("strategies.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("reduction_percentage", sa.Numeric(5, 2), nullable=True, server_default="5"),
        sa.Column("reduction_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("reduction_interval_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("enable_auto_reduction", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_price_reduction", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_price_reduction", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_reductions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reduction_lock_token", sa.String(length=36), nullable=True),
        sa.Column("reduction_locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("market_average_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("market_lowest_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("market_competitor_count", sa.Integer(), nullable=True),
        sa.Column("market_analyzed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_with_ebay", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_status", sa.String(length=16), nullable=False, server_default="synced"),
        sa.Column("sync_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "ebay_item_id", name="uq_listings_user_item"),
        sa.UniqueConstraint("user_id", "sku", name="uq_listings_user_sku"),
    )
    op.create_index("idx_listings_user_status", "listings", ["user_id", "listing_status"])
    op.create_index("idx_listings_auto_reduction", "listings", ["enable_auto_reduction", "listing_status"])
    op.create_index("idx_listings_strategy_id", "listings", ["strategy_id"])

    op.create_table(
        "price_reduction_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "listing_id",
            sa.String(length=36),
            sa.ForeignKey("listings.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ebay_item_id", sa.String(length=64), nullable=True),
        sa.Column("old_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("new_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("reduction_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("reduction_percentage", sa.Numeric(6, 2), nullable=False),
        sa.Column("strategy_id", sa.String(length=36), nullable=True),
        sa.Column("strategy_name", sa.String(length=100), nullable=True),
        sa.Column("strategy_kind", sa.String(length=32), nullable=False),
        sa.Column("trigger", sa.String(length=16), nullable=False, server_default="scheduled"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_price_reduction_events_listing", "price_reduction_events", ["listing_id", "created_at"])
    op.create_index("idx_price_reduction_events_user", "price_reduction_events", ["user_id"])

    op.create_table(
        "ebay_credentials",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("app_id", sa.String(length=255), nullable=True),
        sa.Column("client_secret", sa.Text(), nullable=True),
        sa.Column("dev_id", sa.String(length=255), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ebay_user_id", sa.String(length=64), nullable=True),
        sa.Column("ebay_username", sa.String(length=255), nullable=True),
        sa.Column("connection_status", sa.String(length=16), nullable=False, server_default="disconnected"),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_error", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "idx_ebay_credentials_status_expiry",
        "ebay_credentials",
        ["connection_status", "access_token_expires_at"],
    )

    op.create_table(
        "oauth_states",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("state_hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code_verifier", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_oauth_states_expires_at", "oauth_states", ["expires_at"])


def downgrade() -> None:
    """Drop all price reducer tables."""

    op.drop_index("idx_oauth_states_expires_at", table_name="oauth_states")
    op.drop_table("oauth_states")
    op.drop_index("idx_ebay_credentials_status_expiry", table_name="ebay_credentials")
    op.drop_table("ebay_credentials")
    op.drop_index("idx_price_reduction_events_user", table_name="price_reduction_events")
    op.drop_index("idx_price_reduction_events_listing", table_name="price_reduction_events")
    op.drop_table("price_reduction_events")
    op.drop_index("idx_listings_strategy_id", table_name="listings")
    op.drop_index("idx_listings_auto_reduction", table_name="listings")
    op.drop_index("idx_listings_user_status", table_name="listings")
    op.drop_table("listings")
    op.drop_index("idx_strategies_user_id", table_name="strategies")
    op.drop_table("strategies")
    op.drop_table("users")

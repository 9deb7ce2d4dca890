"""Listing pricing check constraints and per-user reconciliation time

Revision ID: price_reducer_listing_checks_20261020
Revises: price_reducer_initial_20261001
Create Date: 2026-10-20

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "price_reducer_listing_checks_20261020"
down_revision: Union[str, Sequence[str], None] = "price_reducer_initial_20261001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add users.last_reconciled_at and the listing pricing check constraints."""

    with op.batch_alter_table("users") as batch_op:
        batch_op.add_column(sa.Column("last_reconciled_at", sa.DateTime(timezone=True), nullable=True))

    # Existing rows that would violate the floor invariant are disabled rather than rejected.
    op.execute(
        "UPDATE listings SET enable_auto_reduction = false "
        "WHERE minimum_price <= 0 OR minimum_price > original_price"
    )
    op.execute("UPDATE listings SET minimum_price = original_price WHERE minimum_price > original_price")

    with op.batch_alter_table("listings") as batch_op:
        batch_op.create_check_constraint(
            "ck_listings_minimum_within_original", "minimum_price <= original_price"
        )
        batch_op.create_check_constraint(
            "ck_listings_enabled_requires_minimum", "NOT enable_auto_reduction OR minimum_price > 0"
        )
        batch_op.create_check_constraint(
            "ck_listings_interval_range", "reduction_interval_days BETWEEN 1 AND 365"
        )


def downgrade() -> None:
    """Drop the listing check constraints and users.last_reconciled_at."""

    with op.batch_alter_table("listings") as batch_op:
        batch_op.drop_constraint("ck_listings_interval_range", type_="check")
        batch_op.drop_constraint("ck_listings_enabled_requires_minimum", type_="check")
        batch_op.drop_constraint("ck_listings_minimum_within_original", type_="check")

    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_column("last_reconciled_at")

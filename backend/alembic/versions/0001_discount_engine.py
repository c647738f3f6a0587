"""discount engine tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "discounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("code", sa.String(length=255), nullable=True),
        sa.Column("per_user_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("per_email_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_use_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("date_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("date_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("all_groups", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("all_purchasables", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("all_categories", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stop_processing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("exclude_on_sale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ignore_sales", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="999"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_discounts_code", "discounts", ["code"], unique=True)

    op.create_table(
        "discount_purchasables",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("purchasable_id", sa.Integer(), nullable=False),
        sa.Column("purchasable_type", sa.String(length=255), nullable=True),
        sa.UniqueConstraint("discount_id", "purchasable_id", name="uq_discount_purchasables_discount_purchasable"),
    )
    op.create_index("ix_discount_purchasables_discount_id", "discount_purchasables", ["discount_id"])
    op.create_index("ix_discount_purchasables_purchasable_id", "discount_purchasables", ["purchasable_id"])

    op.create_table(
        "discount_categories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("discount_id", "category_id", name="uq_discount_categories_discount_category"),
    )
    op.create_index("ix_discount_categories_discount_id", "discount_categories", ["discount_id"])
    op.create_index("ix_discount_categories_category_id", "discount_categories", ["category_id"])

    op.create_table(
        "discount_user_groups",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_group_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("discount_id", "user_group_id", name="uq_discount_user_groups_discount_group"),
    )
    op.create_index("ix_discount_user_groups_discount_id", "discount_user_groups", ["discount_id"])
    op.create_index("ix_discount_user_groups_user_group_id", "discount_user_groups", ["user_group_id"])

    op.create_table(
        "customer_discount_uses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("uses", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("customer_id", "discount_id", name="uq_customer_discount_uses_customer_discount"),
    )
    op.create_index("ix_customer_discount_uses_customer_id", "customer_discount_uses", ["customer_id"])
    op.create_index("ix_customer_discount_uses_discount_id", "customer_discount_uses", ["discount_id"])

    op.create_table(
        "email_discount_uses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("uses", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("email", "discount_id", name="uq_email_discount_uses_email_discount"),
    )
    op.create_index("ix_email_discount_uses_email", "email_discount_uses", ["email"])
    op.create_index("ix_email_discount_uses_discount_id", "email_discount_uses", ["discount_id"])

    op.create_table(
        "discount_redemptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("order_reference", sa.String(length=255), nullable=False),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("order_reference", name="uq_discount_redemptions_order"),
    )
    op.create_index("ix_discount_redemptions_discount_id", "discount_redemptions", ["discount_id"])


def downgrade() -> None:
    op.drop_index("ix_discount_redemptions_discount_id", table_name="discount_redemptions")
    op.drop_table("discount_redemptions")
    op.drop_index("ix_email_discount_uses_discount_id", table_name="email_discount_uses")
    op.drop_index("ix_email_discount_uses_email", table_name="email_discount_uses")
    op.drop_table("email_discount_uses")
    op.drop_index("ix_customer_discount_uses_discount_id", table_name="customer_discount_uses")
    op.drop_index("ix_customer_discount_uses_customer_id", table_name="customer_discount_uses")
    op.drop_table("customer_discount_uses")
    op.drop_index("ix_discount_user_groups_user_group_id", table_name="discount_user_groups")
    op.drop_index("ix_discount_user_groups_discount_id", table_name="discount_user_groups")
    op.drop_table("discount_user_groups")
    op.drop_index("ix_discount_categories_category_id", table_name="discount_categories")
    op.drop_index("ix_discount_categories_discount_id", table_name="discount_categories")
    op.drop_table("discount_categories")
    op.drop_index("ix_discount_purchasables_purchasable_id", table_name="discount_purchasables")
    op.drop_index("ix_discount_purchasables_discount_id", table_name="discount_purchasables")
    op.drop_table("discount_purchasables")
    op.drop_index("ix_discounts_code", table_name="discounts")
    op.drop_table("discounts")

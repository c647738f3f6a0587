from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, false, func, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from discount_engine.db.base import Base


class Discount(Base):
    __tablename__ = "discounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True, index=True)
    per_user_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    per_email_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_use_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    date_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    date_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    all_groups: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    all_purchasables: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    all_categories: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    stop_processing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    exclude_on_sale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    ignore_sales: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=999, server_default="999")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    purchasables: Mapped[list["DiscountPurchasable"]] = relationship(
        "DiscountPurchasable", back_populates="discount", cascade="all, delete-orphan", lazy="selectin"
    )
    categories: Mapped[list["DiscountCategory"]] = relationship(
        "DiscountCategory", back_populates="discount", cascade="all, delete-orphan", lazy="selectin"
    )
    user_groups: Mapped[list["DiscountUserGroup"]] = relationship(
        "DiscountUserGroup", back_populates="discount", cascade="all, delete-orphan", lazy="selectin"
    )

    # The "all_*" flags are derived from their ID sets whenever a set is assigned here.
    # Rows for IDs that stay are kept so the unique constraints never see a delete/insert pair.
    def set_purchasable_ids(self, ids: Iterable[int], *, purchasable_type: str | None = None) -> None:
        wanted = {int(i) for i in ids}
        kept = [row for row in self.purchasables if row.purchasable_id in wanted]
        known = {row.purchasable_id for row in kept}
        self.purchasables = kept + [
            DiscountPurchasable(purchasable_id=i, purchasable_type=purchasable_type) for i in sorted(wanted - known)
        ]
        self.all_purchasables = not wanted

    def set_category_ids(self, ids: Iterable[int]) -> None:
        wanted = {int(i) for i in ids}
        kept = [row for row in self.categories if row.category_id in wanted]
        known = {row.category_id for row in kept}
        self.categories = kept + [DiscountCategory(category_id=i) for i in sorted(wanted - known)]
        self.all_categories = not wanted

    def set_user_group_ids(self, ids: Iterable[int]) -> None:
        wanted = {int(i) for i in ids}
        kept = [row for row in self.user_groups if row.user_group_id in wanted]
        known = {row.user_group_id for row in kept}
        self.user_groups = kept + [DiscountUserGroup(user_group_id=i) for i in sorted(wanted - known)]
        self.all_groups = not wanted


class DiscountPurchasable(Base):
    __tablename__ = "discount_purchasables"
    __table_args__ = (UniqueConstraint("discount_id", "purchasable_id", name="uq_discount_purchasables_discount_purchasable"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discount_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    purchasable_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    purchasable_type: Mapped[str | None] = mapped_column(String(255), nullable=True)

    discount: Mapped[Discount] = relationship("Discount", back_populates="purchasables")


class DiscountCategory(Base):
    __tablename__ = "discount_categories"
    __table_args__ = (UniqueConstraint("discount_id", "category_id", name="uq_discount_categories_discount_category"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discount_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    category_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    discount: Mapped[Discount] = relationship("Discount", back_populates="categories")


class DiscountUserGroup(Base):
    __tablename__ = "discount_user_groups"
    __table_args__ = (UniqueConstraint("discount_id", "user_group_id", name="uq_discount_user_groups_discount_group"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discount_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_group_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    discount: Mapped[Discount] = relationship("Discount", back_populates="user_groups")


class CustomerDiscountUse(Base):
    __tablename__ = "customer_discount_uses"
    __table_args__ = (UniqueConstraint("customer_id", "discount_id", name="uq_customer_discount_uses_customer_discount"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    discount_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


class EmailDiscountUse(Base):
    __tablename__ = "email_discount_uses"
    __table_args__ = (UniqueConstraint("email", "discount_id", name="uq_email_discount_uses_email_discount"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    discount_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


class DiscountRedemption(Base):
    """Marks an order whose coupon usage has already been counted."""

    __tablename__ = "discount_redemptions"
    __table_args__ = (UniqueConstraint("order_reference", name="uq_discount_redemptions_order"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    discount_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("discounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DiscountRule(BaseModel):
    """Read-only view of one discount and its scoping sets, as held by a catalog snapshot."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    description: str | None = None
    code: str | None = None
    per_user_limit: int = Field(default=0, ge=0)
    per_email_limit: int = Field(default=0, ge=0)
    total_use_limit: int = Field(default=0, ge=0)
    total_uses: int = Field(default=0, ge=0)
    date_from: datetime | None = None
    date_to: datetime | None = None
    all_groups: bool = True
    all_purchasables: bool = True
    all_categories: bool = True
    enabled: bool = True
    stop_processing: bool = False
    exclude_on_sale: bool = False
    ignore_sales: bool = True
    sort_order: int = 999
    purchasable_ids: frozenset[int] = frozenset()
    category_ids: frozenset[int] = frozenset()
    user_group_ids: frozenset[int] = frozenset()

    @field_validator("date_from", "date_to")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # SQLite hands back naive datetimes even for timezone-aware columns.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def has_code(self) -> bool:
        return bool(self.code)

    @property
    def restricts_purchasables(self) -> bool:
        return bool(self.purchasable_ids) and not self.all_purchasables

    @property
    def restricts_categories(self) -> bool:
        return bool(self.category_ids) and not self.all_categories

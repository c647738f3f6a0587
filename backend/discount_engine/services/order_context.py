from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from discount_engine.services.collaborators import Purchasable


@dataclass
class Customer:
    id: int
    # Registered user account behind the customer; guests have none.
    user: Any | None = None


@dataclass
class LineItem:
    purchasable: Purchasable | None
    on_sale: bool = False
    order: Order | None = field(default=None, repr=False, compare=False)

    @property
    def purchasable_id(self) -> int | None:
        if self.purchasable is None:
            return None
        return self.purchasable.get_id()


@dataclass
class Order:
    coupon_code: str | None = None
    customer: Customer | None = None
    email: str | None = None
    # Reference timestamp for date checks; the wall clock is used when missing.
    date_updated: datetime | None = None
    line_items: list[LineItem] = field(default_factory=list)
    reference: str | None = None

    def __post_init__(self) -> None:
        for item in self.line_items:
            item.order = self

    def add_line_item(self, item: LineItem) -> LineItem:
        item.order = self
        self.line_items.append(item)
        return item

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from discount_engine.schemas.discount import DiscountRule
from discount_engine.services import usage_ledger
from discount_engine.services.collaborators import (
    CategoryRelationResolver,
    LineItemVeto,
    UserGroupResolver,
    allow_all,
)
from discount_engine.services.discount_catalog import DiscountCatalog
from discount_engine.services.order_context import LineItem, Order

logger = logging.getLogger(__name__)

REASON_NOT_FOUND = "not_found"
REASON_DISABLED = "disabled"
REASON_COUPON_MISMATCH = "coupon_mismatch"
REASON_LIMIT_REACHED = "limit_reached"
REASON_OUT_OF_DATE = "out_of_date"
REASON_GROUP_NOT_ELIGIBLE = "group_not_eligible"
REASON_LOGIN_REQUIRED = "login_required"
REASON_PER_USER_LIMIT_REACHED = "per_user_limit_reached"
REASON_PER_EMAIL_LIMIT_REACHED = "per_email_limit_reached"
REASON_NO_MATCHING_LINE_ITEMS = "no_matching_line_items"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class CouponAvailability:
    available: bool
    reason: str | None = None
    reason_code: str | None = None
    discount: DiscountRule | None = None


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    reason_code: str | None = None

    def __bool__(self) -> bool:
        return self.matched


_MATCHED = MatchResult(matched=True)


class DiscountEvaluator:
    """Decides whether discounts apply to an order or one of its line items.

    Usage counters are read through the session without locking; the figures
    are advisory and the ledger re-checks limits when a redemption is recorded.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        catalog: DiscountCatalog,
        group_resolver: UserGroupResolver,
        category_resolver: CategoryRelationResolver,
        line_item_veto: LineItemVeto | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.catalog = catalog
        self.group_resolver = group_resolver
        self.category_resolver = category_resolver
        self.line_item_veto = line_item_veto or allow_all
        self._clock = clock or _now

    def _order_now(self, order: Order) -> datetime:
        return _as_aware(order.date_updated or self._clock())

    @staticmethod
    def _coupon_code_valid(order: Order, discount: DiscountRule) -> bool:
        if not discount.has_code:
            return True
        return bool(order.coupon_code) and order.coupon_code.casefold() == discount.code.casefold()

    def _date_valid(self, order: Order, discount: DiscountRule) -> bool:
        now = self._order_now(order)
        if discount.date_from and discount.date_from > now:
            return False
        if discount.date_to and discount.date_to < now:
            return False
        return True

    @staticmethod
    def _registered_user(order: Order) -> Any | None:
        # Guest customers carry no user and are re-created per cart.
        if order.customer is None:
            return None
        return order.customer.user

    async def _user_group_valid(self, order: Order, discount: DiscountRule) -> bool:
        if discount.all_groups:
            return True
        user = self._registered_user(order)
        if user is None:
            return False
        group_ids = await self.group_resolver.group_ids_for_user(user)
        return bool(set(group_ids) & discount.user_group_ids)

    async def _total_limit_valid(self, discount: DiscountRule) -> bool:
        if discount.total_use_limit <= 0:
            return True
        used = await usage_ledger.total_uses(self.session, discount_id=discount.id)
        return used < discount.total_use_limit

    async def _per_user_usage_valid(self, order: Order, discount: DiscountRule) -> bool:
        if discount.per_user_limit <= 0:
            return True
        if order.customer is None or self._registered_user(order) is None:
            return False
        used = await usage_ledger.uses_by_customer(self.session, customer_id=order.customer.id, discount_id=discount.id)
        return used < discount.per_user_limit

    async def _per_email_usage_valid(self, order: Order, discount: DiscountRule) -> bool:
        if discount.per_email_limit <= 0:
            return True
        if not order.email:
            return False
        used = await usage_ledger.uses_by_email(self.session, email=order.email, discount_id=discount.id)
        return used < discount.per_email_limit

    async def explain_order_match(self, order: Order, discount: DiscountRule) -> MatchResult:
        if not discount.enabled:
            return MatchResult(False, REASON_DISABLED)
        if not self._coupon_code_valid(order, discount):
            return MatchResult(False, REASON_COUPON_MISMATCH)
        if not self._date_valid(order, discount):
            return MatchResult(False, REASON_OUT_OF_DATE)
        if not await self._user_group_valid(order, discount):
            return MatchResult(False, REASON_GROUP_NOT_ELIGIBLE)

        if discount.has_code:
            if not await self._total_limit_valid(discount):
                return MatchResult(False, REASON_LIMIT_REACHED)
            if not await self._per_user_usage_valid(order, discount):
                return MatchResult(False, REASON_PER_USER_LIMIT_REACHED)
            if not await self._per_email_usage_valid(order, discount):
                return MatchResult(False, REASON_PER_EMAIL_LIMIT_REACHED)

        if discount.restricts_purchasables or discount.restricts_categories:
            for line_item in order.line_items:
                if await self.match_line_item(line_item, discount, also_match_order=False):
                    return _MATCHED
            return MatchResult(False, REASON_NO_MATCHING_LINE_ITEMS)

        return _MATCHED

    async def match_order(self, order: Order, discount: DiscountRule) -> bool:
        result = await self.explain_order_match(order, discount)
        if not result.matched:
            logger.debug(
                "discount did not match order",
                extra={"discount_id": discount.id, "reason": result.reason_code},
            )
        return result.matched

    async def match_line_item(self, line_item: LineItem, discount: DiscountRule, also_match_order: bool = False) -> bool:
        if also_match_order:
            if line_item.order is None or not await self.match_order(line_item.order, discount):
                return False

        if line_item.on_sale and discount.exclude_on_sale:
            return False

        purchasable = line_item.purchasable
        if purchasable is None or not purchasable.is_promotable():
            return False

        if discount.restricts_purchasables and purchasable.get_id() not in discount.purchasable_ids:
            return False

        if discount.restricts_categories:
            related = await self.category_resolver.related_category_ids(purchasable.get_promotion_relation_source())
            if not set(related) & discount.category_ids:
                return False

        return bool(self.line_item_veto(line_item, discount))

    async def is_coupon_available(self, order: Order) -> CouponAvailability:
        """Pre-checkout validation of the order's coupon; never touches the counters."""
        discount = await self.catalog.get_discount_by_code(self.session, order.coupon_code)
        if discount is None:
            return CouponAvailability(False, "Coupon not valid", REASON_NOT_FOUND)

        if not await self._total_limit_valid(discount):
            return CouponAvailability(False, "Discount use has reached its limit", REASON_LIMIT_REACHED, discount)

        if not self._date_valid(order, discount):
            return CouponAvailability(False, "Discount is out of date", REASON_OUT_OF_DATE, discount)

        if not await self._user_group_valid(order, discount):
            return CouponAvailability(
                False, "Discount is not allowed for the customer", REASON_GROUP_NOT_ELIGIBLE, discount
            )

        if discount.per_user_limit > 0:
            if order.customer is None or self._registered_user(order) is None:
                return CouponAvailability(
                    False, "Discount is limited to use by registered users only.", REASON_LOGIN_REQUIRED, discount
                )
            used = await usage_ledger.uses_by_customer(
                self.session, customer_id=order.customer.id, discount_id=discount.id
            )
            if used >= discount.per_user_limit:
                return CouponAvailability(
                    False,
                    f"This coupon limited to {discount.per_user_limit} uses.",
                    REASON_PER_USER_LIMIT_REACHED,
                    discount,
                )

        if discount.per_email_limit > 0 and order.email:
            used = await usage_ledger.uses_by_email(self.session, email=order.email, discount_id=discount.id)
            if used >= discount.per_email_limit:
                return CouponAvailability(
                    False,
                    f"This coupon limited to {discount.per_email_limit} uses.",
                    REASON_PER_EMAIL_LIMIT_REACHED,
                    discount,
                )

        return CouponAvailability(True, discount=discount)

    async def applicable_discounts(self, order: Order) -> list[DiscountRule]:
        """Matching discounts in catalog order, cut off after the first one that stops processing."""
        matched: list[DiscountRule] = []
        for discount in (await self.catalog.get_all_discounts(self.session)).values():
            if not await self.match_order(order, discount):
                continue
            matched.append(discount)
            if discount.stop_processing:
                break
        return matched

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from discount_engine.core.logging_config import correlation_id_ctx_var
from discount_engine.models.discount import Discount
from discount_engine.services import usage_ledger
from discount_engine.services.order_context import Order

logger = logging.getLogger(__name__)


def _normalize_code(code: str | None) -> str:
    return (code or "").strip().lower()


async def on_order_completed(
    session: AsyncSession,
    *,
    order: Order,
    strict: bool | None = None,
) -> usage_ledger.RedemptionResult | None:
    """Count the order's coupon once it has transitioned to completed.

    Wire this to the completion transition only. The coupon is resolved
    case-insensitively, the same way checkout accepted it. Orders carrying a
    reference are counted at most once; a repeated call reports
    ``duplicate=True`` and leaves the caller's transaction alone. A coupon whose
    discount was deleted after checkout is ignored so completion never fails on
    it. ``RedemptionLimitExceeded`` propagates so the caller can decide whether
    to honour the discount retroactively.
    """
    code = _normalize_code(order.coupon_code)
    if not code:
        return None

    token = correlation_id_ctx_var.set(order.reference or correlation_id_ctx_var.get())
    try:
        discount_id = (
            await session.execute(select(Discount.id).where(func.lower(Discount.code) == code).limit(1))
        ).scalar_one_or_none()
        if discount_id is None:
            logger.info("completed order references unknown coupon", extra={"coupon_code": order.coupon_code})
            return None

        return await usage_ledger.record_redemption(
            session,
            discount_id=int(discount_id),
            customer_id=order.customer.id if order.customer else None,
            email=order.email,
            order_reference=order.reference,
            strict=strict,
        )
    finally:
        correlation_id_ctx_var.reset(token)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from discount_engine.core import metrics
from discount_engine.core.config import settings
from discount_engine.models.discount import CustomerDiscountUse, Discount, DiscountRedemption, EmailDiscountUse

logger = logging.getLogger(__name__)

SCOPE_TOTAL = "total"
SCOPE_CUSTOMER = "customer"
SCOPE_EMAIL = "email"


class RedemptionLimitExceeded(RuntimeError):
    """An increment would push a usage counter past its limit; nothing was recorded."""

    def __init__(self, *, discount_id: int, scope: str, current: int, limit: int) -> None:
        super().__init__(f"Discount {discount_id} {scope} usage limit reached ({current}/{limit})")
        self.discount_id = discount_id
        self.scope = scope
        self.current = current
        self.limit = limit


@dataclass(frozen=True)
class RedemptionResult:
    discount_id: int
    recorded: bool
    duplicate: bool = False
    total_uses: int | None = None
    customer_uses: int | None = None
    email_uses: int | None = None
    scopes: tuple[str, ...] = field(default_factory=tuple)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _dialect_insert(session: AsyncSession) -> Any:
    dialect = getattr(getattr(session.get_bind(), "dialect", None), "name", "")
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for usage counters: {dialect or 'unknown'}")


async def uses_by_customer(session: AsyncSession, *, customer_id: int, discount_id: int) -> int:
    uses = (
        await session.execute(
            select(CustomerDiscountUse.uses).where(
                CustomerDiscountUse.customer_id == customer_id,
                CustomerDiscountUse.discount_id == discount_id,
            )
        )
    ).scalar_one_or_none()
    return int(uses or 0)


async def uses_by_email(session: AsyncSession, *, email: str, discount_id: int) -> int:
    cleaned = normalize_email(email)
    if not cleaned:
        return 0
    uses = (
        await session.execute(
            select(EmailDiscountUse.uses).where(
                EmailDiscountUse.email == cleaned,
                EmailDiscountUse.discount_id == discount_id,
            )
        )
    ).scalar_one_or_none()
    return int(uses or 0)


async def total_uses(session: AsyncSession, *, discount_id: int) -> int:
    uses = (await session.execute(select(Discount.total_uses).where(Discount.id == discount_id))).scalar_one_or_none()
    return int(uses or 0)


async def _claim_order(
    session: AsyncSession,
    *,
    order_reference: str,
    discount_id: int,
    customer_id: int | None,
    email: str | None,
) -> bool:
    insert_fn = _dialect_insert(session)
    stmt = (
        insert_fn(DiscountRedemption)
        .values(order_reference=order_reference, discount_id=discount_id, customer_id=customer_id, email=email)
        .on_conflict_do_nothing(index_elements=["order_reference"])
    )
    result = await session.execute(stmt)
    return int(getattr(result, "rowcount", 0) or 0) == 1


async def _increment_total(session: AsyncSession, *, discount: Discount, strict: bool) -> int:
    stmt = update(Discount).where(Discount.id == discount.id).values(total_uses=Discount.total_uses + 1)
    if strict:
        stmt = stmt.where(or_(Discount.total_use_limit <= 0, Discount.total_uses < Discount.total_use_limit))
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    current = await total_uses(session, discount_id=discount.id)
    if int(getattr(result, "rowcount", 0) or 0) == 0:
        raise RedemptionLimitExceeded(
            discount_id=discount.id, scope=SCOPE_TOTAL, current=current, limit=int(discount.total_use_limit)
        )
    return current


async def _upsert_scoped_counter(
    session: AsyncSession,
    *,
    model: type[CustomerDiscountUse] | type[EmailDiscountUse],
    key_column: Any,
    key_value: int | str,
    discount_id: int,
    limit: int,
    strict: bool,
) -> int:
    """Insert the counter with ``uses=1`` or bump it in the same statement."""
    insert_fn = _dialect_insert(session)
    stmt = insert_fn(model).values({key_column.key: key_value, "discount_id": discount_id, "uses": 1})
    conflict_kwargs: dict[str, Any] = {
        "index_elements": [key_column.key, "discount_id"],
        "set_": {"uses": model.uses + 1},
    }
    if strict:
        conflict_kwargs["where"] = model.uses < limit
    result = await session.execute(stmt.on_conflict_do_update(**conflict_kwargs))
    current = int(
        (
            await session.execute(
                select(func.coalesce(func.max(model.uses), 0)).where(
                    key_column == key_value, model.discount_id == discount_id
                )
            )
        ).scalar_one()
    )
    if int(getattr(result, "rowcount", 0) or 0) == 0:
        scope = SCOPE_CUSTOMER if model is CustomerDiscountUse else SCOPE_EMAIL
        raise RedemptionLimitExceeded(discount_id=discount_id, scope=scope, current=current, limit=limit)
    return current


async def record_redemption(
    session: AsyncSession,
    *,
    discount_id: int,
    customer_id: int | None = None,
    email: str | None = None,
    order_reference: str | None = None,
    strict: bool | None = None,
) -> RedemptionResult:
    """Count one use of a discount against every configured scope.

    Runs inside the caller's transaction. The discount row is locked and the
    counters move through storage-level increments inside a savepoint. In strict
    mode every increment is conditional on its limit; a refusal rolls back the
    savepoint only and raises ``RedemptionLimitExceeded``. Loose mode counts
    unconditionally. On success the caller's transaction is committed.

    When ``order_reference`` is given, an order that was already counted is left
    untouched and reported as a duplicate.
    """
    strict = settings.discount_strict_usage_limits if strict is None else strict
    cleaned_email = normalize_email(email) or None
    discount = (
        (
            await session.execute(
                select(Discount)
                .where(Discount.id == discount_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        )
        .scalars()
        .first()
    )
    if discount is None:
        logger.debug("redemption skipped, discount missing", extra={"discount_id": discount_id})
        return RedemptionResult(discount_id=discount_id, recorded=False)

    claimed = True
    scopes: list[str] = []
    total: int | None = None
    customer_uses: int | None = None
    email_uses: int | None = None
    try:
        async with session.begin_nested():
            if order_reference:
                claimed = await _claim_order(
                    session,
                    order_reference=order_reference,
                    discount_id=discount.id,
                    customer_id=customer_id,
                    email=cleaned_email,
                )
            if claimed:
                # A discount without a code has nothing to count globally.
                if discount.code:
                    total = await _increment_total(session, discount=discount, strict=strict)
                    scopes.append(SCOPE_TOTAL)

                if discount.per_user_limit and customer_id is not None:
                    customer_uses = await _upsert_scoped_counter(
                        session,
                        model=CustomerDiscountUse,
                        key_column=CustomerDiscountUse.customer_id,
                        key_value=int(customer_id),
                        discount_id=discount.id,
                        limit=int(discount.per_user_limit),
                        strict=strict,
                    )
                    scopes.append(SCOPE_CUSTOMER)

                if discount.per_email_limit and cleaned_email:
                    email_uses = await _upsert_scoped_counter(
                        session,
                        model=EmailDiscountUse,
                        key_column=EmailDiscountUse.email,
                        key_value=cleaned_email,
                        discount_id=discount.id,
                        limit=int(discount.per_email_limit),
                        strict=strict,
                    )
                    scopes.append(SCOPE_EMAIL)
    except RedemptionLimitExceeded as exc:
        metrics.record_redemption_rejected(exc.discount_id)
        logger.warning(
            "redemption rejected, usage limit reached",
            extra={"discount_id": exc.discount_id, "scope": exc.scope, "current": exc.current, "limit": exc.limit},
        )
        raise

    if not claimed:
        metrics.record_redemption_duplicate(discount_id)
        logger.info(
            "redemption already recorded for order",
            extra={"discount_id": discount_id, "order_reference": order_reference},
        )
        return RedemptionResult(discount_id=discount_id, recorded=False, duplicate=True)

    await session.commit()
    metrics.record_redemption(discount_id)
    logger.info("redemption recorded", extra={"discount_id": discount_id, "scopes": scopes})
    return RedemptionResult(
        discount_id=discount_id,
        recorded=True,
        total_uses=total,
        customer_uses=customer_uses,
        email_uses=email_uses,
        scopes=tuple(scopes),
    )


async def clear_usage_history(session: AsyncSession, *, discount_id: int) -> None:
    async with session.begin_nested():
        await session.execute(delete(CustomerDiscountUse).where(CustomerDiscountUse.discount_id == discount_id))
        await session.execute(delete(EmailDiscountUse).where(EmailDiscountUse.discount_id == discount_id))
        await session.execute(
            update(Discount)
            .where(Discount.id == discount_id)
            .values(total_uses=0)
            .execution_options(synchronize_session=False)
        )
    await session.commit()
    metrics.record_usage_history_cleared(discount_id)
    logger.info("discount usage history cleared", extra={"discount_id": discount_id})

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from discount_engine.core import metrics
from discount_engine.models.discount import Discount, DiscountCategory, DiscountPurchasable, DiscountUserGroup
from discount_engine.schemas.discount import DiscountRule
from discount_engine.services.collaborators import CategoryRelationResolver, Purchasable

logger = logging.getLogger(__name__)

_DISCOUNT_COLUMNS = (
    Discount.id,
    Discount.name,
    Discount.description,
    Discount.code,
    Discount.per_user_limit,
    Discount.per_email_limit,
    Discount.total_use_limit,
    Discount.total_uses,
    Discount.date_from,
    Discount.date_to,
    Discount.all_groups,
    Discount.all_purchasables,
    Discount.all_categories,
    Discount.enabled,
    Discount.stop_processing,
    Discount.exclude_on_sale,
    Discount.ignore_sales,
    Discount.sort_order,
)

_RELATION_KEYS = ("purchasable_id", "category_id", "user_group_id")


def _normalize_code(code: str | None) -> str:
    return (code or "").strip().lower()


async def fetch_discounts_with_relations(session: AsyncSession) -> list[Mapping[str, Any]]:
    """Return one row per discount x purchasable x category x user group (outer joined)."""
    result = await session.execute(
        select(
            *_DISCOUNT_COLUMNS,
            DiscountPurchasable.purchasable_id,
            DiscountCategory.category_id,
            DiscountUserGroup.user_group_id,
        )
        .outerjoin(DiscountPurchasable, DiscountPurchasable.discount_id == Discount.id)
        .outerjoin(DiscountCategory, DiscountCategory.discount_id == Discount.id)
        .outerjoin(DiscountUserGroup, DiscountUserGroup.discount_id == Discount.id)
        .order_by(Discount.sort_order, Discount.id)
    )
    return list(result.mappings().all())


def fold_discount_rows(rows: Iterable[Mapping[str, Any]]) -> Mapping[int, DiscountRule]:
    """Collapse joined rows into one rule per discount with three independent ID sets.

    Row order decides the order of the returned mapping.
    """
    fields_by_id: dict[int, dict[str, Any]] = {}
    purchasables: dict[int, set[int]] = {}
    categories: dict[int, set[int]] = {}
    user_groups: dict[int, set[int]] = {}

    for row in rows:
        discount_id = int(row["id"])
        if discount_id not in fields_by_id:
            fields_by_id[discount_id] = {key: value for key, value in row.items() if key not in _RELATION_KEYS}
            purchasables[discount_id] = set()
            categories[discount_id] = set()
            user_groups[discount_id] = set()
        if row.get("purchasable_id") is not None:
            purchasables[discount_id].add(int(row["purchasable_id"]))
        if row.get("category_id") is not None:
            categories[discount_id].add(int(row["category_id"]))
        if row.get("user_group_id") is not None:
            user_groups[discount_id].add(int(row["user_group_id"]))

    rules: dict[int, DiscountRule] = {}
    for discount_id, fields in fields_by_id.items():
        rules[discount_id] = DiscountRule(
            **fields,
            purchasable_ids=frozenset(purchasables[discount_id]),
            category_ids=frozenset(categories[discount_id]),
            user_group_ids=frozenset(user_groups[discount_id]),
        )
    return MappingProxyType(rules)


async def load_all_discounts(session: AsyncSession) -> Mapping[int, DiscountRule]:
    rows = await fetch_discounts_with_relations(session)
    snapshot = fold_discount_rows(rows)
    metrics.record_catalog_load()
    logger.debug("discount catalog loaded", extra={"discounts": len(snapshot), "rows": len(rows)})
    return snapshot


async def load_discount_relations(session: AsyncSession, discount: DiscountRule) -> DiscountRule:
    """Return a copy of ``discount`` with its three ID sets re-read from storage."""
    purchasable_ids = (
        await session.execute(select(DiscountPurchasable.purchasable_id).where(DiscountPurchasable.discount_id == discount.id))
    ).scalars()
    category_ids = (
        await session.execute(select(DiscountCategory.category_id).where(DiscountCategory.discount_id == discount.id))
    ).scalars()
    user_group_ids = (
        await session.execute(select(DiscountUserGroup.user_group_id).where(DiscountUserGroup.discount_id == discount.id))
    ).scalars()
    return discount.model_copy(
        update={
            "purchasable_ids": frozenset(int(i) for i in purchasable_ids),
            "category_ids": frozenset(int(i) for i in category_ids),
            "user_group_ids": frozenset(int(i) for i in user_group_ids),
        }
    )


class DiscountCatalog:
    """Caches one immutable catalog snapshot for the lifetime of an evaluation context.

    ``invalidate()`` is the hook for catalog-changed notifications: it drops the
    current snapshot so the next read loads a fresh one. Readers already holding
    the old snapshot keep a consistent view.
    """

    def __init__(self) -> None:
        self._snapshot: Mapping[int, DiscountRule] | None = None
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    def invalidate(self) -> None:
        self._snapshot = None

    async def get_all_discounts(self, session: AsyncSession) -> Mapping[int, DiscountRule]:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        async with self._lock:
            if self._snapshot is None:
                self._snapshot = await load_all_discounts(session)
            return self._snapshot

    async def get_discount_by_id(self, session: AsyncSession, discount_id: int | None) -> DiscountRule | None:
        if not discount_id:
            return None
        return (await self.get_all_discounts(session)).get(int(discount_id))

    async def get_discount_by_code(self, session: AsyncSession, code: str | None) -> DiscountRule | None:
        cleaned = _normalize_code(code)
        if not cleaned:
            return None
        for discount in (await self.get_all_discounts(session)).values():
            if discount.enabled and _normalize_code(discount.code) == cleaned:
                return discount
        return None

    async def discounts_related_to_purchasable(
        self,
        session: AsyncSession,
        purchasable: Purchasable,
        category_resolver: CategoryRelationResolver,
    ) -> list[DiscountRule]:
        purchasable_id = purchasable.get_id()
        if not purchasable_id:
            return []
        related_categories = await category_resolver.related_category_ids(purchasable.get_promotion_relation_source())
        related: list[DiscountRule] = []
        for discount in (await self.get_all_discounts(session)).values():
            if purchasable_id in discount.purchasable_ids or related_categories & discount.category_ids:
                related.append(discount)
        return related

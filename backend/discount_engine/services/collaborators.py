"""Interfaces of the collaborators the engine consumes but does not own."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any, Hashable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from discount_engine.schemas.discount import DiscountRule
    from discount_engine.services.order_context import LineItem


@runtime_checkable
class Purchasable(Protocol):
    def is_promotable(self) -> bool: ...

    def get_id(self) -> int | None: ...

    def get_promotion_relation_source(self) -> Any: ...


class UserGroupResolver(Protocol):
    async def group_ids_for_user(self, user: Any) -> set[int]: ...


class CategoryRelationResolver(Protocol):
    async def related_category_ids(self, source: Any) -> set[int]: ...


# Runs after a line item passed every structural check; returning False vetoes the match.
LineItemVeto = Callable[["LineItem", "DiscountRule"], bool]


def allow_all(_line_item: "LineItem", _discount: "DiscountRule") -> bool:
    return True


class StaticUserGroupResolver:
    """Resolves group memberships from a fixed user -> groups mapping."""

    def __init__(self, memberships: Mapping[Hashable, Iterable[int]] | None = None) -> None:
        self._memberships = {key: frozenset(value) for key, value in (memberships or {}).items()}

    async def group_ids_for_user(self, user: Any) -> set[int]:
        key = getattr(user, "id", user)
        return set(self._memberships.get(key, frozenset()))


class StaticCategoryRelationResolver:
    """Resolves related categories from a fixed relation source -> categories mapping."""

    def __init__(self, relations: Mapping[Hashable, Iterable[int]] | None = None) -> None:
        self._relations = {key: frozenset(value) for key, value in (relations or {}).items()}

    async def related_category_ids(self, source: Any) -> set[int]:
        return set(self._relations.get(source, frozenset()))

import os
from collections.abc import AsyncIterator, Awaitable, Callable, Generator, Iterable
from dataclasses import dataclass
from typing import Any

import pytest

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from discount_engine.core import metrics  # noqa: E402
from discount_engine.db.base import Base  # noqa: E402
from discount_engine.models.discount import Discount  # noqa: E402
from discount_engine.services.collaborators import (  # noqa: E402
    StaticCategoryRelationResolver,
    StaticUserGroupResolver,
)
from discount_engine.services.discount_catalog import DiscountCatalog  # noqa: E402
from discount_engine.services.eligibility import DiscountEvaluator  # noqa: E402


@dataclass
class StubPurchasable:
    id: int | None
    promotable: bool = True

    def is_promotable(self) -> bool:
        return self.promotable

    def get_id(self) -> int | None:
        return self.id

    def get_promotion_relation_source(self) -> str:
        return f"purchasable:{self.id}"


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak across tests.
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    finally:
        await engine.dispose()


@pytest.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as db:
        yield db


@pytest.fixture
def make_discount(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[int]]:
    async def _make(
        *,
        purchasable_ids: Iterable[int] = (),
        category_ids: Iterable[int] = (),
        user_group_ids: Iterable[int] = (),
        **fields: Any,
    ) -> int:
        async with session_factory() as db:
            discount = Discount(name=fields.pop("name", "Test discount"))
            discount.set_purchasable_ids(purchasable_ids)
            discount.set_category_ids(category_ids)
            discount.set_user_group_ids(user_group_ids)
            # Explicit fields win over the flags derived from the ID sets.
            for key, value in fields.items():
                setattr(discount, key, value)
            db.add(discount)
            await db.commit()
            return discount.id

    return _make


@pytest.fixture
def purchasable() -> Callable[..., StubPurchasable]:
    return StubPurchasable


@pytest.fixture
def make_evaluator(session: AsyncSession) -> Callable[..., DiscountEvaluator]:
    def _make(
        *,
        groups: dict[Any, Iterable[int]] | None = None,
        categories: dict[Any, Iterable[int]] | None = None,
        catalog: DiscountCatalog | None = None,
        **kwargs: Any,
    ) -> DiscountEvaluator:
        return DiscountEvaluator(
            session,
            catalog=catalog or DiscountCatalog(),
            group_resolver=StaticUserGroupResolver(groups),
            category_resolver=StaticCategoryRelationResolver(categories),
            **kwargs,
        )

    return _make

import anyio
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from discount_engine.core import metrics
from discount_engine.db.base import Base
from discount_engine.db.session import use_immediate_sqlite_transactions
from discount_engine.models.discount import CustomerDiscountUse, Discount, DiscountRedemption, EmailDiscountUse
from discount_engine.services import usage_ledger
from discount_engine.services.usage_ledger import RedemptionLimitExceeded


async def _count(session, model) -> int:
    return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


@pytest.mark.anyio
async def test_readers_default_to_zero(session, make_discount) -> None:
    discount_id = await make_discount(code="NEW")

    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 0
    assert await usage_ledger.total_uses(session, discount_id=404) == 0
    assert await usage_ledger.uses_by_customer(session, customer_id=1, discount_id=discount_id) == 0
    assert await usage_ledger.uses_by_email(session, email="a@example.com", discount_id=discount_id) == 0
    assert await usage_ledger.uses_by_email(session, email="  ", discount_id=discount_id) == 0


@pytest.mark.anyio
async def test_record_redemption_counts_every_configured_scope(session, make_discount) -> None:
    discount_id = await make_discount(code="ALL", per_user_limit=5, per_email_limit=5, total_use_limit=10)

    first = await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=1, email="A@Example.com ")
    second = await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=1, email="a@example.com")

    assert first.recorded is True
    assert first.scopes == ("total", "customer", "email")
    assert (first.total_uses, first.customer_uses, first.email_uses) == (1, 1, 1)
    assert (second.total_uses, second.customer_uses, second.email_uses) == (2, 2, 2)
    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 2
    assert await usage_ledger.uses_by_customer(session, customer_id=1, discount_id=discount_id) == 2
    assert await usage_ledger.uses_by_email(session, email="a@example.com", discount_id=discount_id) == 2
    assert await _count(session, CustomerDiscountUse) == 1
    assert await _count(session, EmailDiscountUse) == 1
    assert metrics.snapshot().get("redemptions_recorded") == 2


@pytest.mark.anyio
async def test_scoped_counters_only_when_limits_configured(session, make_discount) -> None:
    discount_id = await make_discount(code="TOTALONLY")

    result = await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=1, email="a@example.com")

    assert result.scopes == ("total",)
    assert result.customer_uses is None
    assert await _count(session, CustomerDiscountUse) == 0
    assert await _count(session, EmailDiscountUse) == 0


@pytest.mark.anyio
async def test_scopes_are_isolated(session, make_discount) -> None:
    discount_id = await make_discount(code="ISO", per_user_limit=3, per_email_limit=3)
    other_id = await make_discount(code="OTHER", per_user_limit=3, per_email_limit=3)

    await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=1)

    assert await usage_ledger.uses_by_customer(session, customer_id=1, discount_id=discount_id) == 1
    assert await usage_ledger.uses_by_customer(session, customer_id=2, discount_id=discount_id) == 0
    assert await usage_ledger.uses_by_customer(session, customer_id=1, discount_id=other_id) == 0
    assert await usage_ledger.uses_by_email(session, email="a@example.com", discount_id=discount_id) == 0
    assert await _count(session, EmailDiscountUse) == 0

    await usage_ledger.record_redemption(session, discount_id=discount_id, email="a@example.com")

    assert await usage_ledger.uses_by_customer(session, customer_id=1, discount_id=discount_id) == 1
    assert await usage_ledger.uses_by_email(session, email="a@example.com", discount_id=discount_id) == 1
    assert await usage_ledger.uses_by_email(session, email="b@example.com", discount_id=discount_id) == 0


@pytest.mark.anyio
async def test_discount_without_code_skips_total_counter(session, make_discount) -> None:
    discount_id = await make_discount(per_user_limit=2)

    result = await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=3)

    assert result.recorded is True
    assert result.scopes == ("customer",)
    assert result.total_uses is None
    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 0


@pytest.mark.anyio
async def test_unknown_discount_is_not_recorded(session) -> None:
    result = await usage_ledger.record_redemption(session, discount_id=12345, customer_id=1)

    assert result.recorded is False
    assert result.duplicate is False
    assert metrics.snapshot().get("redemptions_recorded") is None


@pytest.mark.anyio
async def test_strict_mode_rejects_over_limit_customer_redemption(session, make_discount) -> None:
    discount_id = await make_discount(code="ONEEACH", per_user_limit=1, total_use_limit=10)

    await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=7, strict=True)
    with pytest.raises(RedemptionLimitExceeded) as excinfo:
        await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=7, strict=True)

    assert excinfo.value.scope == "customer"
    assert excinfo.value.current == 1
    assert excinfo.value.limit == 1
    assert excinfo.value.discount_id == discount_id
    # The total counter bumped before the refusal was rolled back with it.
    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 1
    assert await usage_ledger.uses_by_customer(session, customer_id=7, discount_id=discount_id) == 1
    assert metrics.snapshot().get("redemptions_rejected") == 1


@pytest.mark.anyio
async def test_strict_mode_rejects_over_limit_total(session, make_discount) -> None:
    discount_id = await make_discount(code="SOLDOUT", total_use_limit=1)

    await usage_ledger.record_redemption(session, discount_id=discount_id, strict=True)
    with pytest.raises(RedemptionLimitExceeded) as excinfo:
        await usage_ledger.record_redemption(session, discount_id=discount_id, strict=True)

    assert (excinfo.value.scope, excinfo.value.current, excinfo.value.limit) == ("total", 1, 1)
    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 1


@pytest.mark.anyio
async def test_strict_mode_rejects_over_limit_email(session, make_discount) -> None:
    discount_id = await make_discount(code="MAILCAP", per_email_limit=2)

    for _ in range(2):
        await usage_ledger.record_redemption(session, discount_id=discount_id, email="cap@example.com")
    with pytest.raises(RedemptionLimitExceeded) as excinfo:
        await usage_ledger.record_redemption(session, discount_id=discount_id, email="CAP@example.com")

    assert (excinfo.value.scope, excinfo.value.current, excinfo.value.limit) == ("email", 2, 2)
    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 2


@pytest.mark.anyio
async def test_loose_mode_counts_past_limits(session, make_discount) -> None:
    discount_id = await make_discount(code="LOOSE", per_user_limit=1, total_use_limit=1)

    for _ in range(3):
        await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=7, strict=False)

    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 3
    assert await usage_ledger.uses_by_customer(session, customer_id=7, discount_id=discount_id) == 3


@pytest.mark.anyio
async def test_order_reference_guards_against_double_counting(session, make_discount) -> None:
    discount_id = await make_discount(code="ONCEPERORDER", per_user_limit=5)

    first = await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=1, order_reference="order-1")
    again = await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=1, order_reference="order-1")

    assert first.recorded is True
    assert again.recorded is False
    assert again.duplicate is True
    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 1
    assert await usage_ledger.uses_by_customer(session, customer_id=1, discount_id=discount_id) == 1
    assert await _count(session, DiscountRedemption) == 1
    assert metrics.snapshot().get("redemptions_duplicate") == 1


@pytest.mark.anyio
async def test_rejected_redemption_does_not_claim_the_order(session, make_discount) -> None:
    discount_id = await make_discount(code="TIGHT", total_use_limit=1)

    await usage_ledger.record_redemption(session, discount_id=discount_id, order_reference="a")
    with pytest.raises(RedemptionLimitExceeded):
        await usage_ledger.record_redemption(session, discount_id=discount_id, order_reference="b")

    refs = (await session.execute(select(DiscountRedemption.order_reference))).scalars().all()
    assert refs == ["a"]


@pytest.mark.anyio
async def test_clear_usage_history_resets_one_discount(session, make_discount) -> None:
    discount_id = await make_discount(code="RESET", per_user_limit=9, per_email_limit=9)
    other_id = await make_discount(code="KEEP", per_user_limit=9, per_email_limit=9)
    for customer_id, email in ((1, "a@example.com"), (2, "b@example.com"), (1, "a@example.com")):
        await usage_ledger.record_redemption(session, discount_id=discount_id, customer_id=customer_id, email=email)
    await usage_ledger.record_redemption(session, discount_id=other_id, customer_id=1, email="a@example.com")

    await usage_ledger.clear_usage_history(session, discount_id=discount_id)

    assert await usage_ledger.total_uses(session, discount_id=discount_id) == 0
    assert await usage_ledger.uses_by_customer(session, customer_id=1, discount_id=discount_id) == 0
    assert await usage_ledger.uses_by_email(session, email="b@example.com", discount_id=discount_id) == 0
    assert await usage_ledger.total_uses(session, discount_id=other_id) == 1
    assert await usage_ledger.uses_by_customer(session, customer_id=1, discount_id=other_id) == 1
    assert await _count(session, CustomerDiscountUse) == 1
    assert await _count(session, EmailDiscountUse) == 1
    assert metrics.snapshot().get("usage_history_cleared") == 1


@pytest.mark.anyio
async def test_unknown_discount_leaves_callers_transaction_open(session) -> None:
    session.add(Discount(name="Pending", code="PENDING"))
    await session.flush()

    result = await usage_ledger.record_redemption(session, discount_id=12345)

    assert result.recorded is False
    assert (await session.execute(select(Discount.id).where(Discount.code == "PENDING"))).scalar_one_or_none() is not None


@pytest.mark.anyio
async def test_outcomes_are_counted_per_discount(session, make_discount) -> None:
    discount_id = await make_discount(code="TALLY", total_use_limit=1)
    other_id = await make_discount(code="OTHERTALLY")

    await usage_ledger.record_redemption(session, discount_id=discount_id, order_reference="o-1")
    await usage_ledger.record_redemption(session, discount_id=discount_id, order_reference="o-1")
    with pytest.raises(RedemptionLimitExceeded):
        await usage_ledger.record_redemption(session, discount_id=discount_id, order_reference="o-2")

    assert metrics.snapshot_for_discount(discount_id) == {
        "redemptions_recorded": 1,
        "redemptions_duplicate": 1,
        "redemptions_rejected": 1,
    }
    assert metrics.snapshot_for_discount(other_id) == {}


@pytest.mark.anyio
async def test_concurrent_redemptions_cannot_both_pass_a_limit_of_one(tmp_path) -> None:
    engine = use_immediate_sqlite_transactions(
        create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", future=True)
    )
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

        async with factory() as db:
            discount = Discount(name="Race", code="RACE", per_user_limit=1)
            db.add(discount)
            await db.commit()
            discount_id = discount.id

        outcomes: list[str] = []

        async def _redeem(reference: str) -> None:
            async with factory() as db:
                try:
                    await usage_ledger.record_redemption(
                        db, discount_id=discount_id, customer_id=7, order_reference=reference, strict=True
                    )
                except RedemptionLimitExceeded:
                    outcomes.append("rejected")
                else:
                    outcomes.append("recorded")

        async with anyio.create_task_group() as tg:
            tg.start_soon(_redeem, "race-1")
            tg.start_soon(_redeem, "race-2")

        assert sorted(outcomes) == ["recorded", "rejected"]
        async with factory() as db:
            assert await usage_ledger.uses_by_customer(db, customer_id=7, discount_id=discount_id) == 1
            assert await usage_ledger.total_uses(db, discount_id=discount_id) == 1
            assert await _count(db, DiscountRedemption) == 1
    finally:
        await engine.dispose()

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from studio_ledger.db.models.credit_transactions import CreditTransaction
from studio_ledger.db.models.users import CREDITS_MAX
from studio_ledger.economy.credits.errors import (
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidInputError,
    InvalidLimitError,
    TransactionNotFoundError,
    TransactionNotRefundableError,
    TransactionOwnershipMismatchError,
    UserNotFoundError,
)
from studio_ledger.economy.credits.types import PlanTier, TransactionDirection, TransactionType
from tests.ledger_fixtures import NOW_UTC


async def _sum_deltas(session_factory, user_id: str) -> int:
    async with session_factory() as session:
        rows = (
            await session.execute(
                select(CreditTransaction.direction, func.sum(CreditTransaction.amount))
                .where(CreditTransaction.user_id == user_id)
                .group_by(CreditTransaction.direction)
            )
        ).all()
    totals = {direction: int(total) for direction, total in rows}
    return totals.get("CREDIT", 0) - totals.get("DEBIT", 0)


@pytest.mark.asyncio
async def test_ensure_account_creates_free_account_once(ledger) -> None:
    first = await ledger.ensure_account("u-ensure", email="a@studio.test", now_utc=NOW_UTC)
    second = await ledger.ensure_account("u-ensure", email="other@studio.test", plan_tier=PlanTier.STARTER)

    assert first.plan_tier is PlanTier.FREE
    assert first.credits_balance == 0
    assert second.email == "a@studio.test"
    assert second.plan_tier is PlanTier.FREE


@pytest.mark.asyncio
async def test_credit_then_debit_updates_balance_and_log(ledger, make_account, session_factory) -> None:
    await make_account("u-basic")

    credit = await ledger.credit(
        "u-basic",
        amount=25,
        description="Pack purchase",
        tx_type=TransactionType.PURCHASE,
        now_utc=NOW_UTC,
    )
    debit = await ledger.debit(
        "u-basic",
        amount=7,
        description="apparel generation x2",
        now_utc=NOW_UTC + timedelta(minutes=1),
    )

    assert credit.balance_after == 25
    assert debit.balance_after == 18
    assert await ledger.get_balance("u-basic") == 18
    assert await _sum_deltas(session_factory, "u-basic") == 18

    history = await ledger.get_history("u-basic")
    assert [item.transaction_id for item in history] == [debit.transaction_id, credit.transaction_id]
    assert history[0].direction is TransactionDirection.DEBIT
    assert history[0].transaction_type is TransactionType.USAGE
    assert history[0].delta == -7
    assert history[0].balance_after == 18


@pytest.mark.asyncio
async def test_debit_rejects_when_balance_is_short(ledger, make_account, session_factory) -> None:
    await make_account("u-short", balance=3)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await ledger.debit("u-short", amount=5, description="video generation x1")

    assert exc_info.value.needed == 5
    assert exc_info.value.have == 3
    assert await ledger.get_balance("u-short") == 3
    assert len(await ledger.get_history("u-short")) == 1


@pytest.mark.asyncio
async def test_debit_of_exact_balance_reaches_zero(ledger, make_account) -> None:
    await make_account("u-exact", balance=5)

    result = await ledger.debit("u-exact", amount=5, description="video generation x1")

    assert result.balance_after == 0
    assert await ledger.check_sufficient("u-exact", 1) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -4, 2.5, True])
async def test_non_positive_or_fractional_amounts_are_rejected(ledger, make_account, amount) -> None:
    await make_account("u-amount", balance=10)

    with pytest.raises(InvalidAmountError):
        await ledger.debit("u-amount", amount=amount, description="bad")
    with pytest.raises(InvalidAmountError):
        await ledger.credit("u-amount", amount=amount, description="bad", tx_type=TransactionType.GRANT)


@pytest.mark.asyncio
async def test_unknown_user_raises_user_not_found(ledger) -> None:
    with pytest.raises(UserNotFoundError):
        await ledger.get_balance("ghost")
    with pytest.raises(UserNotFoundError):
        await ledger.debit("ghost", amount=1, description="x")
    with pytest.raises(UserNotFoundError):
        await ledger.credit("ghost", amount=1, description="x", tx_type=TransactionType.GRANT)


@pytest.mark.asyncio
async def test_debit_beyond_integer_range_is_insufficient(ledger, make_account) -> None:
    await make_account("u-huge-debit", balance=10)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await ledger.debit("u-huge-debit", amount=2**63, description="huge")

    assert exc_info.value.needed == 2**63
    assert exc_info.value.have == 10
    assert await ledger.get_balance("u-huge-debit") == 10
    with pytest.raises(UserNotFoundError):
        await ledger.debit("ghost", amount=2**63, description="huge")


@pytest.mark.asyncio
async def test_credit_beyond_integer_range_is_rejected(ledger, make_account) -> None:
    await make_account("u-huge-credit")

    with pytest.raises(InvalidAmountError):
        await ledger.credit("u-huge-credit", amount=CREDITS_MAX + 1, description="x", tx_type=TransactionType.GRANT)

    await ledger.credit("u-huge-credit", amount=CREDITS_MAX, description="x", tx_type=TransactionType.GRANT)
    with pytest.raises(InvalidAmountError):
        await ledger.credit("u-huge-credit", amount=1, description="x", tx_type=TransactionType.GRANT)

    assert await ledger.get_balance("u-huge-credit") == CREDITS_MAX
    assert len(await ledger.get_history("u-huge-credit")) == 1


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(ledger, make_account, session_factory) -> None:
    await make_account("u-race", balance=5)

    results = await asyncio.gather(
        *(ledger.debit("u-race", amount=1, description="product generation x1") for _ in range(10)),
        return_exceptions=True,
    )

    succeeded = [result for result in results if not isinstance(result, BaseException)]
    rejected = [result for result in results if isinstance(result, InsufficientCreditsError)]
    assert len(succeeded) == 5
    assert len(rejected) == 5
    assert sorted(result.balance_after for result in succeeded) == [0, 1, 2, 3, 4]
    assert await ledger.get_balance("u-race") == 0
    assert await _sum_deltas(session_factory, "u-race") == 0


@pytest.mark.asyncio
async def test_refund_restores_balance_and_links_original(ledger, make_account) -> None:
    await make_account("u-refund", balance=20)
    debit = await ledger.debit(
        "u-refund",
        amount=8,
        description="apparel generation x4",
        now_utc=NOW_UTC + timedelta(minutes=1),
    )

    refund = await ledger.refund("u-refund", debit.transaction_id, now_utc=NOW_UTC + timedelta(hours=1))

    assert refund.idempotent_replay is False
    assert refund.balance_after == 20
    history = await ledger.get_history("u-refund")
    latest = history[0]
    assert latest.transaction_type is TransactionType.REFUND
    assert latest.direction is TransactionDirection.CREDIT
    assert latest.amount == 8
    assert latest.refund_of_transaction_id == debit.transaction_id
    assert latest.description == "Refund of apparel generation x4"


@pytest.mark.asyncio
async def test_second_refund_is_idempotent_replay(ledger, make_account) -> None:
    await make_account("u-double", balance=10)
    debit = await ledger.debit("u-double", amount=4, description="apparel generation x2")

    first = await ledger.refund("u-double", debit.transaction_id, "Auto-refund: generation failed")
    second = await ledger.refund("u-double", str(debit.transaction_id), "again")

    assert second.idempotent_replay is True
    assert second.transaction_id == first.transaction_id
    assert await ledger.get_balance("u-double") == 10
    refunds = [item for item in await ledger.get_history("u-double") if item.transaction_type is TransactionType.REFUND]
    assert len(refunds) == 1
    assert refunds[0].description == "Auto-refund: generation failed"


@pytest.mark.asyncio
async def test_refund_rejects_credit_transactions(ledger, make_account) -> None:
    await make_account("u-norefund")
    credit = await ledger.credit("u-norefund", amount=5, description="gift", tx_type=TransactionType.GRANT)

    with pytest.raises(TransactionNotRefundableError):
        await ledger.refund("u-norefund", credit.transaction_id)


@pytest.mark.asyncio
async def test_refund_rejects_unknown_and_foreign_transactions(ledger, make_account) -> None:
    await make_account("u-owner", balance=5)
    await make_account("u-intruder", balance=5)
    debit = await ledger.debit("u-owner", amount=2, description="product generation x2")

    with pytest.raises(TransactionNotFoundError):
        await ledger.refund("u-owner", uuid4())
    with pytest.raises(TransactionNotFoundError):
        await ledger.refund("u-owner", "not-a-uuid")
    with pytest.raises(TransactionOwnershipMismatchError):
        await ledger.refund("u-intruder", debit.transaction_id)
    assert await ledger.get_balance("u-intruder") == 5


@pytest.mark.asyncio
async def test_credit_with_idempotency_key_applies_once(ledger, make_account) -> None:
    await make_account("u-idem")

    first = await ledger.credit(
        "u-idem",
        amount=100,
        description="Starter pack",
        tx_type=TransactionType.PURCHASE,
        idempotency_key="order:1001",
    )
    replay = await ledger.credit(
        "u-idem",
        amount=100,
        description="Starter pack",
        tx_type=TransactionType.PURCHASE,
        idempotency_key="order:1001",
    )

    assert replay.idempotent_replay is True
    assert replay.transaction_id == first.transaction_id
    assert await ledger.get_balance("u-idem") == 100


@pytest.mark.asyncio
async def test_idempotency_key_of_another_user_is_rejected(ledger, make_account) -> None:
    await make_account("u-key-a")
    await make_account("u-key-b")
    await ledger.credit("u-key-a", amount=1, description="x", tx_type=TransactionType.GRANT, idempotency_key="k-shared")

    with pytest.raises(InvalidInputError):
        await ledger.credit(
            "u-key-b",
            amount=1,
            description="x",
            tx_type=TransactionType.GRANT,
            idempotency_key="k-shared",
        )


@pytest.mark.asyncio
async def test_history_is_newest_first_and_limited(ledger, make_account) -> None:
    await make_account("u-history")
    for minute in range(5):
        await ledger.credit(
            "u-history",
            amount=minute + 1,
            description=f"grant {minute}",
            tx_type=TransactionType.GRANT,
            now_utc=NOW_UTC + timedelta(minutes=minute),
        )

    history = await ledger.get_history("u-history", limit=3)

    assert [item.description for item in history] == ["grant 4", "grant 3", "grant 2"]
    assert history[0].created_at == NOW_UTC + timedelta(minutes=4)
    assert await ledger.get_history("u-nobody") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, 1001, -1, 2.0])
async def test_history_rejects_out_of_range_limit(ledger, make_account, limit) -> None:
    await make_account("u-limit")

    with pytest.raises(InvalidLimitError):
        await ledger.get_history("u-limit", limit=limit)


@pytest.mark.asyncio
async def test_record_usage_event_debits_rounded_up_cost(ledger, make_account) -> None:
    await make_account("u-usage", balance=10)

    result = await ledger.record_usage_event(
        "u-usage",
        event_type="upscale",
        cost=2.3,
        tokens=512,
        request_id="req-1",
        now_utc=NOW_UTC + timedelta(minutes=1),
    )

    assert result.was_duplicate is False
    assert result.credits_charged == 3
    assert result.new_balance == 7
    events = await ledger.get_usage_events_between(
        "u-usage",
        from_utc=NOW_UTC - timedelta(days=1),
        to_utc=NOW_UTC + timedelta(days=1),
    )
    assert len(events) == 1
    assert events[0].event_type == "upscale"
    assert events[0].cost == pytest.approx(2.3)
    assert events[0].tokens == 512
    assert (await ledger.get_history("u-usage"))[0].description == "Usage: upscale"


@pytest.mark.asyncio
async def test_record_usage_event_with_repeated_request_id_charges_once(ledger, make_account) -> None:
    await make_account("u-usage-dup", balance=10)

    first = await ledger.record_usage_event("u-usage-dup", event_type="caption", cost=1, request_id="req-7")
    second = await ledger.record_usage_event("u-usage-dup", event_type="caption", cost=1, request_id="req-7")

    assert second.was_duplicate is True
    assert second.event_id == first.event_id
    assert second.new_balance == 9
    assert await ledger.get_balance("u-usage-dup") == 9


@pytest.mark.asyncio
async def test_record_usage_event_without_funds_stores_nothing(ledger, make_account) -> None:
    await make_account("u-usage-poor", balance=1)

    with pytest.raises(InsufficientCreditsError):
        await ledger.record_usage_event("u-usage-poor", event_type="upscale", cost=1.5, request_id="req-9")

    events = await ledger.get_usage_events_between(
        "u-usage-poor",
        from_utc=NOW_UTC - timedelta(days=365),
        to_utc=NOW_UTC + timedelta(days=365),
    )
    assert events == []


@pytest.mark.asyncio
async def test_record_usage_event_with_unaffordable_cost_is_insufficient(ledger, make_account) -> None:
    await make_account("u-usage-huge", balance=5)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await ledger.record_usage_event("u-usage-huge", event_type="upscale", cost=1e20)

    assert exc_info.value.needed == 10**20
    assert exc_info.value.have == 5
    assert await ledger.get_balance("u-usage-huge") == 5


@pytest.mark.asyncio
async def test_record_usage_event_keeps_tiny_cost(ledger, make_account) -> None:
    await make_account("u-usage-tiny", balance=5)

    result = await ledger.record_usage_event(
        "u-usage-tiny",
        event_type="embedding",
        cost=1e-6,
        now_utc=NOW_UTC + timedelta(minutes=1),
    )

    assert result.credits_charged == 1
    assert result.new_balance == 4
    events = await ledger.get_usage_events_between(
        "u-usage-tiny",
        from_utc=NOW_UTC - timedelta(days=1),
        to_utc=NOW_UTC + timedelta(days=1),
    )
    assert events[0].cost == pytest.approx(1e-6)


@pytest.mark.asyncio
@pytest.mark.parametrize("cost", [0, -1, float("nan"), float("inf")])
async def test_record_usage_event_rejects_invalid_cost(ledger, make_account, cost) -> None:
    await make_account("u-usage-bad", balance=10)

    with pytest.raises(InvalidAmountError):
        await ledger.record_usage_event("u-usage-bad", event_type="upscale", cost=cost)


@pytest.mark.asyncio
async def test_set_plan_tier(ledger, make_account) -> None:
    await make_account("u-plan")

    account = await ledger.set_plan_tier("u-plan", PlanTier.PROFESSIONAL)

    assert account.plan_tier is PlanTier.PROFESSIONAL
    with pytest.raises(UserNotFoundError):
        await ledger.set_plan_tier("ghost", PlanTier.STARTER)

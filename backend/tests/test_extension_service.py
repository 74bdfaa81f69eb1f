from datetime import date

import pytest

from database import get_db
from errors import AmountOutOfRange, NoPricingConfigured, PaymentFailed, SubscriptionNotFound
from models.subscription import (
    BorrowPricing, DirectPurchasePricing, ExtensionType, QuotaPricing, Subscription,
)
from services import extension_service, quota_service, repository

PRICING = QuotaPricing(
    direct_purchase=DirectPurchasePricing(price=10, extension_amount_mah=1000),
    borrow_next_day=BorrowPricing(base_fee=5, penalty_percentage=20,
                                  min_purchase_mah=100, max_purchase_mah=5000),
)


def make_sub(**kw):
    fields = dict(id=1, user_id="alice", plan_id=3, daily_limit_mah=2000,
                  effective_daily_limit_mah=2000, quota_date=date(2026, 10, 16))
    fields.update(kw)
    return Subscription(**fields)


class RecordingPayment:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def purchase_extension(self, user_id, ext_type, amount_mah, price):
        self.calls.append((user_id, ext_type, amount_mah, price))
        if self.fail:
            raise PaymentFailed("Card declined")
        return {"message": "ok", "payment_link": "https://pay.test/x", "reference": "PAY-1"}


# ---------------------------------------------------------------------------
# Pure pricing rules
# ---------------------------------------------------------------------------

def test_direct_purchase_adds_fixed_amount_without_penalty():
    sub, tx = extension_service.purchase_direct(make_sub(consumed_today_mah=2000), PRICING)
    assert sub.borrowed_today_mah == 1000
    assert sub.borrowed_pending_mah == 0
    assert tx.type == ExtensionType.DIRECT_PURCHASE
    assert tx.amount_mah == 1000
    assert tx.price_paid == 10
    assert tx.penalty_mah == 0


def test_borrow_charges_base_fee_and_defers_penalty():
    sub, tx = extension_service.borrow_next_day(make_sub(), 500, PRICING)
    assert sub.borrowed_today_mah == 500
    assert sub.borrowed_pending_mah == 600
    assert tx.price_paid == 5
    assert tx.penalty_percentage == 20
    assert tx.penalty_mah == 100


@pytest.mark.parametrize("amount", [99, 5001, None])
def test_borrow_amount_outside_bounds(amount):
    with pytest.raises(AmountOutOfRange) as exc:
        extension_service.borrow_next_day(make_sub(), amount, PRICING)
    detail = exc.value.to_dict()
    assert detail["code"] == "amount_out_of_range"
    assert detail["min"] == 100
    assert detail["max"] == 5000


def test_borrow_bounds_are_inclusive():
    for amount in (100, 5000):
        sub, _ = extension_service.borrow_next_day(make_sub(), amount, PRICING)
        assert sub.borrowed_today_mah == amount


def test_missing_or_inactive_pricing():
    with pytest.raises(NoPricingConfigured):
        extension_service.purchase_direct(make_sub(), QuotaPricing())
    with pytest.raises(NoPricingConfigured):
        extension_service.borrow_next_day(make_sub(), 500, QuotaPricing())

    inactive = QuotaPricing(direct_purchase=DirectPurchasePricing(is_active=False))
    with pytest.raises(NoPricingConfigured):
        extension_service.purchase_direct(make_sub(), inactive)


# ---------------------------------------------------------------------------
# Persisted extensions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_direct_purchase_restores_quota(env):
    async with get_db() as db:
        await quota_service.record_consumption(db, "alice", 2000)
    assert await quota_service.get_remaining("alice") == 0

    result = await extension_service.request_extension("alice", ExtensionType.DIRECT_PURCHASE)
    assert result.remaining_mah == 1000
    assert result.transaction.id is not None
    assert "amount_mah=1000" in result.payment_link
    assert await quota_service.get_remaining("alice") == 1000


@pytest.mark.asyncio
async def test_borrow_is_recorded_with_payment_reference(env):
    payment = RecordingPayment()
    result = await extension_service.request_extension(
        "alice", ExtensionType.BORROW_NEXT_DAY, 1000, payment=payment)

    assert payment.calls == [("alice", ExtensionType.BORROW_NEXT_DAY, 1000, 5)]
    assert result.transaction.payment_reference == "PAY-1"
    assert result.message == "ok"

    status = await quota_service.get_quota_status("alice")
    assert status.borrowed_today_mah == 1000
    assert status.borrowed_pending_mah == 1200

    history = await extension_service.list_history("alice")
    assert len(history) == 1
    assert history[0].penalty_mah == 200
    assert history[0].payment_reference == "PAY-1"


@pytest.mark.asyncio
async def test_failed_payment_leaves_ledger_untouched(env):
    payment = RecordingPayment(fail=True)
    with pytest.raises(PaymentFailed):
        await extension_service.request_extension(
            "alice", ExtensionType.DIRECT_PURCHASE, payment=payment)

    status = await quota_service.get_quota_status("alice")
    assert status.borrowed_today_mah == 0
    assert await extension_service.list_history("alice") == []


@pytest.mark.asyncio
async def test_out_of_range_borrow_is_refused_before_payment(env):
    payment = RecordingPayment()
    with pytest.raises(AmountOutOfRange):
        await extension_service.request_extension(
            "alice", ExtensionType.BORROW_NEXT_DAY, 20000, payment=payment)
    assert payment.calls == []


@pytest.mark.asyncio
async def test_extension_for_unknown_user(env):
    with pytest.raises(SubscriptionNotFound):
        await extension_service.request_extension("mallory", ExtensionType.DIRECT_PURCHASE)


@pytest.mark.asyncio
async def test_disabled_pricing_row(env):
    async with get_db() as db:
        await db.execute("UPDATE quota_pricing SET is_active = 0 WHERE extension_type = 'borrow_next_day'")
        await db.commit()
        pricing = await repository.get_pricing(db)
    assert pricing.borrow_next_day.is_active is False

    with pytest.raises(NoPricingConfigured):
        await extension_service.request_extension("alice", ExtensionType.BORROW_NEXT_DAY, 500)

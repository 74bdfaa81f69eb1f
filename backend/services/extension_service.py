"""
Solar Charge Port Manager - Extension Service
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-09): Payment collaborator called before the ledger is touched
v1.0.0 (2026-10-02): Initial direct purchase and borrow-next-day extensions
"""

import logging
from typing import List, Optional, Tuple

from database import get_db
from errors import AmountOutOfRange, NoPricingConfigured
from models.subscription import (
    ExtensionResult, ExtensionTransaction, ExtensionType, QuotaPricing, Subscription,
)
from services import billing, quota_ledger, quota_service, repository

logger = logging.getLogger(__name__)


def purchase_direct(sub: Subscription, pricing: QuotaPricing) -> Tuple[Subscription, ExtensionTransaction]:
    """Fixed amount added to today's borrowed allotment for a fixed price, no penalty"""
    cfg = pricing.direct_purchase
    if cfg is None or not cfg.is_active:
        raise NoPricingConfigured("Direct purchase pricing is not configured",
                                  extension_type=ExtensionType.DIRECT_PURCHASE.value)

    updated = sub.model_copy(update={
        "borrowed_today_mah": sub.borrowed_today_mah + cfg.extension_amount_mah,
    })
    tx = ExtensionTransaction(
        user_id=sub.user_id,
        subscription_id=sub.id,
        type=ExtensionType.DIRECT_PURCHASE,
        amount_mah=cfg.extension_amount_mah,
        price_paid=cfg.price,
    )
    return updated, tx


def borrow_next_day(sub: Subscription, amount_mah: float,
                    pricing: QuotaPricing) -> Tuple[Subscription, ExtensionTransaction]:
    """
    Advance on tomorrow's allowance.

    The amount is usable today; amount plus penalty is deducted from
    tomorrow's limit when the day rolls.
    """
    cfg = pricing.borrow_next_day
    if cfg is None or not cfg.is_active:
        raise NoPricingConfigured("Borrow pricing is not configured",
                                  extension_type=ExtensionType.BORROW_NEXT_DAY.value)
    if amount_mah is None or not (cfg.min_purchase_mah <= amount_mah <= cfg.max_purchase_mah):
        raise AmountOutOfRange(amount_mah, cfg.min_purchase_mah, cfg.max_purchase_mah)

    penalty = amount_mah * cfg.penalty_percentage / 100
    updated = sub.model_copy(update={
        "borrowed_today_mah": sub.borrowed_today_mah + amount_mah,
        "borrowed_pending_mah": sub.borrowed_pending_mah + amount_mah + penalty,
    })
    tx = ExtensionTransaction(
        user_id=sub.user_id,
        subscription_id=sub.id,
        type=ExtensionType.BORROW_NEXT_DAY,
        amount_mah=amount_mah,
        price_paid=cfg.base_fee,
        penalty_percentage=cfg.penalty_percentage,
        penalty_mah=penalty,
    )
    return updated, tx


def apply_extension(sub: Subscription, ext_type: ExtensionType, amount_mah: Optional[float],
                    pricing: QuotaPricing) -> Tuple[Subscription, ExtensionTransaction]:
    if ext_type == ExtensionType.DIRECT_PURCHASE:
        return purchase_direct(sub, pricing)
    return borrow_next_day(sub, amount_mah, pricing)


async def request_extension(user_id: str, ext_type: ExtensionType,
                            amount_mah: Optional[float] = None,
                            payment: Optional[billing.PaymentClient] = None) -> ExtensionResult:
    """
    RequestExtension: validate against pricing, collect payment, then apply to
    the ledger and write the transaction record in one database transaction.
    """
    payment = payment or billing.get_payment_client()

    async with get_db() as db:
        pricing = await repository.get_pricing(db)
        sub = await quota_service.load_subscription(db, user_id)

        # Dry run: pricing and bounds errors surface before any payment
        _, draft = apply_extension(sub, ext_type, amount_mah, pricing)
        reply = await payment.purchase_extension(user_id, ext_type, draft.amount_mah, draft.price_paid)

        staged = {}

        def change(current: Subscription) -> Subscription:
            updated, tx = apply_extension(current, ext_type, amount_mah, pricing)
            staged["tx"] = tx.model_copy(update={"payment_reference": reply.get("reference")})
            return updated

        async def record(conn, updated: Subscription):
            tx_id = await repository.insert_extension(conn, staged["tx"])
            staged["tx"] = staged["tx"].model_copy(update={"id": tx_id})

        updated = await quota_service.mutate_subscription(db, user_id, change, after=record)

    tx = staged["tx"]
    logger.info(f"Extension {ext_type.value} for {user_id}: {tx.amount_mah:g} mAh, "
                f"penalty {tx.penalty_mah:g} mAh, price {tx.price_paid:.2f}")
    return ExtensionResult(
        transaction=tx,
        remaining_mah=quota_ledger.remaining(updated),
        message=reply["message"],
        payment_link=reply.get("payment_link"),
    )


async def get_pricing() -> QuotaPricing:
    async with get_db() as db:
        return await repository.get_pricing(db)


async def list_history(user_id: str, limit: int = 50) -> List[ExtensionTransaction]:
    async with get_db() as db:
        return await repository.list_extensions(db, user_id, limit)

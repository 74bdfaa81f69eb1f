"""
Solar Charge Port Manager - Billing Client
Version: 1.0.0

Changelog:
v1.0.0 (2026-10-02): Initial extension payment request / checkout link
"""

import logging
from typing import Optional

import httpx

from config import settings
from errors import PaymentFailed
from models.subscription import ExtensionType

logger = logging.getLogger(__name__)


class PaymentClient:
    """
    PurchaseExtension collaborator.

    With PAYMENT_URL set, the payment service is asked to open a charge and
    returns {message, payment_link, reference}. Without it a checkout link
    is built locally from PAYMENT_LINK.
    """

    def __init__(self, base_url: str = None, checkout_link: str = None):
        self.base_url = (settings.PAYMENT_URL if base_url is None else base_url).rstrip("/")
        self.checkout_link = checkout_link or settings.PAYMENT_LINK

    async def purchase_extension(self, user_id: str, ext_type: ExtensionType,
                                 amount_mah: float, price: float) -> dict:
        if not self.base_url:
            link = httpx.URL(self.checkout_link, params={
                "user": user_id,
                "type": ext_type.value,
                "amount_mah": f"{amount_mah:g}",
                "price": f"{price:.2f}",
            })
            return {
                "message": _describe(ext_type, amount_mah, price),
                "payment_link": str(link),
                "reference": None,
            }

        async with httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/api/v1/extensions",
                    json={
                        "user_id": user_id,
                        "type": ext_type.value,
                        "amount_mah": amount_mah,
                        "price": price,
                    },
                )
            except httpx.HTTPError as e:
                logger.error(f"Payment service unreachable: {e}")
                raise PaymentFailed("Payment service unreachable") from e

        if response.status_code != 200:
            raise PaymentFailed(f"Payment processing failed ({response.status_code})")

        data = response.json()
        return {
            "message": data.get("message") or _describe(ext_type, amount_mah, price),
            "payment_link": data.get("payment_link"),
            "reference": data.get("reference"),
        }


def _describe(ext_type: ExtensionType, amount_mah: float, price: float) -> str:
    if ext_type == ExtensionType.DIRECT_PURCHASE:
        return f"Added {amount_mah:g} mAh to today's quota for {price:.2f}"
    return f"Borrowed {amount_mah:g} mAh from tomorrow's quota for {price:.2f}"


# Singleton instance
_client: Optional[PaymentClient] = None


def get_payment_client() -> PaymentClient:
    global _client
    if _client is None:
        _client = PaymentClient()
    return _client

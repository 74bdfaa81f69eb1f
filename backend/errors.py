"""
Solar Charge Port Manager - Error Taxonomy
Version: 1.0.1

Changelog:
v1.0.1 (2026-10-09): SessionNotOwned, SubscriptionNotFound, PaymentFailed
v1.0.0 (2026-09-28): Initial error kinds for port control, quota and extensions

Every refusal the engine can return is a ChargeError subclass carrying a
stable code, the HTTP status the API layer maps it to, and a details dict.
Routers turn them into HTTPException(status_code, detail=err.to_dict()).
"""

from typing import Optional


class ChargeError(Exception):
    """Base class for refusals returned to the caller"""

    code = "charge_error"
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.details}


class PortUnavailable(ChargeError):
    """Port is claimed, occupied or refused the command"""
    code = "port_unavailable"
    status_code = 409


class DeviceOffline(ChargeError):
    """Device has not reported within the freshness window or is unreachable"""
    code = "device_offline"
    status_code = 503


class CommandTimeout(ChargeError):
    """Device did not acknowledge a control command in time"""
    code = "command_timeout"
    status_code = 504


class ConcurrencyLimitExceeded(ChargeError):
    code = "concurrency_limit_exceeded"
    status_code = 409


class QuotaExhausted(ChargeError):
    """Remaining quota is zero; carries the breakdown and a suggestion"""

    code = "quota_exhausted"
    status_code = 402

    def __init__(self, remaining: float, daily_limit: float, borrowed_today: float):
        super().__init__(
            "Daily quota exhausted",
            remaining=remaining,
            daily_limit=daily_limit,
            borrowed_today=borrowed_today,
            suggestion="Purchase an extension or borrow from tomorrow's allowance",
        )


class AmountOutOfRange(ChargeError):
    code = "amount_out_of_range"
    status_code = 400

    def __init__(self, amount: float, min_mah: float, max_mah: float):
        super().__init__(
            f"Amount {amount} mAh outside allowed range [{min_mah}, {max_mah}]",
            amount=amount,
            min=min_mah,
            max=max_mah,
        )


class NoPricingConfigured(ChargeError):
    code = "no_pricing_configured"
    status_code = 503


class NegativeDelta(ChargeError):
    code = "negative_delta"
    status_code = 400


class SessionNotOwned(ChargeError):
    code = "session_not_owned"
    status_code = 403


class SubscriptionNotFound(ChargeError):
    code = "subscription_not_found"
    status_code = 404


class UpstreamFetchFailure(Exception):
    """
    Non-fatal: one data source failed to refresh.
    The scheduler keeps the last-known value and records this on the source.
    """

    def __init__(self, source: str, cause: Optional[BaseException] = None):
        super().__init__(f"Refresh of '{source}' failed: {cause}")
        self.source = source
        self.cause = cause


class GatewayError(Exception):
    """Transport-level failure talking to the device gateway"""


class PaymentFailed(ChargeError):
    """Payment processor did not accept the extension"""
    code = "payment_failed"
    status_code = 424

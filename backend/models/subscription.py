"""
Solar Charge Port Manager - Subscription & Quota Models
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-06): Effective daily limit and quota_date for day rollover
v1.0.0 (2026-09-28): Initial plan, subscription, pricing and extension models
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import date, datetime
from enum import Enum


class DurationType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class Plan(BaseModel):
    id: int
    name: str
    daily_limit_mah: float = Field(5000.0, ge=0)
    max_concurrent_sessions: int = Field(1, ge=1)
    max_session_duration_hours: int = Field(4, ge=1)
    price: float = Field(0.0, ge=0)
    duration_type: DurationType = DurationType.MONTHLY
    duration_value: int = Field(1, ge=1)
    is_active: bool = True


class Subscription(BaseModel):
    """
    Per-user quota state.
    effective_daily_limit_mah is today's limit after yesterday's borrowing
    penalties; consumed/borrowed counters refer to quota_date.
    """
    id: Optional[int] = None
    user_id: str
    plan_id: int
    daily_limit_mah: float = Field(..., ge=0, description="Plan limit before penalties")
    effective_daily_limit_mah: float = Field(..., ge=0, description="Today's limit")
    max_concurrent_sessions: int = Field(1, ge=1)
    consumed_today_mah: float = Field(0.0, ge=0)
    borrowed_today_mah: float = Field(0.0, ge=0)
    borrowed_pending_mah: float = Field(0.0, ge=0, description="Deducted from tomorrow's limit")
    quota_date: date = Field(default_factory=date.today)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: bool = True


class ExtensionType(str, Enum):
    DIRECT_PURCHASE = "direct_purchase"
    BORROW_NEXT_DAY = "borrow_next_day"


class DirectPurchasePricing(BaseModel):
    price: float = Field(10.0, ge=0)
    extension_amount_mah: float = Field(1000.0, gt=0)
    is_active: bool = True


class BorrowPricing(BaseModel):
    base_fee: float = Field(0.0, ge=0)
    penalty_percentage: float = Field(20.0, ge=0)
    min_purchase_mah: float = Field(100.0, ge=0)
    max_purchase_mah: float = Field(5000.0, ge=0)
    is_active: bool = True


class QuotaPricing(BaseModel):
    direct_purchase: Optional[DirectPurchasePricing] = None
    borrow_next_day: Optional[BorrowPricing] = None


class ExtensionTransaction(BaseModel):
    """Immutable once committed"""
    model_config = {"frozen": True}

    id: Optional[int] = None
    user_id: str
    subscription_id: Optional[int] = None
    type: ExtensionType
    amount_mah: float = Field(..., ge=0)
    price_paid: float = Field(..., ge=0)
    penalty_percentage: Optional[float] = None
    penalty_mah: float = 0.0
    payment_reference: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class ExtensionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    type: ExtensionType
    amount_mah: Optional[float] = Field(None, gt=0, description="Required for borrow_next_day")


class ExtensionResult(BaseModel):
    transaction: ExtensionTransaction
    remaining_mah: float
    message: str
    payment_link: Optional[str] = None


class QuotaStatus(BaseModel):
    """GetRemainingQuota response with breakdown"""
    user_id: str
    quota_date: date
    daily_limit_mah: float
    effective_daily_limit_mah: float
    consumed_today_mah: float
    borrowed_today_mah: float
    borrowed_pending_mah: float
    remaining_mah: float
    exhausted: bool

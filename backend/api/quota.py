"""
Solar Charge Port Manager - Quota & Extensions API
Version: 1.0.1

Changelog:
v1.0.1 (2026-10-09): Extension history endpoint
v1.0.0 (2026-10-02): Initial remaining quota, pricing and extension endpoints
"""

from fastapi import APIRouter, HTTPException, Query
from typing import List
import logging

from errors import ChargeError
from models.subscription import ExtensionRequest, ExtensionResult, ExtensionTransaction, QuotaPricing, QuotaStatus
from services import extension_service, quota_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/pricing", response_model=QuotaPricing)
async def get_pricing():
    """GetQuotaPricing"""
    return await extension_service.get_pricing()


@router.post("/extensions", response_model=ExtensionResult)
async def request_extension(request: ExtensionRequest):
    """
    RequestExtension.
    direct_purchase adds the configured amount; borrow_next_day needs amount_mah
    within the configured bounds and is repaid with a penalty tomorrow.
    """
    try:
        return await extension_service.request_extension(
            request.user_id, request.type, request.amount_mah)
    except ChargeError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Extension for {request.user_id} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Extension failed: {str(e)}")


@router.get("/{user_id}", response_model=QuotaStatus)
async def get_quota(user_id: str):
    """GetRemainingQuota with the ledger breakdown"""
    try:
        return await quota_service.get_quota_status(user_id)
    except ChargeError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get("/{user_id}/extensions", response_model=List[ExtensionTransaction])
async def get_extension_history(user_id: str, limit: int = Query(50, ge=1, le=500)):
    """Purchase and borrow history"""
    return await extension_service.list_history(user_id, limit)

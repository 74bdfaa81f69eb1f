"""
Solar Charge Port Manager - Session History API
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-09): Monthly usage summary per user
v1.0.0 (2026-10-02): Initial session history endpoints
"""

from fastapi import APIRouter, HTTPException, Query
from typing import List, Optional
from datetime import date, datetime

from database import get_db
from models.session import ChargingSession, SessionRef, SessionSummary, UsageSummary
from services import quota_service, repository

router = APIRouter()


def _summary(s: ChargingSession) -> SessionSummary:
    return SessionSummary(
        id=s.id,
        user_id=s.user_id,
        device_id=s.device_id,
        port_number=s.port_number,
        start_time=s.start_time,
        end_time=s.end_time,
        energy_mah=s.energy_mah,
        cost=s.cost,
        close_reason=s.close_reason,
        duration_s=s.duration_s,
    )


@router.get("/", response_model=List[SessionSummary])
async def get_sessions(
    user_id: Optional[str] = Query(None),
    device_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000)
):
    """
    Get session history with optional filters
    - user_id: Filter by owner
    - device_id: Filter by charging station controller
    - start_date: Sessions starting at or after this time
    - end_date: Sessions starting before this time
    - limit: Maximum number of sessions to return
    """
    try:
        async with get_db() as db:
            sessions = await repository.list_sessions(
                db, user_id=user_id, device_id=device_id,
                start_date=start_date, end_date=end_date, limit=limit)
        return [_summary(s) for s in sessions]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to retrieve sessions: {str(e)}")


@router.get("/active", response_model=List[SessionRef])
async def get_active_sessions(user_id: str = Query(..., min_length=1)):
    """GetActiveSessionsForUser"""
    async with get_db() as db:
        return await repository.active_sessions_for_user(db, user_id)


@router.get("/usage/{user_id}", response_model=UsageSummary)
async def get_usage(
    user_id: str,
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
):
    """Monthly usage: session count, duration, energy and cost (defaults to this month)"""
    today = date.today()
    return await quota_service.monthly_usage(user_id, year or today.year, month or today.month)


@router.get("/{session_id}", response_model=ChargingSession)
async def get_session_detail(session_id: int):
    """Full session record"""
    async with get_db() as db:
        session = await repository.get_session(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session

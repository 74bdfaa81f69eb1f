"""
Solar Charge Port Manager - Telemetry API
Version: 1.0.0

Changelog:
v1.0.0 (2026-10-02): Initial consumption ingestion endpoint for device gateways
"""

from fastapi import APIRouter, HTTPException
import logging

from errors import ChargeError
from models.port import ConsumptionReading, IngestResult
from services import telemetry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/consumption", response_model=IngestResult)
async def post_consumption(reading: ConsumptionReading):
    """Power reading for one port; skipped when invalid or no session is open"""
    try:
        return await telemetry.ingest(reading)
    except ChargeError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Telemetry ingest for {reading.device_id}:{reading.port_number} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Ingest failed: {str(e)}")

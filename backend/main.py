"""
Solar Charge Port Manager - Main FastAPI Application
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-09): Session watchdog and quota rollover loops; telemetry and
                      quota routers; gateway closed on shutdown
v1.0.0 (2026-10-02): Initial FastAPI application
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging

from config import settings, init_directories
from api import ports, quota, sessions, telemetry, ws
from services import device_gateway, port_monitor, quota_service, session_watchdog

# Log directory must exist before the FileHandler opens api.log
init_directories()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(f'{settings.LOGS_DIR}/api.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


# Background tasks
background_tasks = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    # Initialize database
    from models import init_db
    await init_db()

    from database import get_db
    from seed import seed_if_empty
    async with get_db() as db:
        await seed_if_empty(db)

    # Start background services
    logger.info("Starting background services...")

    # Port Monitor (status / consumption / session timers + change feed)
    await port_monitor.start_monitor()

    # Session Watchdog (inactivity, stuck releases, reconciliation)
    watchdog_task = asyncio.create_task(session_watchdog.start_watchdog())
    background_tasks.add(watchdog_task)

    # Quota Rollover
    rollover_task = asyncio.create_task(quota_service.start_rollover_loop())
    background_tasks.add(rollover_task)

    logger.info("All services started successfully")

    yield

    # Shutdown
    logger.info("Shutting down services...")

    # Cancel all background tasks
    for task in background_tasks:
        task.cancel()

    # Wait for tasks to complete
    await asyncio.gather(*background_tasks, return_exceptions=True)
    background_tasks.clear()

    await port_monitor.stop_monitor()
    await device_gateway.close_gateway()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Session lifecycle and daily energy quota engine for solar charging stations",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(ports.router, prefix="/api/ports", tags=["Ports"])
app.include_router(quota.router, prefix="/api/quota", tags=["Quota"])
app.include_router(sessions.router, prefix="/api/sessions", tags=["Sessions"])
app.include_router(telemetry.router, prefix="/api/telemetry", tags=["Telemetry"])
app.include_router(ws.router, prefix="/api/ws", tags=["WebSocket"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "app": settings.APP_NAME
    }


@app.get("/api/status")
async def system_status():
    """System status endpoint"""
    return {
        "gateway_mode": settings.GATEWAY_MODE,
        "monitor": port_monitor.get_monitor().scheduler.status(),
        "websocket_clients": len(ws.active_connections),
        "background_tasks": len(background_tasks),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG,
        workers=settings.API_WORKERS
    )

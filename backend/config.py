"""
Solar Charge Port Manager - System Configuration
Version: 1.1.1

Changelog:
v1.1.1 (2026-10-16): Grace period for orphaned port claims
v1.1.0 (2026-10-09): Telemetry conversion constants, watchdog intervals,
                      quota cut-off switch
v1.0.0 (2026-09-28): Initial configuration module
"""

from pydantic_settings import BaseSettings
from pathlib import Path
import os


class Settings(BaseSettings):
    """System-wide configuration"""

    # Application
    APP_NAME: str = "Solar Charge Port Manager"
    APP_VERSION: str = "1.1.0"
    DEBUG: bool = False

    # API Server
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    API_WORKERS: int = 1  # Single worker: port locks are in-process

    # SQLite Configuration
    SQLITE_DB_PATH: str = str(Path(__file__).parent / "data" / "charge_ports.db")

    # Device gateway ("simulated" or "http")
    GATEWAY_MODE: str = "simulated"
    GATEWAY_URL: str = "http://localhost:8080"
    GATEWAY_TIMEOUT: float = 5.0  # seconds per HTTP call

    # Payments
    PAYMENT_URL: str = ""  # Empty: no payment processor, link only
    PAYMENT_LINK: str = "https://pay.example.org/checkout"

    # Port state aggregation
    DEVICE_FRESHNESS_WINDOW_S: float = 30.0  # device silent longer than this is Offline

    # Refresh cadences (seconds)
    STATUS_POLL_INTERVAL: float = 5.0
    SESSION_POLL_INTERVAL: float = 10.0
    CONSUMPTION_POLL_INTERVAL: float = 10.0
    CHANGE_FEED_DEBOUNCE_S: float = 1.0

    # Control commands
    COMMAND_ACK_TIMEOUT_S: float = 10.0
    CLAIM_ORPHAN_GRACE_S: float = 30.0  # requested claim older than ack timeout + grace is dropped

    # Telemetry
    NOMINAL_CHARGING_VOLTAGE_DC: float = 12.0  # volts, mAh conversion
    TELEMETRY_INTERVAL_S: float = 10.0  # device publish interval
    MAX_REASONABLE_CONSUMPTION_W: float = 10000.0
    QUOTA_CUTOFF_ENABLED: bool = True

    # Session watchdog
    INACTIVITY_TIMEOUT_S: float = 60.0
    WATCHDOG_INTERVAL_S: float = 15.0
    STALE_SESSION_CHECK_INTERVAL_S: float = 300.0
    QUOTA_ROLLOVER_CHECK_INTERVAL_S: float = 60.0

    # Billing
    DEFAULT_PRICE_PER_MAH: float = 0.25

    # File Paths
    DATA_DIR: str = str(Path(__file__).parent / "data")
    LOGS_DIR: str = str(Path(__file__).parent / "logs")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Singleton instance
settings = Settings()


# Create required directories
def init_directories():
    """Create necessary directories if they don't exist"""
    for directory in [settings.DATA_DIR, settings.LOGS_DIR]:
        os.makedirs(directory, exist_ok=True)


if __name__ == "__main__":
    print(f"{settings.APP_NAME} Configuration v{settings.APP_VERSION}")
    print(f"SQLite: {settings.SQLITE_DB_PATH}")
    print(f"Gateway: {settings.GATEWAY_MODE} ({settings.GATEWAY_URL})")
    print(f"Refresh: status {settings.STATUS_POLL_INTERVAL}s, "
          f"sessions {settings.SESSION_POLL_INTERVAL}s, "
          f"consumption {settings.CONSUMPTION_POLL_INTERVAL}s")
    print(f"Ack timeout: {settings.COMMAND_ACK_TIMEOUT_S}s")

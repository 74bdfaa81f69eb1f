"""
Solar Charge Port Manager - Backend Services
Version: 1.1.0

Changelog:
v1.1.0 (2026-10-09): Telemetry ingestion and session watchdog
v1.0.0 (2026-10-02): Initial services module
"""

from . import quota_ledger
from . import port_aggregator
from . import change_feed
from . import sync_scheduler
from . import repository
from . import device_gateway
from . import billing
from . import quota_service
from . import extension_service
from . import port_monitor
from . import session_controller
from . import telemetry
from . import session_watchdog

"""
Solar Charge Port Manager - API Routers
Version: 1.0.0

Changelog:
v1.0.0 (2026-10-02): Initial routers for ports, quota, sessions, telemetry, ws
"""

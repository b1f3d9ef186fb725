"""
API Endpoints Package
=====================

health.py     - Health check (GET /api/v1/health)
sessions.py   - Session lifecycle, control and messages (/api/v1/sessions/*)
dashboard.py  - Dashboard event stream and operator commands (WS /api/v1/dashboard/stream)
"""

from . import dashboard, health, sessions

__all__ = ["dashboard", "health", "sessions"]

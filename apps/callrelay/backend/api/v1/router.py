"""
API V1 Router
=============

Tags are defined at the endpoint level (in each endpoint file).
"""

from fastapi import APIRouter

from .endpoints import dashboard, health, sessions

v1_router = APIRouter(prefix="/api/v1")

v1_router.include_router(health.router)
v1_router.include_router(sessions.router)
v1_router.include_router(dashboard.router)

"""
Configuration Package
=====================

Usage:
    from apps.callrelay.backend.config import Settings
    settings = Settings.from_env()
"""

from .settings import Settings

__all__ = ["Settings"]

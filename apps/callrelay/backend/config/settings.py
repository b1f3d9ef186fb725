"""
Application Settings
====================

Environment-loaded configuration for the session coordinator service.

Loading Order:
    1. .env.local / .env (if present) - local development values
    2. Environment variables (container/cloud deployments) - never overridden

Usage:
    from apps.callrelay.backend.config import Settings
    settings = Settings.from_env()
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from callrelay.context.assembler import CONTEXT_CACHE_TTL_SECONDS, CONTEXT_READ_TIMEOUT_SECONDS
from callrelay.engine.retry import ReconnectPolicy
from callrelay.state.store import ORG_INDEX_TTL_SECONDS, SESSION_TTL_SECONDS


def _load_dotenv_local() -> Path | None:
    """Load the first .env.local/.env found; existing variables win."""
    try:
        from dotenv import load_dotenv
    except ImportError:
        return None

    backend_dir = Path(__file__).parent.parent
    project_root = backend_dir.parent.parent.parent
    for env_file in (
        backend_dir / ".env.local",
        project_root / ".env.local",
        project_root / ".env",
    ):
        if env_file.exists():
            load_dotenv(env_file, override=False)
            return env_file
    return None


# ==============================================================================
# HELPER FUNCTIONS
# ==============================================================================


def _env_bool(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes", "on")


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _env_float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def _env_list(key: str, default: str = "", sep: str = ",") -> list[str]:
    raw = os.getenv(key, default)
    return [item.strip() for item in raw.split(sep) if item.strip()]


# ==============================================================================
# SETTINGS
# ==============================================================================


@dataclass(frozen=True)
class Settings:
    # Service
    environment: str = "dev"
    debug_mode: bool = False
    allowed_origins: list[str] = field(default_factory=lambda: ["*"])
    port: int = 8080

    # State store
    state_backend: str = "redis"
    redis_host: str | None = None
    redis_port: int | None = None
    redis_access_key: str | None = None
    redis_ssl: bool = True
    session_ttl_seconds: int = SESSION_TTL_SECONDS
    org_index_ttl_seconds: int = ORG_INDEX_TTL_SECONDS
    archive_ttl_seconds: int = 30 * 24 * 60 * 60

    # Context assembly
    context_cache_ttl_seconds: int = CONTEXT_CACHE_TTL_SECONDS
    context_read_timeout_seconds: float = CONTEXT_READ_TIMEOUT_SECONDS

    # Conversation engine
    engine_ws_url: str = ""
    engine_api_key: str | None = None
    engine_handshake_timeout_seconds: float = 10.0
    engine_max_reconnect_attempts: int = 5
    engine_reconnect_base_seconds: float = 1.0

    # Dashboard broadcast
    broadcast_send_timeout_seconds: float = 5.0
    max_dashboard_subscribers: int | None = None

    # Lead resolution
    default_organization_id: str | None = None
    lead_directory_file: str | None = None

    @classmethod
    def from_env(cls) -> Settings:
        _load_dotenv_local()
        max_subscribers = _env_int("MAX_DASHBOARD_SUBSCRIBERS", 0)
        redis_port = os.getenv("REDIS_PORT")
        return cls(
            environment=os.getenv("ENVIRONMENT", "dev"),
            debug_mode=_env_bool("DEBUG_MODE", False),
            allowed_origins=_env_list("ALLOWED_ORIGINS", "*"),
            port=_env_int("PORT", 8080),
            state_backend=os.getenv("STATE_BACKEND", "redis").lower(),
            redis_host=os.getenv("REDIS_HOST"),
            redis_port=int(redis_port) if redis_port else None,
            redis_access_key=os.getenv("REDIS_ACCESS_KEY"),
            redis_ssl=_env_bool("REDIS_SSL", True),
            session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", SESSION_TTL_SECONDS),
            org_index_ttl_seconds=_env_int("ORG_INDEX_TTL_SECONDS", ORG_INDEX_TTL_SECONDS),
            archive_ttl_seconds=_env_int("ARCHIVE_TTL_SECONDS", 30 * 24 * 60 * 60),
            context_cache_ttl_seconds=_env_int(
                "CONTEXT_CACHE_TTL_SECONDS", CONTEXT_CACHE_TTL_SECONDS
            ),
            context_read_timeout_seconds=_env_float(
                "CONTEXT_READ_TIMEOUT_SECONDS", CONTEXT_READ_TIMEOUT_SECONDS
            ),
            engine_ws_url=os.getenv("ENGINE_WS_URL", ""),
            engine_api_key=os.getenv("ENGINE_API_KEY"),
            engine_handshake_timeout_seconds=_env_float("ENGINE_HANDSHAKE_TIMEOUT_SECONDS", 10.0),
            engine_max_reconnect_attempts=_env_int("ENGINE_MAX_RECONNECT_ATTEMPTS", 5),
            engine_reconnect_base_seconds=_env_float("ENGINE_RECONNECT_BASE_SECONDS", 1.0),
            broadcast_send_timeout_seconds=_env_float("BROADCAST_SEND_TIMEOUT_SECONDS", 5.0),
            max_dashboard_subscribers=max_subscribers or None,
            default_organization_id=os.getenv("DEFAULT_ORGANIZATION_ID") or None,
            lead_directory_file=os.getenv("LEAD_DIRECTORY_FILE") or None,
        )

    @property
    def reconnect_policy(self) -> ReconnectPolicy:
        return ReconnectPolicy(
            max_attempts=self.engine_max_reconnect_attempts,
            base_delay_seconds=self.engine_reconnect_base_seconds,
            handshake_timeout_seconds=self.engine_handshake_timeout_seconds,
        )

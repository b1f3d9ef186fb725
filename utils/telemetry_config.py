"""
Azure Monitor / Application Insights telemetry configuration.

Configuration via environment variables:
- APPLICATIONINSIGHTS_CONNECTION_STRING: Required for Azure Monitor export
- DISABLE_CLOUD_TELEMETRY: Set to "true" to disable all cloud telemetry
- AZURE_MONITOR_DISABLE_LIVE_METRICS: Disable the live metrics stream
- SERVICE_NAME / SERVICE_NAMESPACE / ENVIRONMENT: Resource attributes
"""

from __future__ import annotations

import logging
import os
import re
import socket
from re import Pattern

from opentelemetry.sdk.trace import ReadableSpan, SpanProcessor

logger = logging.getLogger("utils.telemetry_config")

# ═══════════════════════════════════════════════════════════════════════════════
# NOISE SUPPRESSION
# ═══════════════════════════════════════════════════════════════════════════════

NOISY_LOGGERS = [
    "azure.identity",
    "azure.core.pipeline",
    "azure.core.pipeline.policies.http_logging_policy",
    "azure.monitor.opentelemetry.exporter",
    "websockets",
    "httpx",
    "uvicorn.protocols.websockets",
    "uvicorn.access",
    "opentelemetry.sdk.trace",
    "redis",
]


def suppress_noisy_loggers(level: int = logging.WARNING) -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


# High-frequency spans that would swamp the trace store
NOISY_SPAN_PATTERNS: list[Pattern[str]] = [
    re.compile(r".*websocket\s*(receive|send).*", re.IGNORECASE),
    re.compile(r"^(GET|POST)\s+.*/dashboard/stream.*", re.IGNORECASE),
    re.compile(r".*heartbeat.*", re.IGNORECASE),
    re.compile(r"^Redis\.(PING|ping)$"),
    re.compile(r".*user[-_]audio[-_]chunk.*", re.IGNORECASE),
]


class FilteringSpanProcessor(SpanProcessor):
    """Wraps the exporter's processor and drops spans matching NOISY_SPAN_PATTERNS."""

    def __init__(self, next_processor: SpanProcessor):
        self._next = next_processor

    def on_start(self, span, parent_context=None) -> None:
        self._next.on_start(span, parent_context)

    def on_end(self, span: ReadableSpan) -> None:
        if any(pattern.match(span.name) for pattern in NOISY_SPAN_PATTERNS):
            return
        self._next.on_end(span)

    def shutdown(self) -> None:
        self._next.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self._next.force_flush(timeout_millis)


def _get_instance_id() -> str:
    if replica := os.getenv("CONTAINER_APP_REPLICA_NAME"):
        return replica
    if instance_id := os.getenv("WEBSITE_INSTANCE_ID"):
        return instance_id[:8]
    return socket.gethostname()


def _should_enable_live_metrics() -> bool:
    if os.getenv("AZURE_MONITOR_DISABLE_LIVE_METRICS", "false").lower() == "true":
        return False
    env = os.getenv("ENVIRONMENT", "").lower()
    if env in ("dev", "development", "local"):
        return False
    return env in ("prod", "production") or bool(os.getenv("CONTAINER_APP_NAME"))


_azure_monitor_configured = False


def is_azure_monitor_configured() -> bool:
    return _azure_monitor_configured


# ═══════════════════════════════════════════════════════════════════════════════
# SETUP
# ═══════════════════════════════════════════════════════════════════════════════


def setup_azure_monitor(logger_name: str | None = None) -> bool:
    """
    Configure Azure Monitor when a connection string is present.

    Returns True when the exporter was configured. Never raises: telemetry
    problems must not stop the service from starting.
    """
    global _azure_monitor_configured

    suppress_noisy_loggers()

    if os.getenv("DISABLE_CLOUD_TELEMETRY", "false").lower() == "true":
        logger.info("Telemetry disabled (DISABLE_CLOUD_TELEMETRY=true); skipping Azure Monitor")
        return False

    connection_string = os.getenv("APPLICATIONINSIGHTS_CONNECTION_STRING")
    if not connection_string:
        logger.info("APPLICATIONINSIGHTS_CONNECTION_STRING not set; skipping Azure Monitor")
        return False

    from azure.monitor.opentelemetry import configure_azure_monitor
    from opentelemetry.sdk.resources import Resource

    from utils.azure_auth import get_credential

    resource_attrs = {
        "service.name": os.getenv("SERVICE_NAME", "callrelay-api"),
        "service.namespace": os.getenv("SERVICE_NAMESPACE", "callrelay"),
        "service.instance.id": _get_instance_id(),
    }
    if env_name := os.getenv("ENVIRONMENT"):
        resource_attrs["service.environment"] = env_name

    try:
        configure_azure_monitor(
            resource=Resource(attributes=resource_attrs),
            logger_name=logger_name or os.getenv("AZURE_MONITOR_LOGGER_NAME", ""),
            credential=get_credential(),
            connection_string=connection_string,
            enable_live_metrics=_should_enable_live_metrics(),
            instrumentation_options={
                "azure_sdk": {"enabled": True},
                "redis": {"enabled": True},
                "fastapi": {"enabled": True},
                "requests": {"enabled": False},
                "flask": {"enabled": False},
                "django": {"enabled": False},
                "psycopg2": {"enabled": False},
            },
        )
    except Exception as exc:
        logger.error("Failed to configure Azure Monitor: %s", exc)
        return False

    _install_span_processors()
    _azure_monitor_configured = True
    logger.info("Azure Monitor configured for %s", resource_attrs["service.name"])
    return True


def _install_span_processors() -> None:
    """Add session correlation and wrap the exporter with noise filtering."""
    from opentelemetry import trace as otel_trace

    from utils.session_context import SessionContextSpanProcessor

    provider = otel_trace.get_tracer_provider()
    if not hasattr(provider, "add_span_processor"):
        return
    provider.add_span_processor(SessionContextSpanProcessor())
    active = getattr(provider, "_active_span_processor", None)
    if active is not None:
        provider._active_span_processor = FilteringSpanProcessor(active)

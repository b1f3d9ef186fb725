from enum import Enum


# Span attribute keys for Azure App Insights OpenTelemetry logging
class SpanAttr(str, Enum):
    """
    Standardized span attribute keys for OpenTelemetry tracing.

    These attributes follow OpenTelemetry semantic conventions and are optimized
    for Azure Application Insights Application Map visualization.

    Attribute Categories:
    - Core: Basic correlation and identification
    - Application Map: Required for proper dependency visualization
    - Session: Conversation session lifecycle and control ownership
    - WebSocket: Engine and dashboard connection tracking
    """

    # ═══════════════════════════════════════════════════════════════════════════
    # CORE ATTRIBUTES - Basic correlation and identification
    # ═══════════════════════════════════════════════════════════════════════════
    CORRELATION_ID = "correlation.id"
    SESSION_ID = "session.id"
    ORGANIZATION_ID = "organization.id"
    LEAD_ID = "lead.id"
    OPERATION_NAME = "operation.name"
    ERROR_TYPE = "error.type"
    ERROR_MESSAGE = "error.message"

    # ═══════════════════════════════════════════════════════════════════════════
    # APPLICATION MAP ATTRIBUTES - Required for App Insights dependency visualization
    # ═══════════════════════════════════════════════════════════════════════════
    PEER_SERVICE = "peer.service"  # Target service name (creates edge)
    SERVER_ADDRESS = "server.address"  # Target hostname/IP
    SERVER_PORT = "server.port"  # Target port
    DB_SYSTEM = "db.system"  # Database type (redis)
    DB_OPERATION = "db.operation"  # Database operation (HSET, ZADD, ...)

    # ═══════════════════════════════════════════════════════════════════════════
    # SESSION ATTRIBUTES - Conversation lifecycle
    # ═══════════════════════════════════════════════════════════════════════════
    CONTROL_OWNER = "session.control.owner"
    HUMAN_AGENT_ID = "session.control.agent_id"
    RECONNECT_ATTEMPT = "engine.reconnect.attempt"

    # ═══════════════════════════════════════════════════════════════════════════
    # WEBSOCKET ATTRIBUTES
    # ═══════════════════════════════════════════════════════════════════════════
    WS_URL = "ws.url"
    WS_EVENT_TYPE = "ws.event_type"
    WS_SUBSCRIBERS = "ws.subscribers"


class PeerService:
    """
    Standard peer.service values for Application Map dependency visualization.

    Use these constants when setting SpanAttr.PEER_SERVICE to ensure consistent
    node naming in Application Insights Application Map.
    """

    CONVERSATION_ENGINE = "conversation-engine"
    AZURE_MANAGED_REDIS = "azure-managed-redis"
    REDIS = "redis"

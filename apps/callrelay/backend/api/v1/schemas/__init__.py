"""
Pydantic schemas for API request/response models.
"""

from .dashboard import DashboardCommand, DashboardCommandType
from .health import HealthResponse, ServiceCheck
from .sessions import (
    CompleteSessionRequest,
    CustomerMessageRequest,
    HumanMessageRequest,
    ReleaseRequest,
    SessionListResponse,
    StartSessionRequest,
    TakeoverRequest,
    TranscriptResponse,
)

__all__ = [
    "CompleteSessionRequest",
    "CustomerMessageRequest",
    "DashboardCommand",
    "DashboardCommandType",
    "HealthResponse",
    "HumanMessageRequest",
    "ReleaseRequest",
    "ServiceCheck",
    "SessionListResponse",
    "StartSessionRequest",
    "TakeoverRequest",
    "TranscriptResponse",
]

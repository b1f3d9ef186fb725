"""
Health check API schemas.
"""

from typing import Any

from pydantic import BaseModel, Field


class ServiceCheck(BaseModel):
    """Result of one dependency check."""

    component: str = Field(..., description="Checked component", example="state_store")
    status: str = Field(..., description="healthy or unhealthy", example="healthy")
    check_time_ms: float = Field(..., description="Check duration in milliseconds", example=3.2)
    error: str | None = Field(None, description="Failure detail, if any")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Overall status", example="healthy")
    timestamp: float = Field(..., description="Unix timestamp of the check")
    checks: list[ServiceCheck] = Field(default_factory=list)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Live counters",
        json_schema_extra={"example": {"activeSessions": 3, "dashboardSubscribers": 2}},
    )

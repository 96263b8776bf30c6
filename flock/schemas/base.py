# flock/schemas/base.py
"""
Base schemas for API responses
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class ErrorResponse(BaseModel):
    """
    Standard error response
    Used for 4xx and 5xx responses
    """
    success: bool = False
    error: str
    error_code: str
    details: Optional[dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": False,
                "error": "network net-a is out of addresses",
                "error_code": "POOL_EXHAUSTED",
                "details": {"scope_id": "3f1c..."},
                "timestamp": "2025-12-26T10:00:00Z"
            }
        }
    )


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = "healthy"
    service: str = "flock-control-plane"
    version: str = "1.0.0"
    uptime_seconds: Optional[float] = None
    database: str = "connected"
    timestamp: datetime = Field(default_factory=datetime.utcnow)

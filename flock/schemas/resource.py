# flock/schemas/resource.py
"""
Resource state and deployment run schemas
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, List, Optional
from datetime import datetime

SECRET_KEYS = {"private_key", "password", "content"}
REDACTED = "***"


def redact(value: Any) -> Any:
    """Replace key material and passwords anywhere in a recorded document"""
    if isinstance(value, dict):
        return {
            k: (REDACTED if k in SECRET_KEYS and v is not None else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


class ResourceStateResponse(BaseModel):
    """Recorded resource with secrets omitted"""
    name: str
    kind: str
    resource_id: str
    outputs: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_state(cls, state) -> "ResourceStateResponse":
        return cls(
            name=state.name,
            kind=state.kind,
            resource_id=state.resource_id,
            outputs=redact(state.outputs),
            dependencies=state.dependencies,
            created_at=state.created_at,
            updated_at=state.updated_at,
        )


class ResourceListResponse(BaseModel):
    resources: List[ResourceStateResponse]
    total: int


class ResourceFailure(BaseModel):
    resource: str
    kind: str
    error: str
    error_code: str
    stderr: Optional[str] = None


class ApplyResponse(BaseModel):
    """Outcome of one apply run"""
    created: List[str] = Field(default_factory=list)
    replaced: List[str] = Field(default_factory=list)
    refreshed: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)
    deleted: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: List[ResourceFailure] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "created": ["mesh-ipam", "mesh-ca-epoch-0", "mesh-ca-epoch-1", "mesh-backend"],
                "replaced": [],
                "refreshed": [],
                "unchanged": [],
                "deleted": [],
                "skipped": [],
                "failed": [],
            }
        }
    )


class DestroyResponse(BaseModel):
    deleted: List[str] = Field(default_factory=list)


class IPAMStatsResponse(BaseModel):
    """Allocation statistics for one scope"""
    scope_id: str
    kind: str
    cidr: Optional[str] = None
    lower: int
    upper: int
    total: int
    used: int
    available: int
    utilization_percent: float
    allocations: Dict[str, str] = Field(default_factory=dict)

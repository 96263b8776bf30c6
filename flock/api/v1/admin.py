# flock/api/v1/admin.py
"""
Admin API Endpoints
Apply and destroy declarations, inspect recorded state
"""

from fastapi import APIRouter, Depends, HTTPException, Header, status
from sqlalchemy.orm import Session
import logging

from flock.database.session import get_db
from flock.database.models import ResourceState
from flock.schemas.declaration import Declaration
from flock.schemas.resource import (
    ApplyResponse,
    DestroyResponse,
    IPAMStatsResponse,
    ResourceListResponse,
    ResourceStateResponse,
)
from flock.schemas.base import ErrorResponse
from flock.core.deployment import deployment_service
from flock.core.ipam import ipam_service
from flock.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()

ADMIN_ACTOR = "admin"


# === Authentication Dependency ===

async def verify_admin_token(x_admin_token: str = Header(..., alias="X-Admin-Token")):
    """Verify admin authentication token"""
    if x_admin_token != settings.ADMIN_SECRET:
        logger.warning("Invalid admin token attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "Invalid or missing admin token",
                "error_code": "UNAUTHORIZED"
            },
            headers={"WWW-Authenticate": "Bearer"}
        )
    return True


# === Deployment Endpoints ===

@router.post(
    "/apply",
    response_model=ApplyResponse,
    responses={
        409: {"description": "Allocation scope exhausted", "model": ErrorResponse},
        422: {"description": "Invalid declaration", "model": ErrorResponse},
        502: {"description": "One or more resources failed", "model": ErrorResponse},
    },
    summary="Apply a declaration",
    description="Reconcile hosts, networks and endpoints against the recorded state"
)
def apply_declaration(
    declaration: Declaration,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_token)
):
    """
    Apply a declaration

    Resources no longer declared are destroyed first; failures skip the
    failing resource's dependents and surface as a 502 listing them.
    """
    report = deployment_service.apply(db, declaration, actor_id=ADMIN_ACTOR)
    return ApplyResponse(**report.to_dict())


@router.post(
    "/destroy",
    response_model=DestroyResponse,
    summary="Destroy everything",
    description="Tear down every recorded resource in reverse dependency order"
)
def destroy_all(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_token)
):
    """Tear down all recorded resources"""
    deleted = deployment_service.destroy(db, actor_id=ADMIN_ACTOR)
    logger.info(f"Admin destroyed {len(deleted)} resources")
    return DestroyResponse(deleted=deleted)


# === Inspection Endpoints ===

@router.get(
    "/resources",
    response_model=ResourceListResponse,
    summary="List recorded resources",
    description="Recorded resource states; private keys, passwords and uploaded contents are redacted"
)
def list_resources(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_token)
):
    """List recorded resources"""
    states = db.query(ResourceState).order_by(ResourceState.name).all()
    return ResourceListResponse(
        resources=[ResourceStateResponse.from_state(s) for s in states],
        total=len(states)
    )


@router.get(
    "/resources/{name}",
    response_model=ResourceStateResponse,
    responses={
        404: {"description": "Resource not found", "model": ErrorResponse},
    },
    summary="Get recorded resource"
)
def get_resource(
    name: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_token)
):
    """Get one recorded resource by name"""
    state = db.query(ResourceState).filter(ResourceState.name == name).first()

    if not state:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": f"Resource {name} not found",
                "error_code": "RESOURCE_NOT_FOUND"
            }
        )

    return ResourceStateResponse.from_state(state)


@router.get(
    "/ipam/{scope_id}",
    response_model=IPAMStatsResponse,
    responses={
        422: {"description": "Unknown scope", "model": ErrorResponse},
    },
    summary="Allocation statistics",
    description="Usage of one address (network) or port (host) scope"
)
def get_ipam_stats(
    scope_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_token)
):
    """Get allocation statistics and bindings for a scope"""
    stats = ipam_service.get_allocation_stats(db, scope_id)
    return IPAMStatsResponse(
        **stats,
        allocations=ipam_service.list_allocations(db, scope_id)
    )

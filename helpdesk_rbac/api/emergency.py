"""Emergency access API router — break-glass issuance and redemption."""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from helpdesk_rbac.api.deps import get_registry, get_request_context, reject_blocked_ip, require_permission
from helpdesk_rbac.core.config import settings
from helpdesk_rbac.core.exceptions import not_found
from helpdesk_rbac.core.rate_limit import limiter
from helpdesk_rbac.core.registry import Registry
from helpdesk_rbac.core.security import create_access_token, get_current_user_id
from helpdesk_rbac.db.session import get_db
from helpdesk_rbac.models.emergency_access import EmergencyAccess
from helpdesk_rbac.schemas.schemas import (
    EmergencyAccessOut, EmergencyGrantOut, EmergencyGrantRequest, EmergencyRedeemOut,
    EmergencyRedeemRequest, EmergencyRevokeRequest, MessageResponse,
)
from helpdesk_rbac.services.audit_service import RequestContext
from helpdesk_rbac.services.emergency_access_service import hash_token

router = APIRouter(prefix="/emergency-access", tags=["emergency-access"])


def access_out(access: EmergencyAccess, now) -> EmergencyAccessOut:
    return EmergencyAccessOut(
        id=access.id,
        user_id=access.user_id,
        permissions=access.permissions,
        reason=access.reason,
        granted_by=access.granted_by,
        granted_at=access.granted_at,
        expires_at=access.expires_at,
        used_at=access.used_at,
        is_active=access.is_active,
        state=access.state(now),
    )


@router.post("/grant", response_model=EmergencyGrantOut, status_code=201)
@limiter.limit(settings.RATE_LIMIT_EMERGENCY_GRANT)
async def grant_emergency_access(
    request: Request,
    body: EmergencyGrantRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    """Issue a break-glass token. The raw token is only ever returned here."""
    grant = registry.emergency.grant_emergency_access(
        db, body.user_id, body.permissions, body.reason,
        duration_minutes=body.duration_minutes,
        granted_by=user_id,
        context=context,
    )
    return EmergencyGrantOut(access=access_out(grant.access, registry.clock()), token=grant.token)


@router.post("/redeem", response_model=EmergencyRedeemOut, dependencies=[Depends(reject_blocked_ip)])
@limiter.limit(settings.RATE_LIMIT_EMERGENCY_REDEEM)
async def redeem_emergency_access(
    request: Request,
    body: EmergencyRedeemRequest,
    db: Session = Depends(get_db),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    """Exchange a token for a session bound to the emergency window."""
    user = registry.emergency.redeem(db, body.token, context=context)
    access = (
        db.query(EmergencyAccess)
        .filter(EmergencyAccess.token_hash == hash_token(body.token))
        .first()
    )
    access_token = create_access_token(
        {"sub": str(user.id), "emergency_access_id": access.id},
        expires_delta=access.expires_at - registry.clock(),
    )
    return EmergencyRedeemOut(
        user_id=user.id,
        access_token=access_token,
        permissions=access.permissions,
        expires_at=access.expires_at,
    )


@router.post("/{access_id}/revoke", response_model=MessageResponse)
async def revoke_emergency_access(
    access_id: int,
    body: EmergencyRevokeRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    if not registry.emergency.revoke_emergency_access(db, access_id, body.reason, user_id, context=context):
        raise not_found("Emergency access not found or no longer valid")
    return MessageResponse(message="Emergency access revoked")


@router.get("/users/{target_id}", response_model=EmergencyAccessOut)
async def user_emergency_access(
    target_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_permission("emergency.grant")),
    registry: Registry = Depends(get_registry),
):
    access = registry.emergency.get_user_active_emergency_access(db, target_id)
    if access is None:
        raise not_found("No active emergency access")
    return access_out(access, registry.clock())


@router.get("/stats")
async def emergency_stats(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_permission("audit.view_logs")),
    registry: Registry = Depends(get_registry),
):
    return registry.emergency.stats(db, days)


@router.post("/cleanup", response_model=MessageResponse)
async def cleanup_emergency_access(
    db: Session = Depends(get_db),
    user_id: int = Depends(require_permission("emergency.revoke")),
    registry: Registry = Depends(get_registry),
):
    count = registry.emergency.cleanup_expired(db)
    return MessageResponse(message=f"Deactivated {count} expired emergency grants")

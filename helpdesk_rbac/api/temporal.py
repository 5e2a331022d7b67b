"""Temporal access API router — time-bounded role grants."""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from helpdesk_rbac.api.deps import get_registry, get_request_context, require_permission
from helpdesk_rbac.api.roles import assignment_out
from helpdesk_rbac.core.exceptions import forbidden, not_found
from helpdesk_rbac.core.registry import Registry
from helpdesk_rbac.core.security import get_current_user_id
from helpdesk_rbac.db.session import get_db
from helpdesk_rbac.models.user import User
from helpdesk_rbac.schemas.schemas import (
    ExtendRoleRequest, MessageResponse, RevokeTemporaryRoleRequest,
    RoleAssignmentOut, TemporaryRoleRequest,
)
from helpdesk_rbac.services.audit_service import RequestContext

router = APIRouter(prefix="/temporal-access", tags=["temporal-access"])


@router.post("/grant", response_model=MessageResponse, status_code=201)
async def grant_temporary_role(
    body: TemporaryRoleRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    registry.temporal.grant_temporary_role(
        db, body.user_id, body.role_id, body.duration_minutes, body.reason, user_id,
        context=context,
    )
    return MessageResponse(message=f"Temporary role granted for {body.duration_minutes} minutes")


@router.post("/extend", response_model=MessageResponse)
async def extend_temporary_role(
    body: ExtendRoleRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    extended = registry.temporal.extend_temporary_role(
        db, body.user_id, body.role_id, body.additional_minutes, body.reason, user_id,
        context=context,
    )
    if not extended:
        raise not_found("No active temporary assignment for this role")
    return MessageResponse(message=f"Temporary role extended by {body.additional_minutes} minutes")


@router.post("/revoke", response_model=MessageResponse)
async def revoke_temporary_role(
    body: RevokeTemporaryRoleRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    revoked = registry.temporal.revoke_temporary_role(
        db, body.user_id, body.role_id, body.reason, user_id, context=context,
    )
    if not revoked:
        raise not_found("No active assignment for this role")
    return MessageResponse(message="Temporary role revoked")


@router.get("/users/{target_id}", response_model=list[RoleAssignmentOut])
async def user_temporary_roles(
    target_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
):
    target = db.get(User, target_id)
    if target is None or not registry.hierarchy.can_view_user(db, user_id, target):
        raise forbidden("Insufficient permissions")
    return [assignment_out(a) for a in registry.temporal.get_user_active_temporary_roles(db, target_id)]


@router.get("/expiring", response_model=list[RoleAssignmentOut])
async def expiring_roles(
    within_minutes: int = Query(60, ge=1, le=10080),
    department_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_permission("users.view_department")),
    registry: Registry = Depends(get_registry),
):
    if not registry.permissions.user_has_permission(db, user_id, "users.view_all"):
        actor = db.get(User, user_id)
        if actor is None or actor.department_id is None or department_id not in (None, actor.department_id):
            raise forbidden("Insufficient permissions")
        department_id = actor.department_id
    assignments = registry.temporal.get_expiring_roles(db, within_minutes, department_id=department_id)
    return [assignment_out(a) for a in assignments]

"""Roles API router — role catalog, permission matrix and user assignments."""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from helpdesk_rbac.api.deps import get_registry, get_request_context
from helpdesk_rbac.core.clock import as_naive_utc
from helpdesk_rbac.core.exceptions import forbidden, not_found
from helpdesk_rbac.core.registry import Registry
from helpdesk_rbac.core.security import get_current_user_id
from helpdesk_rbac.db.session import get_db
from helpdesk_rbac.models.role import Role
from helpdesk_rbac.models.role_assignment import RoleAssignment
from helpdesk_rbac.models.user import User
from helpdesk_rbac.schemas.schemas import (
    AssignRoleRequest, MessageResponse, PermissionCheckOut, PermissionCheckRequest,
    PermissionOut, PermissionToggleRequest, RoleAssignmentOut, RoleCreate, RoleOut,
    RolePermissionRequest, RoleUpdate, UserPermissionsOut,
)
from helpdesk_rbac.services.audit_service import RequestContext

router = APIRouter(prefix="/roles", tags=["roles"])


def role_out(role: Role) -> RoleOut:
    return RoleOut(
        id=role.id,
        name=role.name,
        display_name=role.display_name,
        description=role.description,
        hierarchy_level=role.hierarchy_level,
        is_active=role.is_active,
        is_system=role.is_system,
        permissions=sorted(p.name for p in role.permissions),
    )


def assignment_out(assignment: RoleAssignment) -> RoleAssignmentOut:
    return RoleAssignmentOut(
        id=assignment.id,
        user_id=assignment.user_id,
        role_id=assignment.role_id,
        role_name=assignment.role.name if assignment.role else None,
        granted_by=assignment.granted_by,
        granted_at=assignment.granted_at,
        expires_at=assignment.expires_at,
        is_active=assignment.is_active,
        delegation_reason=assignment.delegation_reason,
    )


@router.get("", response_model=list[RoleOut])
async def list_roles(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
):
    """Roles the caller may view."""
    return [role_out(r) for r in registry.roles.list_visible_roles(db, user_id)]


@router.get("/{role_id}", response_model=RoleOut)
async def get_role(
    role_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
):
    role = db.get(Role, role_id)
    if role is None or not registry.hierarchy.can_view_role(db, user_id, role):
        raise not_found("Role not found")
    return role_out(role)


@router.post("", response_model=RoleOut, status_code=201)
async def create_role(
    body: RoleCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    role = registry.roles.create_role(
        db, user_id, body.name, body.hierarchy_level,
        display_name=body.display_name,
        description=body.description,
        permission_ids=body.permission_ids,
        context=context,
    )
    return role_out(role)


@router.patch("/{role_id}", response_model=RoleOut)
async def update_role(
    role_id: int,
    body: RoleUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    role = registry.roles.update_role(
        db, user_id, role_id,
        display_name=body.display_name,
        description=body.description,
        hierarchy_level=body.hierarchy_level,
        is_active=body.is_active,
        context=context,
    )
    return role_out(role)


@router.delete("/{role_id}", response_model=MessageResponse)
async def delete_role(
    role_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    registry.roles.delete_role(db, user_id, role_id, context=context)
    return MessageResponse(message="Role deleted")


@router.put("/{role_id}/permissions/{permission_id}", response_model=MessageResponse)
async def set_role_permission(
    role_id: int,
    permission_id: int,
    body: RolePermissionRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    changed = registry.roles.set_role_permission(
        db, user_id, role_id, permission_id, body.granted, context=context,
    )
    state = "attached" if body.granted else "detached"
    return MessageResponse(message=f"Permission {state}" if changed else "No change")


@router.patch("/permissions/{permission_id}", response_model=PermissionOut)
async def toggle_permission(
    permission_id: int,
    body: PermissionToggleRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    return registry.roles.set_permission_active(
        db, user_id, permission_id, body.is_active, context=context,
    )


# ---- User assignments ----

@router.get("/users/{target_id}/assignments", response_model=list[RoleAssignmentOut])
async def list_assignments(
    target_id: int,
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
):
    assignments = registry.roles.get_user_role_assignments(
        db, user_id, target_id, include_inactive=include_inactive,
    )
    return [assignment_out(a) for a in assignments]


@router.post("/users/{target_id}/assignments", response_model=RoleAssignmentOut)
async def assign_role(
    target_id: int,
    body: AssignRoleRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    expires_at = as_naive_utc(body.expires_at) if body.expires_at else None
    assignment = registry.roles.assign(
        db, target_id, body.role_id, user_id,
        reason=body.reason, expires_at=expires_at, context=context,
    )
    return assignment_out(assignment)


@router.delete("/users/{target_id}/assignments/{role_id}", response_model=MessageResponse)
async def revoke_role(
    target_id: int,
    role_id: int,
    reason: Optional[str] = Query(None, max_length=500),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    if not registry.roles.revoke(db, target_id, role_id, user_id, reason=reason, context=context):
        raise not_found("No active assignment for this role")
    return MessageResponse(message="Role revoked")


@router.get("/users/{target_id}/permissions", response_model=UserPermissionsOut)
async def user_permissions(
    target_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
):
    target = db.get(User, target_id)
    if target is None or not registry.hierarchy.can_view_user(db, user_id, target):
        raise forbidden("Insufficient permissions")
    resolved = registry.permissions.load(db, target_id)
    return UserPermissionsOut(
        user_id=target_id,
        roles=list(resolved.roles),
        permissions=sorted(resolved.permissions),
    )


@router.post("/users/{target_id}/permissions/check", response_model=PermissionCheckOut)
async def check_permissions(
    target_id: int,
    body: PermissionCheckRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
):
    target = db.get(User, target_id)
    if target is None or not registry.hierarchy.can_view_user(db, user_id, target):
        raise forbidden("Insufficient permissions")
    if body.mode == "all":
        allowed = registry.permissions.user_has_all_permissions(db, target_id, body.permissions)
    else:
        allowed = registry.permissions.user_has_any_permission(db, target_id, body.permissions)
    return PermissionCheckOut(user_id=target_id, allowed=allowed)

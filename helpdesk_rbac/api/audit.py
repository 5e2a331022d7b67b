"""Audit API router — read-only permission audit trail."""

import json
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from helpdesk_rbac.api.deps import require_permission
from helpdesk_rbac.core.exceptions import unprocessable
from helpdesk_rbac.db.session import get_db
from helpdesk_rbac.models.permission_audit import AuditAction, PermissionAudit
from helpdesk_rbac.schemas.schemas import PermissionAuditOut
from helpdesk_rbac.services.audit_service import AuditService

router = APIRouter(prefix="/audit", tags=["audit"])


def audit_out(entry: PermissionAudit) -> PermissionAuditOut:
    return PermissionAuditOut(
        id=entry.id,
        user_id=entry.user_id,
        role_id=entry.role_id,
        permission_id=entry.permission_id,
        action=entry.action.value,
        old_values=json.loads(entry.old_value_json) if entry.old_value_json else None,
        new_values=json.loads(entry.new_value_json) if entry.new_value_json else None,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        performed_by=entry.performed_by,
        reason=entry.reason,
        created_at=entry.created_at,
    )


@router.get("/logs")
async def list_audit_logs(
    performed_by: Optional[int] = Query(None),
    subject_id: Optional[int] = Query(None),
    action: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_permission("audit.view_logs")),
):
    """List audit entries filtered by actor, subject, action and date range."""
    if action and action not in AuditAction.__members__:
        raise unprocessable(f"Unknown audit action: {action}")
    result = AuditService.query_logs(
        db,
        performed_by=performed_by,
        user_id=subject_id,
        action=action,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
    )
    return {
        "logs": [audit_out(entry) for entry in result["logs"]],
        "total": result["total"],
        "page": result["page"],
        "page_size": result["page_size"],
    }


@router.get("/users/{subject_id}/history", response_model=list[PermissionAuditOut])
async def user_audit_history(
    subject_id: int,
    role_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_permission("audit.view_logs")),
):
    return [audit_out(entry) for entry in AuditService.history(db, subject_id, role_id=role_id)]

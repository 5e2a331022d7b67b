"""Audit service — append-only permission audit trail."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Any, Union

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from helpdesk_rbac.core.clock import Clock, utcnow
from helpdesk_rbac.models.permission_audit import PermissionAudit, AuditAction

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("helpdesk_rbac.security")


@dataclass(frozen=True)
class RequestContext:
    """Where a mutating call came from, for the audit row."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        ip = request.client.host if request.client else None
        ua = request.headers.get("user-agent", "")[:500] or None
        return cls(ip_address=ip, user_agent=ua)


NO_CONTEXT = RequestContext()


def dump_json(value: Optional[Any]) -> Optional[str]:
    return json.dumps(value, default=str, sort_keys=True) if value else None


class AuditService:
    """Records immutable audit entries for permission-affecting events."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    def record(
        self,
        db: Session,
        action: Union[AuditAction, str],
        user_id: Optional[int],
        role_id: Optional[int] = None,
        permission_id: Optional[int] = None,
        performed_by: Optional[int] = None,
        context: RequestContext = NO_CONTEXT,
        reason: Optional[str] = None,
        old_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
    ) -> Optional[PermissionAudit]:
        """Write a single audit record in its own commit.

        Callers commit their primary effect first. A failure here is logged
        and swallowed so it never reverts what was already done; the return
        value is None in that case.
        """
        entry = PermissionAudit(
            user_id=user_id,
            role_id=role_id,
            permission_id=permission_id,
            action=AuditAction(action),
            old_value_json=dump_json(old_values),
            new_value_json=dump_json(new_values),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            performed_by=performed_by,
            reason=reason[:500] if reason else None,
            created_at=self.clock(),
        )
        try:
            db.add(entry)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Failed to write %s audit entry for user %s", AuditAction(action).value, user_id,
            )
            return None
        return entry

    def record_unauthorized(
        self,
        db: Session,
        actor_id: int,
        attempted: str,
        subject_id: Optional[int] = None,
        role_id: Optional[int] = None,
        permission_id: Optional[int] = None,
        context: RequestContext = NO_CONTEXT,
    ) -> Optional[PermissionAudit]:
        security_logger.warning(
            "Unauthorized attempt to %s by user %s (subject=%s)", attempted, actor_id, subject_id,
        )
        return self.record(
            db,
            AuditAction.unauthorized_access_attempt,
            user_id=subject_id if subject_id is not None else actor_id,
            role_id=role_id,
            permission_id=permission_id,
            performed_by=actor_id,
            context=context,
            reason=f"Attempted to {attempted}",
            new_values={
                "action_type": AuditAction.unauthorized_access_attempt.value,
                "attempted_action": attempted,
            },
        )

    @staticmethod
    def query_logs(
        db: Session,
        performed_by: Optional[int] = None,
        user_id: Optional[int] = None,
        action: Optional[Union[AuditAction, str]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ):
        """Query audit entries with filters and pagination, newest first."""
        query = db.query(PermissionAudit)

        if performed_by is not None:
            query = query.filter(PermissionAudit.performed_by == performed_by)
        if user_id is not None:
            query = query.filter(PermissionAudit.user_id == user_id)
        if action:
            query = query.filter(PermissionAudit.action == AuditAction(action))
        if date_from:
            query = query.filter(PermissionAudit.created_at >= date_from)
        if date_to:
            query = query.filter(PermissionAudit.created_at <= date_to)

        total = query.count()
        logs = (
            query.order_by(PermissionAudit.created_at.desc(), PermissionAudit.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )

        return {
            "logs": logs,
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    @staticmethod
    def history(db: Session, user_id: int, role_id: Optional[int] = None) -> list[PermissionAudit]:
        """Oldest-first trail for one subject, optionally narrowed to a role."""
        query = db.query(PermissionAudit).filter(PermissionAudit.user_id == user_id)
        if role_id is not None:
            query = query.filter(PermissionAudit.role_id == role_id)
        return query.order_by(PermissionAudit.id.asc()).all()

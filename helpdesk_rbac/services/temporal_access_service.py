"""Temporal access service — time-bounded role grants and their housekeeping."""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from helpdesk_rbac.core.clock import Clock, utcnow
from helpdesk_rbac.core.exceptions import ValidationError
from helpdesk_rbac.db.filters import assignment_effective_at, assignment_expired_at, for_department
from helpdesk_rbac.models.permission_audit import AuditAction
from helpdesk_rbac.models.role import Role
from helpdesk_rbac.models.role_assignment import RoleAssignment
from helpdesk_rbac.models.user import User
from helpdesk_rbac.services.audit_service import AuditService, NO_CONTEXT, RequestContext
from helpdesk_rbac.services.permission_cache import PermissionCacheService
from helpdesk_rbac.services.role_service import RoleService, assignment_snapshot

logger = logging.getLogger(__name__)

AUTOMATIC_EXPIRATION = "Automatic expiration"


class TemporalAccessService:
    """Grants, extends and revokes role assignments that carry an expiry.

    Expiry is enforced at read time by the resolver. ``cleanup_expired``
    only flips stale rows for housekeeping.
    """

    def __init__(
        self,
        roles: RoleService,
        permissions: PermissionCacheService,
        audit: AuditService,
        max_duration_minutes: int = 43200,
        clock: Clock = utcnow,
    ):
        self.roles = roles
        self.permissions = permissions
        self.audit = audit
        self.max_duration_minutes = max_duration_minutes
        self.clock = clock

    def _validate(self, minutes: int, reason: Optional[str]) -> str:
        if not isinstance(minutes, int) or isinstance(minutes, bool) or minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        if minutes > self.max_duration_minutes:
            raise ValidationError(
                f"Duration cannot exceed {self.max_duration_minutes} minutes"
            )
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required for temporary access")
        return reason

    def grant_temporary_role(
        self,
        db: Session,
        user_id: int,
        role_id: int,
        duration_minutes: int,
        reason: str,
        granted_by: int,
        context: RequestContext = NO_CONTEXT,
    ) -> bool:
        """Grant ``role_id`` until now + ``duration_minutes``.

        Re-granting a role the user already holds updates that row and is
        audited as ``modified``.
        """
        reason = self._validate(duration_minutes, reason)
        expires_at = self.clock() + timedelta(minutes=duration_minutes)
        self.roles.assign(
            db,
            user_id,
            role_id,
            actor_id=granted_by,
            reason=reason,
            expires_at=expires_at,
            context=context,
        )
        logger.info(
            "Temporary role %s granted to user %s for %s minutes",
            role_id, user_id, duration_minutes,
        )
        return True

    def extend_temporary_role(
        self,
        db: Session,
        user_id: int,
        role_id: int,
        additional_minutes: int,
        reason: str,
        extended_by: int,
        context: RequestContext = NO_CONTEXT,
    ) -> bool:
        """Push back the expiry of an effective temporary grant. False if none."""
        reason = self._validate(additional_minutes, reason)
        role = self.roles.get_role(db, role_id)
        if not self.roles.hierarchy.can_assign_role(db, extended_by, role):
            raise self.roles.refuse(
                db, extended_by, f"extend role {role.name}", user_id, role, context=context,
            )

        now = self.clock()
        assignment = (
            db.query(RoleAssignment)
            .filter(RoleAssignment.user_id == user_id, RoleAssignment.role_id == role.id)
            .filter(RoleAssignment.expires_at.is_not(None))
            .filter(assignment_effective_at(now))
            .first()
        )
        if assignment is None:
            return False

        old_values = assignment_snapshot(assignment)
        new_expires_at = assignment.expires_at + timedelta(minutes=additional_minutes)
        if new_expires_at - now > timedelta(minutes=self.max_duration_minutes):
            raise ValidationError(
                f"Temporary access cannot extend beyond {self.max_duration_minutes} minutes from now"
            )
        assignment.expires_at = new_expires_at
        db.commit()

        self.permissions.invalidate_user(user_id)
        self.audit.record(
            db,
            AuditAction.modified,
            user_id=user_id,
            role_id=role.id,
            performed_by=extended_by,
            context=context,
            reason=reason,
            old_values=old_values,
            new_values={
                "additional_minutes": additional_minutes,
                "new_expires_at": new_expires_at,
                "reason": reason,
            },
        )
        return True

    def revoke_temporary_role(
        self,
        db: Session,
        user_id: int,
        role_id: int,
        reason: str,
        revoked_by: int,
        context: RequestContext = NO_CONTEXT,
    ) -> bool:
        return self.roles.revoke(db, user_id, role_id, revoked_by, reason=reason, context=context)

    def cleanup_expired(self, db: Session) -> int:
        """Deactivate expired rows; one ``revoked`` audit per row actually flipped."""
        now = self.clock()
        expired = db.query(RoleAssignment).filter(assignment_expired_at(now)).all()
        flipped: list[RoleAssignment] = []
        for assignment in expired:
            result = db.execute(
                update(RoleAssignment)
                .where(RoleAssignment.id == assignment.id)
                .where(assignment_expired_at(now))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                flipped.append(assignment)
        db.commit()
        if not flipped:
            return 0

        self.permissions.invalidate_users(a.user_id for a in flipped)
        for assignment in flipped:
            self.audit.record(
                db,
                AuditAction.revoked,
                user_id=assignment.user_id,
                role_id=assignment.role_id,
                reason=AUTOMATIC_EXPIRATION,
                new_values={"reason": AUTOMATIC_EXPIRATION, "expires_at": assignment.expires_at},
            )
        logger.info("Cleaned up %d expired role assignments", len(flipped))
        return len(flipped)

    def get_user_active_temporary_roles(self, db: Session, user_id: int) -> list[RoleAssignment]:
        return (
            db.query(RoleAssignment)
            .join(Role, Role.id == RoleAssignment.role_id)
            .filter(RoleAssignment.user_id == user_id)
            .filter(RoleAssignment.expires_at.is_not(None))
            .filter(assignment_effective_at(self.clock()))
            .order_by(RoleAssignment.expires_at.asc())
            .all()
        )

    def get_expiring_roles(
        self, db: Session, within_minutes: int = 60, department_id: Optional[int] = None,
    ) -> list[RoleAssignment]:
        """Effective temporary grants ending within ``within_minutes``."""
        now = self.clock()
        query = (
            db.query(RoleAssignment)
            .join(User, User.id == RoleAssignment.user_id)
            .filter(assignment_effective_at(now))
            .filter(RoleAssignment.expires_at <= now + timedelta(minutes=within_minutes))
        )
        if department_id is not None:
            query = query.filter(for_department(department_id))
        return query.order_by(RoleAssignment.expires_at.asc()).all()

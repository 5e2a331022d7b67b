"""
Emergency (break-glass) access

Issues single-use tokens that unlock an explicit permission list for a
short window. Only the token's SHA-256 hash is stored. Redemption claims
the grant with a conditional UPDATE, so concurrent attempts on the same
token resolve to exactly one success.
"""
import hashlib
import logging
import re
import secrets
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from helpdesk_rbac.core.clock import Clock, utcnow
from helpdesk_rbac.core.exceptions import (
    AuthorizationError,
    CacheUnavailableError,
    EmergencyTokenExpired,
    EmergencyTokenNotFound,
    ValidationError,
)
from helpdesk_rbac.db.filters import assignment_effective_at
from helpdesk_rbac.models.emergency_access import EmergencyAccess
from helpdesk_rbac.models.permission import Permission
from helpdesk_rbac.models.permission_audit import AuditAction
from helpdesk_rbac.models.role import Role
from helpdesk_rbac.models.role_assignment import RoleAssignment
from helpdesk_rbac.models.security_log import SecurityEventType, SecurityLog
from helpdesk_rbac.models.user import User
from helpdesk_rbac.services.audit_service import AuditService, NO_CONTEXT, RequestContext, dump_json
from helpdesk_rbac.services.cache_service import CacheService
from helpdesk_rbac.services.notification_service import Notifier
from helpdesk_rbac.services.permission_cache import PermissionCacheService

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("helpdesk_rbac.security")

TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
SECURITY_TEAM_ROLE = "system_administrator"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EmergencyGrant:
    """A freshly issued grant and its raw token, which is never stored."""

    access: EmergencyAccess
    token: str


class EmergencyAccessService:
    def __init__(
        self,
        cache: CacheService,
        permissions: PermissionCacheService,
        audit: AuditService,
        notifier: Notifier,
        token_prefix: str = "emergency_access:",
        default_duration_minutes: int = 60,
        max_duration_minutes: int = 1440,
        clock: Clock = utcnow,
    ):
        self.cache = cache
        self.permissions = permissions
        self.audit = audit
        self.notifier = notifier
        self.token_prefix = token_prefix
        self.default_duration_minutes = default_duration_minutes
        self.max_duration_minutes = max_duration_minutes
        self.clock = clock

    def _token_key(self, token_hash: str) -> str:
        return f"{self.token_prefix}{token_hash}"

    def _require(
        self, db: Session, actor_id: Optional[int], permission: str, attempted: str,
        subject_id: Optional[int], context: RequestContext,
    ) -> None:
        if actor_id is None:
            raise ValidationError("An acting user is required")
        if not self.permissions.user_has_permission(db, actor_id, permission):
            self.audit.record_unauthorized(db, actor_id, attempted, subject_id=subject_id, context=context)
            raise AuthorizationError(f"You are not allowed to {attempted}")

    def security_team_ids(self, db: Session) -> list[int]:
        rows = (
            db.query(RoleAssignment.user_id)
            .join(Role, Role.id == RoleAssignment.role_id)
            .join(User, User.id == RoleAssignment.user_id)
            .filter(Role.name == SECURITY_TEAM_ROLE, User.is_active.is_(True))
            .filter(assignment_effective_at(self.clock()))
            .distinct()
            .all()
        )
        return [row[0] for row in rows]

    # Issuance

    def grant_emergency_access(
        self,
        db: Session,
        user_id: int,
        permission_names: list[str],
        reason: str,
        duration_minutes: Optional[int] = None,
        granted_by: Optional[int] = None,
        context: RequestContext = NO_CONTEXT,
    ) -> EmergencyGrant:
        """Issue a grant and return it with the one-time raw token."""
        if duration_minutes is None:
            duration_minutes = self.default_duration_minutes
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        if duration_minutes > self.max_duration_minutes:
            raise ValidationError(f"Duration cannot exceed {self.max_duration_minutes} minutes")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required for emergency access")
        names = sorted(set(permission_names or []))
        if not names:
            raise ValidationError("At least one permission is required")

        self._require(db, granted_by, "emergency.grant", "grant emergency access", user_id, context)

        user = db.get(User, user_id)
        if user is None or not user.is_active:
            raise ValidationError("User not found")
        known = {
            row[0]
            for row in db.query(Permission.name)
            .filter(Permission.name.in_(names), Permission.is_active.is_(True))
            .all()
        }
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ValidationError(f"Unknown or inactive permissions: {', '.join(unknown)}")

        now = self.clock()
        token = secrets.token_urlsafe(32)
        token_hash = hash_token(token)
        access = EmergencyAccess(
            user_id=user.id,
            reason=reason,
            granted_by=granted_by,
            granted_at=now,
            expires_at=now + timedelta(minutes=duration_minutes),
            is_active=True,
            token_hash=token_hash,
            created_at=now,
        )
        access.permissions = names
        db.add(access)
        db.add(SecurityLog(
            user_id=user.id,
            event_type=SecurityEventType.emergency_access,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details_json=dump_json({
                "type": "break_glass_generated",
                "granted_by": granted_by,
                "permissions": names,
                "expires_at": access.expires_at,
            }),
            created_at=now,
        ))
        db.commit()
        db.refresh(access)

        self.cache.set_json(
            self._token_key(token_hash),
            {"id": access.id, "user_id": user.id},
            duration_minutes * 60,
        )

        self.audit.record(
            db,
            AuditAction.emergency_access_granted,
            user_id=user.id,
            performed_by=granted_by,
            context=context,
            reason=reason,
            new_values={
                "action_type": AuditAction.emergency_access_granted.value,
                "emergency_access_id": access.id,
                "permissions": names,
                "expires_at": access.expires_at,
            },
        )
        security_logger.warning(
            "Emergency access %s granted to user %s by %s: %s (expires %s)",
            access.id, user.id, granted_by, ", ".join(names), access.expires_at,
        )

        try:
            self.notifier.notify_security_team(self.security_team_ids(db), {
                "emergency_access_id": access.id,
                "user_id": user.id,
                "granted_by": granted_by,
                "permissions": names,
                "reason": reason,
                "expires_at": access.expires_at.isoformat(),
            })
        except Exception:
            logger.exception("Failed to notify security team about emergency access %s", access.id)

        return EmergencyGrant(access=access, token=token)

    # Redemption

    def redeem(self, db: Session, token: str, context: RequestContext = NO_CONTEXT) -> User:
        """Claim a token exactly once and return its user.

        Raises EmergencyTokenNotFound for malformed, unknown, revoked or
        already redeemed tokens and EmergencyTokenExpired past the window.
        """
        if not isinstance(token, str) or not TOKEN_RE.match(token):
            security_logger.warning("Malformed emergency token presented from %s", context.ip_address)
            raise EmergencyTokenNotFound("Emergency token not found")

        token_hash = hash_token(token)
        try:
            self.cache.pop(self._token_key(token_hash))
        except CacheUnavailableError:
            logger.warning("Emergency token cache unavailable; redeeming from database only")

        now = self.clock()
        result = db.execute(
            update(EmergencyAccess)
            .where(EmergencyAccess.token_hash == token_hash)
            .where(EmergencyAccess.used_at.is_(None))
            .where(EmergencyAccess.is_active.is_(True))
            .where(EmergencyAccess.expires_at > now)
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        access = db.query(EmergencyAccess).filter(EmergencyAccess.token_hash == token_hash).first()
        if result.rowcount != 1:
            db.rollback()
            if access is not None and access.used_at is None and access.is_active and access.expires_at <= now:
                security_logger.warning("Expired emergency token %s presented", access.id)
                raise EmergencyTokenExpired("Emergency token has expired")
            security_logger.warning("Unknown or spent emergency token presented from %s", context.ip_address)
            raise EmergencyTokenNotFound("Emergency token not found")

        db.add(SecurityLog(
            user_id=access.user_id,
            event_type=SecurityEventType.emergency_access,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details_json=dump_json({"type": "break_glass_redeemed", "emergency_access_id": access.id}),
            created_at=now,
        ))
        db.commit()
        db.refresh(access)

        self.permissions.invalidate_user(access.user_id)
        self.audit.record(
            db,
            AuditAction.emergency_access_redeemed,
            user_id=access.user_id,
            performed_by=access.user_id,
            context=context,
            reason=access.reason,
            new_values={
                "action_type": AuditAction.emergency_access_redeemed.value,
                "emergency_access_id": access.id,
                "used_at": now,
                "expires_at": access.expires_at,
            },
        )
        security_logger.warning("Emergency access %s redeemed by user %s", access.id, access.user_id)
        return access.user

    # Administration

    def revoke_emergency_access(
        self,
        db: Session,
        emergency_access_id: int,
        reason: str,
        revoked_by: Optional[int] = None,
        context: RequestContext = NO_CONTEXT,
    ) -> bool:
        """End a grant before its expiry. False if it is not valid any more."""
        access = db.get(EmergencyAccess, emergency_access_id)
        subject_id = access.user_id if access else None
        self._require(db, revoked_by, "emergency.revoke", "revoke emergency access", subject_id, context)

        now = self.clock()
        if access is None or not access.is_valid(now):
            return False
        result = db.execute(
            update(EmergencyAccess)
            .where(EmergencyAccess.id == access.id, EmergencyAccess.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            return False

        db.refresh(access)
        self.cache.delete(self._token_key(access.token_hash))
        self.permissions.invalidate_user(access.user_id)
        self.audit.record(
            db,
            AuditAction.emergency_access_revoked,
            user_id=access.user_id,
            performed_by=revoked_by,
            context=context,
            reason=reason,
            new_values={
                "action_type": AuditAction.emergency_access_revoked.value,
                "emergency_access_id": access.id,
            },
        )
        security_logger.info("Emergency access %s revoked by %s", access.id, revoked_by)
        return True

    def cleanup_expired(self, db: Session) -> int:
        """Deactivate grants past their window."""
        now = self.clock()
        expired = (
            db.query(EmergencyAccess)
            .filter(EmergencyAccess.is_active.is_(True), EmergencyAccess.expires_at <= now)
            .all()
        )
        user_ids = {access.user_id for access in expired}
        for access in expired:
            access.is_active = False
            security_logger.info("Emergency access %s expired for user %s", access.id, access.user_id)
        db.commit()
        self.permissions.invalidate_users(user_ids)
        return len(expired)

    def get_user_active_emergency_access(self, db: Session, user_id: int) -> Optional[EmergencyAccess]:
        return (
            db.query(EmergencyAccess)
            .filter(EmergencyAccess.user_id == user_id)
            .filter(EmergencyAccess.is_active.is_(True), EmergencyAccess.expires_at > self.clock())
            .order_by(EmergencyAccess.granted_at.desc(), EmergencyAccess.id.desc())
            .first()
        )

    def stats(self, db: Session, days: int = 30) -> dict:
        now = self.clock()
        since = now - timedelta(days=days)
        recent = db.query(EmergencyAccess).filter(EmergencyAccess.created_at >= since).all()
        counts = Counter(name for access in recent for name in access.permissions)
        return {
            "total_granted": len(recent),
            "currently_active": (
                db.query(EmergencyAccess)
                .filter(EmergencyAccess.is_active.is_(True), EmergencyAccess.expires_at > now)
                .count()
            ),
            "used_access": sum(1 for access in recent if access.used_at is not None),
            "expired_access": sum(
                1 for access in recent if access.used_at is None and access.expires_at <= now
            ),
            "most_common_permissions": dict(counts.most_common(10)),
        }

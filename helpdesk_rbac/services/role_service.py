"""
Role administration

Assignment upserts, revocation and role/permission matrix changes. Every
mutation is guarded by the hierarchy evaluator, committed, followed by
synchronous cache invalidation, and then audited in its own commit.
"""
import logging
import re
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from helpdesk_rbac.core.clock import Clock, utcnow
from helpdesk_rbac.core.exceptions import AuthorizationError, ValidationError
from helpdesk_rbac.db.filters import is_assignment_effective
from helpdesk_rbac.models.permission import Permission
from helpdesk_rbac.models.permission_audit import AuditAction
from helpdesk_rbac.models.role import Role
from helpdesk_rbac.models.role_assignment import RoleAssignment
from helpdesk_rbac.models.user import User
from helpdesk_rbac.services.audit_service import AuditService, NO_CONTEXT, RequestContext
from helpdesk_rbac.services.hierarchy_service import HierarchyEvaluator
from helpdesk_rbac.services.permission_cache import PermissionCacheService

logger = logging.getLogger(__name__)

ROLE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{1,49}$")


def assignment_snapshot(assignment: RoleAssignment) -> dict:
    return {
        "role_id": assignment.role_id,
        "is_active": assignment.is_active,
        "granted_by": assignment.granted_by,
        "granted_at": assignment.granted_at,
        "expires_at": assignment.expires_at,
        "reason": assignment.delegation_reason,
    }


def role_snapshot(role: Role) -> dict:
    return {
        "name": role.name,
        "display_name": role.display_name,
        "description": role.description,
        "hierarchy_level": role.hierarchy_level,
        "is_active": role.is_active,
        "is_system": role.is_system,
    }


class RoleService:
    """Mutations of roles, permissions and user-role assignments."""

    def __init__(
        self,
        permissions: PermissionCacheService,
        hierarchy: HierarchyEvaluator,
        audit: AuditService,
        clock: Clock = utcnow,
    ):
        self.permissions = permissions
        self.hierarchy = hierarchy
        self.audit = audit
        self.clock = clock

    # Lookups

    @staticmethod
    def get_user(db: Session, user_id: int) -> User:
        user = db.get(User, user_id)
        if user is None:
            raise ValidationError("User not found")
        return user

    @staticmethod
    def get_role(db: Session, role_id: int) -> Role:
        role = db.get(Role, role_id)
        if role is None:
            raise ValidationError("Role not found")
        return role

    @staticmethod
    def get_permission(db: Session, permission_id: int) -> Permission:
        permission = db.get(Permission, permission_id)
        if permission is None:
            raise ValidationError("Permission not found")
        return permission

    @staticmethod
    def find_assignment(db: Session, user_id: int, role_id: int) -> Optional[RoleAssignment]:
        return (
            db.query(RoleAssignment)
            .filter(RoleAssignment.user_id == user_id, RoleAssignment.role_id == role_id)
            .first()
        )

    def refuse(
        self,
        db: Session,
        actor_id: int,
        attempted: str,
        subject_id: Optional[int] = None,
        role: Optional[Role] = None,
        permission_id: Optional[int] = None,
        context: RequestContext = NO_CONTEXT,
    ) -> AuthorizationError:
        """Audit an unauthorized attempt and build the error to raise."""
        self.audit.record_unauthorized(
            db,
            actor_id,
            attempted,
            subject_id=subject_id,
            role_id=role.id if role else None,
            permission_id=permission_id,
            context=context,
        )
        return AuthorizationError(f"You are not allowed to {attempted}")

    # Assignments

    def assign(
        self,
        db: Session,
        user_id: int,
        role_id: int,
        actor_id: Optional[int],
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        context: RequestContext = NO_CONTEXT,
    ) -> RoleAssignment:
        """Grant ``role_id`` to ``user_id``, or update the existing grant.

        An existing effective grant is modified in place (audited as
        ``modified``); anything else, including an expired or revoked row, is
        a fresh grant (``granted``). ``actor_id`` None means the system.
        """
        now = self.clock()
        user = self.get_user(db, user_id)
        role = self.get_role(db, role_id)
        if not role.is_active:
            raise ValidationError("Cannot assign an inactive role")
        if expires_at is not None and expires_at <= now:
            raise ValidationError("Expiry must be in the future")
        if actor_id is not None and not self.hierarchy.can_assign_role(db, actor_id, role):
            raise self.refuse(db, actor_id, f"assign role {role.name}", user.id, role, context=context)

        for attempt in range(2):
            assignment = self.find_assignment(db, user.id, role.id)
            old_values = assignment_snapshot(assignment) if assignment else None
            modified = assignment is not None and is_assignment_effective(assignment, now)
            if assignment is None:
                assignment = RoleAssignment(user_id=user.id, role_id=role.id)
                db.add(assignment)
            if not modified:
                assignment.granted_at = now
            assignment.granted_by = actor_id
            assignment.expires_at = expires_at
            assignment.delegation_reason = reason
            assignment.is_active = True
            try:
                db.commit()
                break
            except IntegrityError:
                # Concurrent first grant of the same pair; retry as an update
                db.rollback()
                if attempt:
                    raise
        db.refresh(assignment)

        self.permissions.invalidate_user(user.id)
        action = AuditAction.modified if modified else AuditAction.granted
        self.audit.record(
            db,
            action,
            user_id=user.id,
            role_id=role.id,
            performed_by=actor_id,
            context=context,
            reason=reason,
            old_values=old_values,
            new_values=assignment_snapshot(assignment),
        )
        logger.info(
            "Role %s %s for user %s by %s (expires %s)",
            role.name, action.value, user.id, actor_id, expires_at,
        )
        return assignment

    def revoke(
        self,
        db: Session,
        user_id: int,
        role_id: int,
        actor_id: Optional[int],
        reason: Optional[str] = None,
        context: RequestContext = NO_CONTEXT,
    ) -> bool:
        """Deactivate the (user, role) grant. False if there was nothing to revoke."""
        user = self.get_user(db, user_id)
        role = self.get_role(db, role_id)
        if actor_id is not None and not self.hierarchy.can_revoke_role(db, actor_id, role):
            raise self.refuse(db, actor_id, f"revoke role {role.name}", user.id, role, context=context)

        assignment = self.find_assignment(db, user.id, role.id)
        if assignment is None or not assignment.is_active:
            return False

        old_values = assignment_snapshot(assignment)
        assignment.is_active = False
        db.commit()

        self.permissions.invalidate_user(user.id)
        self.audit.record(
            db,
            AuditAction.revoked,
            user_id=user.id,
            role_id=role.id,
            performed_by=actor_id,
            context=context,
            reason=reason,
            old_values=old_values,
            new_values={"is_active": False},
        )
        logger.info("Role %s revoked from user %s by %s", role.name, user.id, actor_id)
        return True

    def get_user_role_assignments(
        self, db: Session, actor_id: int, user_id: int, include_inactive: bool = False,
    ) -> list[RoleAssignment]:
        user = self.get_user(db, user_id)
        if not self.hierarchy.can_view_user(db, actor_id, user):
            raise self.refuse(db, actor_id, "view user role assignments", user.id)
        query = db.query(RoleAssignment).filter(RoleAssignment.user_id == user.id)
        if not include_inactive:
            query = query.filter(RoleAssignment.is_active.is_(True))
        return query.order_by(RoleAssignment.granted_at.desc()).all()

    # Roles

    def list_visible_roles(self, db: Session, actor_id: int) -> list[Role]:
        return self.hierarchy.visible_roles(db, actor_id)

    def create_role(
        self,
        db: Session,
        actor_id: int,
        name: str,
        hierarchy_level: int,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        permission_ids: Optional[list[int]] = None,
        context: RequestContext = NO_CONTEXT,
    ) -> Role:
        name = (name or "").strip()
        if not ROLE_NAME_RE.match(name):
            raise ValidationError("Role name must be lowercase letters, digits or underscores")
        if hierarchy_level < 1:
            raise ValidationError("Hierarchy level must be at least 1")
        if not self.hierarchy.can_create_role(db, actor_id, hierarchy_level):
            raise self.refuse(db, actor_id, f"create role {name} at level {hierarchy_level}", context=context)
        if db.query(Role).filter(Role.name == name).first():
            raise ValidationError("A role with this name already exists")

        permissions = [self.get_permission(db, pid) for pid in set(permission_ids or [])]
        role = Role(
            name=name,
            description=description,
            hierarchy_level=hierarchy_level,
            is_active=True,
            is_system=False,
        )
        role.display_name = display_name or name.replace("_", " ").title()
        role.permissions = permissions
        db.add(role)
        db.commit()
        db.refresh(role)

        self.audit.record(
            db,
            AuditAction.role_created,
            user_id=actor_id,
            role_id=role.id,
            performed_by=actor_id,
            context=context,
            new_values={**role_snapshot(role), "permissions": sorted(p.name for p in permissions)},
        )
        logger.info("Role %s created at level %s by %s", role.name, hierarchy_level, actor_id)
        return role

    def update_role(
        self,
        db: Session,
        actor_id: int,
        role_id: int,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        hierarchy_level: Optional[int] = None,
        is_active: Optional[bool] = None,
        context: RequestContext = NO_CONTEXT,
    ) -> Role:
        role = self.get_role(db, role_id)
        if not self.hierarchy.can_update_role(db, actor_id, role):
            raise self.refuse(db, actor_id, f"update role {role.name}", role=role, context=context)

        level_changed = hierarchy_level is not None and hierarchy_level != role.hierarchy_level
        active_changed = is_active is not None and is_active != role.is_active
        if role.is_system and (level_changed or is_active is False):
            raise ValidationError("System roles cannot be demoted or deactivated")
        if level_changed:
            if hierarchy_level < 1:
                raise ValidationError("Hierarchy level must be at least 1")
            if hierarchy_level >= self.hierarchy.max_rank(db, actor_id):
                raise self.refuse(
                    db, actor_id, f"raise role {role.name} to level {hierarchy_level}",
                    role=role, context=context,
                )

        old_values = role_snapshot(role)
        if display_name is not None:
            role.display_name = display_name
        if description is not None:
            role.description = description
        if level_changed:
            role.hierarchy_level = hierarchy_level
        if active_changed:
            role.is_active = is_active
        db.commit()
        db.refresh(role)

        if active_changed and role.is_active:
            # Reactivated roles are absent from existing entries' tags
            self.permissions.invalidate_all()
        elif level_changed or active_changed:
            self.permissions.invalidate_role(role.id)

        self.audit.record(
            db,
            AuditAction.role_updated,
            user_id=actor_id,
            role_id=role.id,
            performed_by=actor_id,
            context=context,
            old_values=old_values,
            new_values=role_snapshot(role),
        )
        return role

    def delete_role(
        self, db: Session, actor_id: int, role_id: int, context: RequestContext = NO_CONTEXT,
    ) -> bool:
        role = self.get_role(db, role_id)
        if not self.hierarchy.can_delete_role(db, actor_id, role):
            raise self.refuse(db, actor_id, f"delete role {role.name}", role=role, context=context)
        if role.is_system:
            raise ValidationError("System roles cannot be deleted")
        active = (
            db.query(RoleAssignment)
            .filter(RoleAssignment.role_id == role.id, RoleAssignment.is_active.is_(True))
            .count()
        )
        if active:
            raise ValidationError(f"Role has {active} active assignment(s)")

        old_values = {**role_snapshot(role), "permissions": sorted(p.name for p in role.permissions)}
        deleted_id = role.id
        for assignment in list(role.assignments):
            db.delete(assignment)
        db.delete(role)
        db.commit()

        self.permissions.invalidate_role(deleted_id)
        self.audit.record(
            db,
            AuditAction.role_deleted,
            user_id=actor_id,
            role_id=deleted_id,
            performed_by=actor_id,
            context=context,
            old_values=old_values,
        )
        logger.info("Role %s deleted by %s", old_values["name"], actor_id)
        return True

    # Permission matrix

    def set_role_permission(
        self,
        db: Session,
        actor_id: int,
        role_id: int,
        permission_id: int,
        granted: bool,
        context: RequestContext = NO_CONTEXT,
    ) -> bool:
        """Attach or detach one permission. False if already in that state."""
        role = self.get_role(db, role_id)
        permission = self.get_permission(db, permission_id)
        if not self.hierarchy.can_manage_permissions(db, actor_id, role):
            raise self.refuse(
                db, actor_id, f"change permissions of role {role.name}",
                role=role, permission_id=permission.id, context=context,
            )

        attached = permission in role.permissions
        if attached == granted:
            return False
        if granted:
            role.permissions.append(permission)
        else:
            role.permissions.remove(permission)
        db.commit()

        self.permissions.invalidate_role(role.id)
        self.audit.record(
            db,
            AuditAction.granted if granted else AuditAction.revoked,
            user_id=None,
            role_id=role.id,
            permission_id=permission.id,
            performed_by=actor_id,
            context=context,
            old_values={"attached": attached},
            new_values={"attached": granted, "role": role.name, "permission": permission.name},
        )
        return True

    def set_permission_active(
        self,
        db: Session,
        actor_id: int,
        permission_id: int,
        is_active: bool,
        context: RequestContext = NO_CONTEXT,
    ) -> Permission:
        """Toggle a permission everywhere it is attached.

        Every role holding it must rank strictly below the actor.
        """
        permission = self.get_permission(db, permission_id)
        resolved = self.permissions.load(db, actor_id)
        holders_level = max((r.hierarchy_level for r in permission.roles), default=0)
        if not resolved.allows("roles.manage_permissions") or holders_level >= resolved.max_rank:
            raise self.refuse(
                db, actor_id, f"toggle permission {permission.name}",
                permission_id=permission.id, context=context,
            )
        if permission.is_active == is_active:
            return permission

        permission.is_active = is_active
        db.commit()
        db.refresh(permission)

        self.permissions.invalidate_all()
        self.audit.record(
            db,
            AuditAction.modified,
            user_id=None,
            permission_id=permission.id,
            performed_by=actor_id,
            context=context,
            old_values={"is_active": not is_active},
            new_values={"is_active": is_active, "permission": permission.name},
        )
        return permission

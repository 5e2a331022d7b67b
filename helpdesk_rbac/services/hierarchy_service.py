"""
Hierarchy evaluation

Rank comparisons between an actor and a target role. Viewing allows a peer
(equal level); every mutation requires strict seniority. Checks always read
the actor's current effective roles and are never memoized here.
"""
from sqlalchemy.orm import Session

from helpdesk_rbac.db.filters import in_department
from helpdesk_rbac.models.role import Role
from helpdesk_rbac.models.user import User
from helpdesk_rbac.services.permission_cache import PermissionCacheService


class HierarchyEvaluator:
    """Guards role and assignment administration."""

    def __init__(self, permissions: PermissionCacheService):
        self.permissions = permissions

    @staticmethod
    def rank(role: Role) -> int:
        return role.hierarchy_level

    @staticmethod
    def senior_or_equal(actor_max_rank: int, role: Role) -> bool:
        return role.hierarchy_level <= actor_max_rank

    @staticmethod
    def strictly_senior(actor_max_rank: int, role: Role) -> bool:
        return role.hierarchy_level < actor_max_rank

    def max_rank(self, db: Session, user_id: int) -> int:
        """Highest level across the user's effective roles, 0 without any."""
        return self.permissions.get_max_rank(db, user_id)

    def _guard(self, db: Session, actor_id: int, permission: str, role: Role) -> bool:
        resolved = self.permissions.load(db, actor_id)
        return resolved.allows(permission) and self.strictly_senior(resolved.max_rank, role)

    # Role policy

    def can_view_role(self, db: Session, actor_id: int, role: Role) -> bool:
        resolved = self.permissions.load(db, actor_id)
        if resolved.allows("roles.view_all"):
            return True
        if resolved.allows("roles.view_department"):
            return self.senior_or_equal(resolved.max_rank, role)
        return False

    def can_create_role(self, db: Session, actor_id: int, hierarchy_level: int) -> bool:
        resolved = self.permissions.load(db, actor_id)
        return resolved.allows("roles.create") and hierarchy_level < resolved.max_rank

    def can_update_role(self, db: Session, actor_id: int, role: Role) -> bool:
        return self._guard(db, actor_id, "roles.update", role)

    def can_delete_role(self, db: Session, actor_id: int, role: Role) -> bool:
        return self._guard(db, actor_id, "roles.delete", role)

    def can_assign_role(self, db: Session, actor_id: int, role: Role) -> bool:
        return self._guard(db, actor_id, "roles.assign", role)

    def can_revoke_role(self, db: Session, actor_id: int, role: Role) -> bool:
        return self._guard(db, actor_id, "roles.revoke", role)

    def can_manage_permissions(self, db: Session, actor_id: int, role: Role) -> bool:
        return self._guard(db, actor_id, "roles.manage_permissions", role)

    def can_view_user(self, db: Session, actor_id: int, user: User) -> bool:
        if actor_id == user.id:
            return True
        resolved = self.permissions.load(db, actor_id)
        if resolved.allows("users.view_all"):
            return True
        if resolved.allows("users.view_department"):
            actor = db.get(User, actor_id)
            return (
                actor is not None
                and actor.department_id is not None
                and in_department(user, actor.department_id)
            )
        return False

    def visible_roles(self, db: Session, actor_id: int) -> list[Role]:
        roles = db.query(Role).order_by(Role.hierarchy_level.desc(), Role.name.asc()).all()
        return [role for role in roles if self.can_view_role(db, actor_id, role)]

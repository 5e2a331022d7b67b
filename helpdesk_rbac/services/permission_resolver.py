"""
Permission resolution

Computes the effective permission set of a user straight from the entity
store: the union of permissions on active roles reached through effective
assignments, plus redeemed emergency grants, with ``resource.*`` wildcards
expanded against the permission catalog.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from helpdesk_rbac.core.clock import Clock, utcnow
from helpdesk_rbac.db.filters import assignment_effective_at, emergency_redeemed_valid_at
from helpdesk_rbac.models.emergency_access import EmergencyAccess
from helpdesk_rbac.models.permission import Permission, WILDCARD_ACTION
from helpdesk_rbac.models.role import Role
from helpdesk_rbac.models.role_assignment import RoleAssignment
from helpdesk_rbac.models.user import User


def wildcard_for(name: str) -> Optional[str]:
    """``tickets.create`` -> ``tickets.*``; None for names without a resource."""
    resource, sep, action = name.partition(".")
    if not sep or not resource or action == WILDCARD_ACTION:
        return None
    return f"{resource}.{WILDCARD_ACTION}"


def has_permission(granted: Iterable[str], required: str) -> bool:
    """
    Check a required permission against granted names.

    An exact match is checked first, then the resource wildcard. There are
    no deny permissions: absence of a grant is the only refusal.
    """
    granted = granted if isinstance(granted, (set, frozenset)) else set(granted)
    if required in granted:
        return True
    wildcard = wildcard_for(required)
    return wildcard is not None and wildcard in granted


def has_any_permission(granted: Iterable[str], required: Iterable[str]) -> bool:
    granted = frozenset(granted)
    return any(has_permission(granted, name) for name in required)


def has_all_permissions(granted: Iterable[str], required: Iterable[str]) -> bool:
    granted = frozenset(granted)
    return all(has_permission(granted, name) for name in required)


@dataclass(frozen=True)
class ResolvedPermissions:
    """Everything the cache needs to answer checks for one user."""

    permissions: frozenset = frozenset()
    roles: tuple = ()
    role_ids: tuple = ()
    max_rank: int = 0
    valid_until: Optional[datetime] = None
    emergency_permissions: frozenset = field(default_factory=frozenset)

    def allows(self, name: str) -> bool:
        return has_permission(self.permissions, name)

    def to_dict(self) -> dict:
        return {
            "permissions": sorted(self.permissions),
            "roles": list(self.roles),
            "role_ids": list(self.role_ids),
            "max_rank": self.max_rank,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "emergency_permissions": sorted(self.emergency_permissions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResolvedPermissions":
        valid_until = data.get("valid_until")
        return cls(
            permissions=frozenset(data.get("permissions", [])),
            roles=tuple(data.get("roles", [])),
            role_ids=tuple(data.get("role_ids", [])),
            max_rank=int(data.get("max_rank", 0)),
            valid_until=datetime.fromisoformat(valid_until) if valid_until else None,
            emergency_permissions=frozenset(data.get("emergency_permissions", [])),
        )


EMPTY = ResolvedPermissions()


class PermissionResolver:
    """Pure function of entity state at call time. Never raises for a user id."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    def effective_assignments(
        self, db: Session, user_id: int, at: Optional[datetime] = None,
    ) -> list[RoleAssignment]:
        """Effective assignments whose role is itself active, most senior first."""
        at = at or self.clock()
        return (
            db.query(RoleAssignment)
            .join(Role, Role.id == RoleAssignment.role_id)
            .filter(RoleAssignment.user_id == user_id)
            .filter(assignment_effective_at(at))
            .filter(Role.is_active.is_(True))
            .order_by(Role.hierarchy_level.desc(), Role.name.asc())
            .all()
        )

    def max_rank(self, db: Session, user_id: int) -> int:
        """Highest hierarchy level across the user's effective roles; 0 if none."""
        assignments = self.effective_assignments(db, user_id)
        return max((a.role.hierarchy_level for a in assignments), default=0)

    def resolve_detailed(self, db: Session, user_id: int) -> ResolvedPermissions:
        now = self.clock()
        user = db.get(User, user_id)
        if user is None or not user.is_active:
            return EMPTY

        assignments = self.effective_assignments(db, user_id, now)
        granted: set[str] = set()
        expiries: list[datetime] = []
        for assignment in assignments:
            if assignment.expires_at is not None:
                expiries.append(assignment.expires_at)
            for permission in assignment.role.permissions:
                if permission.is_active:
                    granted.add(permission.name)

        emergency: set[str] = set()
        grants = (
            db.query(EmergencyAccess)
            .filter(EmergencyAccess.user_id == user_id)
            .filter(emergency_redeemed_valid_at(now))
            .all()
        )
        for grant in grants:
            emergency.update(grant.permissions)
            expiries.append(grant.expires_at)
        granted |= emergency

        return ResolvedPermissions(
            permissions=frozenset(self.expand_wildcards(db, granted)),
            roles=tuple(a.role.name for a in assignments),
            role_ids=tuple(a.role_id for a in assignments),
            max_rank=max((a.role.hierarchy_level for a in assignments), default=0),
            valid_until=min(expiries) if expiries else None,
            emergency_permissions=frozenset(emergency),
        )

    def resolve(self, db: Session, user_id: int) -> frozenset:
        return self.resolve_detailed(db, user_id).permissions

    @staticmethod
    def expand_wildcards(db: Session, names: set[str]) -> set[str]:
        """Add every active catalog permission covered by a granted wildcard.

        The wildcard names themselves stay in the set so checks for actions
        not present in the catalog still match.
        """
        resources = {
            name.partition(".")[0]
            for name in names
            if name.endswith("." + WILDCARD_ACTION)
        }
        if not resources:
            return set(names)
        covered = (
            db.query(Permission.name)
            .filter(Permission.resource.in_(resources))
            .filter(Permission.is_active.is_(True))
            .all()
        )
        return set(names) | {row[0] for row in covered}

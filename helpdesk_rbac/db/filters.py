"""Named query predicates.

Each SQL clause has a pure-Python twin, here or on the model, so
already-loaded rows can be checked with exactly the same rule.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_

from helpdesk_rbac.models.emergency_access import EmergencyAccess
from helpdesk_rbac.models.role_assignment import RoleAssignment
from helpdesk_rbac.models.user import User


def assignment_effective_at(at: datetime):
    """Active and not expired at ``at``."""
    return and_(
        RoleAssignment.is_active.is_(True),
        or_(RoleAssignment.expires_at.is_(None), RoleAssignment.expires_at > at),
    )


def is_assignment_effective(assignment: RoleAssignment, at: datetime) -> bool:
    return assignment.is_effective(at)


def assignment_expired_at(at: datetime):
    """Still flagged active but past ``expires_at``: sweep candidates."""
    return and_(
        RoleAssignment.is_active.is_(True),
        RoleAssignment.expires_at.is_not(None),
        RoleAssignment.expires_at <= at,
    )


def emergency_redeemed_valid_at(at: datetime):
    """Redeemed emergency grants whose window is still open at ``at``."""
    return and_(
        EmergencyAccess.is_active.is_(True),
        EmergencyAccess.used_at.is_not(None),
        EmergencyAccess.expires_at > at,
    )


def for_department(department_id: Optional[int]):
    if department_id is None:
        return User.department_id.is_(None)
    return User.department_id == department_id


def in_department(user: User, department_id: Optional[int]) -> bool:
    return user.department_id == department_id

"""User model."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, func
from sqlalchemy.orm import relationship
from helpdesk_rbac.db.base import Base


class User(Base):
    """Authenticated identity the authorization core answers questions about.

    Users are never hard-deleted; deactivation flips ``is_active``.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    department = relationship("Department", back_populates="users")
    role_assignments = relationship(
        "RoleAssignment",
        back_populates="user",
        lazy="selectin",
        foreign_keys="[RoleAssignment.user_id]",
    )
    emergency_grants = relationship(
        "EmergencyAccess",
        foreign_keys="[EmergencyAccess.user_id]",
        viewonly=True,
    )

    def effective_roles(self, at) -> list:
        """Active roles behind effective assignments at ``at``, most senior first."""
        roles = [
            a.role for a in self.role_assignments
            if a.is_effective(at) and a.role.is_active
        ]
        return sorted(roles, key=lambda r: (-r.hierarchy_level, r.name))

    def direct_permissions(self, at) -> set[str]:
        """Permissions held outside any role: redeemed emergency grants."""
        names: set[str] = set()
        for grant in self.emergency_grants:
            if grant.is_redeemed_valid(at):
                names.update(grant.permissions)
        return names

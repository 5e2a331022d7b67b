"""User <-> Role assignment with temporal attributes."""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, func,
)
from sqlalchemy.orm import relationship
from helpdesk_rbac.db.base import Base


class RoleAssignment(Base):
    """One row per (user, role) pair.

    Re-granting updates the row; revoking flips ``is_active``. Rows are kept
    as live state and never deleted on revoke. ``expires_at`` of None means
    the grant is permanent.
    """
    __tablename__ = "role_assignments"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_role_assignment_user_role"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False, index=True)
    granted_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    granted_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    delegation_reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User", back_populates="role_assignments", foreign_keys=[user_id])
    role = relationship("Role", back_populates="assignments", lazy="joined")

    @property
    def is_temporal(self) -> bool:
        return self.expires_at is not None

    def is_effective(self, at) -> bool:
        """Active and not expired at ``at``."""
        return bool(self.is_active) and (self.expires_at is None or self.expires_at > at)

"""Permission model."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, func
from sqlalchemy.orm import relationship
from helpdesk_rbac.db.base import Base

WILDCARD_ACTION = "*"


class Permission(Base):
    """Atomic capability named ``resource.action``.

    An action of ``*`` makes the permission a wildcard that satisfies any
    check on the same resource. Permissions referenced by audit history are
    deactivated, never deleted.
    """
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(150), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    description = Column(String(500), nullable=True)
    resource = Column(String(100), nullable=False, index=True)
    action = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    roles = relationship("Role", secondary="role_permissions", back_populates="permissions")

    @property
    def is_wildcard(self) -> bool:
        return self.action == WILDCARD_ACTION

    @staticmethod
    def split_name(name: str) -> tuple[str, str]:
        """Split ``resource.action`` into its parts."""
        resource, _, action = name.partition(".")
        return resource, action

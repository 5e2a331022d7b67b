"""Role model for RBAC."""

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Table, func,
)
from sqlalchemy.orm import relationship
from helpdesk_rbac.db.base import Base

role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


class Role(Base):
    """Named capability bundle with a hierarchy level (higher = more senior)."""
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), unique=True, nullable=False, index=True)
    _display_name = Column("display_name", String(255), nullable=True)
    description = Column(Text, nullable=True)
    hierarchy_level = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=True, nullable=False)
    is_system = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    permissions = relationship(
        "Permission", secondary=role_permissions, back_populates="roles", lazy="selectin",
    )
    assignments = relationship("RoleAssignment", back_populates="role")

    @property
    def display_name(self) -> str:
        return self._display_name or self.name

    @display_name.setter
    def display_name(self, value: str) -> None:
        self._display_name = value

    def can_manage(self, other: "Role") -> bool:
        return self.hierarchy_level > other.hierarchy_level

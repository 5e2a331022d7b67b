"""Break-glass emergency access grants."""

import json

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, func
from sqlalchemy.orm import relationship
from helpdesk_rbac.db.base import Base


class EmergencyAccess(Base):
    """Out-of-band permission list redeemable once through an opaque token.

    Only the SHA-256 hash of the token is stored; the raw token is returned
    to the issuer exactly once.
    """
    __tablename__ = "emergency_access"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    permissions_json = Column(Text, nullable=False)  # JSON list of permission names
    reason = Column(String(500), nullable=False)
    granted_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    granted_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    used_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    user = relationship("User", foreign_keys=[user_id])

    @property
    def permissions(self) -> list[str]:
        return json.loads(self.permissions_json) if self.permissions_json else []

    @permissions.setter
    def permissions(self, value: list[str]) -> None:
        self.permissions_json = json.dumps(sorted(set(value)))

    def is_valid(self, now) -> bool:
        return bool(self.is_active) and self.expires_at > now

    def is_redeemed_valid(self, now) -> bool:
        return self.used_at is not None and self.is_valid(now)

    def state(self, now) -> str:
        """issued, redeemed, expired or revoked."""
        if self.used_at is not None:
            return "redeemed"
        if not self.is_active:
            return "revoked"
        if self.expires_at <= now:
            return "expired"
        return "issued"

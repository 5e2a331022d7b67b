"""Permission audit ledger - append-only."""

import enum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum, func
from helpdesk_rbac.db.base import Base


class AuditAction(str, enum.Enum):
    granted = "granted"
    revoked = "revoked"
    modified = "modified"
    unauthorized_access_attempt = "unauthorized_access_attempt"
    ip_block_auto = "ip_block_auto"
    ip_unblock_manual = "ip_unblock_manual"
    ip_unblock_auto = "ip_unblock_auto"
    ticket_assigned = "ticket_assigned"
    ticket_unassigned = "ticket_unassigned"
    ticket_transferred = "ticket_transferred"
    emergency_access_granted = "emergency_access_granted"
    emergency_access_redeemed = "emergency_access_redeemed"
    emergency_access_revoked = "emergency_access_revoked"
    role_created = "role_created"
    role_updated = "role_updated"
    role_deleted = "role_deleted"


class PermissionAudit(Base):
    """Who changed what, when and why.

    This table is APPEND-ONLY: no UPDATE or DELETE operations should ever
    be performed on it (enforced at application level). Role and permission
    ids are stored without foreign keys so rows survive role deletion.
    """
    __tablename__ = "permission_audits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    permission_id = Column(Integer, nullable=True, index=True)
    role_id = Column(Integer, nullable=True, index=True)
    action = Column(Enum(AuditAction, name="permission_audit_action"), nullable=False, index=True)
    old_value_json = Column(Text, nullable=True)
    new_value_json = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    performed_by = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)

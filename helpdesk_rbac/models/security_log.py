"""Security events reported by the authentication subsystem."""

import enum
import json

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum, func
from sqlalchemy.orm import relationship
from helpdesk_rbac.db.base import Base


class SecurityEventType(str, enum.Enum):
    access_granted = "access_granted"
    ip_blocked = "ip_blocked"
    suspicious_activity = "suspicious_activity"
    auth_attempt = "auth_attempt"
    auth_failure = "auth_failure"
    webauthn_failure = "webauthn_failure"
    session_event = "session_event"
    authorization_event = "authorization_event"
    data_access = "data_access"
    security_config_change = "security_config_change"
    emergency_access = "emergency_access"
    test_event = "test_event"

    def is_threat(self) -> bool:
        return self in _THREAT_TYPES

    def severity(self) -> int:
        """0 (informational) to 5 (most severe)."""
        return _SEVERITY[self]

    def description(self) -> str:
        return _DESCRIPTIONS[self]


_THREAT_TYPES = frozenset({
    SecurityEventType.ip_blocked,
    SecurityEventType.suspicious_activity,
    SecurityEventType.auth_failure,
    SecurityEventType.webauthn_failure,
})

_SEVERITY = {
    SecurityEventType.suspicious_activity: 5,
    SecurityEventType.ip_blocked: 4,
    SecurityEventType.auth_failure: 4,
    SecurityEventType.webauthn_failure: 4,
    SecurityEventType.emergency_access: 4,
    SecurityEventType.auth_attempt: 3,
    SecurityEventType.authorization_event: 3,
    SecurityEventType.session_event: 2,
    SecurityEventType.data_access: 2,
    SecurityEventType.access_granted: 1,
    SecurityEventType.security_config_change: 1,
    SecurityEventType.test_event: 0,
}

_DESCRIPTIONS = {
    SecurityEventType.access_granted: "Access granted after security verification",
    SecurityEventType.ip_blocked: "Access blocked due to IP restrictions",
    SecurityEventType.suspicious_activity: "Suspicious activity detected",
    SecurityEventType.auth_attempt: "Authentication attempt",
    SecurityEventType.auth_failure: "Authentication failure",
    SecurityEventType.webauthn_failure: "WebAuthn assertion failure",
    SecurityEventType.session_event: "Session-related security event",
    SecurityEventType.authorization_event: "Authorization or permission event",
    SecurityEventType.data_access: "Data access or modification",
    SecurityEventType.security_config_change: "Security configuration change",
    SecurityEventType.emergency_access: "Emergency access activity",
    SecurityEventType.test_event: "Test event for development",
}


class SecurityLog(Base):
    """A single security event. Input to the threat response engine."""
    __tablename__ = "security_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    event_type = Column(Enum(SecurityEventType, name="security_event_type"), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True, index=True)
    user_agent = Column(String(500), nullable=True)
    details_json = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)

    user = relationship("User")

    @property
    def details(self) -> dict:
        return json.loads(self.details_json) if self.details_json else {}

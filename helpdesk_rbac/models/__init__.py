"""Models package — import all models so metadata.create_all can discover them."""

from helpdesk_rbac.models.department import Department
from helpdesk_rbac.models.user import User
from helpdesk_rbac.models.permission import Permission
from helpdesk_rbac.models.role import Role, role_permissions
from helpdesk_rbac.models.role_assignment import RoleAssignment
from helpdesk_rbac.models.emergency_access import EmergencyAccess
from helpdesk_rbac.models.permission_audit import PermissionAudit, AuditAction
from helpdesk_rbac.models.security_log import SecurityLog, SecurityEventType

__all__ = [
    "Department", "User", "Permission", "Role", "role_permissions",
    "RoleAssignment", "EmergencyAccess", "PermissionAudit", "AuditAction",
    "SecurityLog", "SecurityEventType",
]

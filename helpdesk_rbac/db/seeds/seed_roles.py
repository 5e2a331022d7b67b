"""Seed departments, the permission catalog and the default roles."""

import logging

from sqlalchemy.orm import Session
from helpdesk_rbac.models.department import Department
from helpdesk_rbac.models.permission import Permission
from helpdesk_rbac.models.role import Role

logger = logging.getLogger(__name__)

DEPARTMENTS = [
    "IT Support",
    "Customer Service",
    "Technical Support",
    "Management",
    "Quality Assurance",
]

PERMISSIONS = [
    # Tickets
    "tickets.view_own", "tickets.view_department", "tickets.view_all", "tickets.create",
    "tickets.edit_own", "tickets.edit_department", "tickets.edit_all",
    "tickets.delete_own", "tickets.delete_department", "tickets.delete_all",
    "tickets.assign", "tickets.escalate", "tickets.close",
    # Users
    "users.view_own", "users.view_department", "users.view_all", "users.create",
    "users.edit_own", "users.edit_department", "users.edit_all", "users.delete",
    # Roles and permissions
    "roles.view_all", "roles.view_department", "roles.create", "roles.update",
    "roles.delete", "roles.assign", "roles.revoke", "roles.manage_permissions",
    # Reports
    "reports.view_basic", "reports.view_department", "reports.view_all",
    "reports.create_custom", "reports.export",
    # Knowledge base
    "knowledge.view", "knowledge.create", "knowledge.edit", "knowledge.approve", "knowledge.delete",
    # System
    "system.configuration", "system.maintenance", "system.plugins", "system.backup",
    # Audit and compliance
    "audit.view_logs", "audit.export_data", "audit.compliance_reports",
    # SLA
    "sla.view", "sla.manage", "sla.enforce",
    # Break-glass and threat response
    "emergency.grant", "emergency.revoke", "security.view", "security.unblock_ip",
]

SUPPORT_AGENT = [
    "tickets.view_own", "tickets.create", "tickets.edit_own", "tickets.close",
    "users.view_own", "users.edit_own", "knowledge.view", "reports.view_basic",
]

DEPARTMENT_MANAGER = SUPPORT_AGENT + [
    "tickets.view_department", "tickets.edit_department", "tickets.assign", "tickets.escalate",
    "users.view_department", "users.edit_department", "reports.view_department",
    "sla.view", "sla.enforce",
]

REGIONAL_MANAGER = DEPARTMENT_MANAGER + [
    "tickets.view_all", "tickets.edit_all", "users.view_all", "users.create",
    "reports.view_all", "reports.create_custom", "reports.export",
    "roles.view_department", "roles.assign", "roles.revoke",
]

ROLES = [
    {
        "name": "support_agent",
        "display_name": "Support Agent",
        "description": "Front-line support staff handling ticket resolution",
        "hierarchy_level": 1,
        "is_system": True,
        "permissions": SUPPORT_AGENT,
    },
    {
        "name": "department_manager",
        "display_name": "Department Manager",
        "description": "Manages team operations and departmental oversight",
        "hierarchy_level": 2,
        "permissions": DEPARTMENT_MANAGER,
    },
    {
        "name": "regional_manager",
        "display_name": "Regional Manager",
        "description": "Oversees multiple departments and regional operations",
        "hierarchy_level": 3,
        "permissions": REGIONAL_MANAGER,
    },
    {
        "name": "system_administrator",
        "display_name": "System Administrator",
        "description": "Full system access and configuration management",
        "hierarchy_level": 4,
        "is_system": True,
        "permissions": PERMISSIONS,
    },
    {
        "name": "compliance_auditor",
        "display_name": "Compliance Auditor",
        "description": "Read-only access for compliance and audit purposes",
        "hierarchy_level": 2,
        "permissions": [
            "tickets.view_all", "users.view_all", "audit.view_logs", "audit.export_data",
            "audit.compliance_reports", "reports.view_all", "reports.export",
            "knowledge.view", "roles.view_all", "security.view",
        ],
    },
    {
        "name": "knowledge_curator",
        "display_name": "Knowledge Curator",
        "description": "Manages knowledge base and content approval",
        "hierarchy_level": 2,
        "permissions": [
            "tickets.view_own", "users.view_own", "users.edit_own", "knowledge.view",
            "knowledge.create", "knowledge.edit", "knowledge.approve", "knowledge.delete",
            "reports.view_basic",
        ],
    },
]


def seed_departments(db: Session) -> None:
    for name in DEPARTMENTS:
        if not db.query(Department).filter(Department.name == name).first():
            db.add(Department(name=name, slug=name.lower().replace(" ", "-")))
    db.commit()


def seed_permissions(db: Session) -> dict[str, Permission]:
    existing = {p.name: p for p in db.query(Permission).all()}
    for name in PERMISSIONS:
        if name in existing:
            continue
        resource, action = Permission.split_name(name)
        permission = Permission(
            name=name,
            display_name=action.replace("_", " ").title() + " " + resource.title(),
            resource=resource,
            action=action,
        )
        db.add(permission)
        existing[name] = permission
    db.commit()
    return existing


def seed_roles(db: Session) -> dict[str, Role]:
    """Insert departments, permissions and default roles if they don't already exist.

    Existing roles keep their permission sets; only missing roles are created.
    """
    seed_departments(db)
    permissions = seed_permissions(db)

    roles = {}
    for data in ROLES:
        role = db.query(Role).filter(Role.name == data["name"]).first()
        if role is None:
            role = Role(
                name=data["name"],
                description=data["description"],
                hierarchy_level=data["hierarchy_level"],
                is_system=data.get("is_system", False),
            )
            role.display_name = data["display_name"]
            role.permissions = [permissions[name] for name in data["permissions"]]
            db.add(role)
        roles[data["name"]] = role

    db.commit()
    logger.info("Seeded %d roles, %d permissions", len(roles), len(permissions))
    return roles

from datetime import timedelta

from helpdesk_rbac.models import Permission, Role, RoleAssignment
from helpdesk_rbac.services.permission_resolver import (
    EMPTY,
    ResolvedPermissions,
    has_all_permissions,
    has_any_permission,
    has_permission,
    wildcard_for,
)


def test_wildcard_matches_only_its_resource():
    granted = {"tickets.*", "users.view_own"}
    assert has_permission(granted, "tickets.create")
    assert has_permission(granted, "tickets.some_future_action")
    assert has_permission(granted, "users.view_own")
    assert not has_permission(granted, "users.view_all")
    assert not has_permission(granted, "reports.view_basic")


def test_wildcard_for_names_without_resource():
    assert wildcard_for("tickets.create") == "tickets.*"
    assert wildcard_for("tickets.*") is None
    assert wildcard_for("standalone") is None


def test_any_and_all_checks():
    granted = {"tickets.view_own", "knowledge.view"}
    assert has_any_permission(granted, ["sla.manage", "knowledge.view"])
    assert not has_any_permission(granted, [])
    assert has_all_permissions(granted, ["tickets.view_own", "knowledge.view"])
    assert not has_all_permissions(granted, ["tickets.view_own", "sla.manage"])


def test_resolve_unions_active_roles(db, registry, make_user):
    user = make_user("support_agent", "knowledge_curator")
    permissions = registry.resolver.resolve(db, user.id)
    assert "tickets.create" in permissions
    assert "knowledge.approve" in permissions
    assert "users.view_all" not in permissions


def test_expired_assignment_is_not_effective_without_sweep(db, registry, make_user, roles, clock):
    user = make_user("support_agent")
    db.add(RoleAssignment(
        user_id=user.id,
        role_id=roles["regional_manager"].id,
        granted_at=clock(),
        expires_at=clock() + timedelta(minutes=5),
        is_active=True,
    ))
    db.commit()
    assert "users.view_all" in registry.resolver.resolve(db, user.id)

    clock.advance(minutes=5)
    resolved = registry.resolver.resolve_detailed(db, user.id)
    assert "users.view_all" not in resolved.permissions
    assert "tickets.create" in resolved.permissions
    assert resolved.roles == ("support_agent",)


def test_inactive_role_and_permission_are_ignored(db, registry, make_user, roles):
    user = make_user("support_agent", "knowledge_curator")
    roles["knowledge_curator"].is_active = False
    db.query(Permission).filter(Permission.name == "tickets.close").one().is_active = False
    db.commit()

    permissions = registry.resolver.resolve(db, user.id)
    assert "knowledge.approve" not in permissions
    assert "tickets.close" not in permissions
    assert "tickets.create" in permissions


def test_inactive_or_unknown_user_resolves_empty(db, registry, make_user):
    user = make_user("system_administrator", is_active=False)
    assert registry.resolver.resolve_detailed(db, user.id) is EMPTY
    assert registry.resolver.resolve(db, 987654) == frozenset()


def test_user_without_roles_has_rank_zero(db, registry, make_user):
    user = make_user()
    assert registry.resolver.max_rank(db, user.id) == 0
    assert registry.resolver.resolve(db, user.id) == frozenset()


def test_wildcard_grant_expands_against_catalog(db, registry, make_user):
    wildcard = Permission(name="tickets.*", resource="tickets", action="*")
    role = Role(name="ticket_owner", hierarchy_level=1)
    role.permissions = [wildcard]
    db.add(role)
    db.commit()
    user = make_user()
    db.add(RoleAssignment(user_id=user.id, role_id=role.id, granted_at=registry.clock(), is_active=True))
    db.commit()

    permissions = registry.resolver.resolve(db, user.id)
    assert "tickets.*" in permissions
    assert "tickets.delete_all" in permissions
    assert "users.view_own" not in permissions


def test_valid_until_is_earliest_expiry(db, registry, make_user, roles, clock):
    user = make_user("support_agent")
    for name, minutes in (("department_manager", 30), ("knowledge_curator", 10)):
        db.add(RoleAssignment(
            user_id=user.id,
            role_id=roles[name].id,
            granted_at=clock(),
            expires_at=clock() + timedelta(minutes=minutes),
            is_active=True,
        ))
    db.commit()

    resolved = registry.resolver.resolve_detailed(db, user.id)
    assert resolved.valid_until == clock() + timedelta(minutes=10)
    assert resolved.max_rank == 2


def test_resolved_permissions_survive_serialization(clock):
    resolved = ResolvedPermissions(
        permissions=frozenset({"a.b", "c.*"}),
        roles=("support_agent",),
        role_ids=(1,),
        max_rank=1,
        valid_until=clock(),
        emergency_permissions=frozenset({"a.b"}),
    )
    assert ResolvedPermissions.from_dict(resolved.to_dict()) == resolved
    assert resolved.allows("c.anything")


def test_identity_exposes_effective_roles_and_direct_permissions(db, registry, make_user, roles, admin, clock):
    user = make_user("support_agent", "knowledge_curator")
    db.add(RoleAssignment(
        user_id=user.id,
        role_id=roles["regional_manager"].id,
        granted_at=clock(),
        expires_at=clock() + timedelta(minutes=5),
        is_active=True,
    ))
    db.commit()
    grant = registry.emergency.grant_emergency_access(
        db, user.id, ["reports.export"], "Audit deadline", duration_minutes=10, granted_by=admin.id,
    )
    db.refresh(user)
    assert [r.name for r in user.effective_roles(clock())] == [
        "regional_manager", "knowledge_curator", "support_agent",
    ]
    assert user.direct_permissions(clock()) == set()

    registry.emergency.redeem(db, grant.token)
    clock.advance(minutes=6)
    db.refresh(user)
    assert [r.name for r in user.effective_roles(clock())] == ["knowledge_curator", "support_agent"]
    assert user.direct_permissions(clock()) == {"reports.export"}

import pytest
from fastapi.testclient import TestClient

from helpdesk_rbac.core.security import create_access_token, decode_token
from helpdesk_rbac.db.session import get_db
from helpdesk_rbac.main import app
from helpdesk_rbac.models import AuditAction, Department, PermissionAudit, SecurityEventType


@pytest.fixture
def client_at(db, registry):
    """TestClient whose direct peer is ``host``; only ``testclient`` is a trusted proxy."""
    app.dependency_overrides[get_db] = lambda: db
    app.state.registry = registry
    yield lambda host="testclient": TestClient(app, client=(host, 50000))
    app.dependency_overrides.clear()


@pytest.fixture
def client(client_at):
    return client_at()


def auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "redis": True}
    assert "X-Request-Id" in resp.headers


def test_caller_request_id_is_echoed(client):
    resp = client.get("/api/health", headers={"X-Request-Id": "req-4711"})
    assert resp.headers["X-Request-Id"] == "req-4711"
    assert float(resp.headers["X-Response-Time-Ms"]) >= 0


def test_requires_bearer_token(client, roles):
    assert client.get("/api/roles").status_code == 401


def test_role_listing_is_scoped(client, regional):
    resp = client.get("/api/roles", headers=auth(regional))
    assert resp.status_code == 200
    names = {role["name"] for role in resp.json()}
    assert "system_administrator" not in names
    assert "regional_manager" in names


def test_hidden_role_reads_as_missing(client, regional, roles):
    resp = client.get(f"/api/roles/{roles['system_administrator'].id}", headers=auth(regional))
    assert resp.status_code == 404


def test_assign_and_check_permissions(client, regional, agent, roles):
    resp = client.post(
        f"/api/roles/users/{agent.id}/assignments",
        json={"role_id": roles["department_manager"].id, "reason": "Team lead out"},
        headers=auth(regional),
    )
    assert resp.status_code == 200
    assert resp.json()["role_name"] == "department_manager"

    resp = client.post(
        f"/api/roles/users/{agent.id}/permissions/check",
        json={"permissions": ["tickets.assign", "users.view_all"], "mode": "all"},
        headers=auth(regional),
    )
    assert resp.json() == {"user_id": agent.id, "allowed": False}

    resp = client.get(f"/api/roles/users/{agent.id}/permissions", headers=auth(agent))
    assert "tickets.assign" in resp.json()["permissions"]


def test_domain_errors_map_to_status_codes(client, manager, regional, agent, roles):
    resp = client.post(
        f"/api/roles/users/{agent.id}/assignments",
        json={"role_id": roles["department_manager"].id},
        headers=auth(manager),
    )
    assert resp.status_code == 403

    resp = client.post(
        f"/api/roles/users/{agent.id}/assignments",
        json={"role_id": 9999},
        headers=auth(regional),
    )
    assert resp.status_code == 422

    resp = client.delete(
        f"/api/roles/users/{agent.id}/assignments/{roles['department_manager'].id}",
        headers=auth(regional),
    )
    assert resp.status_code == 404


def test_emergency_grant_and_redeem(client, admin, agent):
    resp = client.post(
        "/api/emergency-access/grant",
        json={"user_id": agent.id, "permissions": ["users.view_all"], "reason": "Outage", "duration_minutes": 15},
        headers=auth(admin),
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["access"]["state"] == "issued"
    token = body["token"]

    resp = client.post("/api/emergency-access/redeem", json={"token": token})
    assert resp.status_code == 200
    redeemed = resp.json()
    assert redeemed["user_id"] == agent.id
    assert redeemed["permissions"] == ["users.view_all"]
    claims = decode_token(redeemed["access_token"])
    assert claims["sub"] == str(agent.id)
    assert claims["emergency_access_id"] == body["access"]["id"]

    assert client.post("/api/emergency-access/redeem", json={"token": token}).status_code == 404


def test_expired_emergency_token_is_gone(client, registry, admin, agent, clock):
    resp = client.post(
        "/api/emergency-access/grant",
        json={"user_id": agent.id, "permissions": ["users.view_all"], "reason": "Outage", "duration_minutes": 5},
        headers=auth(admin),
    )
    clock.advance(minutes=6)
    resp = client.post("/api/emergency-access/redeem", json={"token": resp.json()["token"]})
    assert resp.status_code == 410


def test_blocked_ip_cannot_redeem(client, db, registry, agent):
    registry.threats.record_security_event(
        db, SecurityEventType.suspicious_activity, ip_address="203.0.113.50", user_id=agent.id,
    )
    resp = client.post(
        "/api/emergency-access/redeem",
        json={"token": "whatever"},
        headers={"X-Forwarded-For": "203.0.113.50"},
    )
    assert resp.status_code == 403


def test_security_dashboard_and_unblock(client, db, registry, admin, agent):
    registry.threats.record_security_event(
        db, SecurityEventType.auth_failure, ip_address="198.51.100.7", user_id=agent.id,
    )
    assert client.get("/api/security/blocked-ips", headers=auth(agent)).status_code == 403

    resp = client.get("/api/security/blocked-ips", headers=auth(admin))
    assert [b["ip_address"] for b in resp.json()] == ["198.51.100.7"]

    resp = client.post(
        "/api/security/blocked-ips/198.51.100.7/unblock",
        json={"reason": "Known office address"},
        headers=auth(admin),
    )
    assert resp.json()["success"] is True
    assert client.get("/api/security/blocked-ips/198.51.100.7", headers=auth(admin)).status_code == 404


def test_audit_log_access(client, admin, regional, agent, roles):
    client.post(
        f"/api/roles/users/{agent.id}/assignments",
        json={"role_id": roles["department_manager"].id},
        headers=auth(regional),
    )
    assert client.get("/api/audit/logs", headers=auth(agent)).status_code == 403
    assert client.get("/api/audit/logs?action=bogus", headers=auth(admin)).status_code == 422

    resp = client.get(f"/api/audit/logs?subject_id={agent.id}", headers=auth(admin))
    body = resp.json()
    assert body["total"] == 1
    assert body["logs"][0]["action"] == "granted"
    assert body["logs"][0]["new_values"]["role_id"] == roles["department_manager"].id

    history = client.get(f"/api/audit/users/{agent.id}/history", headers=auth(admin)).json()
    assert [h["action"] for h in history] == ["granted"]


def test_temporal_grant_and_department_scoped_expiry(client, db, regional, make_user, roles):
    manager = make_user("department_manager", department="Customer Service")
    colleague = make_user("support_agent", department="Customer Service")
    resp = client.post(
        "/api/temporal-access/grant",
        json={"user_id": colleague.id, "role_id": roles["knowledge_curator"].id,
              "duration_minutes": 30, "reason": "Article backlog"},
        headers=auth(regional),
    )
    assert resp.status_code == 201

    resp = client.get("/api/temporal-access/expiring", headers=auth(manager))
    assert [a["user_id"] for a in resp.json()] == [colleague.id]

    other = db.query(Department).filter(Department.name == "Management").one()
    resp = client.get(f"/api/temporal-access/expiring?department_id={other.id}", headers=auth(manager))
    assert resp.status_code == 403


def test_forwarded_for_is_ignored_from_untrusted_peers(client_at, db, registry, agent):
    registry.threats.record_security_event(
        db, SecurityEventType.auth_failure, ip_address="203.0.113.60", user_id=agent.id,
    )
    redeem = {"json": {"token": "whatever"}}

    blocked_peer = client_at("203.0.113.60")
    resp = blocked_peer.post(
        "/api/emergency-access/redeem", headers={"X-Forwarded-For": "192.0.2.77"}, **redeem,
    )
    assert resp.status_code == 403

    other_peer = client_at("198.51.100.20")
    resp = other_peer.post(
        "/api/emergency-access/redeem", headers={"X-Forwarded-For": "203.0.113.60"}, **redeem,
    )
    assert resp.status_code == 404


def test_audit_rows_record_the_resolved_client_address(client_at, db, admin, agent):
    proxied = client_at()
    proxied.post(
        "/api/emergency-access/grant",
        json={"user_id": agent.id, "permissions": ["users.view_all"], "reason": "Outage", "duration_minutes": 15},
        headers={**auth(admin), "X-Forwarded-For": "192.0.2.10"},
    )
    direct = client_at("198.51.100.30")
    direct.post(
        "/api/emergency-access/grant",
        json={"user_id": agent.id, "permissions": ["users.view_all"], "reason": "Outage", "duration_minutes": 15},
        headers={**auth(admin), "X-Forwarded-For": "192.0.2.11"},
    )
    rows = db.query(PermissionAudit).filter(
        PermissionAudit.action == AuditAction.emergency_access_granted,
    ).order_by(PermissionAudit.id).all()
    assert [r.ip_address for r in rows] == ["192.0.2.10", "198.51.100.30"]

import threading
from datetime import timedelta

import pytest

from helpdesk_rbac.core.exceptions import (
    AuthorizationError,
    EmergencyTokenExpired,
    EmergencyTokenNotFound,
    ValidationError,
)
from helpdesk_rbac.models import AuditAction, EmergencyAccess, SecurityEventType, SecurityLog
from helpdesk_rbac.services.emergency_access_service import hash_token


@pytest.fixture
def grant(db, registry, admin, agent):
    return registry.emergency.grant_emergency_access(
        db, agent.id, ["users.view_all", "reports.export"], "Major incident INC-42",
        duration_minutes=30, granted_by=admin.id,
    )


def test_grant_stores_only_token_hash(db, grant, redis_client, registry):
    stored = db.get(EmergencyAccess, grant.access.id)
    assert stored.token_hash == hash_token(grant.token)
    assert grant.token not in stored.token_hash
    assert stored.state(registry.clock()) == "issued"
    mapping = redis_client.get(f"emergency_access:{stored.token_hash}")
    assert mapping is not None


def test_grant_is_audited_and_notifies_security_team(db, grant, admin, agent, notifier, audits):
    rows = audits(AuditAction.emergency_access_granted)
    assert len(rows) == 1
    assert rows[0].user_id == agent.id
    assert rows[0].performed_by == admin.id

    notifier.notify_security_team.assert_called_once()
    recipients, payload = notifier.notify_security_team.call_args.args
    assert recipients == [admin.id]
    assert payload["emergency_access_id"] == grant.access.id

    logs = db.query(SecurityLog).filter(SecurityLog.event_type == SecurityEventType.emergency_access).all()
    assert logs[0].details["type"] == "break_glass_generated"


def test_permissions_apply_only_after_redemption(db, registry, grant, agent, audits):
    assert not registry.permissions.user_has_permission(db, agent.id, "users.view_all")

    user = registry.emergency.redeem(db, grant.token)
    assert user.id == agent.id
    assert registry.permissions.user_has_permission(db, agent.id, "users.view_all")
    assert registry.permissions.user_has_permission(db, agent.id, "tickets.create")
    assert len(audits(AuditAction.emergency_access_redeemed)) == 1


def test_token_is_single_use(db, registry, grant, audits):
    registry.emergency.redeem(db, grant.token)
    with pytest.raises(EmergencyTokenNotFound):
        registry.emergency.redeem(db, grant.token)
    assert len(audits(AuditAction.emergency_access_redeemed)) == 1
    assert db.get(EmergencyAccess, grant.access.id).state(registry.clock()) == "redeemed"


def test_emergency_permissions_end_with_window(db, registry, grant, agent, clock):
    registry.emergency.redeem(db, grant.token)
    clock.advance(minutes=29)
    assert registry.permissions.user_has_permission(db, agent.id, "reports.export")
    clock.advance(minutes=1)
    assert not registry.permissions.user_has_permission(db, agent.id, "reports.export")


def test_expired_token_is_rejected(db, registry, grant, clock, audits):
    clock.advance(minutes=31)
    with pytest.raises(EmergencyTokenExpired):
        registry.emergency.redeem(db, grant.token)
    assert audits(AuditAction.emergency_access_redeemed) == []


@pytest.mark.parametrize("token", ["", "not a token", "x" * 65, "abc$def"])
def test_malformed_token_is_not_found(db, registry, token):
    with pytest.raises(EmergencyTokenNotFound):
        registry.emergency.redeem(db, token)


def test_redeem_without_cached_mapping(db, registry, grant, redis_client):
    redis_client.flushall()
    assert registry.emergency.redeem(db, grant.token).id == grant.access.user_id


def test_grant_requires_permission(db, registry, manager, agent, audits):
    with pytest.raises(AuthorizationError):
        registry.emergency.grant_emergency_access(
            db, agent.id, ["users.view_all"], "Incident", granted_by=manager.id,
        )
    assert db.query(EmergencyAccess).count() == 0
    assert len(audits(AuditAction.unauthorized_access_attempt)) == 1


@pytest.mark.parametrize(
    "permissions,reason,minutes",
    [
        (["users.view_all"], "", 30),
        ([], "Incident", 30),
        (["no.such_permission"], "Incident", 30),
        (["users.view_all"], "Incident", 0),
        (["users.view_all"], "Incident", 1441),
    ],
)
def test_grant_validation(db, registry, admin, agent, permissions, reason, minutes):
    with pytest.raises(ValidationError):
        registry.emergency.grant_emergency_access(
            db, agent.id, permissions, reason, duration_minutes=minutes, granted_by=admin.id,
        )


def test_default_duration(db, registry, admin, agent, clock):
    grant = registry.emergency.grant_emergency_access(
        db, agent.id, ["users.view_all"], "Incident", granted_by=admin.id,
    )
    assert grant.access.expires_at == clock() + timedelta(minutes=60)


def test_revoke_ends_redeemed_access(db, registry, grant, admin, agent, audits):
    registry.emergency.redeem(db, grant.token)
    assert registry.emergency.revoke_emergency_access(db, grant.access.id, "Incident closed", admin.id)
    assert not registry.permissions.user_has_permission(db, agent.id, "users.view_all")
    assert registry.emergency.revoke_emergency_access(db, grant.access.id, "Again", admin.id) is False
    assert len(audits(AuditAction.emergency_access_revoked)) == 1


def test_revoked_token_cannot_be_redeemed(db, registry, grant, admin):
    registry.emergency.revoke_emergency_access(db, grant.access.id, "Issued by mistake", admin.id)
    with pytest.raises(EmergencyTokenNotFound):
        registry.emergency.redeem(db, grant.token)


def test_cleanup_and_stats(db, registry, grant, agent, clock):
    assert registry.emergency.get_user_active_emergency_access(db, agent.id).id == grant.access.id
    clock.advance(hours=1)
    assert registry.emergency.cleanup_expired(db) == 1
    assert registry.emergency.get_user_active_emergency_access(db, agent.id) is None

    stats = registry.emergency.stats(db, days=30)
    assert stats["total_granted"] == 1
    assert stats["currently_active"] == 0
    assert stats["expired_access"] == 1
    assert stats["most_common_permissions"] == {"reports.export": 1, "users.view_all": 1}


def test_notification_failure_does_not_block_grant(db, registry, admin, agent, notifier):
    notifier.notify_security_team.side_effect = RuntimeError("broker down")
    grant = registry.emergency.grant_emergency_access(
        db, agent.id, ["users.view_all"], "Incident", granted_by=admin.id,
    )
    assert grant.token


def test_concurrent_redemption_has_exactly_one_winner(shared_db, registry):
    SharedSession, users = shared_db
    with SharedSession() as session:
        token = registry.emergency.grant_emergency_access(
            session, users["agent"], ["users.view_all"], "Outage", duration_minutes=30,
            granted_by=users["admin"],
        ).token

    attempts = 8
    barrier = threading.Barrier(attempts)
    outcomes = []

    def redeem():
        with SharedSession() as session:
            barrier.wait()
            try:
                outcomes.append(registry.emergency.redeem(session, token).id)
            except EmergencyTokenNotFound:
                outcomes.append("not_found")

    threads = [threading.Thread(target=redeem) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(users["agent"]) == 1
    assert outcomes.count("not_found") == attempts - 1
    with SharedSession() as session:
        redeemed = (
            session.query(EmergencyAccess)
            .filter(EmergencyAccess.used_at.is_not(None))
            .count()
        )
        assert redeemed == 1
        assert registry.audit.query_logs(session, action=AuditAction.emergency_access_redeemed)["total"] == 1

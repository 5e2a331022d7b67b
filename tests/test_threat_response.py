import json
import threading

import fakeredis
import pytest

from helpdesk_rbac.core.config import settings
from helpdesk_rbac.core.exceptions import AuthorizationError, ValidationError
from helpdesk_rbac.core.registry import build_registry
from helpdesk_rbac.models import AuditAction, SecurityEventType, SecurityLog

IP = "203.0.113.9"


def report(db, registry, user, event=SecurityEventType.auth_failure, ip=IP):
    return registry.threats.record_security_event(db, event, ip_address=ip, user_id=user.id, user_agent="curl/8")


def test_event_type_classification():
    assert SecurityEventType.suspicious_activity.is_threat()
    assert not SecurityEventType.auth_attempt.is_threat()
    assert SecurityEventType.suspicious_activity.severity() == 5
    assert SecurityEventType.test_event.severity() == 0
    assert SecurityEventType.ip_blocked.description()


def test_threat_event_blocks_once_per_episode(db, registry, agent, notifier, audits):
    report(db, registry, agent)
    report(db, registry, agent, SecurityEventType.suspicious_activity)
    report(db, registry, agent, SecurityEventType.webauthn_failure)

    assert registry.threats.is_ip_blocked(IP)
    assert db.query(SecurityLog).count() == 3
    blocks = audits(AuditAction.ip_block_auto)
    assert len(blocks) == 1
    values = json.loads(blocks[0].new_value_json)
    assert values["action_type"] == "ip_block_auto"
    assert values["block_duration_seconds"] == settings.IP_BLOCK_TTL_SECONDS
    assert blocks[0].ip_address == IP
    notifier.notify_suspicious_activity.assert_called_once()


def test_handle_reports_whether_a_block_was_opened(db, registry, agent):
    first = SecurityLog(user_id=agent.id, event_type=SecurityEventType.auth_failure, ip_address=IP)
    second = SecurityLog(user_id=agent.id, event_type=SecurityEventType.auth_failure, ip_address=IP)
    db.add_all([first, second])
    db.commit()
    assert registry.threats.handle(db, first) is True
    assert registry.threats.handle(db, second) is False


def test_non_threat_event_is_ignored(db, registry, agent, notifier, audits):
    report(db, registry, agent, SecurityEventType.auth_attempt)
    report(db, registry, agent, SecurityEventType.access_granted, ip=None)
    assert not registry.threats.is_ip_blocked(IP)
    assert audits(AuditAction.ip_block_auto) == []
    notifier.notify_suspicious_activity.assert_not_called()


def test_toggles_never_affect_blocking(db, registry, agent, notifier, audits):
    registry.threats.audit_ip_blocks = False
    registry.threats.email_alerts = False
    report(db, registry, agent)

    assert registry.threats.is_ip_blocked(IP)
    assert audits(AuditAction.ip_block_auto) == []
    notifier.notify_suspicious_activity.assert_not_called()


def test_notifications_are_rate_limited_per_user_and_ip(db, registry, admin, agent, notifier):
    report(db, registry, agent)
    registry.threats.unblock_ip(db, IP, admin.id, "False positive")
    report(db, registry, agent)
    assert registry.threats.is_ip_blocked(IP)
    assert notifier.notify_suspicious_activity.call_count == 1

    report(db, registry, agent, ip="198.51.100.4")
    assert notifier.notify_suspicious_activity.call_count == 2


def test_failed_notification_releases_rate_limit(db, registry, agent, notifier, redis_client):
    notifier.notify_suspicious_activity.side_effect = RuntimeError("broker down")
    report(db, registry, agent)
    assert registry.threats.is_ip_blocked(IP)
    assert not redis_client.exists(registry.threats.notification_key(agent.id, IP))


def test_manual_unblock(db, registry, admin, agent, audits):
    report(db, registry, agent)
    assert registry.threats.unblock_ip(db, IP, admin.id, "Customer verified by phone")
    assert not registry.threats.is_ip_blocked(IP)
    assert registry.threats.unblock_ip(db, IP, admin.id, "Again") is False

    rows = audits(AuditAction.ip_unblock_manual)
    assert len(rows) == 1
    assert rows[0].performed_by == admin.id
    assert rows[0].reason == "Customer verified by phone"


def test_unblock_requires_permission_and_reason(db, registry, admin, agent, audits):
    report(db, registry, agent)
    with pytest.raises(AuthorizationError):
        registry.threats.unblock_ip(db, IP, agent.id, "Please")
    with pytest.raises(ValidationError):
        registry.threats.unblock_ip(db, IP, admin.id, "  ")
    assert registry.threats.is_ip_blocked(IP)
    assert len(audits(AuditAction.unauthorized_access_attempt)) == 1


def test_expired_episode_gets_exactly_one_auto_unblock(db, registry, agent, redis_client, clock, audits):
    report(db, registry, agent)
    clock.advance(seconds=settings.IP_BLOCK_TTL_SECONDS + 1)
    redis_client.delete(registry.threats.marker_key(IP))

    assert registry.threats.process_expired_blocks(db) == 1
    assert registry.threats.process_expired_blocks(db) == 0
    rows = audits(AuditAction.ip_unblock_auto)
    assert len(rows) == 1
    assert json.loads(rows[0].new_value_json)["ip_address"] == IP


def test_manual_unblock_is_not_followed_by_auto_unblock(db, registry, admin, agent, clock, audits):
    report(db, registry, agent)
    registry.threats.unblock_ip(db, IP, admin.id, "False positive")
    clock.advance(seconds=settings.IP_BLOCK_TTL_SECONDS + 1)
    assert registry.threats.process_expired_blocks(db) == 0
    assert audits(AuditAction.ip_unblock_auto) == []


def test_live_block_is_not_swept(db, registry, agent, clock):
    report(db, registry, agent)
    clock.advance(seconds=settings.IP_BLOCK_TTL_SECONDS + 1)
    assert registry.threats.process_expired_blocks(db) == 0


def test_blocked_ip_listing(db, registry, agent):
    report(db, registry, agent)
    report(db, registry, agent, ip="198.51.100.4")
    listed = {info["ip_address"]: info for info in registry.threats.list_blocked_ips()}
    assert set(listed) == {IP, "198.51.100.4"}
    info = registry.threats.get_blocked_ip_info(IP)
    assert info["event_type"] == "auth_failure"
    assert info["user_id"] == agent.id
    assert 0 < info["ttl_seconds"] <= settings.IP_BLOCK_TTL_SECONDS
    assert registry.threats.get_blocked_ip_info("192.0.2.1") is None


def test_block_check_fails_open_when_cache_is_down(db, clock, notifier, agent):
    server = fakeredis.FakeServer()
    server.connected = False
    down = build_registry(
        settings,
        redis_client=fakeredis.FakeRedis(server=server, decode_responses=True),
        clock=clock,
        notifier=notifier,
    )
    assert down.threats.is_ip_blocked(IP) is False
    log = report(db, down, agent)
    assert log.id is not None


def test_concurrent_events_open_one_block(shared_db, registry, notifier):
    SharedSession, users = shared_db
    attempts = 8
    barrier = threading.Barrier(attempts)

    def report_failure():
        with SharedSession() as session:
            barrier.wait()
            registry.threats.record_security_event(
                session, SecurityEventType.auth_failure, ip_address=IP, user_id=users["agent"],
            )

    threads = [threading.Thread(target=report_failure) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.threats.is_ip_blocked(IP)
    assert [info["ip_address"] for info in registry.threats.list_blocked_ips()] == [IP]
    assert len(registry.cache.zmembers(registry.threats.index_key)) == 1
    notifier.notify_suspicious_activity.assert_called_once()
    with SharedSession() as session:
        assert session.query(SecurityLog).count() == attempts
        blocks = registry.audit.query_logs(session, action=AuditAction.ip_block_auto)
        assert blocks["total"] == 1

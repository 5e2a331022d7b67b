"""
Threat response

Blocks source IPs on threat-qualifying security events. The block marker
in Redis is the authoritative state and is created with SET NX, so only the
first of several concurrent events opens a block episode and writes its
audit row. Each episode is also indexed in a sorted set scored by its
blocked-until time, which lets the sweeper write exactly one automatic
unblock row per episode that expired naturally.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from helpdesk_rbac.core.clock import Clock, utcnow
from helpdesk_rbac.core.exceptions import AuthorizationError, CacheUnavailableError, ValidationError
from helpdesk_rbac.models.permission_audit import AuditAction
from helpdesk_rbac.models.security_log import SecurityEventType, SecurityLog
from helpdesk_rbac.services.audit_service import AuditService, NO_CONTEXT, RequestContext, dump_json
from helpdesk_rbac.services.cache_service import CacheService
from helpdesk_rbac.services.notification_service import Notifier
from helpdesk_rbac.services.permission_cache import PermissionCacheService

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("helpdesk_rbac.security")


def _epoch(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


class ThreatResponseService:
    def __init__(
        self,
        cache: CacheService,
        permissions: PermissionCacheService,
        audit: AuditService,
        notifier: Notifier,
        block_ttl_seconds: int = 1800,
        blocked_ip_prefix: str = "blocked_ip:",
        notification_prefix: str = "security_notification:",
        notification_window_seconds: int = 3600,
        audit_ip_blocks: bool = True,
        email_alerts: bool = True,
        clock: Clock = utcnow,
    ):
        self.cache = cache
        self.permissions = permissions
        self.audit = audit
        self.notifier = notifier
        self.block_ttl_seconds = block_ttl_seconds
        self.blocked_ip_prefix = blocked_ip_prefix
        self.notification_prefix = notification_prefix
        self.notification_window_seconds = notification_window_seconds
        self.audit_ip_blocks = audit_ip_blocks
        self.email_alerts = email_alerts
        self.clock = clock

    # Keys

    def marker_key(self, ip_address: str) -> str:
        return f"{self.blocked_ip_prefix}{ip_address}"

    @property
    def index_key(self) -> str:
        return f"{self.blocked_ip_prefix}episodes"

    def notification_key(self, user_id: int, ip_address: str) -> str:
        return f"{self.notification_prefix}{user_id}:{ip_address}"

    # Events

    def record_security_event(
        self,
        db: Session,
        event_type: SecurityEventType,
        ip_address: Optional[str] = None,
        user_id: Optional[int] = None,
        user_agent: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> SecurityLog:
        """Persist a security event and run it through ``handle``."""
        log = SecurityLog(
            user_id=user_id,
            event_type=SecurityEventType(event_type),
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            details_json=dump_json(details),
            created_at=self.clock(),
        )
        db.add(log)
        db.commit()
        db.refresh(log)
        self.handle(db, log)
        return log

    def handle(self, db: Session, log: SecurityLog) -> bool:
        """Block the event's IP if it qualifies. True only when a new block was opened."""
        event_type = SecurityEventType(log.event_type)
        if not event_type.is_threat() or not log.ip_address:
            return False

        now = self.clock()
        blocked_until = now + timedelta(seconds=self.block_ttl_seconds)
        episode_id = uuid.uuid4().hex
        marker = {
            "reason": f"Automatic IP block due to {event_type.value}",
            "security_log_id": log.id,
            "event_type": event_type.value,
            "user_id": log.user_id,
            "blocked_at": now.isoformat(),
            "blocked_until": blocked_until.isoformat(),
            "episode_id": episode_id,
        }
        try:
            created = self.cache.add_json(self.marker_key(log.ip_address), marker, self.block_ttl_seconds)
        except CacheUnavailableError:
            logger.error("Cannot block %s: block store unavailable", log.ip_address)
            return False
        if not created:
            logger.debug("IP %s already blocked, ignoring %s event", log.ip_address, event_type.value)
            return False

        self.cache.zadd(self.index_key, f"{log.ip_address}|{episode_id}", _epoch(blocked_until))
        security_logger.warning(
            "IP %s automatically blocked for %ss after %s (user=%s, security_log=%s)",
            log.ip_address, self.block_ttl_seconds, event_type.value, log.user_id, log.id,
        )

        if self.audit_ip_blocks:
            self.audit.record(
                db,
                AuditAction.ip_block_auto,
                user_id=log.user_id,
                performed_by=None,
                context=RequestContext(log.ip_address, log.user_agent),
                reason=(
                    f"Automatic IP block due to {event_type.value} "
                    f"for {self.block_ttl_seconds} seconds"
                ),
                new_values={
                    "action_type": AuditAction.ip_block_auto.value,
                    "ip_address": log.ip_address,
                    "block_duration_seconds": self.block_ttl_seconds,
                    "expires_at": blocked_until,
                    "trigger_event_type": event_type.value,
                    "security_log_id": log.id,
                },
            )

        self._notify(log, event_type, blocked_until)
        return True

    def _notify(self, log: SecurityLog, event_type: SecurityEventType, blocked_until: datetime) -> None:
        if not self.email_alerts or log.user_id is None:
            return
        key = self.notification_key(log.user_id, log.ip_address)
        try:
            if not self.cache.add(key, "1", self.notification_window_seconds):
                return
        except CacheUnavailableError:
            logger.warning("Notification rate limiter unavailable; skipping alert for user %s", log.user_id)
            return

        try:
            self.notifier.notify_suspicious_activity(log.user_id, {
                "ip": log.ip_address,
                "user_agent": log.user_agent,
                "event": event_type.value,
                "timestamp": log.created_at.isoformat() if log.created_at else None,
                "blocked_until": blocked_until.isoformat(),
                "details": log.details,
            })
        except Exception:
            self.cache.delete(key)
            logger.exception("Failed to queue suspicious activity alert for user %s", log.user_id)
            return
        logger.info("Suspicious activity alert queued for user %s (%s)", log.user_id, log.ip_address)

    # Queries

    def is_ip_blocked(self, ip_address: str) -> bool:
        """Marker presence. An unreachable block store reads as not blocked."""
        return self.cache.exists(self.marker_key(ip_address))

    def get_blocked_ip_info(self, ip_address: str) -> Optional[dict]:
        marker = self.cache.get_json(self.marker_key(ip_address))
        if marker is None:
            return None
        return {"ip_address": ip_address, **marker, "ttl_seconds": self.cache.ttl(self.marker_key(ip_address))}

    def list_blocked_ips(self) -> list[dict]:
        blocked = []
        for member in self.cache.zmembers(self.index_key):
            ip_address, _, episode_id = member.rpartition("|")
            info = self.get_blocked_ip_info(ip_address)
            if info is not None and info.get("episode_id") == episode_id:
                blocked.append(info)
        return blocked

    # Unblocking

    def unblock_ip(
        self,
        db: Session,
        ip_address: str,
        performed_by: int,
        reason: str,
        context: RequestContext = NO_CONTEXT,
    ) -> bool:
        """Clear a block immediately. False if the IP was not blocked."""
        reason = (reason or "").strip()
        if performed_by is None or not reason:
            raise ValidationError("An acting user and a reason are required to unblock an IP")
        if not self.permissions.user_has_permission(db, performed_by, "security.unblock_ip"):
            self.audit.record_unauthorized(db, performed_by, f"unblock IP {ip_address}", context=context)
            raise AuthorizationError("You are not allowed to unblock IP addresses")

        marker = self.cache.pop_json(self.marker_key(ip_address))
        if marker is None:
            return False

        try:
            self.cache.zrem(self.index_key, f"{ip_address}|{marker.get('episode_id')}")
        except CacheUnavailableError:
            logger.warning("Could not remove block episode for %s from index", ip_address)

        security_logger.info("IP %s manually unblocked by %s: %s", ip_address, performed_by, reason)
        if self.audit_ip_blocks:
            self.audit.record(
                db,
                AuditAction.ip_unblock_manual,
                user_id=marker.get("user_id"),
                performed_by=performed_by,
                context=context,
                reason=reason,
                old_values=marker,
                new_values={
                    "action_type": AuditAction.ip_unblock_manual.value,
                    "ip_address": ip_address,
                },
            )
        return True

    def process_expired_blocks(self, db: Session) -> int:
        """Write one ``ip_unblock_auto`` row per episode whose marker expired.

        The index entry is claimed with ZREM, so of several concurrent
        sweepers only one audits a given episode.
        """
        processed = 0
        for member in self.cache.zrange_by_score(self.index_key, _epoch(self.clock())):
            ip_address, _, episode_id = member.rpartition("|")
            marker = self.cache.get_json(self.marker_key(ip_address))
            if marker is not None and marker.get("episode_id") == episode_id:
                continue
            try:
                claimed = self.cache.zrem(self.index_key, member)
            except CacheUnavailableError:
                logger.warning("Block index unavailable; stopping expired block sweep")
                break
            if not claimed:
                continue
            processed += 1
            security_logger.info("Block on IP %s expired", ip_address)
            if self.audit_ip_blocks:
                self.audit.record(
                    db,
                    AuditAction.ip_unblock_auto,
                    reason="Automatic unblock after block expiry",
                    user_id=None,
                    context=RequestContext(ip_address, None),
                    new_values={
                        "action_type": AuditAction.ip_unblock_auto.value,
                        "ip_address": ip_address,
                        "episode_id": episode_id,
                    },
                )
        if processed:
            logger.info("Processed %d expired IP blocks", processed)
        return processed

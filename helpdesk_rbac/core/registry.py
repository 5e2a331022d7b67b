"""Explicitly built component graph shared by the API, CLI and workers."""

from dataclasses import dataclass
from typing import Optional

import redis

from helpdesk_rbac.core.clock import Clock, utcnow
from helpdesk_rbac.core.config import Settings
from helpdesk_rbac.services.audit_service import AuditService
from helpdesk_rbac.services.cache_service import CacheService
from helpdesk_rbac.services.emergency_access_service import EmergencyAccessService
from helpdesk_rbac.services.hierarchy_service import HierarchyEvaluator
from helpdesk_rbac.services.notification_service import Notifier
from helpdesk_rbac.services.permission_cache import PermissionCacheService
from helpdesk_rbac.services.permission_resolver import PermissionResolver
from helpdesk_rbac.services.role_service import RoleService
from helpdesk_rbac.services.temporal_access_service import TemporalAccessService
from helpdesk_rbac.services.threat_response_service import ThreatResponseService


@dataclass
class Registry:
    settings: Settings
    clock: Clock
    cache: CacheService
    audit: AuditService
    resolver: PermissionResolver
    permissions: PermissionCacheService
    hierarchy: HierarchyEvaluator
    roles: RoleService
    temporal: TemporalAccessService
    emergency: EmergencyAccessService
    threats: ThreatResponseService
    notifier: Notifier


def build_registry(
    settings: Settings,
    redis_client: Optional[redis.Redis] = None,
    clock: Clock = utcnow,
    notifier: Optional[Notifier] = None,
) -> Registry:
    cache = CacheService(client=redis_client, url=settings.REDIS_URL)
    notifier = notifier or Notifier()
    audit = AuditService(clock=clock)
    resolver = PermissionResolver(clock=clock)
    permissions = PermissionCacheService(
        cache,
        resolver,
        prefix=settings.PERMISSION_CACHE_PREFIX,
        ttl_seconds=settings.PERMISSION_CACHE_TTL_SECONDS,
        clock=clock,
    )
    hierarchy = HierarchyEvaluator(permissions)
    roles = RoleService(permissions, hierarchy, audit, clock=clock)
    temporal = TemporalAccessService(
        roles,
        permissions,
        audit,
        max_duration_minutes=settings.TEMPORAL_MAX_DURATION_MINUTES,
        clock=clock,
    )
    emergency = EmergencyAccessService(
        cache,
        permissions,
        audit,
        notifier,
        token_prefix=settings.EMERGENCY_TOKEN_PREFIX,
        default_duration_minutes=settings.EMERGENCY_DEFAULT_DURATION_MINUTES,
        max_duration_minutes=settings.EMERGENCY_MAX_DURATION_MINUTES,
        clock=clock,
    )
    threats = ThreatResponseService(
        cache,
        permissions,
        audit,
        notifier,
        block_ttl_seconds=settings.IP_BLOCK_TTL_SECONDS,
        blocked_ip_prefix=settings.BLOCKED_IP_PREFIX,
        notification_prefix=settings.SECURITY_NOTIFICATION_PREFIX,
        notification_window_seconds=settings.SECURITY_NOTIFICATION_RATE_LIMIT_SECONDS,
        audit_ip_blocks=settings.SECURITY_AUDIT_LOG_IP_BLOCKS,
        email_alerts=settings.SECURITY_EMAIL_ALERTS,
        clock=clock,
    )
    return Registry(
        settings=settings,
        clock=clock,
        cache=cache,
        audit=audit,
        resolver=resolver,
        permissions=permissions,
        hierarchy=hierarchy,
        roles=roles,
        temporal=temporal,
        emergency=emergency,
        threats=threats,
        notifier=notifier,
    )

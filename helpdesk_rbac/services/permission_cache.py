"""
Permission cache

Memoizes resolved permission sets per user in Redis. Entries are tagged
rather than swept: every entry remembers the version of each tag it was
built from (the global tag, its user tag, one tag per contributing role)
and is only served while all of those versions are unchanged. Bumping a
tag invalidates every entry built from it without enumerating keys.

Tag versions are read before the entity store is queried, so an entry
computed concurrently with a mutation is stored under the old version and
never served.
"""
import logging
import math
import time
import uuid
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from helpdesk_rbac.core.clock import Clock, utcnow
from helpdesk_rbac.core.exceptions import CacheUnavailableError
from helpdesk_rbac.db.filters import assignment_expired_at
from helpdesk_rbac.models.emergency_access import EmergencyAccess
from helpdesk_rbac.models.role import Role
from helpdesk_rbac.models.role_assignment import RoleAssignment
from helpdesk_rbac.models.user import User
from helpdesk_rbac.services.cache_service import CacheService
from helpdesk_rbac.services.permission_resolver import (
    PermissionResolver,
    ResolvedPermissions,
    has_all_permissions,
    has_any_permission,
    has_permission,
)

logger = logging.getLogger(__name__)

GLOBAL_TAG = "permissions"


def user_tag(user_id: int) -> str:
    return f"user:{user_id}"


def role_tag(role_id: int) -> str:
    return f"role:{role_id}"


class PermissionCacheService:
    """Cached front of the permission resolver."""

    def __init__(
        self,
        cache: CacheService,
        resolver: PermissionResolver,
        prefix: str = "rbac:",
        ttl_seconds: int = 3600,
        clock: Clock = utcnow,
    ):
        self.cache = cache
        self.resolver = resolver
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.hits = 0
        self.misses = 0
        self.fallbacks = 0

    # Keys

    def entry_key(self, user_id: int) -> str:
        return f"{self.prefix}user:{user_id}:permissions"

    def tag_key(self, tag: str) -> str:
        return f"{self.prefix}tag:{tag}"

    # Tag versions

    def _current_versions(self, tags: list[str]) -> dict[str, Optional[str]]:
        values = self.cache.mget([self.tag_key(t) for t in tags])
        return dict(zip(tags, values))

    def _ensure_versions(self, tags: list[str]) -> dict[str, str]:
        """Current version of every tag, creating missing ones.

        Raises CacheUnavailableError when Redis cannot be reached.
        """
        versions = self._current_versions(tags)
        for tag, version in versions.items():
            if version is not None:
                continue
            token = uuid.uuid4().hex
            if self.cache.add(self.tag_key(tag), token, None):
                versions[tag] = token
            else:
                versions[tag] = self.cache.get(self.tag_key(tag))
            if versions[tag] is None:
                raise CacheUnavailableError("Permission cache tags unavailable")
        return versions

    def _bump(self, tag: str) -> None:
        self.cache.set(self.tag_key(tag), uuid.uuid4().hex, None)

    # Entries

    def _fresh(self, entry: dict) -> Optional[ResolvedPermissions]:
        tags = entry.get("tags") or {}
        if not tags:
            return None
        resolved = ResolvedPermissions.from_dict(entry.get("data") or {})
        if resolved.valid_until is not None and resolved.valid_until <= self.clock():
            return None
        current = self._current_versions(list(tags))
        if any(current[t] is None or current[t] != v for t, v in tags.items()):
            return None
        return resolved

    def _store(self, user_id: int, resolved: ResolvedPermissions, snapshot: dict[str, str]) -> None:
        ttl = self.ttl_seconds
        if resolved.valid_until is not None:
            remaining = (resolved.valid_until - self.clock()).total_seconds()
            if remaining <= 0:
                return
            ttl = min(ttl, math.ceil(remaining))
        tags = [GLOBAL_TAG, user_tag(user_id)] + [role_tag(r) for r in resolved.role_ids]
        entry = {
            "data": resolved.to_dict(),
            "tags": {t: snapshot[t] for t in tags if t in snapshot},
        }
        self.cache.set_json(self.entry_key(user_id), entry, ttl)

    def load(self, db: Session, user_id: int) -> ResolvedPermissions:
        """Cached resolution; falls back to the entity store on any cache failure."""
        entry = self.cache.get_json(self.entry_key(user_id))
        if entry is not None:
            resolved = self._fresh(entry)
            if resolved is not None:
                self.hits += 1
                return resolved
        self.misses += 1

        role_ids = [row[0] for row in db.query(Role.id).all()]
        tags = [GLOBAL_TAG, user_tag(user_id)] + [role_tag(r) for r in role_ids]
        try:
            snapshot = self._ensure_versions(tags)
        except CacheUnavailableError:
            self.fallbacks += 1
            logger.warning("Permission cache unavailable, resolving user %s from database", user_id)
            return self.resolver.resolve_detailed(db, user_id)

        resolved = self.resolver.resolve_detailed(db, user_id)
        self._store(user_id, resolved, snapshot)
        return resolved

    # Queries

    def get_user_permissions(self, db: Session, user_id: int) -> frozenset:
        return self.load(db, user_id).permissions

    def get_user_roles(self, db: Session, user_id: int) -> list[str]:
        return list(self.load(db, user_id).roles)

    def get_max_rank(self, db: Session, user_id: int) -> int:
        return self.load(db, user_id).max_rank

    def user_has_permission(self, db: Session, user_id: int, permission: str) -> bool:
        return has_permission(self.get_user_permissions(db, user_id), permission)

    def user_has_any_permission(self, db: Session, user_id: int, permissions: Iterable[str]) -> bool:
        return has_any_permission(self.get_user_permissions(db, user_id), permissions)

    def user_has_all_permissions(self, db: Session, user_id: int, permissions: Iterable[str]) -> bool:
        return has_all_permissions(self.get_user_permissions(db, user_id), permissions)

    def user_has_role(self, db: Session, user_id: int, role_name: str) -> bool:
        return role_name in self.load(db, user_id).roles

    def user_has_any_role(self, db: Session, user_id: int, role_names: Iterable[str]) -> bool:
        roles = set(self.load(db, user_id).roles)
        return any(name in roles for name in role_names)

    # Invalidation

    def invalidate_user(self, user_id: int) -> None:
        self.cache.delete(self.entry_key(user_id))
        self._bump(user_tag(user_id))
        logger.debug("Invalidated permission cache for user %s", user_id)

    def invalidate_users(self, user_ids: Iterable[int]) -> None:
        for user_id in set(user_ids):
            self.invalidate_user(user_id)

    def invalidate_role(self, role_id: int) -> None:
        """Every user whose entry was built from this role."""
        self._bump(role_tag(role_id))
        logger.debug("Invalidated permission cache for role %s", role_id)

    def invalidate_all(self) -> None:
        self._bump(GLOBAL_TAG)
        logger.info("Invalidated all cached permissions")

    # Warming and monitoring

    def warm_user(self, db: Session, user_id: int) -> int:
        """Load a user's entry; returns the number of permissions cached."""
        return len(self.load(db, user_id).permissions)

    def warm_batch(
        self, db: Session, user_ids: Optional[list[int]] = None, batch_size: int = 100,
    ) -> int:
        """Warm the given users, or every active user in batches."""
        if user_ids is not None:
            for user_id in user_ids:
                self.warm_user(db, user_id)
            return len(user_ids)

        warmed = 0
        last_id = 0
        while True:
            batch = [
                row[0]
                for row in db.query(User.id)
                .filter(User.is_active.is_(True), User.id > last_id)
                .order_by(User.id.asc())
                .limit(batch_size)
                .all()
            ]
            if not batch:
                break
            for user_id in batch:
                self.warm_user(db, user_id)
            warmed += len(batch)
            last_id = batch[-1]
        logger.info("Warmed permission cache for %d users", warmed)
        return warmed

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "fallbacks": self.fallbacks,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            "cache_available": self.cache.health_check(),
        }

    def health_check(self, db: Session) -> dict:
        """Cache round trip plus consistency checks on the entity store."""
        now = self.clock()
        issues: list[str] = []

        started = time.perf_counter()
        health_key = f"{self.prefix}health:{uuid.uuid4().hex}"
        self.cache.set(health_key, "ok", 10)
        round_trip_ok = self.cache.get(health_key) == "ok"
        self.cache.delete(health_key)
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        if not round_trip_ok:
            issues.append("Cache round trip failed")

        duplicates = (
            db.query(Role.name)
            .group_by(Role.name)
            .having(func.count(Role.id) > 1)
            .all()
        )
        if duplicates:
            issues.append(f"Duplicate role names: {', '.join(r[0] for r in duplicates)}")

        expired_active = db.query(RoleAssignment).filter(assignment_expired_at(now)).count()
        if expired_active:
            issues.append(f"{expired_active} expired assignments still flagged active")

        orphaned = (
            db.query(RoleAssignment)
            .outerjoin(User, User.id == RoleAssignment.user_id)
            .outerjoin(Role, Role.id == RoleAssignment.role_id)
            .filter((User.id.is_(None)) | (Role.id.is_(None)))
            .count()
        )
        if orphaned:
            issues.append(f"{orphaned} assignments reference missing users or roles")

        active_emergency = (
            db.query(EmergencyAccess)
            .filter(EmergencyAccess.is_active.is_(True), EmergencyAccess.expires_at > now)
            .count()
        )

        return {
            "healthy": not issues,
            "issues": issues,
            "cache_round_trip_ok": round_trip_ok,
            "cache_latency_ms": latency_ms,
            "expired_active_assignments": expired_active,
            "orphaned_assignments": orphaned,
            "active_emergency_grants": active_emergency,
            "stats": self.stats(),
        }

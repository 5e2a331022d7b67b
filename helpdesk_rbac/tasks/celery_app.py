"""Celery app and tasks for notification delivery and expiry sweeps."""

from celery import Celery
from helpdesk_rbac.core.config import settings

celery_app = Celery(
    "helpdesk_rbac",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_soft_time_limit=60,
    task_time_limit=120,
    beat_schedule={
        "sweep-expired-grants": {
            "task": "sweep_expired_grants",
            "schedule": 60.0,
        },
    },
)


@celery_app.task(name="deliver_security_notification")
def deliver_security_notification(recipient_id: int, kind: str, payload: dict) -> None:
    """Publish a security notification on the recipient's Redis channel.

    Mail and in-app delivery subscribe to ``security_notifications:<id>``.
    """
    from helpdesk_rbac.services.cache_service import CacheService
    import json

    cache = CacheService(url=settings.REDIS_URL)
    cache.publish(
        f"security_notifications:{recipient_id}",
        json.dumps({"kind": kind, "recipient_id": recipient_id, "payload": payload}),
    )


@celery_app.task(name="sweep_expired_grants")
def sweep_expired_grants() -> dict:
    """Deactivate lapsed temporal and emergency grants and audit expired IP blocks."""
    from helpdesk_rbac.core.registry import build_registry
    from helpdesk_rbac.db.session import SessionLocal

    registry = build_registry(settings)
    db = SessionLocal()
    try:
        return {
            "temporal_roles": registry.temporal.cleanup_expired(db),
            "emergency_access": registry.emergency.cleanup_expired(db),
            "ip_blocks": registry.threats.process_expired_blocks(db),
        }
    finally:
        db.close()

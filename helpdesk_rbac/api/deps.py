"""Shared FastAPI dependencies for the authorization routers."""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from helpdesk_rbac.core.exceptions import forbidden
from helpdesk_rbac.core.rate_limit import get_client_ip
from helpdesk_rbac.core.registry import Registry
from helpdesk_rbac.core.security import get_current_user_id
from helpdesk_rbac.db.session import get_db
from helpdesk_rbac.services.audit_service import RequestContext


def get_registry(request: Request) -> Registry:
    return request.app.state.registry


def get_request_context(request: Request) -> RequestContext:
    return RequestContext.from_request(request)


def require_permission(permission: str):
    """Dependency factory: the caller must hold ``permission``."""

    async def checker(
        user_id: int = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        registry: Registry = Depends(get_registry),
    ) -> int:
        if not registry.permissions.user_has_permission(db, user_id, permission):
            raise forbidden("Insufficient permissions")
        return user_id

    return checker


async def reject_blocked_ip(request: Request, registry: Registry = Depends(get_registry)) -> None:
    if registry.threats.is_ip_blocked(get_client_ip(request)):
        raise forbidden("Access from this address is temporarily blocked")

"""Security API router — blocked IP dashboard and manual unblock."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from helpdesk_rbac.api.deps import get_registry, get_request_context, require_permission
from helpdesk_rbac.core.exceptions import not_found
from helpdesk_rbac.core.registry import Registry
from helpdesk_rbac.core.security import get_current_user_id
from helpdesk_rbac.db.session import get_db
from helpdesk_rbac.schemas.schemas import BlockedIpOut, MessageResponse, UnblockIpRequest
from helpdesk_rbac.services.audit_service import RequestContext

router = APIRouter(prefix="/security", tags=["security"])


@router.get("/blocked-ips", response_model=list[BlockedIpOut])
async def list_blocked_ips(
    user_id: int = Depends(require_permission("security.view")),
    registry: Registry = Depends(get_registry),
):
    return registry.threats.list_blocked_ips()


@router.get("/blocked-ips/{ip_address}", response_model=BlockedIpOut)
async def blocked_ip_info(
    ip_address: str,
    user_id: int = Depends(require_permission("security.view")),
    registry: Registry = Depends(get_registry),
):
    info = registry.threats.get_blocked_ip_info(ip_address)
    if info is None:
        raise not_found("IP address is not blocked")
    return info


@router.post("/blocked-ips/{ip_address}/unblock", response_model=MessageResponse)
async def unblock_ip(
    ip_address: str,
    body: UnblockIpRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
    context: RequestContext = Depends(get_request_context),
):
    if not registry.threats.unblock_ip(db, ip_address, user_id, body.reason, context=context):
        return MessageResponse(message="IP address was not blocked", success=False)
    return MessageResponse(message=f"IP address {ip_address} unblocked")

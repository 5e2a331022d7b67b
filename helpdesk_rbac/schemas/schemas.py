"""Pydantic schemas for API request/response serialization."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


# ---- Permissions ----
class PermissionOut(BaseModel):
    id: int
    name: str
    display_name: Optional[str] = None
    resource: str
    action: str
    is_active: bool

    class Config:
        from_attributes = True

class PermissionToggleRequest(BaseModel):
    is_active: bool

class UserPermissionsOut(BaseModel):
    user_id: int
    roles: List[str]
    permissions: List[str]

class PermissionCheckRequest(BaseModel):
    permissions: List[str] = Field(..., min_length=1)
    mode: str = Field("any", pattern="^(any|all)$")

class PermissionCheckOut(BaseModel):
    user_id: int
    allowed: bool


# ---- Roles ----
class RoleOut(BaseModel):
    id: int
    name: str
    display_name: str
    description: Optional[str] = None
    hierarchy_level: int
    is_active: bool
    is_system: bool
    permissions: List[str] = []

class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    hierarchy_level: int = Field(..., ge=1)
    display_name: Optional[str] = None
    description: Optional[str] = None
    permission_ids: List[int] = []

class RoleUpdate(BaseModel):
    display_name: Optional[str] = None
    description: Optional[str] = None
    hierarchy_level: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None

class RolePermissionRequest(BaseModel):
    granted: bool


# ---- Assignments ----
class AssignRoleRequest(BaseModel):
    role_id: int
    reason: Optional[str] = Field(None, max_length=500)
    expires_at: Optional[datetime] = None

class RevokeRoleRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class RoleAssignmentOut(BaseModel):
    id: int
    user_id: int
    role_id: int
    role_name: Optional[str] = None
    granted_by: Optional[int] = None
    granted_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool
    delegation_reason: Optional[str] = None


# ---- Temporal access ----
class TemporaryRoleRequest(BaseModel):
    user_id: int
    role_id: int
    duration_minutes: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)

class ExtendRoleRequest(BaseModel):
    user_id: int
    role_id: int
    additional_minutes: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)

class RevokeTemporaryRoleRequest(BaseModel):
    user_id: int
    role_id: int
    reason: str = Field(..., min_length=1, max_length=500)


# ---- Emergency access ----
class EmergencyGrantRequest(BaseModel):
    user_id: int
    permissions: List[str] = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)
    duration_minutes: Optional[int] = Field(None, gt=0)

class EmergencyAccessOut(BaseModel):
    id: int
    user_id: int
    permissions: List[str]
    reason: str
    granted_by: Optional[int] = None
    granted_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    is_active: bool
    state: str

class EmergencyGrantOut(BaseModel):
    access: EmergencyAccessOut
    token: str

class EmergencyRedeemRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)

class EmergencyRedeemOut(BaseModel):
    user_id: int
    access_token: str
    token_type: str = "bearer"
    permissions: List[str]
    expires_at: datetime

class EmergencyRevokeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


# ---- Security ----
class BlockedIpOut(BaseModel):
    ip_address: str
    reason: Optional[str] = None
    event_type: Optional[str] = None
    user_id: Optional[int] = None
    security_log_id: Optional[int] = None
    blocked_at: Optional[str] = None
    blocked_until: Optional[str] = None
    ttl_seconds: Optional[int] = None

class UnblockIpRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


# ---- Audit ----
class PermissionAuditOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    role_id: Optional[int] = None
    permission_id: Optional[int] = None
    action: str
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    performed_by: Optional[int] = None
    reason: Optional[str] = None
    created_at: datetime


# ---- Generic ----
class MessageResponse(BaseModel):
    message: str
    success: bool = True

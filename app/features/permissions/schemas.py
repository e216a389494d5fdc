"""
Pydantic schemas for permission management.

Request and response models for permissions, roles, role groups, and
full-replace assignments.
"""
import re
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


NAME_RE = re.compile(r"^[a-z0-9-]+$")


def _check_name(v: str) -> str:
    v = v.strip()
    if not NAME_RE.match(v):
        raise ValueError("Name must contain only lowercase letters, numbers, and dashes")
    return v


def _check_tokens(v: List[str]) -> List[str]:
    tokens = [item.strip() for item in v if item and item.strip()]
    if not tokens:
        raise ValueError("At least one value is required")
    return list(dict.fromkeys(tokens))


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique permission name, e.g. 'account-write'")
    description: str = Field(..., min_length=1, max_length=1000, description="Permission description")
    resources: List[str] = Field(..., description="Resources this permission covers (e.g., ['account'])")
    actions: List[str] = Field(..., description="Actions this permission allows (e.g., ['read', 'write'])")
    category: Optional[str] = Field(None, max_length=100, description="Optional grouping for display")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""

    @field_validator('name')
    @classmethod
    def name_token(cls, v: str) -> str:
        return _check_name(v)

    @field_validator('resources', 'actions')
    @classmethod
    def non_empty(cls, v: List[str]) -> List[str]:
        return _check_tokens(v)


class PermissionUpdate(BaseModel):
    """Schema for updating a permission. The name cannot change."""
    description: Optional[str] = Field(None, min_length=1, max_length=1000)
    resources: Optional[List[str]] = None
    actions: Optional[List[str]] = None
    category: Optional[str] = Field(None, max_length=100)

    @field_validator('resources', 'actions')
    @classmethod
    def non_empty(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return None if v is None else _check_tokens(v)


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PermissionHolder(BaseModel):
    """A user holding a permission, and how."""
    user_id: str
    email: str
    name: str
    direct: bool
    via_roles: List[str] = []


# ============================================================================
# Role Group Schemas
# ============================================================================

class RoleGroupBase(BaseModel):
    """Base role group schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique group name")
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class RoleGroupCreate(RoleGroupBase):
    """
    Schema for creating a role group.

    A new group has no roles yet, so ``requires_one`` can only be switched on
    afterwards with an update naming one of its roles as the default.
    """
    requires_one: bool = False
    default_role_id: Optional[str] = None

    @field_validator('name')
    @classmethod
    def name_token(cls, v: str) -> str:
        return _check_name(v)


class RoleGroupUpdate(BaseModel):
    """Schema for updating a role group. An empty ``default_role_id`` clears it."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    requires_one: Optional[bool] = None
    default_role_id: Optional[str] = None

    @field_validator('requires_one')
    @classmethod
    def requires_one_not_null(cls, v: Optional[bool]) -> bool:
        # Omit the field to leave it unchanged
        if v is None:
            raise ValueError("requires_one must be true or false")
        return v


class RoleGroupResponse(RoleGroupBase):
    """Schema for role group response."""
    id: str
    requires_one: bool
    default_role_id: Optional[str]
    is_system: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique role name")
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    group_id: str = Field(..., description="Role group the role belongs to")
    permission_ids: List[str] = Field(default_factory=list)

    @field_validator('name')
    @classmethod
    def name_token(cls, v: str) -> str:
        return _check_name(v)


class RoleUpdate(BaseModel):
    """Schema for updating a role. ``permission_ids`` replaces the whole set."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    group_id: Optional[str] = None
    permission_ids: Optional[List[str]] = None


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    group_id: str
    is_system: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleListItem(RoleResponse):
    """Schema for a role in a listing."""
    permissions_count: int = 0


class RoleWithPermissions(RoleResponse):
    """Schema for role with its permissions and group."""
    group: RoleGroupResponse
    permissions: List[PermissionResponse] = []


# ============================================================================
# Assignment Schemas
# ============================================================================

class SetPermissionsRequest(BaseModel):
    """Full replacement of a permission-id set."""
    permission_ids: List[str]


class SetRolesRequest(BaseModel):
    """Full replacement of a role-id set."""
    role_ids: List[str]


class ReconcileResponse(BaseModel):
    """Ids added and removed by a full-replace assignment."""
    added: List[str]
    removed: List[str]


# ============================================================================
# Effective Permission Schemas
# ============================================================================

class EffectivePermissionResponse(BaseModel):
    """A permission the user holds, with its provenance."""
    id: str
    name: str
    description: str
    resources: List[str]
    actions: List[str]
    category: Optional[str]
    direct: bool
    via_roles: List[str]


class PermissionCheckRequest(BaseModel):
    """Schema for checking if a user has permission."""
    resource: str = Field(..., min_length=1, description="Resource to check access to")
    action: str = Field(..., min_length=1, description="Action to perform")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    reason: Optional[str] = None


class BulkResolveRequest(BaseModel):
    """Users to resolve in one call."""
    user_ids: List[str] = Field(..., min_length=1)

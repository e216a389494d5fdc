"""
Permission management API routes.

Provides endpoints for managing permissions, roles, role groups, and the
role-to-permission assignment.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Response, status

from app.features.permissions.dependencies import get_authorization_service
from app.features.permissions.models import Role
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    PermissionHolder,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    RoleListItem,
    RoleWithPermissions,
    RoleGroupCreate,
    RoleGroupUpdate,
    RoleGroupResponse,
    SetPermissionsRequest,
    ReconcileResponse,
)
from app.features.permissions.service import DEFAULT_PAGE_SIZE, AuthorizationService, page_window
from app.features.users.schemas import UserResponse


router = APIRouter()


async def _role_detail(service: AuthorizationService, role: Role) -> RoleWithPermissions:
    permissions = await service.get_role_permissions(role.id)
    return RoleWithPermissions(
        **RoleResponse.model_validate(role).model_dump(),
        group=RoleGroupResponse.model_validate(role.group),
        permissions=[PermissionResponse.model_validate(p) for p in permissions],
    )


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Create a new permission."""
    return await service.create_permission(**permission.model_dump())


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    response: Response,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    category: Optional[str] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """
    List permissions by name with optional filtering.

    ``page`` is 1-based; ``limit`` is capped at 100. The unpaged total is
    returned in the X-Total-Count header.
    """
    skip, limit = page_window(page, limit)
    filters = {"resource": resource, "action": action, "category": category}
    response.headers["X-Total-Count"] = str(await service.count_permissions(**filters))
    return await service.list_permissions(**filters, skip=skip, limit=limit)


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Get a specific permission by ID."""
    return await service.get_permission(permission_id)


@router.patch("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Update a permission's description, resources, actions or category."""
    return await service.update_permission(permission_id, permission_update.model_dump(exclude_unset=True))


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Delete a permission and remove it from every role and user."""
    await service.delete_permission(permission_id)


@router.get("/permissions/{permission_id}/users", response_model=List[PermissionHolder])
async def get_permission_users(
    permission_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Get users holding a permission directly or through a role."""
    holders = await service.users_with_permission(permission_id)
    return [
        PermissionHolder(
            user_id=user.id,
            email=user.email,
            name=user.name,
            direct=direct,
            via_roles=sorted(via_roles),
        )
        for user, direct, via_roles in holders
    ]


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleWithPermissions, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Create a new role in an existing group."""
    created = await service.create_role(**role.model_dump())
    return await _role_detail(service, created)


@router.get("/roles", response_model=List[RoleListItem])
async def list_roles(
    response: Response,
    group_id: Optional[str] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """List roles with their permission counts, one page at a time."""
    skip, limit = page_window(page, limit)
    response.headers["X-Total-Count"] = str(await service.count_roles(group_id=group_id))
    return [
        RoleListItem(**RoleResponse.model_validate(role).model_dump(), permissions_count=count)
        for role, count in await service.list_roles(group_id=group_id, skip=skip, limit=limit)
    ]


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Get a role with its permissions and group."""
    return await _role_detail(service, await service.get_role(role_id))


@router.patch("/roles/{role_id}", response_model=RoleWithPermissions)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Update a role. ``permission_ids``, when given, replaces the whole set."""
    role, _ = await service.update_role(role_id, role_update.model_dump(exclude_unset=True))
    return await _role_detail(service, role)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Delete a role and remove it from every user."""
    await service.delete_role(role_id)


@router.put("/roles/{role_id}/permissions", response_model=ReconcileResponse)
async def set_role_permissions(
    role_id: str,
    assignment: SetPermissionsRequest,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Replace a role's permission set."""
    result = await service.set_role_permissions(role_id, assignment.permission_ids)
    return result.to_dict()


@router.get("/roles/{role_id}/users", response_model=List[UserResponse])
async def get_role_users(
    role_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Get all users holding a role."""
    return await service.users_with_role(role_id)


# ============================================================================
# Role Group Routes
# ============================================================================

@router.post("/role-groups", response_model=RoleGroupResponse, status_code=status.HTTP_201_CREATED)
async def create_role_group(
    group: RoleGroupCreate,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Create a new role group."""
    return await service.create_role_group(**group.model_dump())


@router.get("/role-groups", response_model=List[RoleGroupResponse])
async def list_role_groups(
    service: AuthorizationService = Depends(get_authorization_service),
):
    """List all role groups."""
    return await service.list_role_groups()


@router.get("/role-groups/{group_id}", response_model=RoleGroupResponse)
async def get_role_group(
    group_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Get a specific role group by ID."""
    return await service.get_role_group(group_id)


@router.patch("/role-groups/{group_id}", response_model=RoleGroupResponse)
async def update_role_group(
    group_id: str,
    group_update: RoleGroupUpdate,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Update a role group; requiring a role repairs every user's membership."""
    return await service.update_role_group(group_id, group_update.model_dump(exclude_unset=True))


@router.delete("/role-groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role_group(
    group_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Delete an empty, non-system role group."""
    await service.delete_role_group(group_id)

"""
User feature routes.

Users' role sets and direct permissions are only ever replaced wholesale;
there are no add-one/remove-one endpoints.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, status

from app.features.permissions.dependencies import get_authorization_service
from app.features.permissions.resolver import EffectivePermission
from app.features.permissions.schemas import (
    BulkResolveRequest,
    EffectivePermissionResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionResponse,
    ReconcileResponse,
    RoleResponse,
    SetPermissionsRequest,
    SetRolesRequest,
)
from app.features.permissions.service import AuthorizationService
from app.features.users.schemas import UserCreate, UserCreated, UserResponse


router = APIRouter(tags=["users"])

Service = Annotated[AuthorizationService, Depends(get_authorization_service)]


def _effective_response(entry: EffectivePermission) -> EffectivePermissionResponse:
    permission = entry.permission
    return EffectivePermissionResponse(
        id=permission.id,
        name=permission.name,
        description=permission.description,
        resources=permission.resources,
        actions=permission.actions,
        category=permission.category,
        direct=entry.direct,
        via_roles=sorted(entry.via_roles),
    )


@router.post("/", response_model=UserCreated, status_code=status.HTTP_201_CREATED)
async def create_user(user: UserCreate, service: Service):
    """Create a user. Required role groups hand out their default roles."""
    created, assigned = await service.create_user(email=user.email, name=user.name)
    return UserCreated(**UserResponse.model_validate(created).model_dump(), assigned_role_ids=assigned)


@router.get("/", response_model=list[UserResponse])
async def list_users(service: Service, skip: int = 0, limit: int = 50):
    """List users ordered by email."""
    return await service.list_users(skip=skip, limit=limit)


@router.post("/permissions/effective", response_model=dict[str, list[EffectivePermissionResponse]])
async def resolve_users_effective_permissions(request: BulkResolveRequest, service: Service):
    """Resolve effective permissions for several users in parallel."""
    resolved = await service.resolve_users(request.user_ids)
    return {
        user_id: [_effective_response(entry) for entry in sorted(entries, key=lambda e: e.permission.name)]
        for user_id, entries in resolved.items()
    }


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_by_id(user_id: str, service: Service):
    """Get a user by ID."""
    return await service.get_user(user_id)


@router.get("/{user_id}/roles", response_model=list[RoleResponse])
async def get_user_roles(user_id: str, service: Service):
    """Get the roles a user holds."""
    return await service.get_user_roles(user_id)


@router.put("/{user_id}/roles", response_model=ReconcileResponse)
async def set_user_roles(user_id: str, assignment: SetRolesRequest, service: Service):
    """Replace a user's role set; required groups fall back to their default role."""
    result = await service.set_user_roles(user_id, assignment.role_ids)
    return result.to_dict()


@router.get("/{user_id}/permissions", response_model=list[PermissionResponse])
async def get_user_direct_permissions(user_id: str, service: Service):
    """Get the permissions granted directly to a user."""
    return await service.get_user_direct_permissions(user_id)


@router.put("/{user_id}/permissions", response_model=ReconcileResponse)
async def set_user_direct_permissions(user_id: str, assignment: SetPermissionsRequest, service: Service):
    """Replace a user's direct permission set."""
    result = await service.set_user_direct_permissions(user_id, assignment.permission_ids)
    return result.to_dict()


@router.get("/{user_id}/permissions/effective", response_model=list[EffectivePermissionResponse])
async def get_user_effective_permissions(user_id: str, service: Service):
    """Get a user's effective permissions with provenance, sorted by name."""
    return [_effective_response(entry) for entry in await service.effective_permissions_for_display(user_id)]


@router.post("/{user_id}/permissions/check", response_model=PermissionCheckResponse)
async def check_user_permission(user_id: str, check: PermissionCheckRequest, service: Service):
    """Check whether a user may perform an action on a resource."""
    allowed, reason = await service.check_permission(user_id, check.resource, check.action)
    return PermissionCheckResponse(has_permission=allowed, reason=reason)

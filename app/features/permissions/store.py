"""
Keyed stores for permissions, roles, role groups and user assignments.

Stores own the SQL. They enforce name uniqueness and existence, and expose
assignment sets as plain ``set[str]`` of canonical ULID ids. Group
invariants and reconciliation live in invariants.py and reconciler.py;
stores never call them.
"""
from collections.abc import Iterable
from typing import Any, Dict, List, Optional, Set
from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, NotFoundError
from app.features.permissions.models import (
    Permission,
    Role,
    RoleGroup,
    role_permissions,
    user_permissions,
    user_roles,
)
from app.features.users.models import User


def _apply_updates(record: Any, updates: Dict[str, Any]) -> None:
    for key, value in updates.items():
        setattr(record, key, value)


# ============================================================================
# Permission Catalog
# ============================================================================

class PermissionCatalog:
    """Permission records, looked up by id or name."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, permission_id: str) -> Permission:
        permission = await self.db.get(Permission, permission_id)
        if permission is None:
            raise NotFoundError(f"Permission '{permission_id}' not found")
        return permission

    async def get_many(self, permission_ids: Iterable[str]) -> Dict[str, Permission]:
        """Return the subset of ``permission_ids`` that exist, keyed by id."""
        ids = set(permission_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(Permission).where(Permission.id.in_(ids)))
        return {permission.id: permission for permission in result.scalars().all()}

    async def require_all(self, permission_ids: Iterable[str]) -> Dict[str, Permission]:
        """Like get_many, but raise NotFoundError naming the first missing id."""
        ids = set(permission_ids)
        found = await self.get_many(ids)
        missing = sorted(ids - set(found))
        if missing:
            raise NotFoundError(
                f"One or more permissions do not exist: {', '.join(missing)}",
                title="Permission not found",
            )
        return found

    async def find_by_name(self, name: str) -> Optional[Permission]:
        result = await self.db.execute(select(Permission).where(Permission.name == name))
        return result.scalars().first()

    async def list(
        self,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        category: Optional[str] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Permission]:
        stmt = select(Permission).order_by(Permission.name)
        if category:
            stmt = stmt.where(Permission.category == category)
        result = await self.db.execute(stmt)
        permissions = list(result.scalars().all())
        # resources/actions are JSON arrays, so membership filters run here
        if resource:
            permissions = [p for p in permissions if resource in p.resources]
        if action:
            permissions = [p for p in permissions if action in p.actions]
        if limit is None:
            return permissions[skip:]
        return permissions[skip:skip + limit]

    async def create(self, **fields: Any) -> Permission:
        if await self.find_by_name(fields["name"]):
            raise ConflictError(
                f"Permission with name '{fields['name']}' already exists",
                title="Permission already exists",
            )
        permission = Permission(**fields)
        self.db.add(permission)
        await self.db.flush()
        return permission

    async def update(self, permission: Permission, updates: Dict[str, Any]) -> Permission:
        _apply_updates(permission, updates)
        await self.db.flush()
        return permission

    async def delete_cascade(self, permission_id: str) -> Dict[str, int]:
        """
        Remove the permission from every role and every user, then delete it.

        All statements run in the caller's transaction; the caller commits or
        rolls back the cascade as a whole.

        Returns:
            Number of role and user references removed.
        """
        permission = await self.get(permission_id)
        role_result = await self.db.execute(
            delete(role_permissions).where(role_permissions.c.permission_id == permission_id)
        )
        user_result = await self.db.execute(
            delete(user_permissions).where(user_permissions.c.permission_id == permission_id)
        )
        await self.db.delete(permission)
        await self.db.flush()
        return {"roles": role_result.rowcount or 0, "users": user_result.rowcount or 0}


# ============================================================================
# Role Store
# ============================================================================

class RoleStore:
    """Role records and their permission-id sets."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, role_id: str) -> Role:
        role = await self.db.get(Role, role_id)
        if role is None:
            raise NotFoundError(f"Role '{role_id}' not found")
        return role

    async def get_many(self, role_ids: Iterable[str]) -> Dict[str, Role]:
        ids = set(role_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(Role).where(Role.id.in_(ids)))
        return {role.id: role for role in result.scalars().all()}

    async def require_all(self, role_ids: Iterable[str]) -> Dict[str, Role]:
        ids = set(role_ids)
        found = await self.get_many(ids)
        missing = sorted(ids - set(found))
        if missing:
            raise NotFoundError(
                f"One or more roles do not exist: {', '.join(missing)}",
                title="Role not found",
            )
        return found

    async def find_by_name(self, name: str) -> Optional[Role]:
        result = await self.db.execute(select(Role).where(Role.name == name))
        return result.scalars().first()

    async def list(self, group_id: Optional[str] = None, skip: int = 0, limit: Optional[int] = None) -> List[Role]:
        stmt = select(Role).order_by(Role.name).offset(skip)
        if group_id:
            stmt = stmt.where(Role.group_id == group_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count(self, group_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(Role)
        if group_id:
            stmt = stmt.where(Role.group_id == group_id)
        return (await self.db.execute(stmt)).scalar_one()

    async def ids_in_group(self, group_id: str) -> Set[str]:
        result = await self.db.execute(select(Role.id).where(Role.group_id == group_id))
        return set(result.scalars().all())

    async def create(self, group: RoleGroup, **fields: Any) -> Role:
        if await self.find_by_name(fields["name"]):
            raise ConflictError(
                f"Role with name '{fields['name']}' already exists",
                title="Role already exists",
            )
        role = Role(group_id=group.id, group=group, **fields)
        self.db.add(role)
        await self.db.flush()
        return role

    async def update(self, role: Role, updates: Dict[str, Any]) -> Role:
        _apply_updates(role, updates)
        await self.db.flush()
        return role

    async def delete(self, role: Role) -> None:
        await self.db.delete(role)
        await self.db.flush()

    async def permission_ids(self, role_id: str) -> Set[str]:
        result = await self.db.execute(
            select(role_permissions.c.permission_id).where(role_permissions.c.role_id == role_id)
        )
        return set(result.scalars().all())

    async def permission_ids_by_role(self, role_ids: Iterable[str]) -> Dict[str, Set[str]]:
        ids = set(role_ids)
        grants: Dict[str, Set[str]] = {role_id: set() for role_id in ids}
        if not ids:
            return grants
        result = await self.db.execute(
            select(role_permissions.c.role_id, role_permissions.c.permission_id)
            .where(role_permissions.c.role_id.in_(ids))
        )
        for role_id, permission_id in result.all():
            grants[role_id].add(permission_id)
        return grants

    async def permission_counts(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(role_permissions.c.role_id, func.count())
            .group_by(role_permissions.c.role_id)
        )
        return {role_id: count for role_id, count in result.all()}

    async def role_ids_with_permission(self, permission_id: str) -> Set[str]:
        result = await self.db.execute(
            select(role_permissions.c.role_id).where(role_permissions.c.permission_id == permission_id)
        )
        return set(result.scalars().all())

    async def add_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None:
        rows = [{"role_id": role_id, "permission_id": pid} for pid in sorted(permission_ids)]
        if rows:
            await self.db.execute(insert(role_permissions), rows)

    async def remove_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None:
        ids = set(permission_ids)
        if ids:
            await self.db.execute(
                delete(role_permissions).where(
                    role_permissions.c.role_id == role_id,
                    role_permissions.c.permission_id.in_(ids),
                )
            )


# ============================================================================
# Role Group Store
# ============================================================================

class RoleGroupStore:
    """Role group records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, group_id: str) -> RoleGroup:
        group = await self.db.get(RoleGroup, group_id)
        if group is None:
            raise NotFoundError(f"Role group '{group_id}' not found", title="Group not found")
        return group

    async def find_by_name(self, name: str) -> Optional[RoleGroup]:
        result = await self.db.execute(select(RoleGroup).where(RoleGroup.name == name))
        return result.scalars().first()

    async def list(self) -> List[RoleGroup]:
        result = await self.db.execute(select(RoleGroup).order_by(RoleGroup.name))
        return list(result.scalars().all())

    async def list_requiring_one(self) -> List[RoleGroup]:
        result = await self.db.execute(
            select(RoleGroup).where(RoleGroup.requires_one.is_(True)).order_by(RoleGroup.name)
        )
        return list(result.scalars().all())

    async def groups_defaulting_to(self, role_id: str) -> List[RoleGroup]:
        result = await self.db.execute(select(RoleGroup).where(RoleGroup.default_role_id == role_id))
        return list(result.scalars().all())

    async def create(self, **fields: Any) -> RoleGroup:
        if await self.find_by_name(fields["name"]):
            raise ConflictError(
                f"Group with name '{fields['name']}' already exists",
                title="Group already exists",
            )
        group = RoleGroup(**fields)
        self.db.add(group)
        await self.db.flush()
        return group

    async def update(self, group: RoleGroup, updates: Dict[str, Any]) -> RoleGroup:
        _apply_updates(group, updates)
        await self.db.flush()
        return group

    async def delete(self, group: RoleGroup) -> None:
        await self.db.delete(group)
        await self.db.flush()


# ============================================================================
# User Assignment Store
# ============================================================================

class UserAssignmentStore:
    """Users plus their role-id and direct-permission-id sets."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User '{user_id}' not found")
        return user

    async def find_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalars().first()

    async def list(self, skip: int = 0, limit: int = 100) -> List[User]:
        result = await self.db.execute(select(User).order_by(User.email).offset(skip).limit(limit))
        return list(result.scalars().all())

    async def all_ids(self) -> List[str]:
        result = await self.db.execute(select(User.id).order_by(User.id))
        return list(result.scalars().all())

    async def create(self, **fields: Any) -> User:
        if await self.find_by_email(fields["email"]):
            raise ConflictError(
                f"User with email '{fields['email']}' already exists",
                title="User already exists",
            )
        user = User(**fields)
        self.db.add(user)
        await self.db.flush()
        return user

    async def role_ids(self, user_id: str) -> Set[str]:
        result = await self.db.execute(
            select(user_roles.c.role_id).where(user_roles.c.user_id == user_id)
        )
        return set(result.scalars().all())

    async def direct_permission_ids(self, user_id: str) -> Set[str]:
        result = await self.db.execute(
            select(user_permissions.c.permission_id).where(user_permissions.c.user_id == user_id)
        )
        return set(result.scalars().all())

    async def user_ids_with_role(self, role_id: str) -> Set[str]:
        result = await self.db.execute(
            select(user_roles.c.user_id).where(user_roles.c.role_id == role_id)
        )
        return set(result.scalars().all())

    async def user_ids_with_roles(self, role_ids: Iterable[str]) -> Set[str]:
        ids = set(role_ids)
        if not ids:
            return set()
        result = await self.db.execute(
            select(user_roles.c.user_id).where(user_roles.c.role_id.in_(ids))
        )
        return set(result.scalars().all())

    async def user_ids_with_direct_permission(self, permission_id: str) -> Set[str]:
        result = await self.db.execute(
            select(user_permissions.c.user_id).where(user_permissions.c.permission_id == permission_id)
        )
        return set(result.scalars().all())

    async def get_many(self, user_ids: Iterable[str]) -> List[User]:
        ids = set(user_ids)
        if not ids:
            return []
        result = await self.db.execute(select(User).where(User.id.in_(ids)).order_by(User.email))
        return list(result.scalars().all())

    async def add_roles(self, user_id: str, role_ids: Iterable[str]) -> None:
        rows = [{"user_id": user_id, "role_id": rid} for rid in sorted(role_ids)]
        if rows:
            await self.db.execute(insert(user_roles), rows)

    async def remove_roles(self, user_id: str, role_ids: Iterable[str]) -> None:
        ids = set(role_ids)
        if ids:
            await self.db.execute(
                delete(user_roles).where(
                    user_roles.c.user_id == user_id,
                    user_roles.c.role_id.in_(ids),
                )
            )

    async def remove_role_from_all(self, role_id: str) -> int:
        result = await self.db.execute(delete(user_roles).where(user_roles.c.role_id == role_id))
        return result.rowcount or 0

    async def add_permissions(self, user_id: str, permission_ids: Iterable[str]) -> None:
        rows = [{"user_id": user_id, "permission_id": pid} for pid in sorted(permission_ids)]
        if rows:
            await self.db.execute(insert(user_permissions), rows)

    async def remove_permissions(self, user_id: str, permission_ids: Iterable[str]) -> None:
        ids = set(permission_ids)
        if ids:
            await self.db.execute(
                delete(user_permissions).where(
                    user_permissions.c.user_id == user_id,
                    user_permissions.c.permission_id.in_(ids),
                )
            )

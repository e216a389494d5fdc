"""
Authorization service.

The single entry point the admin API (and scripts) use to read and mutate
authorization state. Every mutation:

1. validates its input before touching the store,
2. holds the per-entity locks of everything it reads-then-writes,
3. commits inside those locks, rolling back on any failure.
"""
import re
from collections.abc import AsyncIterator, Awaitable, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.features.permissions.invariants import GroupInvariantEnforcer
from app.features.permissions.locks import EntityLockRegistry, LockKey, entity_locks
from app.features.permissions.models import Permission, Role, RoleGroup
from app.features.permissions.reconciler import (
    ROLE_PERMISSIONS,
    USER_PERMISSIONS,
    USER_ROLES,
    AssignmentReconciler,
    ReconcileResult,
    canonical_ids,
)
from app.features.permissions.resolver import (
    EffectivePermission,
    grants,
    resolve_many,
    resolve_user,
    sort_for_display,
)
from app.features.permissions.store import (
    PermissionCatalog,
    RoleGroupStore,
    RoleStore,
    UserAssignmentStore,
)
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def page_window(page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Tuple[int, int]:
    """Clamp a 1-based ``page`` and a page size to (offset, limit)."""
    limit = min(MAX_PAGE_SIZE, max(1, limit))
    return (max(1, page) - 1) * limit, limit


def validate_name(name: Optional[str], label: str = "Name") -> str:
    """Strip ``name`` and check it is a lowercase alphanumeric-with-dashes token."""
    value = (name or "").strip()
    if not value:
        raise ValidationError(f"{label} is required")
    if not NAME_PATTERN.match(value):
        raise ValidationError(
            f"{label} must contain only lowercase letters, numbers, and dashes",
            title="Invalid name",
        )
    return value


def validate_tokens(values: Optional[Iterable[str]], label: str) -> List[str]:
    """Normalize a resource or action list: stripped, deduplicated, non-empty."""
    tokens: List[str] = []
    for value in values or ():
        token = value.strip() if isinstance(value, str) else ""
        if token and token not in tokens:
            tokens.append(token)
    if not tokens:
        raise ValidationError(f"At least one {label} is required")
    return tokens


def _require_text(value: Optional[str], label: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{label} is required")
    return text


def _permission_keys(permission_ids: Iterable[str]) -> List[LockKey]:
    return [("permission", pid) for pid in permission_ids]


def _user_keys(user_ids: Iterable[str]) -> List[LockKey]:
    return [("user", uid) for uid in user_ids]


def _role_keys(role_ids: Iterable[str]) -> List[LockKey]:
    return [("role", rid) for rid in role_ids]


class AuthorizationService:
    """Resolver, enforcer and reconciler wired over one session's stores."""

    def __init__(
        self,
        db: AsyncSession,
        locks: EntityLockRegistry = entity_locks,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.db = db
        self.locks = locks
        self.session_factory = session_factory
        self.permissions = PermissionCatalog(db)
        self.roles = RoleStore(db)
        self.groups = RoleGroupStore(db)
        self.users = UserAssignmentStore(db)
        self.enforcer = GroupInvariantEnforcer(self.roles, self.groups, self.users)
        self.reconciler = AssignmentReconciler(self.roles, self.users)

    @asynccontextmanager
    async def _mutation(self, *keys: LockKey) -> AsyncIterator[None]:
        async with self.locks.hold(*keys):
            try:
                yield
                await self.db.commit()
            except IntegrityError as exc:
                await self.db.rollback()
                log.warning("Integrity error, rolled back: %s", exc.orig)
                raise ConflictError(
                    "The change collides with existing data",
                    title="Conflict",
                ) from exc
            except Exception:
                await self.db.rollback()
                raise

    @asynccontextmanager
    async def _mutation_over_users(
        self,
        keys: Sequence[LockKey],
        affected_users: Callable[[], Awaitable[Set[str]]],
    ) -> AsyncIterator[Set[str]]:
        """
        Like _mutation, but also hold the lock of every user whose role set
        the mutation may rewrite.

        ``affected_users`` is read once to pick the locks, then again once they
        are held. If the set grew in between, the locks are dropped and the
        wider set is taken, so every user written to is locked.
        """
        user_ids = await affected_users()
        while True:
            async with self._mutation(*keys, *_user_keys(user_ids)):
                current = await affected_users()
                if current <= user_ids:
                    yield current
                    return
            log.debug("Affected users changed while locking; retrying with %d user(s)", len(current | user_ids))
            user_ids = user_ids | current

    # ========================================================================
    # Effective permissions
    # ========================================================================

    async def resolve_effective_permissions(self, user_id: str) -> List[EffectivePermission]:
        await self.users.get(user_id)
        return await resolve_user(self.db, user_id)

    async def resolve_users(self, user_ids: Sequence[str]) -> Dict[str, List[EffectivePermission]]:
        """
        Resolve several users at once.

        Runs through ``resolve_many`` on fresh sessions when the service has a
        session factory, otherwise one after another on this session.
        """
        ids = canonical_ids(user_ids, "user ID")
        found = {user.id for user in await self.users.get_many(ids)}
        if ids - found:
            raise NotFoundError(
                f"One or more users do not exist: {', '.join(sorted(ids - found))}",
                title="User not found",
            )
        if self.session_factory is None:
            return {user_id: await resolve_user(self.db, user_id) for user_id in sorted(ids)}
        return await resolve_many(self.session_factory, ids)

    async def has_permission(self, user_id: str, resource: str, action: str) -> bool:
        allowed = grants(await self.resolve_effective_permissions(user_id), resource, action)
        log.debug("Check %s:%s for user %s -> %s", resource, action, user_id, allowed)
        return allowed

    async def check_permission(self, user_id: str, resource: str, action: str) -> Tuple[bool, str]:
        """Like has_permission, but also say where the grant came from."""
        effective = await self.resolve_effective_permissions(user_id)
        matching = [entry for entry in effective if entry.permission.grants(resource, action)]
        if not matching:
            return False, f"No permission grants '{action}' on '{resource}'"
        if any(entry.direct for entry in matching):
            return True, "Granted directly"
        via = sorted({name for entry in matching for name in entry.via_roles})
        return True, f"Granted via role(s): {', '.join(via)}"

    async def has_any_permission(self, user_id: str, checks: Iterable[Tuple[str, str]]) -> bool:
        effective = await self.resolve_effective_permissions(user_id)
        return any(grants(effective, resource, action) for resource, action in checks)

    async def has_role(self, user_id: str, role_name: str) -> bool:
        await self.users.get(user_id)
        role = await self.roles.find_by_name(role_name)
        if role is None:
            return False
        return role.id in await self.users.role_ids(user_id)

    # ========================================================================
    # Full-replace assignments
    # ========================================================================

    async def set_user_direct_permissions(self, user_id: str, permission_ids: Iterable[object]) -> ReconcileResult:
        desired = canonical_ids(permission_ids, "permission ID")
        async with self._mutation(("user", user_id), *_permission_keys(desired)):
            await self.users.get(user_id)
            await self.permissions.require_all(desired)
            result = await self.reconciler.reconcile(USER_PERMISSIONS, user_id, desired)
        return result

    async def set_role_permissions(self, role_id: str, permission_ids: Iterable[object]) -> ReconcileResult:
        desired = canonical_ids(permission_ids, "permission ID")
        async with self._mutation(("role", role_id), *_permission_keys(desired)):
            await self.roles.get(role_id)
            await self.permissions.require_all(desired)
            result = await self.reconciler.reconcile(ROLE_PERMISSIONS, role_id, desired)
        return result

    async def set_user_roles(self, user_id: str, role_ids: Iterable[object]) -> ReconcileResult:
        """
        Replace a user's role set.

        Missing defaults of required groups are filled in before diffing, so
        a repeated call with the same input is a no-op. Repair runs afterwards
        regardless.
        """
        requested = canonical_ids(role_ids, "role ID")
        async with self._mutation(("user", user_id), *_role_keys(requested)):
            await self.users.get(user_id)
            roles = await self.roles.require_all(requested)
            desired = await self.enforcer.complete_user_roles(requested, roles)
            result = await self.reconciler.reconcile(USER_ROLES, user_id, desired)
            repaired = await self.enforcer.repair_user(user_id)
        if repaired:
            result = ReconcileResult(added=result.added | frozenset(repaired), removed=result.removed)
        return result

    # ========================================================================
    # Permissions
    # ========================================================================

    async def create_permission(
        self,
        name: str,
        description: str,
        resources: Iterable[str],
        actions: Iterable[str],
        category: Optional[str] = None,
    ) -> Permission:
        fields = {
            "name": validate_name(name, "Permission name"),
            "description": _require_text(description, "Description"),
            "resources": validate_tokens(resources, "resource"),
            "actions": validate_tokens(actions, "action"),
            "category": (category or "").strip() or None,
        }
        async with self._mutation():
            permission = await self.permissions.create(**fields)
        await self.db.refresh(permission)
        log.info("Created permission %s (%s)", permission.name, permission.id)
        return permission

    async def get_permission(self, permission_id: str) -> Permission:
        return await self.permissions.get(permission_id)

    async def list_permissions(
        self,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        category: Optional[str] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Permission]:
        return await self.permissions.list(
            resource=resource, action=action, category=category, skip=skip, limit=limit,
        )

    async def count_permissions(
        self,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        category: Optional[str] = None,
    ) -> int:
        return len(await self.permissions.list(resource=resource, action=action, category=category))

    async def update_permission(self, permission_id: str, changes: Dict[str, Any]) -> Permission:
        """Edit description, resources, actions or category. The name is fixed."""
        if "name" in changes:
            raise ValidationError("Permission names cannot be changed")
        updates: Dict[str, Any] = {}
        if "description" in changes:
            updates["description"] = _require_text(changes["description"], "Description")
        if "resources" in changes:
            updates["resources"] = validate_tokens(changes["resources"], "resource")
        if "actions" in changes:
            updates["actions"] = validate_tokens(changes["actions"], "action")
        if "category" in changes:
            updates["category"] = (changes["category"] or "").strip() or None

        async with self._mutation(("permission", permission_id)):
            permission = await self.permissions.get(permission_id)
            await self.permissions.update(permission, updates)
        await self.db.refresh(permission)
        log.info("Updated permission %s: %s", permission.name, sorted(updates))
        return permission

    async def delete_permission(self, permission_id: str) -> Dict[str, int]:
        """
        Delete a permission and every reference to it.

        The cascade is all-or-nothing; a failure part-way is rolled back and
        reported as one error.
        """
        async with self._mutation(("permission", permission_id)):
            permission = await self.permissions.get(permission_id)
            name = permission.name
            try:
                removed = await self.permissions.delete_cascade(permission_id)
            except SQLAlchemyError as exc:
                log.error("Cascade delete of permission %s failed: %s", name, exc)
                raise ConflictError(
                    f"Permission '{name}' could not be deleted; no changes were made",
                    title="Permission deletion failed",
                ) from exc
        log.info(
            "Deleted permission %s; removed from %d role(s) and %d user(s)",
            name, removed["roles"], removed["users"],
        )
        return removed

    async def users_with_permission(self, permission_id: str) -> List[Tuple[User, bool, Set[str]]]:
        """Users holding ``permission_id``, each with (direct, via role display names)."""
        await self.permissions.get(permission_id)
        direct_ids = await self.users.user_ids_with_direct_permission(permission_id)
        role_records = await self.roles.get_many(await self.roles.role_ids_with_permission(permission_id))

        via: Dict[str, Set[str]] = {}
        for role in role_records.values():
            for user_id in await self.users.user_ids_with_role(role.id):
                via.setdefault(user_id, set()).add(role.display_name or role.name)

        holders = await self.users.get_many(direct_ids | set(via))
        return [(user, user.id in direct_ids, via.get(user.id, set())) for user in holders]

    # ========================================================================
    # Roles
    # ========================================================================

    async def create_role(
        self,
        name: str,
        display_name: str,
        group_id: str,
        description: Optional[str] = None,
        permission_ids: Iterable[object] = (),
    ) -> Role:
        fields = {
            "name": validate_name(name, "Role name"),
            "display_name": _require_text(display_name, "Display name"),
            "description": description,
        }
        wanted = canonical_ids(permission_ids, "permission ID")
        async with self._mutation(("group", group_id), *_permission_keys(wanted)):
            group = await self.groups.get(group_id)
            self.enforcer.validate_role_placement(group)
            await self.permissions.require_all(wanted)
            role = await self.roles.create(group, **fields)
            await self.roles.add_permissions(role.id, wanted)
        await self.db.refresh(role)
        log.info("Created role %s in group %s with %d permission(s)", role.name, group.name, len(wanted))
        return role

    async def get_role(self, role_id: str) -> Role:
        return await self.roles.get(role_id)

    async def get_role_permissions(self, role_id: str) -> List[Permission]:
        await self.roles.get(role_id)
        catalog = await self.permissions.get_many(await self.roles.permission_ids(role_id))
        return sorted(catalog.values(), key=lambda permission: permission.name)

    async def list_roles(
        self,
        group_id: Optional[str] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Tuple[Role, int]]:
        """Roles (optionally in one group) with their permission counts."""
        counts = await self.roles.permission_counts()
        roles = await self.roles.list(group_id=group_id, skip=skip, limit=limit)
        return [(role, counts.get(role.id, 0)) for role in roles]

    async def count_roles(self, group_id: Optional[str] = None) -> int:
        return await self.roles.count(group_id=group_id)

    async def update_role(self, role_id: str, changes: Dict[str, Any]) -> Tuple[Role, Optional[ReconcileResult]]:
        """
        Edit a role's display name, description, group or permission set.

        A permission set goes through the reconciler. Moving the role to
        another group re-runs repair on its old group for every holder.
        """
        if "name" in changes:
            raise ValidationError("Role names cannot be changed")
        updates: Dict[str, Any] = {}
        if "display_name" in changes:
            updates["display_name"] = _require_text(changes["display_name"], "Display name")
        if "description" in changes:
            updates["description"] = changes["description"]
        wanted = None
        if changes.get("permission_ids") is not None:
            wanted = canonical_ids(changes["permission_ids"], "permission ID")
        target_group_id = changes.get("group_id")

        keys: List[LockKey] = [("role", role_id), *_permission_keys(wanted or ())]
        if target_group_id:
            keys.append(("group", target_group_id))

        async def holders() -> Set[str]:
            if not target_group_id:
                return set()
            return await self.users.user_ids_with_role(role_id)

        result = None
        async with self._mutation_over_users(keys, holders) as holder_ids:
            role = await self.roles.get(role_id)
            old_group = role.group
            moving = bool(target_group_id) and target_group_id != role.group_id
            if moving:
                target = await self.groups.get(target_group_id)
                await self.enforcer.validate_role_move(role, target)
                updates["group_id"] = target.id
                updates["group"] = target
            if wanted is not None:
                await self.permissions.require_all(wanted)

            await self.roles.update(role, updates)
            if wanted is not None:
                result = await self.reconciler.reconcile(ROLE_PERMISSIONS, role.id, wanted)
            if moving:
                for user_id in sorted(holder_ids):
                    await self.enforcer.repair_user_membership(user_id, old_group)
        await self.db.refresh(role)
        log.info("Updated role %s: %s", role.name, sorted(set(updates) - {"group"}))
        return role, result

    async def delete_role(self, role_id: str) -> None:
        """
        Delete a role. It is removed from every user first, then group repair
        runs for each of those users.
        """
        async def holders() -> Set[str]:
            return await self.users.user_ids_with_role(role_id)

        async with self._mutation_over_users([("role", role_id)], holders) as holder_ids:
            role = await self.roles.get(role_id)
            await self.enforcer.validate_role_delete(role)
            name, group = role.name, role.group

            await self.users.remove_role_from_all(role.id)
            await self.roles.remove_permissions(role.id, await self.roles.permission_ids(role.id))
            for stale in await self.groups.groups_defaulting_to(role.id):
                await self.groups.update(stale, {"default_role_id": None})
            await self.roles.delete(role)

            for user_id in sorted(holder_ids):
                await self.enforcer.repair_user_membership(user_id, group)
        log.info("Deleted role %s; removed from %d user(s)", name, len(holder_ids))

    async def users_with_role(self, role_id: str) -> List[User]:
        await self.roles.get(role_id)
        return await self.users.get_many(await self.users.user_ids_with_role(role_id))

    # ========================================================================
    # Role groups
    # ========================================================================

    async def create_role_group(
        self,
        name: str,
        display_name: str,
        description: Optional[str] = None,
        requires_one: bool = False,
        default_role_id: Optional[str] = None,
    ) -> RoleGroup:
        fields = {
            "name": validate_name(name, "Group name"),
            "display_name": _require_text(display_name, "Display name"),
            "description": description,
        }
        await self.enforcer.validate_group_create(requires_one, default_role_id)
        async with self._mutation():
            group = await self.groups.create(requires_one=False, default_role_id=None, is_system=False, **fields)
        await self.db.refresh(group)
        log.info("Created role group %s", group.name)
        return group

    async def get_role_group(self, group_id: str) -> RoleGroup:
        return await self.groups.get(group_id)

    async def list_role_groups(self) -> List[RoleGroup]:
        return await self.groups.list()

    async def update_role_group(self, group_id: str, changes: Dict[str, Any]) -> RoleGroup:
        """
        Edit a group. Switching ``requires_one`` on, or changing the default
        of a required group, repairs every user against the group.
        """
        if "name" in changes:
            raise ValidationError("Group names cannot be changed")
        changes = dict(changes)
        if "display_name" in changes:
            changes["display_name"] = _require_text(changes["display_name"], "Display name")

        async def repairable() -> Set[str]:
            # A requirement or default change can repair any user
            if "requires_one" in changes or "default_role_id" in changes:
                return set(await self.users.all_ids())
            return set()

        async with self._mutation_over_users([("group", group_id)], repairable) as user_ids:
            group = await self.groups.get(group_id)
            was_required, old_default = group.requires_one, group.default_role_id
            updates = await self.enforcer.validate_group_update(group, changes)
            await self.groups.update(group, updates)
            repaired = 0
            if group.requires_one and (not was_required or group.default_role_id != old_default):
                repaired = await self.enforcer.repair_group(group, user_ids)
        await self.db.refresh(group)
        log.info("Updated role group %s: %s (repaired %d user(s))", group.name, sorted(updates), repaired)
        return group

    async def delete_role_group(self, group_id: str) -> None:
        async with self._mutation(("group", group_id)):
            group = await self.groups.get(group_id)
            await self.enforcer.validate_group_delete(group)
            name = group.name
            await self.groups.delete(group)
        log.info("Deleted role group %s", name)

    # ========================================================================
    # Users
    # ========================================================================

    async def create_user(self, email: str, name: str) -> Tuple[User, List[str]]:
        """Create a user and give them the default role of every required group."""
        fields = {"email": _require_text(email, "Email").lower(), "name": _require_text(name, "Name")}
        async with self._mutation():
            user = await self.users.create(**fields)
            assigned = await self.enforcer.repair_user(user.id)
        await self.db.refresh(user)
        log.info("Created user %s with %d default role(s)", user.email, len(assigned))
        return user, assigned

    async def get_user(self, user_id: str) -> User:
        return await self.users.get(user_id)

    async def list_users(self, skip: int = 0, limit: int = 100) -> List[User]:
        return await self.users.list(skip=skip, limit=limit)

    async def get_user_roles(self, user_id: str) -> List[Role]:
        await self.users.get(user_id)
        roles = await self.roles.get_many(await self.users.role_ids(user_id))
        return sorted(roles.values(), key=lambda role: role.name)

    async def get_user_direct_permissions(self, user_id: str) -> List[Permission]:
        await self.users.get(user_id)
        catalog = await self.permissions.get_many(await self.users.direct_permission_ids(user_id))
        return sorted(catalog.values(), key=lambda permission: permission.name)

    async def effective_permissions_for_display(self, user_id: str) -> List[EffectivePermission]:
        return sort_for_display(await self.resolve_effective_permissions(user_id))

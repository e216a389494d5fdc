"""
Role-group invariant enforcement.

Invariants:
- A ``requires_one`` group names a default role, and that role belongs to the group.
- Every user holds at most one role from each ``requires_one`` group, and holds
  the group's default when they would otherwise hold none.
- System groups cannot be edited or deleted, and their roles cannot be deleted
  or moved, through the admin surface.
- A role that is a group's current default cannot be deleted or moved away.
"""
from collections.abc import Iterable, Mapping
from typing import Any, Dict, List, Optional, Set

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.features.permissions.models import Role, RoleGroup
from app.features.permissions.store import RoleGroupStore, RoleStore, UserAssignmentStore
from app.utils import get_logger


log = get_logger(__name__)


class GroupInvariantEnforcer:
    """Validates group-affecting mutations and repairs user membership."""

    def __init__(self, roles: RoleStore, groups: RoleGroupStore, users: UserAssignmentStore):
        self.roles = roles
        self.groups = groups
        self.users = users

    # ------------------------------------------------------------------
    # Group create / update / delete
    # ------------------------------------------------------------------

    async def _check_default(self, group_id: Optional[str], requires_one: bool, default_role_id: Optional[str]) -> None:
        if not requires_one:
            return
        if not default_role_id:
            raise ValidationError(
                "Default role is required when requires_one is true",
                title="Default role required",
            )
        try:
            role = await self.roles.get(default_role_id)
        except NotFoundError:
            raise NotFoundError(
                "The specified default role does not exist",
                title="Default role not found",
            ) from None
        if group_id is None or role.group_id != group_id:
            raise ValidationError(
                "Default role must belong to this group",
                title="Invalid default role",
            )

    async def validate_group_create(self, requires_one: bool, default_role_id: Optional[str]) -> None:
        """
        A new group has no member roles yet, so a ``requires_one`` group can
        never be created with a valid default. Create it unrequired, add its
        roles, then switch the requirement on.
        """
        await self._check_default(None, requires_one, default_role_id)

    async def validate_group_update(self, group: RoleGroup, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Merge ``changes`` into ``group``'s current state and validate the result.

        Returns:
            The normalized change set to apply. Turning ``requires_one`` off
            clears the default; an empty default clears it too.
        """
        if group.is_system:
            raise ConflictError("System groups cannot be modified", title="Cannot modify system group")

        updates = dict(changes)
        if "requires_one" in updates and not isinstance(updates["requires_one"], bool):
            raise ValidationError("requires_one must be true or false", title="Invalid requires_one")
        if "default_role_id" in updates and not updates["default_role_id"]:
            updates["default_role_id"] = None
        if updates.get("requires_one") is False:
            updates["default_role_id"] = None

        requires_one = updates.get("requires_one", group.requires_one)
        default_role_id = updates.get("default_role_id", group.default_role_id)
        if default_role_id and "default_role_id" in updates:
            # A newly named default must exist and belong here even when not required
            await self._check_default(group.id, True, default_role_id)
        await self._check_default(group.id, requires_one, default_role_id)
        return updates

    async def validate_group_delete(self, group: RoleGroup) -> None:
        if group.is_system:
            raise ConflictError("System groups cannot be deleted", title="Cannot delete system group")
        member_ids = await self.roles.ids_in_group(group.id)
        if member_ids:
            raise ConflictError(
                f"Cannot delete group that contains {len(member_ids)} role(s). "
                "Please move or delete all roles first.",
                title="Cannot delete group with roles",
            )

    # ------------------------------------------------------------------
    # Role create / move / delete
    # ------------------------------------------------------------------

    def validate_role_placement(self, group: RoleGroup) -> None:
        """Roles cannot be created in, or moved into, a system group."""
        if group.is_system:
            raise ConflictError(
                "Roles cannot be added to a system group",
                title="Cannot modify system group",
            )

    async def validate_role_move(self, role: Role, target: RoleGroup) -> None:
        if role.group_id == target.id:
            return
        if role.is_system:
            raise ConflictError("System roles cannot be moved to another group", title="Cannot move system role")
        self.validate_role_placement(target)
        if await self.groups.groups_defaulting_to(role.id):
            raise ConflictError(
                f"Role '{role.name}' is the default role of its group; reassign the default first",
                title="Cannot move default role",
            )
        if target.requires_one:
            holders = await self.users.user_ids_with_role(role.id)
            members = await self.roles.ids_in_group(target.id)
            clashing = holders & await self.users.user_ids_with_roles(members)
            if clashing:
                raise ConflictError(
                    f"{len(clashing)} user(s) holding '{role.name}' already hold a role from "
                    f"group \"{target.display_name}\"",
                    title="Too many roles from group",
                )

    async def validate_role_delete(self, role: Role) -> None:
        if role.is_system:
            raise ConflictError("Roles in system groups cannot be deleted", title="Cannot delete system role")
        for group in await self.groups.groups_defaulting_to(role.id):
            if group.requires_one:
                raise ConflictError(
                    f"Role '{role.name}' is the default role of group '{group.name}'; "
                    "reassign the group's default first",
                    title="Cannot delete default role",
                )

    # ------------------------------------------------------------------
    # User role sets
    # ------------------------------------------------------------------

    async def complete_user_roles(self, desired_role_ids: Iterable[str], roles: Mapping[str, Role]) -> Set[str]:
        """
        Validate a desired role set against every ``requires_one`` group and
        return it with missing defaults filled in.

        Raises:
            ValidationError: more than one role from a ``requires_one`` group
        """
        completed = set(desired_role_ids)
        for group in await self.groups.list_requiring_one():
            in_group = sorted(
                roles[role_id].name for role_id in completed
                if role_id in roles and roles[role_id].group_id == group.id
            )
            if len(in_group) > 1:
                raise ValidationError(
                    f"User can only have one role from group \"{group.display_name}\". "
                    f"Would have: {', '.join(in_group)}",
                    title="Too many roles from group",
                )
            if not in_group and group.default_role_id:
                completed.add(group.default_role_id)
        return completed

    async def repair_user_membership(self, user_id: str, group: RoleGroup) -> Optional[str]:
        """
        Give ``user_id`` the group's default role if they hold no role from it.

        Idempotent: a user who already holds any role from the group, default
        or not, is left untouched.

        Returns:
            The role id that was added, or None.
        """
        if not group.requires_one or not group.default_role_id:
            return None
        member_ids = await self.roles.ids_in_group(group.id)
        held = await self.users.role_ids(user_id)
        if held & member_ids:
            return None
        await self.users.add_roles(user_id, [group.default_role_id])
        log.info(
            "Assigned default role %s of group %s to user %s",
            group.default_role_id, group.name, user_id,
        )
        return group.default_role_id

    async def repair_user(self, user_id: str) -> List[str]:
        """Run repair_user_membership for every ``requires_one`` group."""
        added = []
        for group in await self.groups.list_requiring_one():
            role_id = await self.repair_user_membership(user_id, group)
            if role_id:
                added.append(role_id)
        return added

    async def repair_group(self, group: RoleGroup, user_ids: Optional[Iterable[str]] = None) -> int:
        """Run repair_user_membership against one group for ``user_ids``, or every user."""
        if user_ids is None:
            user_ids = await self.users.all_ids()
        repaired = 0
        for user_id in sorted(user_ids):
            if await self.repair_user_membership(user_id, group):
                repaired += 1
        if repaired:
            log.info("Group %s repair assigned its default role to %d user(s)", group.name, repaired)
        return repaired

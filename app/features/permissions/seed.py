"""
Default authorization data.

Creates the protected ``system`` role group with its ``admin``, ``user`` and
``developer`` roles (``user`` is the group's default, so every user holds one
of the three) and the default ``edit-name`` permission. Safe to run repeatedly:
existing records are left as they are.

The system group is protected from the admin API, so this module writes
through the stores directly.
"""
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.invariants import GroupInvariantEnforcer
from app.features.permissions.models import Permission, RoleGroup
from app.features.permissions.store import (
    PermissionCatalog,
    RoleGroupStore,
    RoleStore,
    UserAssignmentStore,
)
from app.utils import get_logger


log = get_logger(__name__)


SYSTEM_GROUP = {
    "name": "system",
    "display_name": "System",
    "description": "Built-in access levels. Every user holds exactly one.",
}

SYSTEM_DEFAULT_ROLE = "user"

SYSTEM_ROLES = {
    "admin": {
        "display_name": "Administrator",
        "description": "Full access to the admin console",
        "permissions": ["edit-name"],
    },
    "user": {
        "display_name": "User",
        "description": "Standard access",
        "permissions": [],
    },
    "developer": {
        "display_name": "Developer",
        "description": "Access to developer tooling",
        "permissions": [],
    },
}

DEFAULT_PERMISSIONS = [
    # (name, resources, actions, category, description)
    ("edit-name", ["account"], ["write"], "Account", "Change the display name of an account"),
]


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping permission names to Permission objects
    """
    catalog = PermissionCatalog(db)
    permissions_map = {}
    for name, resources, actions, category, description in DEFAULT_PERMISSIONS:
        existing = await catalog.find_by_name(name)
        if existing:
            log.debug("Permission '%s' already exists, skipping", name)
            permissions_map[name] = existing
            continue
        permissions_map[name] = await catalog.create(
            name=name,
            resources=resources,
            actions=actions,
            category=category,
            description=description,
        )
        log.info("Created permission: %s", name)
    return permissions_map


async def seed_system_group(db: AsyncSession, permissions_map: dict[str, Permission]) -> RoleGroup:
    """
    Create the system group and its roles, then make the group required.

    The group is created unrequired because a required group must name one
    of its own roles as the default, and it has none yet.
    """
    groups = RoleGroupStore(db)
    roles = RoleStore(db)
    users = UserAssignmentStore(db)

    group = await groups.find_by_name(SYSTEM_GROUP["name"])
    if group is None:
        group = await groups.create(**SYSTEM_GROUP, requires_one=False, default_role_id=None, is_system=True)
        log.info("Created role group: %s", group.name)

    for role_name, role_config in SYSTEM_ROLES.items():
        if await roles.find_by_name(role_name):
            log.debug("Role '%s' already exists, skipping", role_name)
            continue
        role = await roles.create(
            group,
            name=role_name,
            display_name=role_config["display_name"],
            description=role_config["description"],
        )
        wanted = [permissions_map[name].id for name in role_config["permissions"] if name in permissions_map]
        await roles.add_permissions(role.id, wanted)
        log.info("Created role '%s' with %d permission(s)", role_name, len(wanted))

    if not group.requires_one:
        default_role = await roles.find_by_name(SYSTEM_DEFAULT_ROLE)
        await groups.update(group, {"requires_one": True, "default_role_id": default_role.id})
        repaired = await GroupInvariantEnforcer(roles, groups, users).repair_group(group)
        log.info("System group now requires one role (default '%s'); repaired %d user(s)", SYSTEM_DEFAULT_ROLE, repaired)
    return group


async def seed_defaults(db: AsyncSession) -> None:
    """Seed permissions and the system group, committing once at the end."""
    try:
        permissions_map = await seed_permissions(db)
        await seed_system_group(db, permissions_map)
        await db.commit()
    except Exception:
        log.error("Error seeding default authorization data", exc_info=True)
        await db.rollback()
        raise

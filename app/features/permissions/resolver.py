"""
Effective permission resolution.

A user's effective permissions are the union of their direct permissions and
the permissions of every role they hold, each entry carrying its provenance.
Nothing here is persisted: results are a pure function of current store state,
so callers that need fresh data simply resolve again.
"""
import asyncio
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.errors import ConsistencyError
from app.features.permissions.models import Permission
from app.features.permissions.store import PermissionCatalog, RoleStore, UserAssignmentStore
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class RoleGrant:
    """The part of a role the resolver needs: its display label and permission ids."""
    role_id: str
    name: str
    permission_ids: frozenset[str]


@dataclass(frozen=True)
class EffectivePermission:
    """A permission together with how the user came to hold it."""
    permission: Permission
    direct: bool
    via_roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def permission_id(self) -> str:
        return self.permission.id


def _report(defect: ConsistencyError) -> None:
    log.warning("Consistency defect: %s", defect.message)


def resolve(
    role_ids: Sequence[str],
    direct_permission_ids: Iterable[str],
    roles: Mapping[str, RoleGrant],
    catalog: Mapping[str, Permission],
    user_id: str = "?",
) -> List[EffectivePermission]:
    """
    Compute the attributed permission list for one user.

    Args:
        role_ids: The user's role ids, in the order roles should be expanded
        direct_permission_ids: The user's direct permission ids
        roles: Role grants keyed by role id
        catalog: Permissions keyed by id
        user_id: Used only in log lines

    Returns:
        One entry per distinct permission. Role-derived entries come first in
        role order, then direct-only entries. Ids missing from ``roles`` or
        ``catalog`` are dropped and logged as consistency defects.
    """
    via: Dict[str, Set[str]] = {}
    for role_id in role_ids:
        grant = roles.get(role_id)
        if grant is None:
            _report(ConsistencyError("user", user_id, role_id, missing_type="role"))
            continue
        for permission_id in sorted(grant.permission_ids):
            if permission_id not in catalog:
                _report(ConsistencyError("role", grant.name, permission_id))
                continue
            via.setdefault(permission_id, set()).add(grant.name)

    direct: List[str] = []
    for permission_id in sorted(set(direct_permission_ids)):
        if permission_id not in catalog:
            _report(ConsistencyError("user", user_id, permission_id))
            continue
        direct.append(permission_id)
    direct_set = set(direct)

    ordered = list(via) + [pid for pid in direct if pid not in via]
    return [
        EffectivePermission(
            permission=catalog[pid],
            direct=pid in direct_set,
            via_roles=frozenset(via.get(pid, ())),
        )
        for pid in ordered
    ]


def grants(effective: Iterable[EffectivePermission], resource: str, action: str) -> bool:
    """True iff some effective permission covers ``resource`` and ``action``."""
    return any(entry.permission.grants(resource, action) for entry in effective)


def sort_for_display(effective: Iterable[EffectivePermission]) -> List[EffectivePermission]:
    return sorted(effective, key=lambda entry: entry.permission.name)


# ============================================================================
# Store-backed loading
# ============================================================================

async def resolve_user(db: AsyncSession, user_id: str) -> List[EffectivePermission]:
    """
    Load the state one user's resolution needs and resolve it.

    The caller is responsible for checking that the user exists.
    """
    users = UserAssignmentStore(db)
    role_store = RoleStore(db)

    role_ids = sorted(await users.role_ids(user_id))
    direct_ids = await users.direct_permission_ids(user_id)

    role_records = await role_store.get_many(role_ids)
    role_permission_ids = await role_store.permission_ids_by_role(role_records)
    roles = {
        role_id: RoleGrant(
            role_id=role_id,
            name=role.display_name or role.name,
            permission_ids=frozenset(role_permission_ids.get(role_id, ())),
        )
        for role_id, role in role_records.items()
    }

    wanted: Set[str] = set(direct_ids)
    for grant in roles.values():
        wanted |= grant.permission_ids
    catalog = await PermissionCatalog(db).get_many(wanted)

    return resolve(role_ids, direct_ids, roles, catalog, user_id=user_id)


async def resolve_many(
    session_factory: Callable[[], AsyncSession],
    user_ids: Iterable[str],
    concurrency: Optional[int] = None,
) -> Dict[str, List[EffectivePermission]]:
    """
    Resolve several users in parallel, one session per user.

    Each resolution is independent, so they run concurrently up to
    ``concurrency`` at a time. Result order carries no meaning.
    """
    limit = asyncio.Semaphore(concurrency or config.RESOLVE_CONCURRENCY)

    async def _one(user_id: str) -> tuple[str, List[EffectivePermission]]:
        async with limit:
            async with session_factory() as session:
                return user_id, await resolve_user(session, user_id)

    results = await asyncio.gather(*(_one(user_id) for user_id in set(user_ids)))
    return dict(results)

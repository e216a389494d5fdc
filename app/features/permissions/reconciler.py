"""
Assignment reconciliation.

Callers hand over the complete desired set for an entity (full replacement,
never a delta). The reconciler reads the current set, computes

    added   = desired - current
    removed = current - desired

and applies both as one logical replace. An empty diff is a no-op: nothing is
written and nothing is logged above DEBUG.
"""
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Dict, FrozenSet, Set

from app.core.errors import ValidationError
from app.features.permissions.store import RoleStore, UserAssignmentStore
from app.utils import get_logger


log = get_logger(__name__)


CurrentSetProvider = Callable[[str], Awaitable[Set[str]]]
SetWriter = Callable[[str, Iterable[str]], Awaitable[None]]


USER_PERMISSIONS = "user_permissions"
USER_ROLES = "user_roles"
ROLE_PERMISSIONS = "role_permissions"


@dataclass(frozen=True)
class ReconcileResult:
    added: FrozenSet[str]
    removed: FrozenSet[str]

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    def to_dict(self) -> Dict[str, list]:
        return {"added": sorted(self.added), "removed": sorted(self.removed)}


@dataclass(frozen=True)
class AssignmentTarget:
    """How to read and write one kind of assignment set."""
    current: CurrentSetProvider
    add: SetWriter
    remove: SetWriter


def compute_diff(current: Iterable[str], desired: Iterable[str]) -> ReconcileResult:
    current_set = frozenset(current)
    desired_set = frozenset(desired)
    return ReconcileResult(added=desired_set - current_set, removed=current_set - desired_set)


def canonical_ids(ids: Iterable[object], label: str = "ID") -> Set[str]:
    """
    Collapse an id collection to a set of canonical id strings.

    Accepts bare id strings or objects exposing an ``id`` attribute; rejects
    anything else, including blank strings.
    """
    canonical: Set[str] = set()
    for candidate in ids:
        value = getattr(candidate, "id", candidate)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Invalid {label}: {candidate!r}")
        canonical.add(value.strip())
    return canonical


class AssignmentReconciler:
    """Full-replace reconciliation for user and role assignment sets."""

    def __init__(self, roles: RoleStore, users: UserAssignmentStore):
        self.targets: Dict[str, AssignmentTarget] = {
            USER_PERMISSIONS: AssignmentTarget(
                current=users.direct_permission_ids,
                add=users.add_permissions,
                remove=users.remove_permissions,
            ),
            USER_ROLES: AssignmentTarget(
                current=users.role_ids,
                add=users.add_roles,
                remove=users.remove_roles,
            ),
            ROLE_PERMISSIONS: AssignmentTarget(
                current=roles.permission_ids,
                add=roles.add_permissions,
                remove=roles.remove_permissions,
            ),
        }

    async def diff(self, target_type: str, target_id: str, desired: Iterable[str]) -> ReconcileResult:
        target = self.targets[target_type]
        return compute_diff(await target.current(target_id), desired)

    async def apply(self, target_type: str, target_id: str, result: ReconcileResult) -> ReconcileResult:
        if not result.changed:
            log.debug("Reconcile %s %s: no changes", target_type, target_id)
            return result
        target = self.targets[target_type]
        # added and removed are disjoint, so order does not matter
        await target.remove(target_id, result.removed)
        await target.add(target_id, result.added)
        log.info(
            "Reconciled %s %s: added=%s removed=%s",
            target_type, target_id, sorted(result.added), sorted(result.removed),
        )
        return result

    async def reconcile(self, target_type: str, target_id: str, desired: Iterable[str]) -> ReconcileResult:
        """Move ``target_id``'s ``target_type`` set to exactly ``desired``."""
        return await self.apply(target_type, target_id, await self.diff(target_type, target_id, desired))

from types import SimpleNamespace

import pytest

from app.core.errors import ValidationError
from app.features.permissions.reconciler import (
    USER_PERMISSIONS,
    AssignmentReconciler,
    AssignmentTarget,
    compute_diff,
    canonical_ids,
)


class RecordingTarget:
    """An in-memory assignment set that records every write."""

    def __init__(self, initial):
        self.items = set(initial)
        self.writes = []

    async def current(self, _target_id):
        return set(self.items)

    async def add(self, target_id, ids):
        ids = set(ids)
        self.writes.append(("add", target_id, ids))
        self.items |= ids

    async def remove(self, target_id, ids):
        ids = set(ids)
        self.writes.append(("remove", target_id, ids))
        self.items -= ids


@pytest.fixture
def recording():
    return RecordingTarget({"a", "b"})


@pytest.fixture
def reconciler(recording):
    stub = SimpleNamespace(
        direct_permission_ids=None, add_permissions=None, remove_permissions=None,
        role_ids=None, add_roles=None, remove_roles=None, permission_ids=None,
    )
    reconciler = AssignmentReconciler(stub, stub)
    reconciler.targets[USER_PERMISSIONS] = AssignmentTarget(
        current=recording.current, add=recording.add, remove=recording.remove,
    )
    return reconciler


class TestComputeDiff:
    def test_added_and_removed(self):
        result = compute_diff({"a", "b"}, {"b", "c"})
        assert result.added == {"c"}
        assert result.removed == {"a"}
        assert result.changed

    def test_equal_sets_are_unchanged(self):
        result = compute_diff(["a", "b"], ["b", "a", "a"])
        assert not result.changed
        assert result.to_dict() == {"added": [], "removed": []}

    def test_added_and_removed_are_disjoint(self):
        result = compute_diff({"a", "b", "c"}, {"c", "d"})
        assert not (result.added & result.removed)


class TestCanonicalIds:
    def test_accepts_ids_and_objects_with_id(self):
        assert canonical_ids(["x", SimpleNamespace(id="y"), " x "]) == {"x", "y"}

    @pytest.mark.parametrize("bad", ["", "   ", None, 42])
    def test_rejects_non_ids(self, bad):
        with pytest.raises(ValidationError):
            canonical_ids([bad])


class TestReconcile:
    async def test_full_replace(self, reconciler, recording):
        result = await reconciler.reconcile(USER_PERMISSIONS, "u1", {"b", "c"})
        assert result.to_dict() == {"added": ["c"], "removed": ["a"]}
        assert recording.items == {"b", "c"}

    async def test_empty_diff_writes_nothing(self, reconciler, recording):
        result = await reconciler.reconcile(USER_PERMISSIONS, "u1", {"a", "b"})
        assert not result.changed
        assert recording.writes == []

    async def test_second_identical_call_is_a_noop(self, reconciler, recording):
        await reconciler.reconcile(USER_PERMISSIONS, "u1", {"c"})
        writes = len(recording.writes)
        second = await reconciler.reconcile(USER_PERMISSIONS, "u1", {"c"})
        assert not second.changed
        assert len(recording.writes) == writes
        assert recording.items == {"c"}

    async def test_desired_empty_clears_everything(self, reconciler, recording):
        result = await reconciler.reconcile(USER_PERMISSIONS, "u1", set())
        assert result.removed == {"a", "b"}
        assert recording.items == set()

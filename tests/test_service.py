import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.features.permissions.service import AuthorizationService
from app.features.permissions.store import RoleStore, UserAssignmentStore


async def effective_by_name(service, user_id):
    return {entry.permission.name: entry for entry in await service.resolve_effective_permissions(user_id)}


async def require_content_group(service, scenario, default_role_id):
    return await service.update_role_group(
        scenario.content, {"requires_one": True, "default_role_id": default_role_id}
    )


# ===================================================================
#  Effective permissions
# ===================================================================

class TestEffectivePermissions:
    async def test_account_write_walkthrough(self, service, scenario):
        user = scenario.user
        await service.set_user_roles(user, [scenario.editor])

        assert await service.has_permission(user, "account", "write")
        entry = (await effective_by_name(service, user))["account-write"]
        assert entry.direct is False
        assert entry.via_roles == {"Editor"}

        await service.set_user_direct_permissions(user, [scenario.account_write])
        assert await service.has_permission(user, "account", "write")
        entry = (await effective_by_name(service, user))["account-write"]
        assert entry.direct is True
        assert entry.via_roles == {"Editor"}

        await service.set_user_roles(user, [])
        assert await service.has_permission(user, "account", "write")
        entry = (await effective_by_name(service, user))["account-write"]
        assert entry.direct is True
        assert entry.via_roles == frozenset()

        await service.set_user_direct_permissions(user, [])
        assert not await service.has_permission(user, "account", "write")
        assert await service.resolve_effective_permissions(user) == []

    async def test_provenance_matches_store_state(self, service, scenario):
        await service.set_user_roles(scenario.user, [scenario.viewer])
        await service.set_user_direct_permissions(scenario.user, [scenario.account_write, scenario.reports_read])

        effective = await effective_by_name(service, scenario.user)
        assert set(effective) == {"account-write", "reports-read"}
        assert effective["account-write"].direct and not effective["account-write"].via_roles
        assert effective["reports-read"].direct and effective["reports-read"].via_roles == {"Viewer"}

    async def test_provenance_uses_the_role_display_name(self, service, scenario):
        await service.set_user_roles(scenario.user, [scenario.editor])
        await service.update_role(scenario.editor, {"display_name": "Chief Editor"})

        effective = await effective_by_name(service, scenario.user)
        assert effective["account-write"].via_roles == {"Chief Editor"}
        holders = await service.users_with_permission(scenario.account_write)
        assert [via for _, _, via in holders] == [{"Chief Editor"}]

    async def test_check_permission_reports_the_source(self, service, scenario):
        await service.set_user_roles(scenario.user, [scenario.editor])
        assert await service.check_permission(scenario.user, "account", "write") == (
            True, "Granted via role(s): Editor"
        )
        allowed, reason = await service.check_permission(scenario.user, "account", "delete")
        assert not allowed
        assert "delete" in reason

    async def test_has_any_permission_and_has_role(self, service, scenario):
        await service.set_user_roles(scenario.user, [scenario.viewer])
        assert await service.has_any_permission(scenario.user, [("account", "write"), ("exports", "read")])
        assert not await service.has_any_permission(scenario.user, [("account", "write")])
        assert await service.has_role(scenario.user, "viewer")
        assert not await service.has_role(scenario.user, "editor")
        assert not await service.has_role(scenario.user, "no-such-role")

    async def test_unknown_user(self, service, scenario):
        with pytest.raises(NotFoundError):
            await service.resolve_effective_permissions("01HZZZZZZZZZZZZZZZZZZZZZZZ")

    async def test_resolve_users_fans_out(self, service, scenario):
        other, _ = await service.create_user(email="other@example.com", name="Other")
        other_id = other.id
        await service.set_user_roles(scenario.user, [scenario.editor])

        resolved = await service.resolve_users([scenario.user, other_id])
        assert [entry.permission.name for entry in resolved[scenario.user]] == ["account-write"]
        assert resolved[other_id] == []

        with pytest.raises(NotFoundError):
            await service.resolve_users([scenario.user, "missing"])


# ===================================================================
#  Full-replace assignments
# ===================================================================

class TestAssignments:
    async def test_set_direct_permissions_is_idempotent(self, service, scenario):
        wanted = [scenario.account_write, scenario.reports_read]
        first = await service.set_user_direct_permissions(scenario.user, wanted)
        assert first.added == set(wanted)

        second = await service.set_user_direct_permissions(scenario.user, wanted)
        assert second.added == set() and second.removed == set()
        assert await UserAssignmentStore(service.db).direct_permission_ids(scenario.user) == set(wanted)

    async def test_role_permissions_round_trip(self, service, scenario):
        roles = RoleStore(service.db)
        before = await roles.permission_ids(scenario.editor)

        added = await service.set_role_permissions(scenario.editor, before | {scenario.reports_read})
        assert added.to_dict() == {"added": [scenario.reports_read], "removed": []}

        removed = await service.set_role_permissions(scenario.editor, before)
        assert removed.to_dict() == {"added": [], "removed": [scenario.reports_read]}
        assert await roles.permission_ids(scenario.editor) == before

    async def test_unknown_ids_are_rejected_before_any_write(self, service, scenario):
        await service.set_user_direct_permissions(scenario.user, [scenario.account_write])
        with pytest.raises(NotFoundError):
            await service.set_user_direct_permissions(scenario.user, [scenario.reports_read, "missing"])
        assert await UserAssignmentStore(service.db).direct_permission_ids(scenario.user) == {scenario.account_write}

        with pytest.raises(NotFoundError):
            await service.set_role_permissions("missing", [])
        with pytest.raises(NotFoundError):
            await service.set_user_roles(scenario.user, ["missing"])

    async def test_concurrent_replacements_of_one_user_serialize(self, scenario, session_factory, locks):
        async def replace(permission_id):
            async with session_factory() as session:
                service = AuthorizationService(session, locks=locks)
                return await service.set_user_direct_permissions(scenario.user, [permission_id])

        first, second = await asyncio.gather(
            replace(scenario.account_write), replace(scenario.reports_read)
        )

        async with session_factory() as session:
            final = await UserAssignmentStore(session).direct_permission_ids(scenario.user)
        assert final in ({scenario.account_write}, {scenario.reports_read})
        # whichever call ran second saw (and removed) what the first one added
        later = second if final == {scenario.reports_read} else first
        earlier = first if later is second else second
        assert later.removed == earlier.added


# ===================================================================
#  Role groups and the requires-one invariant
# ===================================================================

class TestRoleGroups:
    async def test_requires_one_cannot_be_nulled(self, service, scenario):
        with pytest.raises(ValidationError):
            await service.update_role_group(scenario.content, {"requires_one": None})
        assert (await service.get_role_group(scenario.content)).requires_one is False

    async def test_required_group_falls_back_to_default(self, service, scenario):
        await require_content_group(service, scenario, scenario.viewer)
        assert await service.has_role(scenario.user, "viewer")

        await service.set_user_roles(scenario.user, [scenario.editor])
        assert [role.name for role in await service.get_user_roles(scenario.user)] == ["editor"]

        result = await service.set_user_roles(scenario.user, [])
        assert result.to_dict() == {"added": [scenario.viewer], "removed": [scenario.editor]}
        assert await service.has_role(scenario.user, "viewer")

        again = await service.set_user_roles(scenario.user, [])
        assert not again.changed

    async def test_more_than_one_role_from_required_group(self, service, scenario):
        await require_content_group(service, scenario, scenario.viewer)
        with pytest.raises(ValidationError):
            await service.set_user_roles(scenario.user, [scenario.editor, scenario.viewer])
        assert await service.has_role(scenario.user, "viewer")

    async def test_new_users_get_default_roles(self, service, scenario):
        await require_content_group(service, scenario, scenario.viewer)
        user, assigned = await service.create_user(email="new@example.com", name="New")
        assert assigned == [scenario.viewer]
        assert await service.has_role(user.id, "viewer")

    async def test_create_required_group_is_rejected(self, service, scenario):
        with pytest.raises(ValidationError):
            await service.create_role_group(name="ops", display_name="Ops", requires_one=True)
        with pytest.raises(ValidationError):
            await service.create_role_group(
                name="ops", display_name="Ops", requires_one=True, default_role_id=scenario.editor
            )
        with pytest.raises(NotFoundError):
            await service.create_role_group(
                name="ops", display_name="Ops", requires_one=True, default_role_id="missing"
            )

    async def test_group_update_validation(self, service, scenario):
        other = await service.create_role_group(name="other", display_name="Other")
        other_id = other.id
        with pytest.raises(ValidationError):
            await service.update_role_group(scenario.content, {"requires_one": True})
        with pytest.raises(NotFoundError):
            await service.update_role_group(scenario.content, {"requires_one": True, "default_role_id": "missing"})
        with pytest.raises(ValidationError):
            await service.update_role_group(other_id, {"requires_one": True, "default_role_id": scenario.editor})

    async def test_turning_requirement_off_clears_default(self, service, scenario):
        await require_content_group(service, scenario, scenario.viewer)
        group = await service.update_role_group(scenario.content, {"requires_one": False})
        assert group.requires_one is False
        assert group.default_role_id is None

    async def test_changing_default_repairs_nobody_who_already_has_a_role(self, service, scenario):
        await require_content_group(service, scenario, scenario.viewer)
        await service.update_role_group(scenario.content, {"default_role_id": scenario.editor})
        assert [role.name for role in await service.get_user_roles(scenario.user)] == ["viewer"]

    async def test_group_with_roles_cannot_be_deleted(self, service, scenario):
        with pytest.raises(ConflictError):
            await service.delete_role_group(scenario.content)
        empty = await service.create_role_group(name="empty", display_name="Empty")
        empty_id = empty.id
        await service.delete_role_group(empty_id)
        with pytest.raises(NotFoundError):
            await service.get_role_group(empty_id)

    async def test_duplicate_names_conflict(self, service, scenario):
        with pytest.raises(ConflictError):
            await service.create_role_group(name="content", display_name="Again")
        with pytest.raises(ConflictError):
            await service.create_role(name="editor", display_name="Again", group_id=scenario.content)
        with pytest.raises(ConflictError):
            await service.create_permission(
                name="account-write", description="Again", resources=["account"], actions=["write"]
            )
        with pytest.raises(ConflictError):
            await service.create_user(email="U@example.com", name="Again")


# ===================================================================
#  Roles
# ===================================================================

class TestRoles:
    async def test_default_role_of_required_group_cannot_be_deleted(self, service, scenario):
        await require_content_group(service, scenario, scenario.viewer)
        with pytest.raises(ConflictError):
            await service.delete_role(scenario.viewer)
        assert (await service.get_role(scenario.viewer)).name == "viewer"

    async def test_deleting_a_held_role_falls_back_to_default(self, service, scenario):
        await require_content_group(service, scenario, scenario.viewer)
        await service.set_user_roles(scenario.user, [scenario.editor])

        await service.delete_role(scenario.editor)

        assert [role.name for role in await service.get_user_roles(scenario.user)] == ["viewer"]
        assert not await service.has_permission(scenario.user, "account", "write")
        with pytest.raises(NotFoundError):
            await service.get_role(scenario.editor)

    async def test_moving_a_role_repairs_its_old_group(self, service, scenario):
        await require_content_group(service, scenario, scenario.viewer)
        await service.set_user_roles(scenario.user, [scenario.editor])
        tools = await service.create_role_group(name="tools", display_name="Tools")
        tools_id = tools.id

        role, result = await service.update_role(scenario.editor, {"group_id": tools_id})

        assert role.group_id == tools_id
        assert result is None
        assert {r.name for r in await service.get_user_roles(scenario.user)} == {"editor", "viewer"}

    async def test_moving_into_required_group_where_holders_have_a_role(self, service, scenario):
        await service.set_user_roles(scenario.user, [scenario.editor])
        tools = await service.create_role_group(name="tools", display_name="Tools")
        tools_id = tools.id
        hammer = await service.create_role(name="hammer", display_name="Hammer", group_id=tools_id)
        hammer_id = hammer.id
        await service.update_role_group(tools_id, {"requires_one": True, "default_role_id": hammer_id})
        assert await service.has_role(scenario.user, "hammer")

        with pytest.raises(ConflictError):
            await service.update_role(scenario.editor, {"group_id": tools_id})

    async def test_update_role_replaces_permissions(self, service, scenario):
        role, result = await service.update_role(
            scenario.editor, {"display_name": "Chief Editor", "permission_ids": [scenario.reports_read]}
        )
        assert role.display_name == "Chief Editor"
        assert result.to_dict() == {"added": [scenario.reports_read], "removed": [scenario.account_write]}
        assert [p.name for p in await service.get_role_permissions(scenario.editor)] == ["reports-read"]

    async def test_role_name_is_validated(self, service, scenario):
        with pytest.raises(ValidationError):
            await service.create_role(name="Bad Name", display_name="Bad", group_id=scenario.content)
        with pytest.raises(NotFoundError):
            await service.create_role(name="fine", display_name="Fine", group_id="missing")

    async def test_list_roles_counts_permissions(self, service, scenario):
        await service.set_role_permissions(scenario.viewer, [scenario.account_write, scenario.reports_read])
        counts = {role.name: count for role, count in await service.list_roles()}
        assert counts == {"editor": 1, "viewer": 2}

    async def test_list_roles_pages_by_name(self, service, scenario):
        assert [role.name for role, _ in await service.list_roles(skip=1, limit=1)] == ["viewer"]
        assert await service.count_roles(group_id=scenario.content) == 2
        assert await service.count_roles(group_id="missing") == 0

    async def test_users_with_role(self, service, scenario):
        await service.set_user_roles(scenario.user, [scenario.editor])
        assert [user.id for user in await service.users_with_role(scenario.editor)] == [scenario.user]
        assert await service.users_with_role(scenario.viewer) == []


# ===================================================================
#  Mutations that rewrite other users' role sets
# ===================================================================

class TestUserLocking:
    async def test_role_delete_waits_for_a_holder_lock(self, service, scenario, session_factory, locks):
        await service.set_user_roles(scenario.user, [scenario.editor])

        async def delete():
            async with session_factory() as session:
                await AuthorizationService(session, locks=locks).delete_role(scenario.editor)

        async with locks.hold(("user", scenario.user)):
            task = asyncio.create_task(delete())
            await asyncio.sleep(0.05)
            assert not task.done()
        await asyncio.wait_for(task, timeout=5)

        async with session_factory() as session:
            assert await UserAssignmentStore(session).role_ids(scenario.user) == set()

    async def test_group_repair_waits_for_user_locks(self, service, scenario, session_factory, locks):
        async def require():
            async with session_factory() as session:
                await AuthorizationService(session, locks=locks).update_role_group(
                    scenario.content, {"requires_one": True, "default_role_id": scenario.viewer}
                )

        async with locks.hold(("user", scenario.user)):
            task = asyncio.create_task(require())
            await asyncio.sleep(0.05)
            assert not task.done()
        await asyncio.wait_for(task, timeout=5)

        async with session_factory() as session:
            assert await UserAssignmentStore(session).role_ids(scenario.user) == {scenario.viewer}

    async def test_role_delete_racing_role_assignment_leaves_one_role(
        self, service, scenario, session_factory, locks
    ):
        await require_content_group(service, scenario, scenario.viewer)

        async def run(operation):
            async with session_factory() as session:
                return await operation(AuthorizationService(session, locks=locks))

        deleted, assigned = await asyncio.gather(
            run(lambda other: other.delete_role(scenario.editor)),
            run(lambda other: other.set_user_roles(scenario.user, [scenario.editor])),
            return_exceptions=True,
        )

        assert deleted is None
        # assignment either ran first or found the role already gone
        assert not isinstance(assigned, Exception) or isinstance(assigned, NotFoundError)
        async with session_factory() as session:
            assert await UserAssignmentStore(session).role_ids(scenario.user) == {scenario.viewer}


# ===================================================================
#  Permissions
# ===================================================================

class TestPermissions:
    async def test_delete_cascades_everywhere(self, service, scenario):
        await service.set_user_roles(scenario.user, [scenario.editor])
        await service.set_user_direct_permissions(scenario.user, [scenario.account_write])

        removed = await service.delete_permission(scenario.account_write)

        assert removed == {"roles": 1, "users": 1}
        assert await RoleStore(service.db).role_ids_with_permission(scenario.account_write) == set()
        users = UserAssignmentStore(service.db)
        assert await users.user_ids_with_direct_permission(scenario.account_write) == set()
        assert "account-write" not in await effective_by_name(service, scenario.user)
        with pytest.raises(NotFoundError):
            await service.get_permission(scenario.account_write)

    async def test_failed_cascade_changes_nothing(self, service, scenario, monkeypatch):
        await service.set_user_direct_permissions(scenario.user, [scenario.account_write])
        original_execute = service.db.execute

        async def flaky_execute(statement, *args, **kwargs):
            if "DELETE FROM user_permissions" in str(statement):
                raise OperationalError("DELETE FROM user_permissions", {}, Exception("disk I/O error"))
            return await original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(service.db, "execute", flaky_execute)
        with pytest.raises(ConflictError) as excinfo:
            await service.delete_permission(scenario.account_write)
        monkeypatch.undo()

        assert excinfo.value.title == "Permission deletion failed"
        assert await RoleStore(service.db).role_ids_with_permission(scenario.account_write) == {scenario.editor}
        users = UserAssignmentStore(service.db)
        assert await users.direct_permission_ids(scenario.user) == {scenario.account_write}
        assert (await service.get_permission(scenario.account_write)).name == "account-write"

    async def test_create_validation(self, service, scenario):
        with pytest.raises(ValidationError):
            await service.create_permission(name="Bad_Name", description="x", resources=["a"], actions=["b"])
        with pytest.raises(ValidationError):
            await service.create_permission(name="empty-resources", description="x", resources=[], actions=["b"])
        with pytest.raises(ValidationError):
            await service.create_permission(name="blank-actions", description="x", resources=["a"], actions=[" "])

    async def test_update_and_filter(self, service, scenario):
        updated = await service.update_permission(
            scenario.reports_read, {"actions": ["read", "export"], "category": ""}
        )
        assert updated.actions == ["read", "export"]
        assert updated.category is None
        with pytest.raises(ValidationError):
            await service.update_permission(scenario.reports_read, {"resources": []})
        with pytest.raises(ValidationError):
            await service.update_permission(scenario.reports_read, {"name": "renamed"})

        assert [p.name for p in await service.list_permissions(action="export")] == ["reports-read"]
        assert [p.name for p in await service.list_permissions(resource="account")] == ["account-write"]

    async def test_users_with_permission_carries_provenance(self, service, scenario):
        await service.set_user_roles(scenario.user, [scenario.editor])
        other, _ = await service.create_user(email="other@example.com", name="Other")
        other_id = other.id
        await service.set_user_direct_permissions(other_id, [scenario.account_write])

        holders = {user.id: (direct, via) for user, direct, via in await service.users_with_permission(scenario.account_write)}
        assert holders == {scenario.user: (False, {"Editor"}), other_id: (True, set())}

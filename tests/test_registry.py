import pytest
from sqlalchemy import select, func

from acl_service.core.errors import InvalidParameterError, NotFoundError, PermissionDeniedError
from acl_service.features.acl.events import EventTypes
from acl_service.features.acl.models import (
    AccessType,
    AclGroup,
    AclRole,
    ApiPermission,
    EntityPermission,
    PermissionScope,
    PolicyPermission,
    group_accounts,
    group_roles,
)

pytestmark = pytest.mark.asyncio


async def _count(session, stmt) -> int:
    result = await session.execute(select(func.count()).select_from(stmt.subquery()))
    return result.scalar_one()


async def test_create_role_defaults_to_caller_domain(directory, registry_for, events) -> None:
    registry = registry_for(directory.admin_a)

    role = await registry.create_role(None, "operators", "Operate vms")

    assert role.domain_id == directory.domain_a.id
    assert role.name == "operators"
    assert events.types() == [EventTypes.ACL_ROLE_CREATE]
    assert events.events[0].account_id == directory.admin_a.id
    assert events.events[0].resource_id == role.id


async def test_role_names_are_unique_per_domain(directory, registry_for, session) -> None:
    root = registry_for(directory.root_admin)

    await root.create_role(directory.domain_a.id, "operators")
    await root.create_role(directory.domain_b.id, "operators")

    with pytest.raises(InvalidParameterError):
        await root.create_role(directory.domain_a.id, "operators")

    total = await _count(session, select(AclRole).where(AclRole.name == "operators"))
    assert total == 2


async def test_group_names_are_unique_per_domain(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)
    await registry.create_group(None, "ops")

    with pytest.raises(InvalidParameterError):
        await registry.create_group(None, "ops")


async def test_non_root_cannot_create_in_foreign_domain(directory, registry_for, events) -> None:
    registry = registry_for(directory.admin_a)

    with pytest.raises(PermissionDeniedError):
        await registry.create_role(directory.domain_b.id, "intruders")
    with pytest.raises(PermissionDeniedError):
        await registry.create_group(directory.domain_b.id, "intruders")

    assert events.events == []


async def test_parent_role_policies_are_copied_once(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    parent = await registry.create_role(None, "parent")
    await registry.grant_policy_permission(parent.id, "Volume", AccessType.USE, PermissionScope.ACCOUNT)
    await registry.grant_policy_permission(parent.id, "VirtualMachine", AccessType.OPERATE, PermissionScope.DOMAIN)

    child = await registry.create_role(None, "child", parent_role_id=parent.id)

    child_perms = await _count(session, select(PolicyPermission).where(PolicyPermission.role_id == child.id))
    assert child_perms == 2

    # Later changes to the parent do not reach the child
    await registry.grant_policy_permission(parent.id, "Volume", AccessType.MODIFY, PermissionScope.ACCOUNT)
    child_perms = await _count(session, select(PolicyPermission).where(PolicyPermission.role_id == child.id))
    assert child_perms == 2


async def test_unknown_parent_role_is_rejected(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)

    with pytest.raises(InvalidParameterError):
        await registry.create_role(None, "orphan", parent_role_id="01MISSINGROLE0000000000000")


async def test_api_grant_is_idempotent(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    role = await registry.create_role(None, "viewers")

    await registry.grant_api_permission(role.id, ["listVirtualMachines"])
    await registry.grant_api_permission(role.id, ["listVirtualMachines", "listVolumes"])

    rows = await _count(session, select(ApiPermission).where(ApiPermission.role_id == role.id))
    assert rows == 2


async def test_revoke_then_grant_leaves_one_row(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    role = await registry.create_role(None, "viewers")
    await registry.grant_api_permission(role.id, ["listVolumes"])

    await registry.revoke_api_permission(role.id, ["listVolumes"])
    await registry.revoke_api_permission(role.id, ["listVolumes"])
    await registry.grant_api_permission(role.id, ["listVolumes"])

    rows = await _count(
        session,
        select(ApiPermission).where(ApiPermission.role_id == role.id, ApiPermission.api_name == "listVolumes"),
    )
    assert rows == 1


async def test_policy_revoke_removes_row(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    role = await registry.create_role(None, "editors")
    await registry.grant_policy_permission(role.id, "Volume", AccessType.MODIFY, PermissionScope.ACCOUNT)
    await registry.grant_policy_permission(role.id, "Volume", AccessType.MODIFY, PermissionScope.ACCOUNT)

    await registry.revoke_policy_permission(role.id, "Volume", AccessType.MODIFY, PermissionScope.ACCOUNT)

    rows = await _count(session, select(PolicyPermission).where(PolicyPermission.role_id == role.id))
    assert rows == 0


async def test_grant_to_missing_role_is_invalid(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)

    with pytest.raises(InvalidParameterError, match="Unable to find acl role"):
        await registry.grant_api_permission("01MISSINGROLE0000000000000", ["listVolumes"])


async def test_membership_is_idempotent(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    role = await registry.create_role(None, "viewers")
    group = await registry.create_group(None, "ops")

    await registry.add_roles_to_group([role.id, role.id], group.id)
    await registry.add_accounts_to_group([directory.user_a.id], group.id)
    await registry.add_accounts_to_group([directory.user_a.id], group.id)

    assert await _count(session, select(group_roles).where(group_roles.c.group_id == group.id)) == 1
    assert await _count(session, select(group_accounts).where(group_accounts.c.group_id == group.id)) == 1

    await registry.remove_accounts_from_group([directory.user_a.id], group.id)
    assert await _count(session, select(group_accounts).where(group_accounts.c.group_id == group.id)) == 0


async def test_empty_id_list_is_rejected(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")

    with pytest.raises(InvalidParameterError):
        await registry.add_roles_to_group([], group.id)
    with pytest.raises(InvalidParameterError):
        await registry.remove_accounts_from_group([], group.id)


async def test_unknown_id_in_list_rolls_back_whole_batch(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")
    group_id = group.id

    with pytest.raises(InvalidParameterError):
        await registry.add_accounts_to_group([directory.user_a.id, "01MISSINGACCOUNT0000000000"], group_id)

    assert await _count(session, select(group_accounts).where(group_accounts.c.group_id == group_id)) == 0


async def test_domain_admin_cannot_add_foreign_account(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")

    with pytest.raises(PermissionDeniedError):
        await registry.add_accounts_to_group([directory.user_b.id], group.id)


async def test_plain_user_cannot_manage_domain_group(directory, registry_for) -> None:
    group = await registry_for(directory.admin_a).create_group(None, "ops")

    with pytest.raises(PermissionDeniedError):
        await registry_for(directory.user_a).delete_group(group.id)


async def test_delete_role_leaves_no_orphans(directory, registry_for, session, events) -> None:
    registry = registry_for(directory.admin_a)
    role = await registry.create_role(None, "viewers")
    group = await registry.create_group(None, "ops")
    await registry.grant_api_permission(role.id, ["listVolumes"])
    await registry.grant_policy_permission(role.id, "Volume", AccessType.LIST, PermissionScope.DOMAIN)
    await registry.add_roles_to_group([role.id], group.id)
    role_id = role.id

    assert await registry.delete_role(role_id) is True

    assert await session.get(AclRole, role_id) is None
    assert await _count(session, select(group_roles).where(group_roles.c.role_id == role_id)) == 0
    assert await _count(session, select(ApiPermission).where(ApiPermission.role_id == role_id)) == 0
    assert await _count(session, select(PolicyPermission).where(PolicyPermission.role_id == role_id)) == 0
    assert events.types()[-1] == EventTypes.ACL_ROLE_DELETE


async def test_delete_group_leaves_no_orphans(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    role = await registry.create_role(None, "viewers")
    group = await registry.create_group(None, "ops")
    await registry.add_roles_to_group([role.id], group.id)
    await registry.add_accounts_to_group([directory.user_a.id], group.id)
    await registry.grant_entity_permission(group.id, "Volume", directory.volume_a.id, AccessType.USE)
    group_id = group.id

    assert await registry.delete_group(group_id) is True

    assert await session.get(AclGroup, group_id) is None
    assert await _count(session, select(group_roles).where(group_roles.c.group_id == group_id)) == 0
    assert await _count(session, select(group_accounts).where(group_accounts.c.group_id == group_id)) == 0
    assert await _count(session, select(EntityPermission).where(EntityPermission.group_id == group_id)) == 0
    # The role itself survives
    assert await session.get(AclRole, role.id) is not None


async def test_delete_missing_group_is_invalid(directory, registry_for) -> None:
    with pytest.raises(InvalidParameterError):
        await registry_for(directory.root_admin).delete_group("01MISSINGGROUP000000000000")


async def test_entity_grant_stores_external_uuid(directory, registry_for, session, events) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")

    await registry.grant_entity_permission(group.id, "Volume", directory.volume_a.id, AccessType.USE)
    await registry.grant_entity_permission(group.id, "Volume", directory.volume_a.id, AccessType.USE)

    result = await session.execute(select(EntityPermission).where(EntityPermission.group_id == group.id))
    grants = result.scalars().all()
    assert len(grants) == 1
    assert grants[0].entity_uuid == directory.volume_a.uuid
    assert grants[0].allow is True
    assert events.types().count(EventTypes.ACL_GROUP_GRANT) == 2


async def test_entity_grant_keeps_existing_row(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")
    await registry.grant_entity_permission(group.id, "Volume", directory.volume_a.id, AccessType.USE, allow=False)

    await registry.grant_entity_permission(group.id, "Volume", directory.volume_a.id, AccessType.USE)

    result = await session.execute(select(EntityPermission.allow).where(EntityPermission.group_id == group.id))
    assert result.scalars().all() == [False]


async def test_entity_revoke_removes_deny_row(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")
    await registry.grant_entity_permission(group.id, "Volume", directory.volume_a.id, AccessType.USE, allow=False)

    await registry.revoke_entity_permission(group.id, "Volume", directory.volume_a.id, AccessType.USE)

    assert await _count(session, select(EntityPermission).where(EntityPermission.group_id == group.id)) == 0


async def test_unregistered_entity_type_is_invalid(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")

    with pytest.raises(InvalidParameterError, match="not supported"):
        await registry.grant_entity_permission(group.id, "Network", 1, AccessType.USE)


async def test_missing_entity_is_invalid(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")

    with pytest.raises(InvalidParameterError):
        await registry.grant_entity_permission(group.id, "Volume", 99999, AccessType.USE)


async def test_entity_kind_must_match_type(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")

    # vm_a exists but is not a Volume
    with pytest.raises(InvalidParameterError):
        await registry.grant_entity_permission(group.id, "Volume", directory.vm_a.id, AccessType.USE)


async def test_entity_in_foreign_domain_is_denied(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)
    group = await registry.create_group(None, "ops")

    with pytest.raises(PermissionDeniedError):
        await registry.grant_entity_permission(group.id, "Volume", directory.volume_b.id, AccessType.USE)


async def test_sink_failure_does_not_fail_operation(directory, session, entity_types) -> None:
    from acl_service.features.accounts.context import CallContext
    from acl_service.features.acl.registry import AclRegistry

    class BrokenSink:
        async def emit(self, event) -> None:
            raise RuntimeError("audit store unavailable")

    registry = AclRegistry(
        session,
        CallContext.for_account(directory.admin_a),
        entity_types=entity_types,
        events=BrokenSink(),
    )

    role = await registry.create_role(None, "viewers")

    assert await session.get(AclRole, role.id) is not None


async def test_get_and_list(directory, registry_for) -> None:
    registry = registry_for(directory.admin_a)
    await registry.create_role(None, "b-role")
    await registry.create_role(None, "a-role")
    group = await registry.create_group(None, "ops")

    roles = await registry.list_roles()
    assert [role.name for role in roles] == ["a-role", "b-role"]
    assert (await registry.get_group(group.id)).name == "ops"
    assert [g.id for g in await registry.list_groups()] == [group.id]

    with pytest.raises(NotFoundError):
        await registry.get_role("01MISSINGROLE0000000000000")
    with pytest.raises(PermissionDeniedError):
        await registry.list_roles(directory.domain_b.id)


async def test_domain_admin_cannot_grant_global_scope(directory, registry_for, session) -> None:
    registry = registry_for(directory.admin_a)
    role = await registry.create_role(None, "mine")

    with pytest.raises(PermissionDeniedError):
        await registry.grant_policy_permission(role.id, "Volume", AccessType.MODIFY, PermissionScope.GLOBAL)

    await registry.grant_policy_permission(role.id, "Volume", AccessType.MODIFY, PermissionScope.DOMAIN)
    result = await session.execute(select(PolicyPermission.scope).where(PolicyPermission.role_id == role.id))
    assert result.scalars().all() == [PermissionScope.DOMAIN]


async def test_root_admin_may_grant_global_scope(directory, registry_for) -> None:
    registry = registry_for(directory.root_admin)
    role = await registry.create_role(directory.domain_a.id, "platform")

    await registry.grant_policy_permission(role.id, "Volume", AccessType.LIST, PermissionScope.GLOBAL)


async def test_domain_admin_cannot_copy_global_parent(directory, registry_for) -> None:
    parent = await registry_for(directory.root_admin).create_role(directory.domain_a.id, "platform")
    await registry_for(directory.root_admin).grant_policy_permission(
        parent.id, "Volume", AccessType.LIST, PermissionScope.GLOBAL
    )

    with pytest.raises(PermissionDeniedError):
        await registry_for(directory.admin_a).create_role(None, "copycat", parent_role_id=parent.id)


async def test_get_in_foreign_domain_is_denied(directory, registry_for) -> None:
    root = registry_for(directory.root_admin)
    role = await root.create_role(directory.domain_b.id, "secret")
    group = await root.create_group(directory.domain_b.id, "secret")

    registry = registry_for(directory.admin_a)
    with pytest.raises(PermissionDeniedError):
        await registry.get_role(role.id)
    with pytest.raises(PermissionDeniedError):
        await registry.get_group(group.id)


async def test_racing_role_create_is_invalid(directory, registry_for, session_factory, monkeypatch) -> None:
    registry = registry_for(directory.admin_a)

    async def name_check_passes(domain_id, name):
        # another request inserts the same name after the check
        async with session_factory() as other:
            other.add(AclRole(name=name, domain_id=domain_id))
            await other.commit()
        return None

    monkeypatch.setattr(registry, "_role_by_name", name_check_passes)

    with pytest.raises(InvalidParameterError, match="already exists"):
        await registry.create_role(None, "operators")


async def test_racing_group_create_is_invalid(directory, registry_for, session_factory, monkeypatch) -> None:
    registry = registry_for(directory.admin_a)

    async def name_check_passes(domain_id, name):
        async with session_factory() as other:
            other.add(AclGroup(name=name, domain_id=domain_id))
            await other.commit()
        return None

    monkeypatch.setattr(registry, "_group_by_name", name_check_passes)

    with pytest.raises(InvalidParameterError, match="already exists"):
        await registry.create_group(None, "ops")

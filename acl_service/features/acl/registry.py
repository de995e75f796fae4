"""
Administrative lifecycle of ACL roles and groups.

Every mutating operation:
1. looks up its target and raises InvalidParameterError when it is missing
2. runs the access checker against the caller
3. applies its row changes inside one AclUnitOfWork
4. emits one audit event after the commit
"""
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, delete, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from acl_service.core.errors import InvalidParameterError, NotFoundError, PermissionDeniedError
from acl_service.features.accounts.access import AccessChecker, DomainAccessChecker
from acl_service.features.accounts.context import CallContext
from acl_service.features.accounts.models import Account
from acl_service.features.acl.entities import EntityTypeRegistry
from acl_service.features.acl.events import ActionEvent, EventSink, EventTypes, MemoryEventSink
from acl_service.features.acl.models import AclRole, AclGroup, AccessType, PermissionScope
from acl_service.features.acl.stores import AclStores, AclUnitOfWork
from acl_service.utils import get_logger


log = get_logger(__name__)


class AclRegistry:
    """Role and group administration on behalf of one caller."""

    def __init__(
        self,
        session: AsyncSession,
        caller: CallContext,
        access_checker: Optional[AccessChecker] = None,
        entity_types: Optional[EntityTypeRegistry] = None,
        events: Optional[EventSink] = None,
    ):
        self.session = session
        self.caller = caller
        self.access = access_checker or DomainAccessChecker()
        self.entity_types = entity_types or EntityTypeRegistry()
        self.events = events or MemoryEventSink()

    def unit_of_work(self) -> AclUnitOfWork:
        return AclUnitOfWork(self.session)

    # ========================================================================
    # Roles
    # ========================================================================

    async def create_role(
        self,
        domain_id: Optional[str],
        name: str,
        description: Optional[str] = None,
        parent_role_id: Optional[str] = None,
    ) -> AclRole:
        """
        Create a role, optionally seeded with a copy of a parent role's
        policy permissions.

        Args:
            domain_id: Owning domain, the caller's domain when None
            name: Role name, unique within the domain
            description: Free text
            parent_role_id: Role whose policy permissions are copied

        Raises:
            PermissionDeniedError: non-root caller targeting a foreign domain
            InvalidParameterError: duplicate name or unknown parent role
        """
        domain_id = self._target_domain(domain_id, "role")

        if await self._role_by_name(domain_id, name) is not None:
            raise InvalidParameterError(
                f"Unable to create acl role with name {name} already exists for domain {domain_id}"
            )
        if parent_role_id is not None:
            if await self.session.get(AclRole, parent_role_id) is None:
                raise InvalidParameterError(
                    f"Unable to find parent acl role: {parent_role_id}; failed to create acl role."
                )
            for perm in await AclStores.bind(self.session).permissions.list_policy_permissions(parent_role_id):
                self._check_scope(perm.scope)

        try:
            async with self.unit_of_work() as stores:
                role = AclRole(name=name, description=description, domain_id=domain_id)
                self.session.add(role)
                await self.session.flush()
                copied = 0
                if parent_role_id is not None:
                    copied = await stores.permissions.copy_policy_permissions(parent_role_id, role.id)
        except IntegrityError as e:
            raise InvalidParameterError(
                f"Unable to create acl role with name {name} already exists for domain {domain_id}"
            ) from e
        await self.session.refresh(role)

        log.info(f"Created acl role {role.id} ({name}) in domain {domain_id}, copied {copied} permissions")
        await self._emit(
            EventTypes.ACL_ROLE_CREATE, "Creating Acl Role", "role", role,
            {"name": name, "parent_role_id": parent_role_id},
        )
        return role

    async def delete_role(self, role_id: str) -> bool:
        role = await self._load_role(role_id, "delete acl role")
        self.access.check_access(self.caller, role)

        async with self.unit_of_work() as stores:
            await stores.memberships.delete_for_role(role.id)
            await stores.permissions.delete_api_permissions_for_role(role.id)
            await stores.permissions.delete_policy_permissions_for_role(role.id)
            await self.session.execute(delete(AclRole).where(AclRole.id == role.id))

        log.info(f"Deleted acl role {role.id} ({role.name})")
        await self._emit(EventTypes.ACL_ROLE_DELETE, "Deleting Acl Role", "role", role, {"name": role.name})
        return True

    async def grant_api_permission(self, role_id: str, api_names: Sequence[str]) -> AclRole:
        role = await self._load_role(role_id, "grant permission to role")
        self.access.check_access(self.caller, role)

        async with self.unit_of_work() as stores:
            for api_name in api_names:
                await stores.permissions.add_api_permission(role.id, api_name)

        await self._emit(
            EventTypes.ACL_ROLE_GRANT, "Granting permission to Acl Role", "role", role,
            {"api_names": list(api_names)},
        )
        return role

    async def revoke_api_permission(self, role_id: str, api_names: Sequence[str]) -> AclRole:
        role = await self._load_role(role_id, "revoke permission from role")
        self.access.check_access(self.caller, role)

        async with self.unit_of_work() as stores:
            for api_name in api_names:
                await stores.permissions.remove_api_permission(role.id, api_name)

        await self._emit(
            EventTypes.ACL_ROLE_REVOKE, "Revoking permission from Acl Role", "role", role,
            {"api_names": list(api_names)},
        )
        return role

    async def grant_policy_permission(
        self,
        role_id: str,
        entity_type: str,
        access_type: AccessType,
        scope: PermissionScope,
        allow: bool = True,
    ) -> AclRole:
        role = await self._load_role(role_id, "grant policy permission to role")
        self.access.check_access(self.caller, role)
        self._check_scope(scope)

        async with self.unit_of_work() as stores:
            await stores.permissions.add_policy_permission(role.id, entity_type, access_type, scope, allow)

        await self._emit(
            EventTypes.ACL_ROLE_GRANT, "Granting policy permission to Acl Role", "role", role,
            _policy_details(entity_type, access_type, scope, allow),
        )
        return role

    async def revoke_policy_permission(
        self,
        role_id: str,
        entity_type: str,
        access_type: AccessType,
        scope: PermissionScope,
        allow: bool = True,
    ) -> AclRole:
        role = await self._load_role(role_id, "revoke policy permission from role")
        self.access.check_access(self.caller, role)

        async with self.unit_of_work() as stores:
            await stores.permissions.remove_policy_permission(role.id, entity_type, access_type, scope, allow)

        await self._emit(
            EventTypes.ACL_ROLE_REVOKE, "Revoking policy permission from Acl Role", "role", role,
            _policy_details(entity_type, access_type, scope, allow),
        )
        return role

    # ========================================================================
    # Groups
    # ========================================================================

    async def create_group(
        self,
        domain_id: Optional[str],
        name: str,
        description: Optional[str] = None,
    ) -> AclGroup:
        domain_id = self._target_domain(domain_id, "group")

        if await self._group_by_name(domain_id, name) is not None:
            raise InvalidParameterError(
                f"Unable to create acl group with name {name} already exists for domain {domain_id}"
            )

        try:
            async with self.unit_of_work():
                group = AclGroup(name=name, description=description, domain_id=domain_id)
                self.session.add(group)
                await self.session.flush()
        except IntegrityError as e:
            raise InvalidParameterError(
                f"Unable to create acl group with name {name} already exists for domain {domain_id}"
            ) from e
        await self.session.refresh(group)

        log.info(f"Created acl group {group.id} ({name}) in domain {domain_id}")
        await self._emit(EventTypes.ACL_GROUP_CREATE, "Creating Acl Group", "group", group, {"name": name})
        return group

    async def delete_group(self, group_id: str) -> bool:
        group = await self._load_group(group_id, "delete acl group")
        self.access.check_access(self.caller, group)

        async with self.unit_of_work() as stores:
            await stores.memberships.delete_for_group(group.id)
            await stores.grants.delete_for_group(group.id)
            await self.session.execute(delete(AclGroup).where(AclGroup.id == group.id))

        log.info(f"Deleted acl group {group.id} ({group.name})")
        await self._emit(EventTypes.ACL_GROUP_DELETE, "Deleting Acl Group", "group", group, {"name": group.name})
        return True

    async def add_roles_to_group(self, role_ids: Sequence[str], group_id: str) -> AclGroup:
        _require_ids(role_ids, "role")
        group = await self._load_group(group_id, "add roles to acl group")
        self.access.check_access(self.caller, group)

        async with self.unit_of_work() as stores:
            for role_id in role_ids:
                role = await self._load_role(role_id, "add roles to acl group")
                self.access.check_access(self.caller, role)
                await stores.memberships.add_role(group.id, role.id)

        await self._emit(
            EventTypes.ACL_GROUP_UPDATE, "Adding roles to acl group", "group", group,
            {"role_ids": list(role_ids)},
        )
        return group

    async def remove_roles_from_group(self, role_ids: Sequence[str], group_id: str) -> AclGroup:
        _require_ids(role_ids, "role")
        group = await self._load_group(group_id, "remove roles from acl group")
        self.access.check_access(self.caller, group)

        async with self.unit_of_work() as stores:
            for role_id in role_ids:
                role = await self._load_role(role_id, "remove roles from acl group")
                self.access.check_access(self.caller, role)
                await stores.memberships.remove_role(group.id, role.id)

        await self._emit(
            EventTypes.ACL_GROUP_UPDATE, "Removing roles from acl group", "group", group,
            {"role_ids": list(role_ids)},
        )
        return group

    async def add_accounts_to_group(self, account_ids: Sequence[str], group_id: str) -> AclGroup:
        _require_ids(account_ids, "account")
        group = await self._load_group(group_id, "add accounts to acl group")
        self.access.check_access(self.caller, group)

        async with self.unit_of_work() as stores:
            for account_id in account_ids:
                account = await self._load_account(account_id, "add account to acl group")
                self.access.check_access(self.caller, account)
                await stores.memberships.add_account(group.id, account.id)

        await self._emit(
            EventTypes.ACL_GROUP_UPDATE, "Adding accounts to acl group", "group", group,
            {"account_ids": list(account_ids)},
        )
        return group

    async def remove_accounts_from_group(self, account_ids: Sequence[str], group_id: str) -> AclGroup:
        _require_ids(account_ids, "account")
        group = await self._load_group(group_id, "remove accounts from acl group")
        self.access.check_access(self.caller, group)

        async with self.unit_of_work() as stores:
            for account_id in account_ids:
                account = await self._load_account(account_id, "remove account from acl group")
                self.access.check_access(self.caller, account)
                await stores.memberships.remove_account(group.id, account.id)

        await self._emit(
            EventTypes.ACL_GROUP_UPDATE, "Removing accounts from acl group", "group", group,
            {"account_ids": list(account_ids)},
        )
        return group

    async def grant_entity_permission(
        self,
        group_id: str,
        entity_type: str,
        entity_id: int,
        access_type: AccessType,
        allow: bool = True,
    ) -> AclGroup:
        """
        Attach an explicit grant on one entity to a group.

        An existing row for the same (group, entity, access type) is left as
        is; revoke it first to change its allow flag.
        """
        group = await self._load_group(group_id, "grant permission to group")
        self.access.check_access(self.caller, group)
        descriptor, entity = await self._load_entity(entity_type, entity_id)

        async with self.unit_of_work() as stores:
            await stores.grants.upsert(
                group.id, entity_type, entity_id, descriptor.external_id(entity), access_type, allow
            )

        await self._emit(
            EventTypes.ACL_GROUP_GRANT, "Granting entity permission to Acl Group", "group", group,
            {"entity_type": entity_type, "entity_id": entity_id, "access_type": access_type.value, "allow": allow},
        )
        return group

    async def revoke_entity_permission(
        self,
        group_id: str,
        entity_type: str,
        entity_id: int,
        access_type: AccessType,
    ) -> AclGroup:
        group = await self._load_group(group_id, "revoke permission from group")
        self.access.check_access(self.caller, group)
        await self._load_entity(entity_type, entity_id)

        async with self.unit_of_work() as stores:
            await stores.grants.remove(group.id, entity_type, entity_id, access_type)

        await self._emit(
            EventTypes.ACL_GROUP_REVOKE, "Revoking entity permission from Acl Group", "group", group,
            {"entity_type": entity_type, "entity_id": entity_id, "access_type": access_type.value},
        )
        return group

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_role(self, role_id: str) -> AclRole:
        role = await self.session.get(AclRole, role_id)
        if role is None:
            raise NotFoundError(f"Acl role {role_id} not found")
        self._visible_domain(role.domain_id)
        return role

    async def get_group(self, group_id: str) -> AclGroup:
        group = await self.session.get(AclGroup, group_id)
        if group is None:
            raise NotFoundError(f"Acl group {group_id} not found")
        self._visible_domain(group.domain_id)
        return group

    async def list_roles(self, domain_id: Optional[str] = None, skip: int = 0, limit: int = 100) -> List[AclRole]:
        """Roles of a domain. Non-root callers only see their own domain."""
        stmt = select(AclRole).where(AclRole.domain_id == self._visible_domain(domain_id))
        stmt = stmt.order_by(AclRole.name).offset(skip).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_groups(self, domain_id: Optional[str] = None, skip: int = 0, limit: int = 100) -> List[AclGroup]:
        stmt = select(AclGroup).where(AclGroup.domain_id == self._visible_domain(domain_id))
        stmt = stmt.order_by(AclGroup.name).offset(skip).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Helpers
    # ========================================================================

    def _target_domain(self, domain_id: Optional[str], kind: str) -> str:
        if domain_id is None:
            return self.caller.domain_id
        if not self.caller.is_root_admin and domain_id != self.caller.domain_id:
            # domain admins can only create in their own domain
            raise PermissionDeniedError(f"Can't create acl {kind} in domain {domain_id}, permission denied")
        return domain_id

    def _check_scope(self, scope: PermissionScope) -> None:
        if not self.caller.is_root_admin and scope.greater_than(PermissionScope.DOMAIN):
            # only root admins hand out grants wider than one domain
            raise PermissionDeniedError(f"Can't grant {scope.value} scope permission, permission denied")

    def _visible_domain(self, domain_id: Optional[str]) -> str:
        if domain_id is None:
            return self.caller.domain_id
        if not self.caller.is_root_admin and domain_id != self.caller.domain_id:
            raise PermissionDeniedError(f"Can't read acl entries of domain {domain_id}, permission denied")
        return domain_id

    async def _role_by_name(self, domain_id: str, name: str) -> Optional[AclRole]:
        result = await self.session.execute(
            select(AclRole).where(and_(AclRole.domain_id == domain_id, AclRole.name == name))
        )
        return result.scalars().first()

    async def _group_by_name(self, domain_id: str, name: str) -> Optional[AclGroup]:
        result = await self.session.execute(
            select(AclGroup).where(and_(AclGroup.domain_id == domain_id, AclGroup.name == name))
        )
        return result.scalars().first()

    async def _load_role(self, role_id: str, action: str) -> AclRole:
        role = await self.session.get(AclRole, role_id)
        if role is None:
            raise InvalidParameterError(f"Unable to find acl role: {role_id}; failed to {action}.")
        return role

    async def _load_group(self, group_id: str, action: str) -> AclGroup:
        group = await self.session.get(AclGroup, group_id)
        if group is None:
            raise InvalidParameterError(f"Unable to find acl group: {group_id}; failed to {action}.")
        return group

    async def _load_account(self, account_id: str, action: str) -> Account:
        account = await self.session.get(Account, account_id)
        if account is None:
            raise InvalidParameterError(f"Unable to find account: {account_id}; failed to {action}.")
        return account

    async def _load_entity(self, entity_type: str, entity_id: int):
        descriptor = self.entity_types.resolve(entity_type)
        entity = await descriptor.find_by_id(self.session, entity_id)
        if entity is None:
            raise InvalidParameterError(f"Unable to find entity {entity_type} by id: {entity_id}")
        self.access.check_access(self.caller, entity)
        return descriptor, entity

    async def _emit(
        self,
        event_type: str,
        description: str,
        resource_type: str,
        subject: Any,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = ActionEvent(
            event_type=event_type,
            description=description,
            account_id=self.caller.account_id,
            resource_type=resource_type,
            resource_id=subject.id,
            domain_id=subject.domain_id,
            details=details or {},
        )
        try:
            await self.events.emit(event)
        except Exception:
            # the mutation is already committed
            log.exception(f"Failed to emit {event_type} event for {resource_type} {subject.id}")


def _require_ids(ids: Sequence[str], kind: str) -> None:
    if not ids:
        raise InvalidParameterError(f"At least one {kind} id is required")


def _policy_details(
    entity_type: str,
    access_type: AccessType,
    scope: PermissionScope,
    allow: bool,
) -> Dict[str, Any]:
    return {
        "entity_type": entity_type,
        "access_type": access_type.value,
        "scope": scope.value,
        "allow": allow,
    }

"""
Row stores behind the ACL engine.

- PermissionStore: role -> API name, role -> (entity type, access type, scope, allow)
- EntityGrantStore: group -> (entity type, entity id, access type, allow)
- MembershipStore: group <-> account, group <-> role

Stores only read and write rows. Existence and access checks belong to the
registry; transaction boundaries belong to AclUnitOfWork.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select, delete, insert, and_
from sqlalchemy.ext.asyncio import AsyncSession

from acl_service.core.database.engine import UnitOfWork
from acl_service.features.acl.models import (
    AclRole,
    AclGroup,
    ApiPermission,
    PolicyPermission,
    EntityPermission,
    AccessType,
    PermissionScope,
    group_accounts,
    group_roles,
)


class PermissionStore:
    """API and policy permissions attached to roles."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # API permissions

    async def find_api_permission(self, role_id: str, api_name: str) -> Optional[ApiPermission]:
        stmt = select(ApiPermission).where(
            and_(ApiPermission.role_id == role_id, ApiPermission.api_name == api_name)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def add_api_permission(self, role_id: str, api_name: str) -> bool:
        """Insert the row if absent. Returns True if a row was added."""
        if await self.find_api_permission(role_id, api_name) is not None:
            return False
        self.session.add(ApiPermission(role_id=role_id, api_name=api_name))
        await self.session.flush()
        return True

    async def remove_api_permission(self, role_id: str, api_name: str) -> bool:
        perm = await self.find_api_permission(role_id, api_name)
        if perm is None:
            return False
        await self.session.execute(delete(ApiPermission).where(ApiPermission.id == perm.id))
        return True

    async def list_api_permissions(self, role_id: str) -> List[ApiPermission]:
        stmt = select(ApiPermission).where(ApiPermission.role_id == role_id).order_by(ApiPermission.api_name)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def any_role_has_api(self, api_name: str, role_ids: Iterable[str]) -> bool:
        role_ids = list(role_ids)
        if not role_ids:
            return False
        stmt = (
            select(ApiPermission.id)
            .where(and_(ApiPermission.api_name == api_name, ApiPermission.role_id.in_(role_ids)))
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def delete_api_permissions_for_role(self, role_id: str) -> None:
        await self.session.execute(delete(ApiPermission).where(ApiPermission.role_id == role_id))

    # Policy permissions

    async def find_policy_permissions(
        self,
        role_id: str,
        entity_type: str,
        access_type: AccessType,
        allow: bool = True,
        scope: Optional[PermissionScope] = None,
    ) -> List[PolicyPermission]:
        conditions = [
            PolicyPermission.role_id == role_id,
            PolicyPermission.entity_type == entity_type,
            PolicyPermission.access_type == access_type,
            PolicyPermission.allow == allow,
        ]
        if scope is not None:
            conditions.append(PolicyPermission.scope == scope)
        result = await self.session.execute(select(PolicyPermission).where(and_(*conditions)))
        return list(result.scalars().all())

    async def add_policy_permission(
        self,
        role_id: str,
        entity_type: str,
        access_type: AccessType,
        scope: PermissionScope,
        allow: bool = True,
    ) -> bool:
        existing = await self.find_policy_permissions(role_id, entity_type, access_type, allow, scope)
        if existing:
            return False
        self.session.add(PolicyPermission(
            role_id=role_id,
            entity_type=entity_type,
            access_type=access_type,
            scope=scope,
            allow=allow,
        ))
        await self.session.flush()
        return True

    async def remove_policy_permission(
        self,
        role_id: str,
        entity_type: str,
        access_type: AccessType,
        scope: PermissionScope,
        allow: bool = True,
    ) -> bool:
        existing = await self.find_policy_permissions(role_id, entity_type, access_type, allow, scope)
        if not existing:
            return False
        await self.session.execute(
            delete(PolicyPermission).where(PolicyPermission.id.in_([p.id for p in existing]))
        )
        return True

    async def list_policy_permissions(self, role_id: str) -> List[PolicyPermission]:
        stmt = select(PolicyPermission).where(PolicyPermission.role_id == role_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def copy_policy_permissions(self, source_role_id: str, target_role_id: str) -> int:
        """Copy every policy row of one role to another as new rows."""
        perms = await self.list_policy_permissions(source_role_id)
        for perm in perms:
            self.session.add(PolicyPermission(
                role_id=target_role_id,
                entity_type=perm.entity_type,
                access_type=perm.access_type,
                scope=perm.scope,
                allow=perm.allow,
            ))
        await self.session.flush()
        return len(perms)

    async def delete_policy_permissions_for_role(self, role_id: str) -> None:
        await self.session.execute(delete(PolicyPermission).where(PolicyPermission.role_id == role_id))


class EntityGrantStore:
    """Per-entity allow/deny grants held by groups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find(
        self,
        group_id: str,
        entity_type: str,
        entity_id: int,
        access_type: AccessType,
    ) -> Optional[EntityPermission]:
        stmt = select(EntityPermission).where(
            and_(
                EntityPermission.group_id == group_id,
                EntityPermission.entity_type == entity_type,
                EntityPermission.entity_id == entity_id,
                EntityPermission.access_type == access_type,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def upsert(
        self,
        group_id: str,
        entity_type: str,
        entity_id: int,
        entity_uuid: str,
        access_type: AccessType,
        allow: bool = True,
    ) -> EntityPermission:
        """Return the existing grant, or insert a new one."""
        grant = await self.find(group_id, entity_type, entity_id, access_type)
        if grant is not None:
            return grant
        grant = EntityPermission(
            group_id=group_id,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_uuid=entity_uuid,
            access_type=access_type,
            allow=allow,
        )
        self.session.add(grant)
        await self.session.flush()
        return grant

    async def remove(
        self,
        group_id: str,
        entity_type: str,
        entity_id: int,
        access_type: AccessType,
    ) -> bool:
        grant = await self.find(group_id, entity_type, entity_id, access_type)
        if grant is None:
            return False
        await self.session.execute(delete(EntityPermission).where(EntityPermission.id == grant.id))
        return True

    async def list_entity_ids(
        self,
        group_id: str,
        entity_type: str,
        access_type: AccessType,
        allow: bool,
    ) -> List[int]:
        stmt = select(EntityPermission.entity_id).where(
            and_(
                EntityPermission.group_id == group_id,
                EntityPermission.entity_type == entity_type,
                EntityPermission.access_type == access_type,
                EntityPermission.allow == allow,
            )
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_group(self, group_id: str) -> List[EntityPermission]:
        stmt = select(EntityPermission).where(EntityPermission.group_id == group_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_for_group(self, group_id: str) -> None:
        await self.session.execute(delete(EntityPermission).where(EntityPermission.group_id == group_id))


class MembershipStore:
    """Group membership of accounts and roles."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Group <-> Account

    async def has_account(self, group_id: str, account_id: str) -> bool:
        stmt = select(group_accounts).where(
            and_(group_accounts.c.group_id == group_id, group_accounts.c.account_id == account_id)
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def add_account(self, group_id: str, account_id: str) -> bool:
        if await self.has_account(group_id, account_id):
            return False
        await self.session.execute(insert(group_accounts).values(group_id=group_id, account_id=account_id))
        return True

    async def remove_account(self, group_id: str, account_id: str) -> bool:
        if not await self.has_account(group_id, account_id):
            return False
        await self.session.execute(
            delete(group_accounts).where(
                and_(group_accounts.c.group_id == group_id, group_accounts.c.account_id == account_id)
            )
        )
        return True

    async def list_account_ids(self, group_id: str) -> List[str]:
        stmt = select(group_accounts.c.account_id).where(group_accounts.c.group_id == group_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_group_ids_for_account(self, account_id: str) -> List[str]:
        stmt = select(group_accounts.c.group_id).where(group_accounts.c.account_id == account_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Group <-> Role

    async def has_role(self, group_id: str, role_id: str) -> bool:
        stmt = select(group_roles).where(
            and_(group_roles.c.group_id == group_id, group_roles.c.role_id == role_id)
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def add_role(self, group_id: str, role_id: str) -> bool:
        if await self.has_role(group_id, role_id):
            return False
        await self.session.execute(insert(group_roles).values(group_id=group_id, role_id=role_id))
        return True

    async def remove_role(self, group_id: str, role_id: str) -> bool:
        if not await self.has_role(group_id, role_id):
            return False
        await self.session.execute(
            delete(group_roles).where(
                and_(group_roles.c.group_id == group_id, group_roles.c.role_id == role_id)
            )
        )
        return True

    async def list_role_ids(self, group_id: str) -> List[str]:
        stmt = select(group_roles.c.role_id).where(group_roles.c.group_id == group_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_group_ids_for_role(self, role_id: str) -> List[str]:
        stmt = select(group_roles.c.group_id).where(group_roles.c.role_id == role_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Joins

    async def roles_for_account(self, account_id: str) -> List[AclRole]:
        """Roles reachable from an account through its groups, each once."""
        stmt = (
            select(AclRole)
            .join(group_roles, group_roles.c.role_id == AclRole.id)
            .join(group_accounts, group_accounts.c.group_id == group_roles.c.group_id)
            .where(group_accounts.c.account_id == account_id)
            .distinct()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def groups_for_account(self, account_id: str) -> List[AclGroup]:
        stmt = (
            select(AclGroup)
            .join(group_accounts, group_accounts.c.group_id == AclGroup.id)
            .where(group_accounts.c.account_id == account_id)
            .distinct()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Cascades

    async def delete_for_role(self, role_id: str) -> None:
        await self.session.execute(delete(group_roles).where(group_roles.c.role_id == role_id))

    async def delete_for_group(self, group_id: str) -> None:
        await self.session.execute(delete(group_roles).where(group_roles.c.group_id == group_id))
        await self.session.execute(delete(group_accounts).where(group_accounts.c.group_id == group_id))


@dataclass
class AclStores:
    """The three stores bound to one session."""
    permissions: PermissionStore
    grants: EntityGrantStore
    memberships: MembershipStore

    @classmethod
    def bind(cls, session: AsyncSession) -> "AclStores":
        return cls(
            permissions=PermissionStore(session),
            grants=EntityGrantStore(session),
            memberships=MembershipStore(session),
        )


class AclUnitOfWork(UnitOfWork[AclStores]):
    """
    Unit of work handing the block transactional stores.

    Usage:
        async with AclUnitOfWork(session) as stores:
            await stores.memberships.add_role(group_id, role_id)
    """

    def handle(self) -> AclStores:
        return AclStores.bind(self.session)

"""
Effective permission resolution.

Answers, from the current contents of the stores:
- which roles an account holds (statically through groups, or dynamically as
  the owner of a resource)
- whether any of a set of roles may invoke an API
- the broadest policy permission an account holds on an entity type
- which entity ids the account's groups explicitly allow and deny

The resolver never writes and keeps no state between calls.
"""
from typing import Any, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from acl_service.core import config
from acl_service.features.accounts.context import CallContext
from acl_service.features.acl.models import AclRole, AclGroup, AccessType, PolicyPermission
from acl_service.features.acl.stores import AclStores
from acl_service.utils import get_logger


log = get_logger(__name__)


class AclResolver:
    """Read-only permission resolution for request-time checks."""

    def __init__(
        self,
        session: AsyncSession,
        root_domain_id: str = config.ROOT_DOMAIN_ID,
        owner_role_name: str = config.RESOURCE_OWNER_ROLE,
    ):
        self.session = session
        self.stores = AclStores.bind(session)
        self.root_domain_id = root_domain_id
        self.owner_role_name = owner_role_name

    async def static_roles(self, account_id: str) -> List[AclRole]:
        """Roles reachable from the account through its groups, each listed once."""
        return await self.stores.memberships.roles_for_account(account_id)

    async def effective_roles(self, caller: CallContext, entity: Any) -> List[AclRole]:
        """
        Static roles plus the resource owner role when the caller owns ``entity``.
        """
        roles = await self.static_roles(caller.account_id)

        if caller.account_id == getattr(entity, "account_id", None):
            owner = await self._owner_role()
            if owner is None:
                log.warning(
                    f"Role {self.owner_role_name} missing from domain {self.root_domain_id}; "
                    f"owner of {type(entity).__name__} {getattr(entity, 'id', None)} gets static roles only"
                )
            elif all(role.id != owner.id for role in roles):
                roles.append(owner)

        return roles

    async def best_policy_permission(
        self,
        account_id: str,
        entity_type: str,
        access_type: AccessType,
    ) -> Optional[PolicyPermission]:
        """
        The allowed policy permission with the broadest scope across the
        account's static roles, or None when no role grants the access.
        """
        current: Optional[PolicyPermission] = None
        for role in await self.static_roles(account_id):
            for perm in await self.stores.permissions.find_policy_permissions(
                role.id, entity_type, access_type, allow=True
            ):
                if current is None or perm.scope.greater_than(current.scope):
                    # pick the more relaxed allowed permission
                    current = perm

        log.debug(
            f"Best policy for account {account_id} on {entity_type}/{access_type.value}: "
            f"{current.scope.value if current else None}"
        )
        return current

    async def api_accessible(self, api_name: str, roles: Sequence[AclRole]) -> bool:
        """True iff at least one of ``roles`` holds an API permission for ``api_name``."""
        return await self.stores.permissions.any_role_has_api(api_name, [role.id for role in roles])

    async def groups_of(self, account_id: str) -> List[AclGroup]:
        return await self.stores.memberships.groups_for_account(account_id)

    async def entity_permission_sets(
        self,
        account_id: str,
        entity_type: str,
        access_type: AccessType,
    ) -> Tuple[Set[int], Set[int]]:
        """
        Entity ids explicitly allowed and explicitly denied to the account
        through its groups.

        The sets are independent: an id can appear in both when two groups
        disagree. Deciding between them is left to the caller.
        """
        allowed_ids: Set[int] = set()
        denied_ids: Set[int] = set()
        for group in await self.groups_of(account_id):
            allowed_ids.update(
                await self.stores.grants.list_entity_ids(group.id, entity_type, access_type, allow=True)
            )
            denied_ids.update(
                await self.stores.grants.list_entity_ids(group.id, entity_type, access_type, allow=False)
            )
        return allowed_ids, denied_ids

    # TODO: resolve granted domains/accounts/resources once policy permissions carry a scope target id
    async def granted_domains(self, account_id: str, entity_type: str, action: str) -> List[str]:
        return []

    async def granted_accounts(self, account_id: str, entity_type: str, action: str) -> List[str]:
        return []

    async def granted_resources(self, account_id: str, entity_type: str, action: str) -> List[int]:
        return []

    async def _owner_role(self) -> Optional[AclRole]:
        result = await self.session.execute(
            select(AclRole).where(
                and_(AclRole.domain_id == self.root_domain_id, AclRole.name == self.owner_role_name)
            )
        )
        return result.scalars().first()

"""
FastAPI dependencies wiring the ACL engine into routes.

Implements:
- Construction of the registry and resolver per request
- API permission gating for ACL commands
"""
from typing import Annotated
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from acl_service.core import config
from acl_service.core.database.engine import AsyncSessionLocal, get_db
from acl_service.features.accounts.access import AccessChecker
from acl_service.features.accounts.context import CallContext
from acl_service.features.accounts.dependencies import get_access_checker, get_call_context
from acl_service.features.acl.entities import EntityTypeRegistry
from acl_service.features.acl.events import DatabaseEventSink, EventSink
from acl_service.features.acl.registry import AclRegistry
from acl_service.features.acl.resolver import AclResolver
from acl_service.utils import get_logger


log = get_logger(__name__)


class AclApis:
    """API names gating the ACL commands."""
    CREATE_ROLE = "createAclRole"
    DELETE_ROLE = "deleteAclRole"
    LIST_ROLES = "listAclRoles"
    GRANT_ROLE_PERMISSION = "grantPermissionToAclRole"
    REVOKE_ROLE_PERMISSION = "revokePermissionFromAclRole"
    CREATE_GROUP = "createAclGroup"
    DELETE_GROUP = "deleteAclGroup"
    LIST_GROUPS = "listAclGroups"
    ADD_ROLE_TO_GROUP = "addAclRoleToAclGroup"
    REMOVE_ROLE_FROM_GROUP = "removeAclRoleFromAclGroup"
    ADD_ACCOUNT_TO_GROUP = "addAccountToAclGroup"
    REMOVE_ACCOUNT_FROM_GROUP = "removeAccountFromAclGroup"
    GRANT_GROUP_PERMISSION = "grantPermissionToAclGroup"
    REVOKE_GROUP_PERMISSION = "revokePermissionFromAclGroup"
    LIST_AUDIT_LOGS = "listAuditLogs"


def get_entity_types() -> EntityTypeRegistry:
    """Entity types accepting per-entity grants, from configuration."""
    return EntityTypeRegistry.from_tags(config.ENTITY_TYPES)


def get_event_sink() -> EventSink:
    return DatabaseEventSink(AsyncSessionLocal)


def get_resolver(db: Annotated[AsyncSession, Depends(get_db)]) -> AclResolver:
    return AclResolver(db, root_domain_id=config.ROOT_DOMAIN_ID, owner_role_name=config.RESOURCE_OWNER_ROLE)


def get_registry(
    db: Annotated[AsyncSession, Depends(get_db)],
    caller: Annotated[CallContext, Depends(get_call_context)],
    access_checker: Annotated[AccessChecker, Depends(get_access_checker)],
    entity_types: Annotated[EntityTypeRegistry, Depends(get_entity_types)],
    events: Annotated[EventSink, Depends(get_event_sink)],
) -> AclRegistry:
    return AclRegistry(
        db,
        caller,
        access_checker=access_checker,
        entity_types=entity_types,
        events=events,
    )


def require_api(api_name: str):
    """
    FastAPI dependency requiring the caller to hold an API permission.

    Root admins may invoke every API.

    Usage:
        @router.post("/roles")
        async def create_role(
            caller: CallContext = Depends(require_api(AclApis.CREATE_ROLE))
        ):
            pass

    Raises:
        HTTPException: 403 if none of the caller's roles grants the API
    """
    async def api_dependency(
        caller: Annotated[CallContext, Depends(get_call_context)],
        resolver: Annotated[AclResolver, Depends(get_resolver)],
    ) -> CallContext:
        if caller.is_root_admin:
            log.debug(f"Account {caller.account_id} is root admin - granted api {api_name}")
            return caller

        roles = await resolver.static_roles(caller.account_id)
        if not await resolver.api_accessible(api_name, roles):
            log.debug(f"Account {caller.account_id} denied api {api_name}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: api {api_name}"
            )

        return caller

    return api_dependency

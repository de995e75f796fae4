"""
ACL management API routes.

Provides endpoints for managing roles, groups, their permissions and
memberships, plus permission resolution queries for the calling account.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from acl_service.core.database.engine import get_db
from acl_service.core.errors import NotFoundError
from acl_service.features.accounts.context import CallContext
from acl_service.features.accounts.dependencies import get_call_context
from acl_service.features.acl.dependencies import (
    AclApis,
    get_entity_types,
    get_registry,
    get_resolver,
    require_api,
)
from acl_service.features.acl.entities import EntityTypeRegistry
from acl_service.features.acl.models import AccessType, AuditLog
from acl_service.features.acl.registry import AclRegistry
from acl_service.features.acl.resolver import AclResolver
from acl_service.features.acl.schemas import (
    ApiNamesRequest,
    PolicyPermissionRequest,
    PolicyPermissionResponse,
    RoleCreate,
    RoleResponse,
    RoleWithPermissions,
    GroupCreate,
    GroupResponse,
    GroupWithMembers,
    EntityPermissionResponse,
    RoleIdsRequest,
    AccountIdsRequest,
    EntityPermissionRequest,
    ApiCheckRequest,
    ApiCheckResponse,
    EntityPermissionSetsResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from acl_service.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

Registry = Annotated[AclRegistry, Depends(get_registry)]
Resolver = Annotated[AclResolver, Depends(get_resolver)]


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.CREATE_ROLE))],
    registry: Registry,
):
    """Create a role, optionally copying a parent role's policy permissions."""
    return await registry.create_role(role.domain_id, role.name, role.description, role.parent_role_id)


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    _caller: Annotated[CallContext, Depends(require_api(AclApis.LIST_ROLES))],
    registry: Registry,
    domain_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List roles of a domain (the caller's domain by default)."""
    return await registry.list_roles(domain_id, skip=skip, limit=limit)


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.LIST_ROLES))],
    registry: Registry,
    resolver: Resolver,
):
    """Get a role with its API and policy permissions."""
    role = await registry.get_role(role_id)
    api_permissions = await resolver.stores.permissions.list_api_permissions(role.id)
    policy_permissions = await resolver.stores.permissions.list_policy_permissions(role.id)

    return RoleWithPermissions(
        **RoleResponse.model_validate(role).model_dump(),
        api_names=[perm.api_name for perm in api_permissions],
        policy_permissions=[PolicyPermissionResponse.model_validate(p) for p in policy_permissions],
    )


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.DELETE_ROLE))],
    registry: Registry,
):
    """Delete a role and everything that references it."""
    await registry.delete_role(role_id)
    return None


@router.post("/roles/{role_id}/apis", response_model=RoleResponse)
async def grant_api_permission(
    role_id: str,
    request: ApiNamesRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.GRANT_ROLE_PERMISSION))],
    registry: Registry,
):
    """Allow a role to invoke APIs."""
    return await registry.grant_api_permission(role_id, request.api_names)


@router.post("/roles/{role_id}/apis/revoke", response_model=RoleResponse)
async def revoke_api_permission(
    role_id: str,
    request: ApiNamesRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.REVOKE_ROLE_PERMISSION))],
    registry: Registry,
):
    """Remove API permissions from a role."""
    return await registry.revoke_api_permission(role_id, request.api_names)


@router.post("/roles/{role_id}/policies", response_model=RoleResponse)
async def grant_policy_permission(
    role_id: str,
    request: PolicyPermissionRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.GRANT_ROLE_PERMISSION))],
    registry: Registry,
):
    """Attach a policy permission to a role."""
    return await registry.grant_policy_permission(
        role_id, request.entity_type, request.access_type, request.scope, request.allow
    )


@router.post("/roles/{role_id}/policies/revoke", response_model=RoleResponse)
async def revoke_policy_permission(
    role_id: str,
    request: PolicyPermissionRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.REVOKE_ROLE_PERMISSION))],
    registry: Registry,
):
    """Remove a policy permission from a role."""
    return await registry.revoke_policy_permission(
        role_id, request.entity_type, request.access_type, request.scope, request.allow
    )


# ============================================================================
# Group Routes
# ============================================================================

@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    group: GroupCreate,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.CREATE_GROUP))],
    registry: Registry,
):
    """Create a group in a domain."""
    return await registry.create_group(group.domain_id, group.name, group.description)


@router.get("/groups", response_model=List[GroupResponse])
async def list_groups(
    _caller: Annotated[CallContext, Depends(require_api(AclApis.LIST_GROUPS))],
    registry: Registry,
    domain_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List groups of a domain (the caller's domain by default)."""
    return await registry.list_groups(domain_id, skip=skip, limit=limit)


@router.get("/groups/{group_id}", response_model=GroupWithMembers)
async def get_group(
    group_id: str,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.LIST_GROUPS))],
    registry: Registry,
    resolver: Resolver,
):
    """Get a group with its roles, accounts and entity grants."""
    group = await registry.get_group(group_id)
    memberships = resolver.stores.memberships

    return GroupWithMembers(
        **GroupResponse.model_validate(group).model_dump(),
        role_ids=await memberships.list_role_ids(group.id),
        account_ids=await memberships.list_account_ids(group.id),
        entity_permissions=[
            EntityPermissionResponse.model_validate(grant)
            for grant in await resolver.stores.grants.list_by_group(group.id)
        ],
    )


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.DELETE_GROUP))],
    registry: Registry,
):
    """Delete a group and everything that references it."""
    await registry.delete_group(group_id)
    return None


@router.post("/groups/{group_id}/roles", response_model=GroupResponse)
async def add_roles_to_group(
    group_id: str,
    request: RoleIdsRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.ADD_ROLE_TO_GROUP))],
    registry: Registry,
):
    """Link roles to a group."""
    return await registry.add_roles_to_group(request.role_ids, group_id)


@router.post("/groups/{group_id}/roles/remove", response_model=GroupResponse)
async def remove_roles_from_group(
    group_id: str,
    request: RoleIdsRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.REMOVE_ROLE_FROM_GROUP))],
    registry: Registry,
):
    """Unlink roles from a group."""
    return await registry.remove_roles_from_group(request.role_ids, group_id)


@router.post("/groups/{group_id}/accounts", response_model=GroupResponse)
async def add_accounts_to_group(
    group_id: str,
    request: AccountIdsRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.ADD_ACCOUNT_TO_GROUP))],
    registry: Registry,
):
    """Add accounts to a group."""
    return await registry.add_accounts_to_group(request.account_ids, group_id)


@router.post("/groups/{group_id}/accounts/remove", response_model=GroupResponse)
async def remove_accounts_from_group(
    group_id: str,
    request: AccountIdsRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.REMOVE_ACCOUNT_FROM_GROUP))],
    registry: Registry,
):
    """Remove accounts from a group."""
    return await registry.remove_accounts_from_group(request.account_ids, group_id)


@router.post("/groups/{group_id}/entities", response_model=GroupResponse)
async def grant_entity_permission(
    group_id: str,
    request: EntityPermissionRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.GRANT_GROUP_PERMISSION))],
    registry: Registry,
):
    """Grant a group explicit access to one entity."""
    return await registry.grant_entity_permission(
        group_id, request.entity_type, request.entity_id, request.access_type, request.allow
    )


@router.post("/groups/{group_id}/entities/revoke", response_model=GroupResponse)
async def revoke_entity_permission(
    group_id: str,
    request: EntityPermissionRequest,
    _caller: Annotated[CallContext, Depends(require_api(AclApis.REVOKE_GROUP_PERMISSION))],
    registry: Registry,
):
    """Remove a group's explicit grant on one entity."""
    return await registry.revoke_entity_permission(
        group_id, request.entity_type, request.entity_id, request.access_type
    )


# ============================================================================
# Resolution Routes
# ============================================================================

@router.get("/me/roles", response_model=List[RoleResponse])
async def my_roles(
    caller: Annotated[CallContext, Depends(get_call_context)],
    resolver: Resolver,
):
    """Static roles of the calling account."""
    return await resolver.static_roles(caller.account_id)


@router.post("/check", response_model=ApiCheckResponse)
async def check_api(
    check_request: ApiCheckRequest,
    caller: Annotated[CallContext, Depends(get_call_context)],
    resolver: Resolver,
    entity_types: Annotated[EntityTypeRegistry, Depends(get_entity_types)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Check whether the caller may invoke an API, optionally against one entity."""
    if check_request.entity_type is not None and check_request.entity_id is not None:
        descriptor = entity_types.resolve(check_request.entity_type)
        entity = await descriptor.find_by_id(db, check_request.entity_id)
        if entity is None:
            raise NotFoundError(
                f"Unable to find entity {check_request.entity_type} by id: {check_request.entity_id}"
            )
        roles = await resolver.effective_roles(caller, entity)
    else:
        roles = await resolver.static_roles(caller.account_id)

    accessible = await resolver.api_accessible(check_request.api_name, roles)
    return ApiCheckResponse(
        api_name=check_request.api_name,
        accessible=accessible,
        reason=None if accessible else "No role grants this api",
    )


@router.get("/me/policy", response_model=Optional[PolicyPermissionResponse])
async def my_policy_permission(
    entity_type: str,
    access_type: AccessType,
    caller: Annotated[CallContext, Depends(get_call_context)],
    resolver: Resolver,
):
    """The broadest policy permission the caller holds for an entity type and access type."""
    return await resolver.best_policy_permission(caller.account_id, entity_type, access_type)


@router.get("/me/entities", response_model=EntityPermissionSetsResponse)
async def my_entity_permissions(
    entity_type: str,
    access_type: AccessType,
    caller: Annotated[CallContext, Depends(get_call_context)],
    resolver: Resolver,
):
    """Entity ids explicitly allowed and denied to the caller through its groups."""
    allowed_ids, denied_ids = await resolver.entity_permission_sets(caller.account_id, entity_type, access_type)
    return EntityPermissionSetsResponse(
        entity_type=entity_type,
        access_type=access_type,
        allowed_ids=sorted(allowed_ids),
        denied_ids=sorted(denied_ids),
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    _caller: Annotated[CallContext, Depends(require_api(AclApis.LIST_AUDIT_LOGS))],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 50,
    domain_id: Optional[str] = None,
    account_id: Optional[str] = None,
    event_type: Optional[str] = None,
    resource_type: Optional[str] = None,
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if domain_id:
        stmt = stmt.where(AuditLog.domain_id == domain_id)
    if account_id:
        stmt = stmt.where(AuditLog.account_id == account_id)
    if event_type:
        stmt = stmt.where(AuditLog.event_type == event_type)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )

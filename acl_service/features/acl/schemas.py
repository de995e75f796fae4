"""
Pydantic schemas for ACL management.

Request and response models for roles, groups, permissions, resolution queries
and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from acl_service.features.acl.models import AccessType, PermissionScope


def _validate_name(v: str) -> str:
    if not v.replace('_', '').replace('-', '').isalnum():
        raise ValueError('Name must contain only alphanumeric characters, underscores, and hyphens')
    return v


# ============================================================================
# Permission Schemas
# ============================================================================

class ApiNamesRequest(BaseModel):
    """API names to grant to or revoke from a role."""
    api_names: List[str] = Field(..., min_length=1, description="API names, e.g. 'deployVirtualMachine'")


class PolicyPermissionRequest(BaseModel):
    """Policy permission to grant to or revoke from a role."""
    entity_type: str = Field(..., min_length=1, max_length=50, description="Entity type tag, e.g. 'Volume'")
    access_type: AccessType
    scope: PermissionScope
    allow: bool = True


class PolicyPermissionResponse(BaseModel):
    id: str
    role_id: str
    entity_type: str
    access_type: AccessType
    scope: PermissionScope
    allow: bool

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Role name, unique within its domain")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    domain_id: Optional[str] = Field(None, description="Owning domain (caller's domain if omitted)")
    parent_role_id: Optional[str] = Field(None, description="Role whose policy permissions are copied")

    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role name format."""
        return _validate_name(v)


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    domain_id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with its permissions."""
    api_names: List[str] = []
    policy_permissions: List[PolicyPermissionResponse] = []


# ============================================================================
# Group Schemas
# ============================================================================

class GroupBase(BaseModel):
    """Base group schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Group name, unique within its domain")
    description: Optional[str] = Field(None, max_length=1000, description="Group description")


class GroupCreate(GroupBase):
    """Schema for creating a new group."""
    domain_id: Optional[str] = Field(None, description="Owning domain (caller's domain if omitted)")

    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: str) -> str:
        return _validate_name(v)


class GroupResponse(GroupBase):
    """Schema for group response."""
    id: str
    domain_id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EntityPermissionResponse(BaseModel):
    id: str
    group_id: str
    entity_type: str
    entity_id: int
    entity_uuid: str
    access_type: AccessType
    allow: bool

    model_config = ConfigDict(from_attributes=True)


class GroupWithMembers(GroupResponse):
    """Schema for group with its roles, accounts and entity grants."""
    role_ids: List[str] = []
    account_ids: List[str] = []
    entity_permissions: List[EntityPermissionResponse] = []


# ============================================================================
# Assignment Schemas
# ============================================================================

class RoleIdsRequest(BaseModel):
    """Roles to add to or remove from a group."""
    role_ids: List[str] = Field(..., description="Role IDs")


class AccountIdsRequest(BaseModel):
    """Accounts to add to or remove from a group."""
    account_ids: List[str] = Field(..., description="Account IDs")


class EntityPermissionRequest(BaseModel):
    """Grant or revoke of one access type on one entity."""
    entity_type: str = Field(..., min_length=1, max_length=50, description="Entity type tag")
    entity_id: int = Field(..., description="Entity ID")
    access_type: AccessType
    allow: bool = Field(True, description="Explicit allow (true) or explicit deny (false); ignored on revoke")


# ============================================================================
# Resolution Schemas
# ============================================================================

class ApiCheckRequest(BaseModel):
    """Schema for checking whether the caller may invoke an API."""
    api_name: str = Field(..., min_length=1, description="API name")
    entity_type: Optional[str] = Field(None, description="Entity type when checking against a resource")
    entity_id: Optional[int] = Field(None, description="Entity ID; ownership adds the resource owner role")

    @model_validator(mode="after")
    def entity_fields_together(self) -> "ApiCheckRequest":
        """entity_type and entity_id must be given together or not at all."""
        if (self.entity_type is None) != (self.entity_id is None):
            raise ValueError("entity_type and entity_id must be provided together")
        return self


class ApiCheckResponse(BaseModel):
    api_name: str
    accessible: bool
    reason: Optional[str] = None


class EntityPermissionSetsResponse(BaseModel):
    """Explicitly allowed and denied entity ids. Both may contain the same id."""
    entity_type: str
    access_type: AccessType
    allowed_ids: List[int] = []
    denied_ids: List[int] = []


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    account_id: Optional[str]
    event_type: str
    description: str
    resource_type: str
    resource_id: Optional[str]
    domain_id: Optional[str]
    details: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int

"""
ACL role, group and permission models.

This module implements the domain-scoped permission data model:
- Roles carrying API-level and policy-level permissions
- Groups linking accounts to roles
- Per-entity allow/deny grants held by groups
- Audit log of ACL mutations
"""
import enum
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, Table, Column, JSON, Text, DateTime, Integer, Boolean,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from acl_service.core.database.base import Base, TimestampMixin, generate_ulid


# ============================================================================
# Enumerations
# ============================================================================

class PermissionScope(str, enum.Enum):
    """
    Breadth of a policy grant, ordered narrowest to broadest.
    """
    RESOURCE = "resource"
    ACCOUNT = "account"
    DOMAIN = "domain"
    GLOBAL = "global"

    @property
    def rank(self) -> int:
        return _SCOPE_ORDER.index(self)

    def greater_than(self, other: "PermissionScope") -> bool:
        """True if this scope is strictly broader than ``other``."""
        return self.rank > other.rank


_SCOPE_ORDER = (
    PermissionScope.RESOURCE,
    PermissionScope.ACCOUNT,
    PermissionScope.DOMAIN,
    PermissionScope.GLOBAL,
)


class AccessType(str, enum.Enum):
    """Kind of operation authorized against a resource."""
    LIST = "list"
    USE = "use"
    OPERATE = "operate"
    MODIFY = "modify"


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Group-Account membership
group_accounts = Table(
    "acl_group_accounts",
    Base.metadata,
    Column("group_id", String(26), ForeignKey("acl_groups.id", ondelete="CASCADE"), primary_key=True),
    Column("account_id", String(26), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
    Column("added_at", DateTime(timezone=True), nullable=False, default=datetime.now),
)

# Group-Role relationship
group_roles = Table(
    "acl_group_roles",
    Base.metadata,
    Column("group_id", String(26), ForeignKey("acl_groups.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(26), ForeignKey("acl_roles.id", ondelete="CASCADE"), primary_key=True),
    Column("added_at", DateTime(timezone=True), nullable=False, default=datetime.now),
)


# ============================================================================
# Core Models
# ============================================================================

class AclRole(Base, TimestampMixin):
    """
    Named, domain-scoped bundle of API-level and policy-level permissions.
    """
    __tablename__ = "acl_roles"
    __table_args__ = (UniqueConstraint("domain_id", "name", name="uq_acl_roles_domain_name"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    domain_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("domains.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<AclRole(id={self.id}, name={self.name!r}, domain_id={self.domain_id})>"


class AclGroup(Base, TimestampMixin):
    """
    Named, domain-scoped bundle linking accounts to roles.
    """
    __tablename__ = "acl_groups"
    __table_args__ = (UniqueConstraint("domain_id", "name", name="uq_acl_groups_domain_name"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    domain_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("domains.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<AclGroup(id={self.id}, name={self.name!r}, domain_id={self.domain_id})>"


class ApiPermission(Base, TimestampMixin):
    """
    Allows a role to invoke an API. Absence of a row means no grant.
    """
    __tablename__ = "acl_api_permissions"
    __table_args__ = (UniqueConstraint("role_id", "api_name", name="uq_acl_api_permissions_role_api"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("acl_roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    api_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<ApiPermission(role_id={self.role_id}, api={self.api_name})>"


class PolicyPermission(Base, TimestampMixin):
    """
    Role-level policy on an entity type: which access type is allowed (or not)
    and how broadly.
    """
    __tablename__ = "acl_policy_permissions"
    __table_args__ = (
        UniqueConstraint(
            "role_id", "entity_type", "access_type", "scope", "allow",
            name="uq_acl_policy_permissions_role_policy",
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("acl_roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    access_type: Mapped[AccessType] = mapped_column(SQLEnum(AccessType), nullable=False)
    scope: Mapped[PermissionScope] = mapped_column(SQLEnum(PermissionScope), nullable=False)
    allow: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PolicyPermission(role_id={self.role_id}, entity={self.entity_type}, "
            f"access={self.access_type}, scope={self.scope}, allow={self.allow})>"
        )


class EntityPermission(Base, TimestampMixin):
    """
    Explicit allow or deny of an access type on one concrete entity, held by a group.
    """
    __tablename__ = "acl_entity_permissions"
    __table_args__ = (
        UniqueConstraint(
            "group_id", "entity_type", "entity_id", "access_type",
            name="uq_acl_entity_permissions_group_entity",
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("acl_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    entity_uuid: Mapped[str] = mapped_column(String(64), nullable=False)
    access_type: Mapped[AccessType] = mapped_column(SQLEnum(AccessType), nullable=False)
    allow: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<EntityPermission(group_id={self.group_id}, entity={self.entity_type}:{self.entity_id}, "
            f"access={self.access_type}, allow={self.allow})>"
        )


class AuditLog(Base, TimestampMixin):
    """
    Audit log of successful ACL mutations.

    Tracks who did what, and to which role or group.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    account_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Event details
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Context
    domain_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("domains.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, account_id={self.account_id}, event={self.event_type})>"

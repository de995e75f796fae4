"""
Directory models: domains, accounts and the resources they own.

The domain/account hierarchy itself is managed by the platform directory; these
tables hold only what the ACL engine needs to resolve callers and subjects.
"""
import enum
from sqlalchemy import String, ForeignKey, Integer, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from acl_service.core.database.base import Base, TimestampMixin, generate_ulid


class AccountType(str, enum.Enum):
    """Administrative level of an account."""
    USER = "user"
    DOMAIN_ADMIN = "domain_admin"
    ROOT_ADMIN = "root_admin"


class Domain(Base, TimestampMixin):
    """
    Tenant domain. The root domain has no parent.
    """
    __tablename__ = "domains"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    parent_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("domains.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    def __repr__(self) -> str:
        return f"<Domain(id={self.id}, name={self.name!r})>"


class Account(Base, TimestampMixin):
    """
    Tenant-level identity that owns resources and is granted permissions.
    """
    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("domain_id", "name", name="uq_accounts_domain_name"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("domains.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    account_type: Mapped[AccountType] = mapped_column(
        SQLEnum(AccountType),
        default=AccountType.USER,
        nullable=False
    )

    @property
    def account_id(self) -> str:
        # An account is owned by itself for access checks
        return self.id

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, name={self.name!r}, domain_id={self.domain_id})>"


class ManagedResource(Base, TimestampMixin):
    """
    A controlled entity (virtual machine, volume, template, snapshot, ...)
    owned by an account. ``kind`` carries the entity type tag.
    """
    __tablename__ = "managed_resources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(26), unique=True, nullable=False, default=generate_ulid)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    domain_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("domains.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<ManagedResource(id={self.id}, kind={self.kind}, account_id={self.account_id})>"

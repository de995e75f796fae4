"""
Identity of the authenticated caller.
"""
from dataclasses import dataclass

from acl_service.features.accounts.models import Account, AccountType


@dataclass(frozen=True)
class CallContext:
    """The verified caller an operation runs on behalf of."""
    account_id: str
    domain_id: str
    account_type: AccountType = AccountType.USER

    @property
    def is_root_admin(self) -> bool:
        return self.account_type == AccountType.ROOT_ADMIN

    @property
    def is_domain_admin(self) -> bool:
        return self.account_type == AccountType.DOMAIN_ADMIN

    @classmethod
    def for_account(cls, account: Account) -> "CallContext":
        return cls(
            account_id=account.id,
            domain_id=account.domain_id,
            account_type=account.account_type,
        )

"""
Access checks run before any mutation on a role, group, account or resource.
"""
from typing import Any, Optional, Protocol

from acl_service.core.errors import PermissionDeniedError
from acl_service.features.accounts.context import CallContext
from acl_service.utils import get_logger


log = get_logger(__name__)


def describe_subject(subject: Any) -> str:
    """Short label for a subject in error messages."""
    return f"{type(subject).__name__} {getattr(subject, 'id', subject)}"


class AccessChecker(Protocol):
    """Decides whether a caller may act on subjects."""

    def check_access(
        self,
        caller: CallContext,
        *subjects: Any,
        domain_id: Optional[str] = None,
        same_owner: bool = False,
    ) -> None:
        """Raise PermissionDeniedError unless the caller may act on every subject."""
        ...


class DomainAccessChecker:
    """
    Default access checker.

    - Root admins may act on anything.
    - Domain admins may act on subjects in their own domain.
    - Other accounts may act only on subjects they own.

    ``domain_id`` overrides the domain a subject is checked against.
    ``same_owner`` additionally requires every subject to share one owner.
    """

    def check_access(
        self,
        caller: CallContext,
        *subjects: Any,
        domain_id: Optional[str] = None,
        same_owner: bool = False,
    ) -> None:
        for subject in subjects:
            if not self._can_access(caller, subject, domain_id):
                log.debug(f"Account {caller.account_id} denied access to {describe_subject(subject)}")
                raise PermissionDeniedError(
                    f"Account {caller.account_id} does not have permission to operate on "
                    f"{describe_subject(subject)}"
                )

        if same_owner:
            owners = {getattr(subject, "account_id", None) for subject in subjects}
            if len(owners) > 1:
                raise PermissionDeniedError("Entities do not belong to the same owner")

    def _can_access(self, caller: CallContext, subject: Any, domain_id: Optional[str]) -> bool:
        if caller.is_root_admin:
            return True

        subject_domain = domain_id or getattr(subject, "domain_id", None)
        if caller.is_domain_admin and subject_domain == caller.domain_id:
            return True

        owner = getattr(subject, "account_id", None)
        return owner is not None and owner == caller.account_id

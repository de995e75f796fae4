"""
FastAPI dependencies resolving the calling account.

Authentication happens upstream; the gateway forwards the verified account id
in the identity header (``IDENTITY_HEADER``, default ``X-Account-Id``).
"""
from typing import Annotated
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from acl_service.core import config
from acl_service.core.database.engine import get_db
from acl_service.features.accounts.access import AccessChecker, DomainAccessChecker
from acl_service.features.accounts.context import CallContext
from acl_service.features.accounts.models import Account


def get_identity_header(request: Request) -> str:
    """
    Extract the caller identity header.
    Used as the slowapi rate limit key.
    """
    return request.headers.get(config.IDENTITY_HEADER, "") or "anonymous"


async def get_call_context(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)]
) -> CallContext:
    """
    Resolve the authenticated caller to a CallContext.

    Raises:
        HTTPException: 401 if the header is missing or names an unknown account
    """
    account_id = request.headers.get(config.IDENTITY_HEADER)
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {config.IDENTITY_HEADER} header",
        )

    account = await db.get(Account, account_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown account",
        )

    return CallContext.for_account(account)


def get_access_checker() -> AccessChecker:
    """Access checker used by the registry."""
    return DomainAccessChecker()

"""
Audit events for ACL mutations.

Each successful registry operation emits one ActionEvent. Delivery is fire and
forget: the registry logs a sink failure and never raises it to the
operation's caller.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from acl_service.features.acl.models import AuditLog
from acl_service.utils import get_logger


log = get_logger(__name__)


class EventTypes:
    ACL_ROLE_CREATE = "ACL.ROLE.CREATE"
    ACL_ROLE_DELETE = "ACL.ROLE.DELETE"
    ACL_ROLE_GRANT = "ACL.ROLE.GRANT"
    ACL_ROLE_REVOKE = "ACL.ROLE.REVOKE"
    ACL_GROUP_CREATE = "ACL.GROUP.CREATE"
    ACL_GROUP_DELETE = "ACL.GROUP.DELETE"
    ACL_GROUP_GRANT = "ACL.GROUP.GRANT"
    ACL_GROUP_REVOKE = "ACL.GROUP.REVOKE"
    ACL_GROUP_UPDATE = "ACL.GROUP.UPDATE"


@dataclass
class ActionEvent:
    event_type: str
    description: str
    account_id: Optional[str]
    resource_type: str
    resource_id: Optional[str] = None
    domain_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    async def emit(self, event: ActionEvent) -> None:
        ...


class DatabaseEventSink:
    """
    Writes events to the audit_logs table in a dedicated session so a failed
    write cannot disturb the caller's transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def emit(self, event: ActionEvent) -> None:
        async with self.session_factory() as session:
            session.add(AuditLog(
                account_id=event.account_id,
                event_type=event.event_type,
                description=event.description,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                domain_id=event.domain_id,
                details=event.details or None,
            ))
            await session.commit()

        log.info(
            f"Audit: account={event.account_id} event={event.event_type} "
            f"resource={event.resource_type}:{event.resource_id} domain={event.domain_id}"
        )


class MemoryEventSink:
    """Keeps events in a list. Useful for tests and dry runs."""

    def __init__(self):
        self.events: List[ActionEvent] = []

    async def emit(self, event: ActionEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.event_type for event in self.events]

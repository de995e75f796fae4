"""
Registry of entity types that accept per-entity grants.

Maps a type tag ("VirtualMachine", "Volume", ...) to a descriptor that knows
how to load the entity. Built from configuration and injected into the
registry service, so new kinds can be registered without touching the engine.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from acl_service.core.errors import InvalidParameterError
from acl_service.features.accounts.models import ManagedResource


@dataclass(frozen=True)
class EntityTypeDescriptor:
    """
    How to load one kind of controlled entity.

    ``model`` must expose ``id``, ``account_id`` and ``domain_id``. When
    ``kind`` is set the model is filtered on its ``kind`` column.
    """
    tag: str
    model: Any = ManagedResource
    kind: Optional[str] = None

    async def find_by_id(self, session: AsyncSession, entity_id: int) -> Optional[Any]:
        conditions = [self.model.id == entity_id]
        if self.kind is not None:
            conditions.append(self.model.kind == self.kind)
        result = await session.execute(select(self.model).where(and_(*conditions)))
        return result.scalars().first()

    @staticmethod
    def external_id(entity: Any) -> str:
        """The entity's uuid when it has one, otherwise its id."""
        uuid = getattr(entity, "uuid", None)
        return str(uuid) if uuid else str(entity.id)


class EntityTypeRegistry:
    """Mapping from entity type tag to descriptor."""

    def __init__(self, descriptors: Iterable[EntityTypeDescriptor] = ()):
        self._descriptors: Dict[str, EntityTypeDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    @classmethod
    def from_tags(cls, tags: Iterable[str]) -> "EntityTypeRegistry":
        """Registry whose tags are all backed by ManagedResource rows of that kind."""
        return cls(EntityTypeDescriptor(tag=tag, kind=tag) for tag in tags)

    def register(self, descriptor: EntityTypeDescriptor) -> None:
        self._descriptors[descriptor.tag] = descriptor

    def resolve(self, tag: str) -> EntityTypeDescriptor:
        descriptor = self._descriptors.get(tag)
        if descriptor is None:
            raise InvalidParameterError(f"Entity type {tag} permission granting is not supported yet")
        return descriptor

    def __contains__(self, tag: object) -> bool:
        return tag in self._descriptors

    @property
    def tags(self) -> list[str]:
        return sorted(self._descriptors)

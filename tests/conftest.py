from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from acl_service.core import config
from acl_service.core.database.base import Base
from acl_service.core.database.engine import get_db
from acl_service.features.accounts.context import CallContext
from acl_service.features.accounts.models import Account, AccountType, Domain, ManagedResource
from acl_service.features.acl import models as acl_models  # noqa: F401
from acl_service.features.acl.dependencies import get_entity_types, get_event_sink
from acl_service.features.acl.entities import EntityTypeRegistry
from acl_service.features.acl.events import MemoryEventSink
from acl_service.features.acl.models import AclRole, ApiPermission
from acl_service.features.acl.registry import AclRegistry
from acl_service.features.acl.resolver import AclResolver


ROOT_DOMAIN_ID = "ROOT"
OWNER_ROLE = "RESOURCE_OWNER"
OWNER_API = "destroyVirtualMachine"


@dataclass(frozen=True, slots=True)
class Directory:
    domain_a: Domain
    domain_b: Domain
    root_admin: Account
    admin_a: Account
    user_a: Account
    other_user_a: Account
    admin_b: Account
    user_b: Account
    vm_a: ManagedResource
    volume_a: ManagedResource
    volume_b: ManagedResource
    owner_role: AclRole


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'acl.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def directory(session_factory) -> Directory:
    """Two tenant domains under root, their accounts, a few resources and the owner role."""
    async with session_factory() as db:
        root = Domain(id=ROOT_DOMAIN_ID, name="ROOT")
        domain_a = Domain(name="tenant-a", parent_id=ROOT_DOMAIN_ID)
        domain_b = Domain(name="tenant-b", parent_id=ROOT_DOMAIN_ID)
        db.add_all([root, domain_a, domain_b])
        await db.flush()

        root_admin = Account(name="admin", domain_id=root.id, account_type=AccountType.ROOT_ADMIN)
        admin_a = Account(name="admin-a", domain_id=domain_a.id, account_type=AccountType.DOMAIN_ADMIN)
        user_a = Account(name="alice", domain_id=domain_a.id)
        other_user_a = Account(name="arthur", domain_id=domain_a.id)
        admin_b = Account(name="admin-b", domain_id=domain_b.id, account_type=AccountType.DOMAIN_ADMIN)
        user_b = Account(name="bob", domain_id=domain_b.id)
        db.add_all([root_admin, admin_a, user_a, other_user_a, admin_b, user_b])
        await db.flush()

        vm_a = ManagedResource(kind="VirtualMachine", name="vm-1", account_id=user_a.id, domain_id=domain_a.id)
        volume_a = ManagedResource(kind="Volume", name="vol-1", account_id=user_a.id, domain_id=domain_a.id)
        volume_b = ManagedResource(kind="Volume", name="vol-2", account_id=user_b.id, domain_id=domain_b.id)
        owner_role = AclRole(name=OWNER_ROLE, domain_id=ROOT_DOMAIN_ID, description="owner")
        db.add_all([vm_a, volume_a, volume_b, owner_role])
        await db.flush()

        db.add(ApiPermission(role_id=owner_role.id, api_name=OWNER_API))
        await db.commit()

        for obj in (domain_a, domain_b, owner_role):
            await db.refresh(obj)

    return Directory(
        domain_a=domain_a,
        domain_b=domain_b,
        root_admin=root_admin,
        admin_a=admin_a,
        user_a=user_a,
        other_user_a=other_user_a,
        admin_b=admin_b,
        user_b=user_b,
        vm_a=vm_a,
        volume_a=volume_a,
        volume_b=volume_b,
        owner_role=owner_role,
    )


@pytest.fixture
def events() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture
def entity_types() -> EntityTypeRegistry:
    return EntityTypeRegistry.from_tags(["VirtualMachine", "Volume"])


@pytest.fixture
def registry_for(session, entity_types, events) -> Callable[[Account], AclRegistry]:
    def factory(account: Account) -> AclRegistry:
        return AclRegistry(
            session,
            CallContext.for_account(account),
            entity_types=entity_types,
            events=events,
        )

    return factory


@pytest.fixture
def resolver(session) -> AclResolver:
    return AclResolver(session, root_domain_id=ROOT_DOMAIN_ID, owner_role_name=OWNER_ROLE)


@pytest_asyncio.fixture
async def client(session_factory, entity_types, events, monkeypatch) -> AsyncIterator[AsyncClient]:
    from acl_service.main import app

    monkeypatch.setattr(config, "ROOT_DOMAIN_ID", ROOT_DOMAIN_ID)
    monkeypatch.setattr(config, "RESOURCE_OWNER_ROLE", OWNER_ROLE)

    async def override_get_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_sink] = lambda: events
    app.dependency_overrides[get_entity_types] = lambda: entity_types
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def as_account() -> Callable[[Account], dict[str, str]]:
    """Identity header for a request made by an account."""
    def headers(account: Account) -> dict[str, str]:
        return {config.IDENTITY_HEADER: account.id}

    return headers

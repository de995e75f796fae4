"""
Seed script to populate the root domain and platform roles.

Run this script after database initialization to create:
- The root domain and a root admin account
- The RESOURCE_OWNER role with its default policy permissions
- A domain_admin template role holding every ACL command API

Usage:
    uv run python -m scripts.seed_acl
"""
import asyncio
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from acl_service.core import config
from acl_service.core.database.engine import AsyncSessionLocal, init_db
from acl_service.features.accounts.context import CallContext
from acl_service.features.accounts.models import Account, AccountType, Domain
from acl_service.features.acl.dependencies import AclApis, get_entity_types
from acl_service.features.acl.events import DatabaseEventSink
from acl_service.features.acl.models import AclRole, AccessType, PermissionScope
from acl_service.features.acl.registry import AclRegistry
from acl_service.utils import get_logger, setup_logging


log = get_logger(__name__)


ROOT_ADMIN_NAME = "admin"

# Owners may do everything to what they own
OWNER_ACCESS = [AccessType.LIST, AccessType.USE, AccessType.OPERATE, AccessType.MODIFY]

DEFAULT_ROLES = {
    config.RESOURCE_OWNER_ROLE: {
        "description": "Dynamic role held by the owner of a resource",
        "apis": [],
        "policies": [
            (entity_type, access_type, PermissionScope.RESOURCE)
            for entity_type in config.ENTITY_TYPES
            for access_type in OWNER_ACCESS
        ],
    },
    "DOMAIN_ADMIN": {
        "description": "Template role for domain administrators",
        "apis": [
            value for key, value in vars(AclApis).items()
            if not key.startswith("_")
        ],
        "policies": [
            (entity_type, access_type, PermissionScope.DOMAIN)
            for entity_type in config.ENTITY_TYPES
            for access_type in OWNER_ACCESS
        ],
    },
}


async def seed_root(db: AsyncSession) -> Account:
    """
    Create the root domain and root admin account if missing.

    Returns:
        The root admin account
    """
    domain = await db.get(Domain, config.ROOT_DOMAIN_ID)
    if domain is None:
        domain = Domain(id=config.ROOT_DOMAIN_ID, name="ROOT")
        db.add(domain)
        log.info(f"Created root domain {config.ROOT_DOMAIN_ID}")

    result = await db.execute(
        select(Account).where(
            and_(Account.domain_id == config.ROOT_DOMAIN_ID, Account.name == ROOT_ADMIN_NAME)
        )
    )
    admin = result.scalars().first()
    if admin is None:
        admin = Account(
            name=ROOT_ADMIN_NAME,
            domain_id=config.ROOT_DOMAIN_ID,
            account_type=AccountType.ROOT_ADMIN,
        )
        db.add(admin)
        log.info("Created root admin account")

    await db.commit()
    return admin


def build_registry(
    db: AsyncSession,
    admin: Account,
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> AclRegistry:
    """Registry acting as the root admin, auditing into audit_logs."""
    return AclRegistry(
        db,
        CallContext.for_account(admin),
        entity_types=get_entity_types(),
        events=DatabaseEventSink(session_factory),
    )


async def seed_roles(registry: AclRegistry) -> None:
    """
    Create default roles in the root domain and grant their permissions.
    Existing roles are skipped.
    """
    log.info("Creating default roles...")

    for role_name, role_config in DEFAULT_ROLES.items():
        result = await registry.session.execute(
            select(AclRole).where(
                and_(AclRole.domain_id == config.ROOT_DOMAIN_ID, AclRole.name == role_name)
            )
        )
        if result.scalars().first() is not None:
            log.debug(f"Role '{role_name}' already exists, skipping")
            continue

        role = await registry.create_role(config.ROOT_DOMAIN_ID, role_name, role_config["description"])
        if role_config["apis"]:
            await registry.grant_api_permission(role.id, role_config["apis"])
        for entity_type, access_type, scope in role_config["policies"]:
            await registry.grant_policy_permission(role.id, entity_type, access_type, scope)

        log.info(
            f"Created role '{role_name}' with {len(role_config['apis'])} apis "
            f"and {len(role_config['policies'])} policies"
        )

    log.info("Default roles created successfully")


async def main():
    """Main function to seed the root domain and roles."""
    setup_logging()
    log.info("Starting ACL seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            admin = await seed_root(db)
            registry = build_registry(db, admin)
            await seed_roles(registry)

            log.info("ACL seeding completed successfully!")
            log.info(f"Root admin account id: {admin.id}")

        except Exception as e:
            log.error(f"Error seeding ACL data: {e}", exc_info=True)
            await db.rollback()
            raise


if __name__ == "__main__":
    asyncio.run(main())

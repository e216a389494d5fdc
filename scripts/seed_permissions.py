"""
Seed script to populate the default permissions and the system role group.

Run this script after database initialization to create:
- The default ``edit-name`` permission
- The ``system`` role group with ``admin``, ``user`` and ``developer`` roles
- The group's requirement, with ``user`` as the default role

Usage:
    python -m scripts.seed_permissions
"""
import asyncio

from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.permissions.seed import SYSTEM_ROLES, seed_defaults
from app.utils import get_logger


log = get_logger(__name__)


async def main():
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        await seed_defaults(db)

    log.info("Permission seeding completed successfully!")
    log.info("Default roles:")
    for role_name, role_config in SYSTEM_ROLES.items():
        log.info("  - %s: %s", role_name, role_config["description"])


if __name__ == "__main__":
    asyncio.run(main())

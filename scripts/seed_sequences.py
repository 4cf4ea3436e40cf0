"""
Seed the default sequence catalog (new_lead, meeting_booked, no_show, newsletter).
Safe to re-run: existing sequences and steps are left as they are.

Usage:
    python scripts/seed_sequences.py
"""
import asyncio
import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from nurture.config import get_settings
from nurture.services.catalog import seed_catalog

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def seed():
    settings = get_settings()
    engine = create_async_engine(settings.database_url)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        inserted = await seed_catalog(session)
        await session.commit()
        logger.info("Seeded %d sequence steps.", inserted)

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())

"""
Create the schema and seed a demo organizer with one published event.

Usage:
  DATABASE_URL=sqlite:///./boxoffice.db python init_db.py
"""
import asyncio
import os

from boxoffice.catalog import Catalog
from boxoffice.config import Settings
from boxoffice.infra.sql import Database

# Config
DemoOrganizer = "Demo Presents"
DemoOrganizerEmail = "organizer@example.com"
DemoEventTitle = "BoxOffice Live"
DemoTiers = [
    # name, price, capacity
    ("Class A", 5_000, 1_000),
    ("Class B", 2_500, 100_000),
]


async def seed(db: Database):
    await db.create_schema()
    print('✅ schema created')

    catalog = Catalog(db)
    org, api_key = await catalog.create_organizer(
        DemoOrganizer, DemoOrganizerEmail,
        api_key=os.getenv("DEMO_API_KEY") or None,
    )
    ev = await catalog.create_event(org.id, DemoEventTitle, province="BC")
    for i, (name, price, capacity) in enumerate(DemoTiers):
        tier = await catalog.create_tier(ev.id, name, price,
                                         capacity=capacity, sort_order=i)
        print(f'   tier {name}: {tier.id}')
    await catalog.publish_event(ev.id)
    print(f'✅ event {ev.id} published')
    print(f'   organizer {org.id}, API key: {api_key}')


async def main():
    db = Database.from_url(Settings.from_env().database_url)
    try:
        await seed(db)
    finally:
        await db.dispose()


if __name__ == '__main__':
    asyncio.run(main())

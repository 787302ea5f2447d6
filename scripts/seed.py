"""Seed the database with a demo tenant and feed."""

from __future__ import annotations

import os

from dotenv import load_dotenv

from app.db.migrate import run_migrations
from app.db.schema import feeds, tenants
from app.db.session import create_engine_from_env
from app.utils.dates import utc_now


DEMO_TENANT = {"id": "tenant-demo", "name": "Demo Store", "slug": "demo-store", "is_active": True}
DEMO_FEED_URL = "https://example.com/feeds/google.xml"


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    now = utc_now()
    demo_feed = {
        "id": "feed-demo",
        "tenant_id": DEMO_TENANT["id"],
        "name": "Demo Google feed",
        "url": os.environ.get("DEMO_FEED_URL", DEMO_FEED_URL),
        "format": "google",
        "status": "pending",
        "sync_interval": 60,
        "product_count": 0,
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    with engine.begin() as conn:
        if conn.execute(tenants.select().where(tenants.c.id == DEMO_TENANT["id"])).first() is None:
            conn.execute(tenants.insert(), DEMO_TENANT)
        if conn.execute(feeds.select().where(feeds.c.id == demo_feed["id"])).first() is None:
            conn.execute(feeds.insert(), demo_feed)
    print("Seed complete")


if __name__ == "__main__":
    main()

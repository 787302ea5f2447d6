from datetime import timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

from app.config import SyncSettings
from app.db.migrate import run_migrations
from app.db.schema import feeds, tenants
from app.utils.dates import utc_now


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # let SQLAlchemy own BEGIN so savepoints behave under pysqlite
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def settings():
    return SyncSettings(retry_count=3, retry_delay=0.0, max_concurrent_syncs=5, default_sync_interval=60)


@pytest.fixture()
def seeded_engine(engine):
    now = utc_now()
    with engine.begin() as conn:
        conn.execute(tenants.insert(), [
            {"id": "tenant-1", "name": "Acme", "slug": "acme", "is_active": True},
            {"id": "tenant-2", "name": "Dormant", "slug": "dormant", "is_active": False},
        ])
        feed_rows = [
            {
                "id": "feed-1",
                "tenant_id": "tenant-1",
                "name": "Acme Google",
                "url": "https://shop.example.com/feed.xml",
                "format": "google",
                "status": "pending",
                "sync_interval": 30,
                "is_active": True,
                "created_at": now - timedelta(days=2),
                "updated_at": now - timedelta(days=2),
            },
            {
                "id": "feed-2",
                "tenant_id": "tenant-1",
                "name": "Acme custom",
                "url": "https://shop.example.com/custom.xml",
                "format": None,
                "status": "active",
                "sync_interval": 60,
                "last_sync_at": now - timedelta(minutes=10),
                "next_sync_at": now + timedelta(minutes=50),
                "is_active": True,
                "created_at": now - timedelta(days=1),
                "updated_at": now - timedelta(minutes=10),
            },
            {
                "id": "feed-3",
                "tenant_id": "tenant-2",
                "name": "Dormant feed",
                "url": "https://dormant.example.com/feed.xml",
                "format": "custom",
                "status": "pending",
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            },
            {
                "id": "feed-4",
                "tenant_id": "tenant-1",
                "name": "Disabled",
                "url": "https://shop.example.com/old.xml",
                "format": "custom",
                "status": "error",
                "is_active": False,
                "created_at": now,
                "updated_at": now,
            },
        ]
        # rows leave out different columns, so executemany would reject them
        for row in feed_rows:
            conn.execute(feeds.insert(), row)
    return engine

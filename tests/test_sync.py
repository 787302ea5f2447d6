import asyncio
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
import respx
from sqlalchemy.exc import OperationalError

from app.config import SyncSettings
from app.db.schema import feeds, tenants
from app.ingest.errors import NotXml
from app.ingest.fetcher import FeedFetcher
from app.ingest.models import FeedStatus
from app.ingest.store import SqlFeedStore
from app.ingest.sync import FeedSyncService
from app.utils.dates import utc_now

FIXTURES = Path(__file__).parent / "fixtures" / "feeds"


def load_fixture(name: str) -> bytes:
    return (FIXTURES / name).read_bytes()


def products_xml(prefix: str, count: int = 2) -> bytes:
    rows = "".join(
        f"<product><id>{prefix}-{i}</id><name>Item {i}</name><price>{i + 1}.50</price></product>" for i in range(count)
    )
    return f"<products>{rows}</products>".encode()


class FakeFetcher:
    """Serves canned bodies and records how many fetches overlap."""

    def __init__(self, bodies, delay=0.01):
        self.bodies = bodies
        self.delay = delay
        self.in_flight = 0
        self.peak = 0
        self.calls = []
        self.closed = False

    async def fetch(self, url):
        self.calls.append(url)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            body = self.bodies[url]
            if isinstance(body, Exception):
                raise body
            return body
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True


class LockedClaimStore(SqlFeedStore):
    """Fails to claim one feed the way a locked database would."""

    locked_feed = "feed-2"

    def set_feed_syncing(self, feed_id):
        if feed_id == self.locked_feed:
            raise OperationalError("UPDATE feeds", {}, Exception("database is locked"))
        return super().set_feed_syncing(feed_id)


def make_service(engine, fetcher, store_class=SqlFeedStore, **overrides):
    settings = SyncSettings(**{"retry_delay": 0.0, **overrides})
    store = store_class(engine, stale_sync_minutes=settings.stale_sync_minutes)
    return FeedSyncService(settings, store, fetcher)


@pytest.mark.asyncio
async def test_sync_google_feed_end_to_end(seeded_engine):
    settings = SyncSettings(retry_delay=0.0)
    store = SqlFeedStore(seeded_engine)
    async with respx.mock(assert_all_called=True) as router:
        router.get("https://shop.example.com/feed.xml").mock(
            return_value=httpx.Response(200, content=load_fixture("google_rss.xml"))
        )
        async with httpx.AsyncClient() as session:
            service = FeedSyncService(settings, store, FeedFetcher(settings, session=session))
            result = await service.sync_by_feed_id("feed-1")
            await service.close()

    assert result.success, result.error
    assert (result.product_count, result.created, result.updated) == (3, 3, 0)
    assert result.campaign_count == 1
    assert result.as_dict()["productCount"] == 3

    feed = store.get_feed("feed-1")
    assert feed.status == FeedStatus.ACTIVE
    assert feed.error_message is None
    assert feed.product_count == 3
    assert feed.next_sync_at - feed.last_sync_at == timedelta(minutes=30)

    [scarf] = [p for p in store.list_active_products("tenant-1") if p.external_id == "SKU-2"]
    assert (scarf.price, scarf.currency) == (1899.90, "TRY")
    cache = store.get_feed_cache("tenant-1")
    assert cache.payload["campaigns"][0]["id"] == "summer-campaign"


@pytest.mark.asyncio
async def test_resync_deactivates_missing_products(seeded_engine):
    url = "https://shop.example.com/custom.xml"
    fetcher = FakeFetcher({url: products_xml("P", 3)})
    service = make_service(seeded_engine, fetcher)
    first = await service.sync_by_feed_id("feed-2")
    fetcher.bodies[url] = products_xml("P", 2)
    second = await service.sync_by_feed_id("feed-2")
    await service.close()

    assert (first.created, first.deactivated_count) == (3, 0)
    assert (second.updated, second.deactivated_count) == (2, 1)
    active = {p.external_id for p in service.store.list_active_products("tenant-1", "feed-2")}
    assert active == {"P-0", "P-1"}


@pytest.mark.asyncio
async def test_fetch_failure_marks_feed_error(seeded_engine):
    fetcher = FakeFetcher({"https://shop.example.com/feed.xml": NotXml("Response does not appear to be XML")})
    service = make_service(seeded_engine, fetcher)
    result = await service.sync_by_feed_id("feed-1")
    await service.close()

    assert not result.success
    assert result.error == "Response does not appear to be XML"
    assert result.as_dict()["error"] == result.error
    feed = service.store.get_feed("feed-1")
    assert feed.status == FeedStatus.ERROR
    assert feed.error_message == "Response does not appear to be XML"
    assert feed.next_sync_at is None


@pytest.mark.asyncio
async def test_error_retry_policy_pushes_next_sync(seeded_engine):
    fetcher = FakeFetcher({"https://shop.example.com/feed.xml": NotXml("nope")})
    service = make_service(seeded_engine, fetcher, error_retry_minutes=15)
    before = utc_now()
    await service.sync_by_feed_id("feed-1")
    await service.close()
    feed = service.store.get_feed("feed-1")
    assert feed.next_sync_at >= before + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_feed_without_valid_products_fails(seeded_engine):
    body = b"<products><product><id>1</id><name>Zero</name><price>0</price></product></products>"
    fetcher = FakeFetcher({"https://shop.example.com/custom.xml": body})
    service = make_service(seeded_engine, fetcher)
    result = await service.sync_by_feed_id("feed-2")
    await service.close()

    assert not result.success
    assert "No valid products" in result.error
    assert service.store.list_active_products("tenant-1") == []
    assert service.store.get_feed("feed-2").status == FeedStatus.ERROR


@pytest.mark.asyncio
async def test_sync_all_due_respects_concurrency_limit(engine):
    now = utc_now()
    bodies = {}
    with engine.begin() as conn:
        conn.execute(tenants.insert(), {"id": "t", "name": "Many", "slug": "many", "is_active": True})
        for i in range(20):
            url = f"https://feeds.example.com/{i}.xml"
            bodies[url] = products_xml(f"F{i}")
            conn.execute(
                feeds.insert(),
                {
                    "id": f"feed-{i:02d}",
                    "tenant_id": "t",
                    "url": url,
                    "format": "custom",
                    "created_at": now,
                    "updated_at": now,
                },
            )
    fetcher = FakeFetcher(bodies, delay=0.02)
    service = make_service(engine, fetcher, max_concurrent_syncs=5)
    summary = await service.sync_all_due()
    await service.close()

    assert summary.feeds_processed == 20
    assert summary.success_count == 20
    assert summary.total_products == 40
    assert summary.as_dict()["feedsProcessed"] == 20
    assert 1 < fetcher.peak <= 5
    assert service.runner.peak_in_flight <= 5
    assert service.store.list_feeds_due_for_sync() == []


@pytest.mark.asyncio
async def test_same_feed_is_not_synced_twice_concurrently(seeded_engine):
    fetcher = FakeFetcher({"https://shop.example.com/feed.xml": load_fixture("google_rss.xml")}, delay=0.05)
    service = make_service(seeded_engine, fetcher)
    feed = service.store.get_feed("feed-1")
    first, second = await asyncio.gather(service.sync_feed(feed), service.sync_feed(feed))
    await service.close()

    assert first.success
    assert second.skipped and not second.success
    assert len(fetcher.calls) == 1


@pytest.mark.asyncio
async def test_claim_held_elsewhere_is_skipped_without_touching_feed(seeded_engine):
    fetcher = FakeFetcher({"https://shop.example.com/feed.xml": products_xml("D")})
    service = make_service(seeded_engine, fetcher)
    assert service.store.set_feed_syncing("feed-1")

    result = await service.sync_by_feed_id("feed-1")
    await service.close()

    assert result.skipped
    assert fetcher.calls == []
    feed = service.store.get_feed("feed-1")
    assert feed.status == FeedStatus.SYNCING
    assert feed.error_message is None


@pytest.mark.asyncio
async def test_cancelled_sync_marks_feed_error(seeded_engine):
    fetcher = FakeFetcher({"https://shop.example.com/feed.xml": products_xml("C")}, delay=10)
    service = make_service(seeded_engine, fetcher)
    task = asyncio.create_task(service.sync_by_feed_id("feed-1"))
    while not fetcher.calls:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await service.close()

    feed = service.store.get_feed("feed-1")
    assert feed.status == FeedStatus.ERROR
    assert feed.error_message == "Sync cancelled"


@pytest.mark.asyncio
async def test_lookup_failures_return_results(seeded_engine):
    service = make_service(seeded_engine, FakeFetcher({}))
    missing = await service.sync_by_feed_id("nope")
    no_tenant = await service.sync_by_tenant_slug("missing")
    by_slug_none = await service.sync_by_tenant_slug("dormant")
    await service.close()

    assert not missing.success and "Feed not found" in missing.error
    assert missing.not_found and no_tenant.not_found and by_slug_none.not_found
    assert not no_tenant.success and no_tenant.feed_id == ""
    assert not by_slug_none.success


@pytest.mark.asyncio
async def test_sync_by_tenant_slug_and_stats(seeded_engine):
    fetcher = FakeFetcher({"https://shop.example.com/feed.xml": load_fixture("google_rss.xml")})
    service = make_service(seeded_engine, fetcher)
    result = await service.sync_by_tenant_slug("acme")
    stats = await service.get_stats()
    cache = await service.get_tenant_cache("acme")
    await service.close()

    assert result.success and result.feed_id == "feed-1"
    assert stats["products"] == 3
    assert stats["feeds"]["active"] == 2
    assert stats["inFlight"] == 0
    assert len(cache.payload["products"]) == 3
    assert fetcher.closed


@pytest.mark.asyncio
async def test_claim_error_fails_only_that_feed(seeded_engine):
    fetcher = FakeFetcher(
        {
            "https://shop.example.com/feed.xml": load_fixture("google_rss.xml"),
            "https://shop.example.com/custom.xml": products_xml("L"),
        }
    )
    service = make_service(seeded_engine, fetcher, store_class=LockedClaimStore)
    summary = await service.sync_all()
    single = await service.sync_by_feed_id("feed-2")
    await service.close()

    assert (summary.feeds_processed, summary.success_count, summary.error_count) == (2, 1, 1)
    locked = next(r for r in summary.results if r.feed_id == "feed-2")
    assert "database is locked" in locked.error
    assert not single.success and "database is locked" in single.error
    assert fetcher.calls == ["https://shop.example.com/feed.xml"]
    # the claim never happened, so the row keeps its previous state
    assert service.store.get_feed("feed-2").status == FeedStatus.ACTIVE


@pytest.mark.asyncio
async def test_sync_all_isolates_failing_feeds(seeded_engine):
    fetcher = FakeFetcher(
        {
            "https://shop.example.com/feed.xml": load_fixture("google_rss.xml"),
            "https://shop.example.com/custom.xml": NotXml("Response does not appear to be XML"),
        }
    )
    service = make_service(seeded_engine, fetcher)
    summary = await service.sync_all()
    await service.close()

    assert not summary.success
    assert (summary.feeds_processed, summary.success_count, summary.error_count) == (2, 1, 1)
    assert summary.total_products == 3
    data = summary.as_dict()
    assert (data["successCount"], data["errorCount"]) == (1, 1)
    assert service.store.get_feed("feed-1").status == FeedStatus.ACTIVE
    assert service.store.get_feed("feed-2").status == FeedStatus.ERROR
    # feed-2 was not due, sync_all ignores the schedule
    assert sorted(fetcher.calls) == ["https://shop.example.com/custom.xml", "https://shop.example.com/feed.xml"]

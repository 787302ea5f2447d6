"""Feed sync orchestration: fetch, parse, normalize and persist each due feed."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.config import SyncSettings
from app.db.session import create_engine_from_env
from app.ingest.errors import FeedNotFound, FeedSyncError, NoValidProducts, PersistenceError
from app.ingest.fetcher import FeedFetcher
from app.ingest.models import Feed, FeedCache, FeedSyncResult, SyncSummary
from app.ingest.normalizer import ProductNormalizer
from app.ingest.parsers import select_parser
from app.ingest.store import FeedStore, SqlFeedStore
from app.utils.concurrency import BoundedRunner
from app.utils.dates import minutes_from, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_MESSAGE = "Sync cancelled"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class FeedSyncService:
    """Runs feed syncs with bounded concurrency and per-feed status tracking.

    Store calls are blocking and run on one dedicated worker thread, so the
    event loop only waits on HTTP and on that hand-off. Public entry points
    return result objects; only cancellation propagates.
    """

    def __init__(
        self,
        settings: SyncSettings,
        store: FeedStore,
        fetcher: FeedFetcher,
        normalizer: ProductNormalizer | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.normalizer = normalizer or ProductNormalizer()
        self.runner = BoundedRunner(settings.max_concurrent_syncs)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="feed-store")
        self._in_flight: set[str] = set()

    async def close(self) -> None:
        await self.fetcher.close()
        self._executor.shutdown(wait=True)

    async def _call_store(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, functools.partial(fn, *args))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{fn.__name__} failed: {exc}") from exc

    async def sync_all_due(self) -> SyncSummary:
        return await self._sync_many(self.store.list_feeds_due_for_sync, "due")

    async def sync_all(self) -> SyncSummary:
        return await self._sync_many(self.store.list_all_active_feeds, "active")

    async def _sync_many(self, list_feeds: Callable[[], list[Feed]], label: str) -> SyncSummary:
        started = time.monotonic()
        try:
            feed_list = await self._call_store(list_feeds)
        except Exception as exc:
            logger.exception("Could not list %s feeds", label)
            return SyncSummary(
                success=False,
                feeds_processed=0,
                success_count=0,
                error_count=0,
                total_products=0,
                duration_ms=_elapsed_ms(started),
                error=str(exc) or exc.__class__.__name__,
            )
        if not feed_list:
            logger.info("No %s feeds to sync", label)
            return SyncSummary.from_results([], _elapsed_ms(started))

        logger.info("Syncing %s %s feeds (limit %s)", len(feed_list), label, self.runner.limit)
        results = await self.runner.map(self.sync_feed, feed_list)
        summary = SyncSummary.from_results(results, _elapsed_ms(started))
        logger.info(
            "Sync finished: %s ok, %s failed, %s products in %dms",
            summary.success_count,
            summary.error_count,
            summary.total_products,
            summary.duration_ms,
        )
        return summary

    async def sync_by_feed_id(self, feed_id: str) -> FeedSyncResult:
        started = time.monotonic()
        try:
            feed = await self._find_feed(self.store.get_feed, feed_id, f"Feed not found: {feed_id}")
        except Exception as exc:
            return self._lookup_failed(feed_id, exc, started)
        return await self.runner.run(self.sync_feed, feed)

    async def sync_by_tenant_slug(self, slug: str) -> FeedSyncResult:
        started = time.monotonic()
        try:
            feed = await self._find_feed(
                self.store.get_feed_by_tenant_slug, slug, f"No active feed found for tenant: {slug}"
            )
        except Exception as exc:
            return self._lookup_failed("", exc, started)
        return await self.runner.run(self.sync_feed, feed)

    async def _find_feed(self, lookup: Callable[[str], Feed | None], key: str, missing: str) -> Feed:
        feed = await self._call_store(lookup, key)
        if feed is None:
            raise FeedNotFound(missing)
        return feed

    async def get_tenant_cache(self, slug: str) -> FeedCache | None:
        feed = await self._call_store(self.store.get_feed_by_tenant_slug, slug)
        if feed is None:
            return None
        return await self._call_store(self.store.get_feed_cache, feed.tenant_id)

    async def get_stats(self) -> dict[str, Any]:
        stats = await self._call_store(self.store.get_stats)
        stats["inFlight"] = len(self._in_flight)
        stats["peakInFlight"] = self.runner.peak_in_flight
        return stats

    async def sync_feed(self, feed: Feed) -> FeedSyncResult:
        started = time.monotonic()
        if feed.id in self._in_flight:
            logger.info("Feed %s is already being synced by this worker", feed.id)
            return self._skipped(feed, started)
        self._in_flight.add(feed.id)
        try:
            try:
                claimed = await self._call_store(self.store.set_feed_syncing, feed.id)
            except Exception as exc:
                # the claim was never taken, so the feed row is left alone
                logger.error("Could not claim feed %s: %s", feed.id, exc)
                return self._failed(feed, str(exc) or exc.__class__.__name__, started)
            if not claimed:
                return self._skipped(feed, started)
            logger.info("Starting sync for feed %s (%s)", feed.id, feed.tenant_name or feed.tenant_id)
            try:
                return await self._run(feed, started)
            except asyncio.CancelledError:
                logger.warning("Sync for feed %s cancelled", feed.id)
                # the task is already cancelled; record the status without awaiting
                self._executor.submit(self.store.set_feed_error, feed.id, CANCELLED_MESSAGE)
                raise
            except Exception as exc:
                return await self._fail(feed, exc, started)
        finally:
            self._in_flight.discard(feed.id)

    async def _run(self, feed: Feed, started: float) -> FeedSyncResult:
        content = await self.fetcher.fetch(feed.url)
        logger.info("Fetched %s bytes for feed %s", len(content), feed.id)

        parser = select_parser(feed.format, content, self.settings.auto_detect_format)
        parsed = parser.parse(content)
        products = self.normalizer.deduplicate(self.normalizer.normalize(parsed.products))
        if not products:
            raise NoValidProducts("No valid products found in feed")

        upsert = await self._call_store(self.store.upsert_products, feed.tenant_id, feed.id, products)
        deactivated = await self._call_store(
            self.store.deactivate_stale_products, feed.tenant_id, feed.id, [p.external_id for p in products]
        )
        await self._call_store(self.store.rebuild_feed_cache, feed.tenant_id, products, parsed.campaigns)
        interval = feed.sync_interval or self.settings.default_sync_interval
        await self._call_store(self.store.set_feed_active, feed.id, len(products), interval)

        result = FeedSyncResult(
            success=True,
            feed_id=feed.id,
            tenant_id=feed.tenant_id,
            tenant_name=feed.tenant_name,
            product_count=len(products),
            campaign_count=len(parsed.campaigns),
            created=upsert.created,
            updated=upsert.updated,
            upsert_errors=upsert.errors,
            deactivated_count=deactivated,
            duration_ms=_elapsed_ms(started),
        )
        logger.info(
            "Synced feed %s: %s products (%s created, %s updated, %s deactivated) in %dms",
            feed.id,
            result.product_count,
            result.created,
            result.updated,
            result.deactivated_count,
            result.duration_ms,
        )
        return result

    async def _fail(self, feed: Feed, exc: Exception, started: float) -> FeedSyncResult:
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, FeedSyncError):
            logger.error("Sync failed for feed %s: %s", feed.id, message)
        else:
            logger.exception("Unexpected error syncing feed %s", feed.id)
        retry_at = None
        if self.settings.error_retry_minutes > 0:
            retry_at = minutes_from(utc_now(), self.settings.error_retry_minutes)
        try:
            await self._call_store(self.store.set_feed_error, feed.id, message, retry_at)
        except Exception:
            logger.exception("Could not record error status for feed %s", feed.id)
        return self._failed(feed, message, started)

    @staticmethod
    def _failed(feed: Feed, message: str, started: float, skipped: bool = False) -> FeedSyncResult:
        return FeedSyncResult(
            success=False,
            feed_id=feed.id,
            tenant_id=feed.tenant_id,
            tenant_name=feed.tenant_name,
            error=message,
            skipped=skipped,
            duration_ms=_elapsed_ms(started),
        )

    @classmethod
    def _skipped(cls, feed: Feed, started: float) -> FeedSyncResult:
        return cls._failed(feed, "Feed is already syncing", started, skipped=True)

    @staticmethod
    def _lookup_failed(feed_id: str, exc: Exception, started: float) -> FeedSyncResult:
        not_found = isinstance(exc, FeedNotFound)
        if not_found:
            logger.warning("%s", exc)
        else:
            logger.error("Feed lookup failed: %s", exc)
        return FeedSyncResult(
            success=False,
            feed_id=feed_id,
            error=str(exc) or exc.__class__.__name__,
            not_found=not_found,
            duration_ms=_elapsed_ms(started),
        )


def build_service(settings: SyncSettings | None = None, engine: Engine | None = None) -> FeedSyncService:
    """Wire a service against the configured database."""
    settings = settings or SyncSettings.from_env()
    engine = engine or create_engine_from_env()
    store = SqlFeedStore(engine, stale_sync_minutes=settings.stale_sync_minutes)
    return FeedSyncService(settings, store, FeedFetcher(settings))

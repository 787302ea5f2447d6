"""Persistence gateway for feeds, products and the tenant feed cache."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Protocol

from sqlalchemy import and_, func, or_, select
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from app.db.schema import feed_cache, feeds, products, tenants
from app.ingest.models import (
    Campaign,
    Feed,
    FeedCache,
    FeedFormat,
    FeedStatus,
    Product,
    StockStatus,
    UpsertResult,
)
from app.utils.dates import isoformat_utc, minutes_from, utc_now

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
CACHE_PRODUCT_LIMIT = 100
CACHE_CAMPAIGN_LIMIT = 10
ERROR_MESSAGE_LIMIT = 1000


class FeedStore(Protocol):
    def list_feeds_due_for_sync(self) -> list[Feed]: ...

    def list_all_active_feeds(self) -> list[Feed]: ...

    def get_feed(self, feed_id: str) -> Feed | None: ...

    def get_feed_by_tenant_slug(self, slug: str) -> Feed | None: ...

    def set_feed_syncing(self, feed_id: str) -> bool: ...

    def set_feed_active(self, feed_id: str, product_count: int, interval_minutes: int) -> None: ...

    def set_feed_error(self, feed_id: str, message: str, retry_at: datetime | None = None) -> None: ...

    def upsert_products(self, tenant_id: str, feed_id: str, items: list[Product]) -> UpsertResult: ...

    def deactivate_stale_products(self, tenant_id: str, feed_id: str, active_ids: Iterable[str]) -> int: ...

    def rebuild_feed_cache(self, tenant_id: str, items: list[Product], campaigns: list[Campaign]) -> FeedCache: ...

    def list_active_products(self, tenant_id: str, feed_id: str | None = None) -> list[Product]: ...

    def get_feed_cache(self, tenant_id: str) -> FeedCache | None: ...

    def get_stats(self) -> dict[str, Any]: ...


def cache_payload(items: list[Product], campaigns: list[Campaign]) -> dict[str, Any]:
    return {
        "products": [
            {
                "id": product.external_id,
                "title": product.title,
                "price": product.price,
                "salePrice": product.sale_price,
                "image": product.image_url,
                "url": product.product_url,
                "category": product.category,
                "brand": product.brand,
                "stock": product.stock_status.value,
            }
            for product in items[:CACHE_PRODUCT_LIMIT]
        ],
        "campaigns": [campaign.as_dict() for campaign in campaigns[:CACHE_CAMPAIGN_LIMIT]],
    }


def cache_checksum(payload: dict[str, Any]) -> str:
    """MD5 over the catalog part of a cache payload; timestamps do not count."""
    catalog = {"products": payload.get("products", []), "campaigns": payload.get("campaigns", [])}
    encoded = json.dumps(catalog, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()


class SqlFeedStore:
    """``FeedStore`` over a SQLAlchemy engine.

    Calls are blocking; the sync service runs them on a worker thread.
    """

    def __init__(self, engine: Engine, *, stale_sync_minutes: int = 60, batch_size: int = BATCH_SIZE) -> None:
        self.engine = engine
        self.stale_sync_minutes = stale_sync_minutes
        self.batch_size = batch_size

    # feeds

    def _feed_query(self):
        return select(feeds, tenants.c.name.label("tenant_name"), tenants.c.slug.label("tenant_slug")).join(
            tenants, tenants.c.id == feeds.c.tenant_id
        )

    def _claimable(self, now: datetime):
        stale_before = now - timedelta(minutes=self.stale_sync_minutes)
        return or_(
            feeds.c.status != FeedStatus.SYNCING.value,
            feeds.c.updated_at.is_(None),
            feeds.c.updated_at < stale_before,
        )

    def list_feeds_due_for_sync(self) -> list[Feed]:
        now = utc_now()
        stmt = (
            self._feed_query()
            .where(
                feeds.c.is_active.is_(True),
                tenants.c.is_active.is_(True),
                or_(feeds.c.next_sync_at.is_(None), feeds.c.last_sync_at.is_(None), feeds.c.next_sync_at <= now),
                self._claimable(now),
            )
            .order_by(feeds.c.next_sync_at.is_(None).desc(), feeds.c.next_sync_at, feeds.c.id)
        )
        with self.engine.connect() as conn:
            return [_feed_from_row(row) for row in conn.execute(stmt)]

    def list_all_active_feeds(self) -> list[Feed]:
        stmt = (
            self._feed_query()
            .where(feeds.c.is_active.is_(True), tenants.c.is_active.is_(True))
            .order_by(feeds.c.id)
        )
        with self.engine.connect() as conn:
            return [_feed_from_row(row) for row in conn.execute(stmt)]

    def get_feed(self, feed_id: str) -> Feed | None:
        with self.engine.connect() as conn:
            row = conn.execute(self._feed_query().where(feeds.c.id == feed_id)).first()
        return _feed_from_row(row) if row else None

    def get_feed_by_tenant_slug(self, slug: str) -> Feed | None:
        stmt = (
            self._feed_query()
            .where(tenants.c.slug == slug, tenants.c.is_active.is_(True), feeds.c.is_active.is_(True))
            .order_by(feeds.c.created_at, feeds.c.id)
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _feed_from_row(row) if row else None

    def set_feed_syncing(self, feed_id: str) -> bool:
        """Claim the feed; False when another run already holds a fresh claim."""
        now = utc_now()
        stmt = (
            feeds.update()
            .where(feeds.c.id == feed_id, self._claimable(now))
            .values(status=FeedStatus.SYNCING.value, updated_at=now)
        )
        with self.engine.begin() as conn:
            claimed = conn.execute(stmt).rowcount == 1
        if not claimed:
            logger.info("Feed %s is already syncing", feed_id)
        return claimed

    def set_feed_active(self, feed_id: str, product_count: int, interval_minutes: int) -> None:
        now = utc_now()
        stmt = (
            feeds.update()
            .where(feeds.c.id == feed_id)
            .values(
                status=FeedStatus.ACTIVE.value,
                last_sync_at=now,
                next_sync_at=minutes_from(now, interval_minutes),
                error_message=None,
                product_count=product_count,
                updated_at=now,
            )
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def set_feed_error(self, feed_id: str, message: str, retry_at: datetime | None = None) -> None:
        values: dict[str, Any] = {
            "status": FeedStatus.ERROR.value,
            "error_message": (message or "Unknown error")[:ERROR_MESSAGE_LIMIT],
            "updated_at": utc_now(),
        }
        if retry_at is not None:
            values["next_sync_at"] = retry_at
        with self.engine.begin() as conn:
            conn.execute(feeds.update().where(feeds.c.id == feed_id).values(**values))

    # products

    def upsert_products(self, tenant_id: str, feed_id: str, items: list[Product]) -> UpsertResult:
        """Insert or update by (tenant, external id).

        One transaction per batch, one savepoint per record: a failing record
        is counted in ``errors`` and the rest of its batch still commits.
        """
        result = UpsertResult(total=len(items))
        for start in range(0, len(items), self.batch_size):
            batch = items[start : start + self.batch_size]
            with self.engine.begin() as conn:
                for product in batch:
                    try:
                        with conn.begin_nested():
                            created = self._upsert_product(conn, tenant_id, feed_id, product)
                    except SQLAlchemyError as exc:
                        result.errors += 1
                        logger.warning("Upsert failed for product %s: %s", product.external_id, exc)
                        continue
                    if created:
                        result.created += 1
                    else:
                        result.updated += 1
        logger.info(
            "Upserted %s products for tenant %s: %s created, %s updated, %s errors",
            result.total,
            tenant_id,
            result.created,
            result.updated,
            result.errors,
        )
        return result

    def _upsert_product(self, conn: Connection, tenant_id: str, feed_id: str, product: Product) -> bool:
        now = utc_now()
        values = {
            "feed_id": feed_id,
            "title": product.title,
            "description": product.description,
            "price": product.price,
            "sale_price": product.sale_price,
            "currency": product.currency,
            "image_url": product.image_url,
            "product_url": product.product_url,
            "category": product.category,
            "brand": product.brand,
            "stock_status": product.stock_status.value,
            "attributes": product.attributes,
            "is_active": True,
            "updated_at": now,
        }
        existing = conn.execute(
            select(products.c.id).where(
                products.c.tenant_id == tenant_id, products.c.external_id == product.external_id
            )
        ).scalar_one_or_none()
        if existing is not None:
            conn.execute(products.update().where(products.c.id == existing).values(**values))
            return False
        conn.execute(
            products.insert().values(tenant_id=tenant_id, external_id=product.external_id, created_at=now, **values)
        )
        return True

    def deactivate_stale_products(self, tenant_id: str, feed_id: str, active_ids: Iterable[str]) -> int:
        """Mark the feed's products missing from ``active_ids`` inactive. Nothing is deleted."""
        ids = list(active_ids)
        conditions = [
            products.c.tenant_id == tenant_id,
            products.c.feed_id == feed_id,
            products.c.is_active.is_(True),
        ]
        if ids:
            conditions.append(products.c.external_id.not_in(ids))
        stmt = products.update().where(and_(*conditions)).values(is_active=False, updated_at=utc_now())
        with self.engine.begin() as conn:
            count = conn.execute(stmt).rowcount
        if count:
            logger.info("Deactivated %s stale products for feed %s", count, feed_id)
        return count

    def list_active_products(self, tenant_id: str, feed_id: str | None = None) -> list[Product]:
        stmt = select(products).where(products.c.tenant_id == tenant_id, products.c.is_active.is_(True))
        if feed_id is not None:
            stmt = stmt.where(products.c.feed_id == feed_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(products.c.id)).all()
        return [_product_from_row(row) for row in rows]

    # cache

    def rebuild_feed_cache(self, tenant_id: str, items: list[Product], campaigns: list[Campaign]) -> FeedCache:
        payload = cache_payload(items, campaigns)
        checksum = cache_checksum(payload)
        now = utc_now()
        payload["updatedAt"] = isoformat_utc(now)
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(feed_cache.c.tenant_id).where(feed_cache.c.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if exists is not None:
                conn.execute(
                    feed_cache.update()
                    .where(feed_cache.c.tenant_id == tenant_id)
                    .values(payload=payload, checksum=checksum, updated_at=now)
                )
            else:
                conn.execute(
                    feed_cache.insert().values(tenant_id=tenant_id, payload=payload, checksum=checksum, updated_at=now)
                )
        logger.info("Updated feed cache for tenant %s", tenant_id)
        return FeedCache(tenant_id=tenant_id, payload=payload, checksum=checksum, updated_at=now)

    def get_feed_cache(self, tenant_id: str) -> FeedCache | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(feed_cache).where(feed_cache.c.tenant_id == tenant_id)).first()
        if row is None:
            return None
        return FeedCache(tenant_id=row.tenant_id, payload=row.payload, checksum=row.checksum, updated_at=row.updated_at)

    def get_stats(self) -> dict[str, Any]:
        with self.engine.connect() as conn:
            by_status = dict(conn.execute(select(feeds.c.status, func.count()).group_by(feeds.c.status)).all())
            total_feeds = conn.execute(select(func.count()).select_from(feeds)).scalar_one()
            active_products = conn.execute(
                select(func.count()).select_from(products).where(products.c.is_active.is_(True))
            ).scalar_one()
            last_sync = conn.execute(select(func.max(feeds.c.last_sync_at))).scalar_one()
        return {
            "feeds": {
                "total": total_feeds,
                "active": by_status.get(FeedStatus.ACTIVE.value, 0),
                "error": by_status.get(FeedStatus.ERROR.value, 0),
                "syncing": by_status.get(FeedStatus.SYNCING.value, 0),
                "pending": by_status.get(FeedStatus.PENDING.value, 0),
            },
            "products": active_products,
            "lastSyncAt": isoformat_utc(last_sync),
        }


def _feed_from_row(row: Row) -> Feed:
    data = row._mapping
    return Feed(
        id=data["id"],
        tenant_id=data["tenant_id"],
        url=data["url"],
        format=FeedFormat(data["format"]) if data["format"] else None,
        status=FeedStatus(data["status"]),
        sync_interval=data["sync_interval"],
        last_sync_at=data["last_sync_at"],
        next_sync_at=data["next_sync_at"],
        error_message=data["error_message"],
        product_count=data["product_count"] or 0,
        is_active=bool(data["is_active"]),
        name=data["name"],
        tenant_name=data["tenant_name"],
        tenant_slug=data["tenant_slug"],
    )


def _product_from_row(row: Row) -> Product:
    data = row._mapping
    return Product(
        external_id=data["external_id"],
        title=data["title"],
        price=float(data["price"]),
        description=data["description"] or "",
        sale_price=float(data["sale_price"]) if data["sale_price"] is not None else None,
        currency=data["currency"],
        image_url=data["image_url"] or "",
        product_url=data["product_url"] or "",
        category=data["category"] or "",
        brand=data["brand"] or "",
        stock_status=StockStatus(data["stock_status"]),
        attributes=data["attributes"] or {},
        is_active=bool(data["is_active"]),
    )

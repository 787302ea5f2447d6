"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class FeedFormat(str, Enum):
    GOOGLE = "google"
    FACEBOOK = "facebook"
    CUSTOM = "custom"


class FeedStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    ACTIVE = "active"
    ERROR = "error"


class StockStatus(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    PREORDER = "preorder"


@dataclass(slots=True)
class Feed:
    id: str
    tenant_id: str
    url: str
    format: FeedFormat | None = None
    status: FeedStatus = FeedStatus.PENDING
    sync_interval: int | None = None
    last_sync_at: datetime | None = None
    next_sync_at: datetime | None = None
    error_message: str | None = None
    product_count: int = 0
    is_active: bool = True
    name: str | None = None
    tenant_name: str | None = None
    tenant_slug: str | None = None


@dataclass(slots=True)
class RawProduct:
    """Parser output before normalization; values may be messy or missing."""

    external_id: Any = None
    title: Any = None
    description: Any = None
    price: Any = None
    sale_price: Any = None
    currency: Any = None
    image_url: Any = None
    product_url: Any = None
    category: Any = None
    brand: Any = None
    stock_status: Any = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Product:
    external_id: str
    title: str
    price: float
    description: str = ""
    sale_price: float | None = None
    currency: str = "TRY"
    image_url: str = ""
    product_url: str = ""
    category: str = ""
    brand: str = ""
    stock_status: StockStatus = StockStatus.IN_STOCK
    attributes: dict[str, str] = field(default_factory=dict)
    is_active: bool = True


@dataclass(slots=True)
class Campaign:
    id: str
    title: str
    start: str | None = None
    end: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "start": self.start, "end": self.end}


@dataclass(slots=True)
class ParsedFeed:
    products: list[RawProduct]
    campaigns: list[Campaign]
    metadata: dict[str, Any]


@dataclass(slots=True)
class UpsertResult:
    created: int = 0
    updated: int = 0
    errors: int = 0
    total: int = 0


@dataclass(slots=True)
class FeedCache:
    tenant_id: str
    payload: dict[str, Any]
    checksum: str
    updated_at: datetime


@dataclass(slots=True)
class FeedSyncResult:
    success: bool
    feed_id: str
    tenant_id: str | None = None
    tenant_name: str | None = None
    product_count: int = 0
    campaign_count: int = 0
    created: int = 0
    updated: int = 0
    upsert_errors: int = 0
    deactivated_count: int = 0
    error: str | None = None
    skipped: bool = False
    not_found: bool = False
    duration_ms: int = 0

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "feedId": self.feed_id,
            "tenantId": self.tenant_id,
            "tenantName": self.tenant_name,
            "durationMs": self.duration_ms,
        }
        if self.success:
            data.update(
                {
                    "productCount": self.product_count,
                    "campaignCount": self.campaign_count,
                    "created": self.created,
                    "updated": self.updated,
                    "upsertErrors": self.upsert_errors,
                    "deactivatedCount": self.deactivated_count,
                }
            )
        else:
            data["error"] = self.error
            data["skipped"] = self.skipped
        return data


@dataclass(slots=True)
class SyncSummary:
    success: bool
    feeds_processed: int
    success_count: int
    error_count: int
    total_products: int
    duration_ms: int
    results: list[FeedSyncResult] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_results(cls, results: list[FeedSyncResult], duration_ms: int) -> "SyncSummary":
        succeeded = [r for r in results if r.success]
        return cls(
            success=len(succeeded) == len(results),
            feeds_processed=len(results),
            success_count=len(succeeded),
            error_count=len(results) - len(succeeded),
            total_products=sum(r.product_count for r in succeeded),
            duration_ms=duration_ms,
            results=results,
        )

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "feedsProcessed": self.feeds_processed,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "totalProducts": self.total_products,
            "durationMs": self.duration_ms,
            "results": [r.as_dict() for r in self.results],
        }
        if self.error:
            data["error"] = self.error
        return data

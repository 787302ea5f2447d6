"""Table definitions for tenants, feeds, products and the per-tenant feed cache.

Timestamps are naive UTC.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

tenants = Table(
    "tenants",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", Text, nullable=False),
    Column("slug", String(128), nullable=False, unique=True),
    Column("is_active", Boolean, nullable=False, default=True),
)

feeds = Table(
    "feeds",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("tenant_id", String(64), ForeignKey("tenants.id"), nullable=False),
    Column("name", Text),
    Column("url", Text, nullable=False),
    Column("format", String(32)),
    Column("status", String(32), nullable=False, default="pending"),
    Column("sync_interval", Integer),
    Column("last_sync_at", DateTime),
    Column("next_sync_at", DateTime),
    Column("error_message", Text),
    Column("product_count", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(64), ForeignKey("tenants.id"), nullable=False),
    Column("feed_id", String(64), ForeignKey("feeds.id")),
    Column("external_id", String(255), nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text),
    Column("price", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("sale_price", Numeric(10, 2, asdecimal=False)),
    Column("currency", String(3), nullable=False, default="TRY"),
    Column("image_url", Text),
    Column("product_url", Text),
    Column("category", String(255)),
    Column("brand", String(255)),
    Column("stock_status", String(32), nullable=False, default="in_stock"),
    Column("attributes", JSON),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
    UniqueConstraint("tenant_id", "external_id", name="uq_products_tenant_external"),
)

feed_cache = Table(
    "feed_cache",
    metadata,
    Column("tenant_id", String(64), ForeignKey("tenants.id"), primary_key=True),
    Column("payload", JSON, nullable=False),
    Column("checksum", String(32), nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

"""Fetch a feed URL, parse and normalize it, and print what would be stored."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from dotenv import load_dotenv

from app.config import SyncSettings
from app.ingest.fetcher import FeedFetcher
from app.ingest.normalizer import ProductNormalizer
from app.ingest.parsers import select_parser
from app.utils.log import configure_logging


async def preview(url: str, format: str | None, limit: int) -> int:
    settings = SyncSettings.from_env()
    fetcher = FeedFetcher(settings)
    try:
        fetched = await fetcher.fetch_with_metadata(url)
    finally:
        await fetcher.close()
    print(json.dumps(fetched["metadata"], indent=2))
    if not fetched["success"]:
        print(f"Fetch failed: {fetched['error']}", file=sys.stderr)
        return 1

    parser = select_parser(format, fetched["content"], settings.auto_detect_format)
    parsed = parser.parse(fetched["content"])
    normalizer = ProductNormalizer()
    products = normalizer.deduplicate(normalizer.normalize(parsed.products))
    print(f"Parser: {parser.__class__.__name__} ({parsed.metadata['format']})")
    print(f"Container: {parsed.metadata['container']}")
    print(f"Raw products: {len(parsed.products)}, valid: {len(products)}, campaigns: {len(parsed.campaigns)}")
    for product in products[:limit]:
        price = f"{product.price:.2f} {product.currency}"
        print(f"  {product.external_id}: {product.title} | {price} | {product.stock_status.value}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Preview an XML product feed")
    parser.add_argument("url")
    parser.add_argument("--format", choices=["google", "facebook", "custom"], default=None)
    parser.add_argument("--limit", type=int, default=10)
    args = parser.parse_args()
    load_dotenv()
    configure_logging()
    sys.exit(asyncio.run(preview(args.url, args.format, args.limit)))


if __name__ == "__main__":
    main()

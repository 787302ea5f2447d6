"""Common contract for feed parsers."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from app.ingest import FieldMapping
from app.ingest.models import Campaign, ParsedFeed, RawProduct
from app.ingest.xml_tree import XmlMap, parse_xml
from app.utils.dates import isoformat_utc, utc_now

logger = logging.getLogger(__name__)


class FeedParser(ABC):
    """Template for turning raw feed XML into raw products and campaigns.

    Subclasses provide :meth:`extract_products` and may override
    :meth:`extract_campaigns`. Campaign extraction is best-effort: any error
    there is logged and yields no campaigns, it never fails the parse.
    """

    format_name = "custom"
    strip_namespaces = False
    namespace_prefixes: dict[str, str] = {}

    def __init__(self, field_mapping: FieldMapping) -> None:
        self.field_mapping = field_mapping
        self.container: str | None = None

    def parse(self, raw: bytes | str) -> ParsedFeed:
        started = time.monotonic()
        tree = parse_xml(
            raw, strip_namespaces=self.strip_namespaces, namespace_prefixes=self.namespace_prefixes
        )
        products = self.extract_products(tree)
        campaigns = self._extract_campaigns_safely(tree)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info("Parsed %s products and %s campaigns in %dms", len(products), len(campaigns), elapsed_ms)
        metadata: dict[str, Any] = {
            "parsed_at": isoformat_utc(utc_now()),
            "format": self.format_name,
            "container": self.container,
            "product_count": len(products),
            "campaign_count": len(campaigns),
            "parse_time_ms": elapsed_ms,
        }
        return ParsedFeed(products=products, campaigns=campaigns, metadata=metadata)

    @abstractmethod
    def extract_products(self, tree: XmlMap) -> list[RawProduct]:
        raise NotImplementedError

    def extract_campaigns(self, tree: XmlMap) -> list[Campaign]:
        return []

    def _extract_campaigns_safely(self, tree: XmlMap) -> list[Campaign]:
        try:
            return self.extract_campaigns(tree)
        except Exception:
            logger.exception("Campaign extraction failed for %s feed; continuing without campaigns", self.format_name)
            return []

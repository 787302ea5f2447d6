"""Google Merchant Center feeds (RSS 2.0 and Atom)."""

from __future__ import annotations

import logging
import re
from typing import Any

from app.ingest import FieldMapping, load_field_mapping
from app.ingest.fields import clean_text, parse_availability, parse_price
from app.ingest.models import Campaign, RawProduct
from app.ingest.parsers.base import FeedParser
from app.ingest.xml_tree import TEXT_KEY, XmlMap, XmlNode, XmlText, as_list, child, text_of, to_python, walk

logger = logging.getLogger(__name__)

ITEM_PATHS = (
    ("rss", "channel", "item"),
    ("feed", "entry"),
    ("channel", "item"),
)

ATTRIBUTE_FIELDS = {
    "gtin": ["g:gtin", "gtin"],
    "mpn": ["g:mpn", "mpn"],
    "condition": ["g:condition", "condition"],
    "color": ["g:color", "color"],
    "size": ["g:size", "size"],
    "material": ["g:material", "material"],
    "gender": ["g:gender", "gender"],
    "age_group": ["g:age_group", "age_group"],
    "item_group_id": ["g:item_group_id", "item_group_id"],
    "additional_image_link": ["g:additional_image_link", "additional_image_link"],
    "shipping": ["g:shipping", "shipping"],
    "custom_label_0": ["g:custom_label_0", "custom_label_0"],
    "custom_label_1": ["g:custom_label_1", "custom_label_1"],
}

GOOGLE_NAMESPACE = "http://base.google.com/ns/1.0"
CAMPAIGN_LABEL_KEYS = ["g:custom_label_0", "custom_label_0"]
SPACE_RE = re.compile(r"\s+")


class GoogleMerchantParser(FeedParser):
    format_name = "google"
    namespace_prefixes = {GOOGLE_NAMESPACE: "g"}

    def __init__(self, field_mapping: FieldMapping | None = None) -> None:
        super().__init__(field_mapping or load_field_mapping("google"))

    def extract_products(self, tree: XmlMap) -> list[RawProduct]:
        return [self.map_product(item) for item in self._items(tree) if isinstance(item, XmlMap)]

    def extract_campaigns(self, tree: XmlMap) -> list[Campaign]:
        """Campaigns are inferred from custom_label_0 values mentioning a campaign."""
        campaigns: list[Campaign] = []
        seen: set[str] = set()
        for item in self._items(tree):
            label = self.get_value(item, CAMPAIGN_LABEL_KEYS)
            if not label or "campaign" not in label.lower():
                continue
            campaign_id = SPACE_RE.sub("-", label.strip()).lower()
            if campaign_id in seen:
                continue
            seen.add(campaign_id)
            campaigns.append(Campaign(id=campaign_id, title=label.strip()))
        return campaigns

    def map_product(self, item: XmlMap) -> RawProduct:
        mapping = self.field_mapping
        price, currency = parse_price(self.get_value(item, mapping["price"]))
        sale_price, _ = parse_price(self.get_value(item, mapping["sale_price"]))
        if sale_price is not None and not (price and 0 < sale_price < price):
            sale_price = None
        return RawProduct(
            external_id=self.get_value(item, mapping["id"]),
            title=clean_text(self.get_value(item, mapping["title"])),
            description=clean_text(self.get_value(item, mapping["description"])),
            price=price,
            sale_price=sale_price,
            currency=currency,
            image_url=self.get_value(item, mapping["image_url"]),
            product_url=self.get_value(item, mapping["product_url"]),
            category=clean_text(self.get_value(item, mapping["category"])),
            brand=clean_text(self.get_value(item, mapping["brand"])),
            stock_status=parse_availability(self.get_value(item, mapping["availability"])),
            attributes=self._attributes(item),
        )

    def get_value(self, item: XmlNode, keys: list[str]) -> str | None:
        node = self._find(item, keys)
        return text_of(node) if node is not None else None

    def _find(self, item: XmlNode, keys: list[str]) -> XmlNode | None:
        for key in keys:
            node = child(item, key)
            if node is None and ":" in key:
                node = child(item, key.replace(":", "_"))
            if node is not None:
                return node
        return None

    def _attributes(self, item: XmlMap) -> dict[str, Any]:
        attributes: dict[str, Any] = {}
        for name, keys in ATTRIBUTE_FIELDS.items():
            node = self._find(item, keys)
            if node is None:
                continue
            if isinstance(node, XmlText) or (isinstance(node, XmlMap) and TEXT_KEY in node.children):
                value = text_of(node)
            else:
                value = to_python(node)
            if value:
                attributes[name] = value
        return attributes

    def _items(self, tree: XmlMap) -> list[XmlNode]:
        for path in ITEM_PATHS:
            node = walk(tree, path)
            if node is not None:
                self.container = ".".join(path)
                return as_list(node)
        logger.warning("No rss.channel.item or feed.entry elements in Google feed")
        return []

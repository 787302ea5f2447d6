"""Schema-agnostic parser for vendor feeds and Facebook catalogs."""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from app.ingest import FieldMapping, load_field_mapping
from app.ingest.fields import clean_text, parse_availability, parse_price
from app.ingest.models import Campaign, RawProduct
from app.ingest.parsers.base import FeedParser
from app.ingest.xml_tree import (
    ATTRIBUTE_PREFIX,
    TEXT_KEY,
    XmlList,
    XmlMap,
    XmlNode,
    XmlText,
    as_list,
    text_of,
    to_python,
    walk,
)

logger = logging.getLogger(__name__)

CONTAINER_PATHS = (
    ("rss", "channel", "item"),
    ("feed", "entry"),
    ("channel", "item"),
    ("products", "product"),
    ("items", "item"),
    ("catalog", "product"),
    ("data", "product"),
    ("root", "product"),
    ("urunler", "urun"),
    ("xml", "urun"),
    ("xml", "product"),
)

CAMPAIGN_PATHS = (
    ("campaigns", "campaign"),
    ("promotions", "promotion"),
    ("kampanyalar", "kampanya"),
)

# A record looks like a product when its keys hit at least two of these groups.
PRODUCT_FIELD_GROUPS = (
    ("id", "sku", "code", "product_id"),
    ("title", "name", "product_name"),
    ("price", "fiyat"),
    ("image", "img", "resim"),
    ("url", "link"),
)
MIN_FIELD_GROUPS = 2

MAX_SCAN_DEPTH = 5
MAX_SCAN_NODES = 10_000

SKIPPED_KEY_PREFIXES = (ATTRIBUTE_PREFIX, TEXT_KEY, "_", "xmlns")


class GenericParser(FeedParser):
    """Finds the product records wherever they sit and maps them by key name."""

    strip_namespaces = True

    def __init__(self, format: str = "custom", field_mapping: FieldMapping | None = None) -> None:
        super().__init__(field_mapping or load_field_mapping(format))
        self.format_name = format
        self.campaign_mapping = load_field_mapping("campaign")

    def extract_products(self, tree: XmlMap) -> list[RawProduct]:
        records = self._records(tree)
        return [self.map_product(record, index) for index, record in enumerate(records)]

    def extract_campaigns(self, tree: XmlMap) -> list[Campaign]:
        roots = [tree] + [node for node in tree.children.values() if isinstance(node, XmlMap)]
        for root in roots:
            for path in CAMPAIGN_PATHS:
                node = walk(root, path)
                if node is None:
                    continue
                return [self.map_campaign(item) for item in as_list(node) if isinstance(item, XmlMap)]
        return []

    def map_product(self, record: XmlMap, index: int = 0) -> RawProduct:
        flat = flatten(record)
        used: set[str] = set()

        def lookup(field_name: str) -> Any:
            keys = self.field_mapping.get(field_name, [])
            key = find_key(flat, keys)
            if key is None:
                return None
            used.add(key)
            return scalar(flat[key])

        external_id = lookup("id")
        title = lookup("title")
        product_url = lookup("product_url")
        price, price_currency = parse_price(lookup("price"))
        sale_price, _ = parse_price(lookup("sale_price"))
        if sale_price is not None and not (price and 0 < sale_price < price):
            sale_price = None
        currency = price_currency or lookup("currency")

        if external_id in (None, ""):
            external_id = generate_id(title, product_url)
            logger.debug("Record %s has no id; generated %s", index, external_id)

        return RawProduct(
            external_id=str(external_id),
            title=clean_text(title),
            description=clean_text(lookup("description")),
            price=price,
            sale_price=sale_price,
            currency=currency,
            image_url=lookup("image_url"),
            product_url=product_url,
            category=clean_text(lookup("category")),
            brand=clean_text(lookup("brand")),
            stock_status=parse_availability(lookup("availability")),
            attributes=self._remaining_attributes(flat, used),
        )

    def map_campaign(self, item: XmlMap) -> Campaign:
        flat = flatten(item)

        def lookup(field_name: str) -> str | None:
            key = find_key(flat, self.campaign_mapping.get(field_name, []))
            value = scalar(flat[key]) if key is not None else None
            return str(value) if value not in (None, "") else None

        return Campaign(
            id=lookup("id") or "",
            title=lookup("title") or "",
            start=lookup("start"),
            end=lookup("end"),
        )

    def _remaining_attributes(self, flat: dict[str, Any], used: set[str]) -> dict[str, Any]:
        mapped = {key.lower() for keys in self.field_mapping.values() for key in keys}
        mapped.update(key.lower() for key in used)
        attributes: dict[str, Any] = {}
        for key, value in flat.items():
            if key.lower() in mapped or key.startswith(SKIPPED_KEY_PREFIXES):
                continue
            if value is None or value == "" or value == [] or value == {}:
                continue
            attributes[key] = value
        return attributes

    def _records(self, tree: XmlMap) -> list[XmlMap]:
        for path in CONTAINER_PATHS:
            records = [item for item in as_list(walk(tree, path)) if isinstance(item, XmlMap)]
            if records:
                self.container = ".".join(path)
                logger.info("Detected container %s with %s records", self.container, len(records))
                return records

        found = detect_product_list(tree)
        if found is not None:
            path, records = found
            self.container = ".".join(path)
            logger.info("Auto-detected container %s with %s records", self.container, len(records))
            return records

        logger.warning("Could not detect product structure in feed")
        return []


def looks_like_product(node: XmlNode | None) -> bool:
    if not isinstance(node, XmlMap):
        return False
    keys = [key.lower() for key in node.keys()]
    hits = sum(1 for group in PRODUCT_FIELD_GROUPS if any(token in key for key in keys for token in group))
    return hits >= MIN_FIELD_GROUPS


def detect_product_list(tree: XmlMap) -> tuple[list[str], list[XmlMap]] | None:
    """Breadth-limited scan for the first repeated element that looks like a product.

    Gives up past ``MAX_SCAN_DEPTH`` levels or ``MAX_SCAN_NODES`` visited nodes.
    """
    visited = 0
    stack: list[tuple[XmlNode, list[str]]] = [(tree, [])]
    while stack:
        node, path = stack.pop(0)
        visited += 1
        if visited > MAX_SCAN_NODES:
            logger.warning("Product scan stopped after %s nodes", MAX_SCAN_NODES)
            return None
        if len(path) > MAX_SCAN_DEPTH or not isinstance(node, XmlMap):
            continue
        for key, value in node.children.items():
            if isinstance(value, XmlList) and value.items and looks_like_product(value.items[0]):
                return path + [key], [item for item in value.items if isinstance(item, XmlMap)]
            if isinstance(value, (XmlMap, XmlList)):
                stack.append((value.items[0] if isinstance(value, XmlList) and value.items else value, path + [key]))
    return None


def flatten(record: XmlMap, prefix: str = "") -> dict[str, Any]:
    """Flatten a record into plain values keyed by name.

    Text-only children collapse to their string. Nested elements add
    ``parent_child`` entries and still keep the parent under its own key.
    """
    flat: dict[str, Any] = {}
    for key, node in record.children.items():
        name = f"{prefix}_{key}" if prefix else key
        if isinstance(node, XmlText):
            flat[name] = node.value
        elif isinstance(node, XmlMap) and TEXT_KEY in node.children:
            flat[name] = text_of(node)
            for attr, value in node.children.items():
                if attr.startswith(ATTRIBUTE_PREFIX) and isinstance(value, XmlText):
                    flat[f"{name}_{attr[len(ATTRIBUTE_PREFIX):]}"] = value.value
        elif isinstance(node, XmlMap):
            flat.update(flatten(node, name))
            flat.setdefault(name, to_python(node))
        else:
            flat[name] = to_python(node)
    return flat


def find_key(flat: dict[str, Any], candidates: list[str]) -> str | None:
    """Resolve the first candidate present: exact, then case-insensitive, then substring."""
    for candidate in candidates:
        if candidate in flat:
            return candidate
    lowered = {key.lower(): key for key in reversed(list(flat))}
    for candidate in candidates:
        key = lowered.get(candidate.lower())
        if key is not None:
            return key
    for candidate in candidates:
        needle = candidate.lower()
        for key in flat:
            if needle in key.lower():
                return key
    return None


def scalar(value: Any) -> Any:
    if isinstance(value, dict):
        for key in (TEXT_KEY, "_"):
            if key in value:
                return value[key]
        for item in value.values():
            if isinstance(item, str):
                return item
        return None
    if isinstance(value, list):
        return scalar(value[0]) if value else None
    return value


def generate_id(title: Any, url: Any) -> str:
    seed = f"{title or ''}-{url or ''}"
    return "gen-" + hashlib.sha1(seed.encode("utf-8")).hexdigest()[:16]

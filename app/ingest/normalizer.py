"""Turn parser output into clean, storable products."""

from __future__ import annotations

import logging
from typing import Iterable

from app.ingest.fields import (
    normalize_attributes,
    normalize_currency,
    normalize_price,
    normalize_stock,
    normalize_text,
    normalize_url,
)
from app.ingest.models import Product, RawProduct

logger = logging.getLogger(__name__)

ID_MAX_LENGTH = 255
TITLE_MAX_LENGTH = 500
DESCRIPTION_MAX_LENGTH = 5000
LABEL_MAX_LENGTH = 255

COMPLETENESS_WEIGHTS = {
    "title": 2,
    "description": 1,
    "price": 2,
    "image_url": 2,
    "product_url": 1,
    "category": 1,
    "brand": 1,
}


class ProductNormalizer:
    """Stateless; ``normalize`` applied to its own output returns the same products."""

    def normalize(self, products: Iterable[RawProduct | Product]) -> list[Product]:
        items = list(products)
        normalized = [self.normalize_product(product, index) for index, product in enumerate(items)]
        valid = [product for product in normalized if self.is_valid(product)]
        logger.info("Normalized %s of %s products", len(valid), len(items))
        return valid

    def normalize_product(self, product: RawProduct | Product, index: int = 0) -> Product:
        price = normalize_price(product.price)
        sale_price = normalize_price(product.sale_price)
        if sale_price is not None and not (price and 0 < sale_price < price):
            sale_price = None
        return Product(
            external_id=self.normalize_id(product.external_id, index),
            title=normalize_text(product.title, TITLE_MAX_LENGTH),
            description=normalize_text(product.description, DESCRIPTION_MAX_LENGTH),
            price=price if price is not None else 0.0,
            sale_price=sale_price,
            currency=normalize_currency(product.currency),
            image_url=normalize_url(product.image_url),
            product_url=normalize_url(product.product_url),
            category=normalize_text(product.category, LABEL_MAX_LENGTH),
            brand=normalize_text(product.brand, LABEL_MAX_LENGTH),
            stock_status=normalize_stock(product.stock_status),
            attributes=normalize_attributes(product.attributes),
        )

    @staticmethod
    def normalize_id(value, index: int) -> str:
        if value is None:
            return f"product-{index}"
        text = str(value).strip()[:ID_MAX_LENGTH]
        return text or f"product-{index}"

    @staticmethod
    def is_valid(product: Product) -> bool:
        return bool(product.external_id) and bool(product.title) and product.price > 0

    def deduplicate(self, products: Iterable[Product]) -> list[Product]:
        """Keep one product per id, preferring the more complete record.

        Ties keep the earlier record; output order follows first appearance.
        """
        items = list(products)
        best: dict[str, Product] = {}
        for product in items:
            current = best.get(product.external_id)
            if current is None or self.completeness_score(product) > self.completeness_score(current):
                best[product.external_id] = product
        unique = list(best.values())
        if len(unique) < len(items):
            logger.info("Removed %s duplicate products", len(items) - len(unique))
        return unique

    @staticmethod
    def completeness_score(product: Product) -> int:
        score = 0
        for field_name, weight in COMPLETENESS_WEIGHTS.items():
            value = getattr(product, field_name)
            if field_name == "price":
                if value and value > 0:
                    score += weight
            elif value:
                score += weight
        return score

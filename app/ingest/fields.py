"""Field-level cleaning shared by the parsers and the normalizer."""

from __future__ import annotations

import html
import json
import re
from typing import Any

from app.ingest.models import StockStatus

DEFAULT_CURRENCY = "TRY"

CURRENCY_ALIASES = {
    "TL": "TRY",
    "YTL": "TRY",
    "TURK LIRASI": "TRY",
    "TURKISH LIRA": "TRY",
    "EURO": "EUR",
    "DOLLAR": "USD",
    "DOLAR": "USD",
}
CURRENCY_SYMBOLS = {"₺": "TRY", "$": "USD", "€": "EUR", "£": "GBP"}

NUMBER_RE = re.compile(r"-?\d[\d.,]*")
CURRENCY_CODE_RE = re.compile(r"\b[A-Z]{3}\b")
ALIAS_RE = re.compile(r"\b(" + "|".join(re.escape(a) for a in CURRENCY_ALIASES) + r")\b", re.IGNORECASE)
TAG_RE = re.compile(r"<[^>]*>")
SPACE_RE = re.compile(r"\s+")
ATTRIBUTE_KEY_RE = re.compile(r"[^a-z0-9_]")

OUT_OF_STOCK_MARKERS = ("out", "yok")
OUT_OF_STOCK_VALUES = {"0", "false"}
PREORDER_MARKERS = ("preorder", "backorder")


def parse_price(value: Any) -> tuple[float | None, str | None]:
    """Split a feed price such as ``"1.899,90 TL"`` into amount and currency."""
    if value is None or isinstance(value, bool):
        return None, None
    if isinstance(value, (int, float)):
        return float(value), None
    text = str(value).strip()
    if not text:
        return None, None
    match = NUMBER_RE.search(text)
    amount = _to_float(match.group(0)) if match else None
    return amount, _find_currency(text)


def _to_float(token: str) -> float | None:
    token = token.rstrip(".,")
    negative = token.startswith("-")
    digits = token.lstrip("-")
    if "." in digits and "," in digits:
        decimal = "." if digits.rfind(".") > digits.rfind(",") else ","
        thousands = "," if decimal == "." else "."
        digits = digits.replace(thousands, "").replace(decimal, ".")
    else:
        separator = "." if "." in digits else ","
        if digits.count(separator) > 1:
            digits = digits.replace(separator, "")
        else:
            digits = digits.replace(",", ".")
    try:
        number = float(digits)
    except ValueError:
        return None
    return -number if negative else number


def _find_currency(text: str) -> str | None:
    alias = ALIAS_RE.search(text)
    if alias:
        return CURRENCY_ALIASES[alias.group(1).upper()]
    code = CURRENCY_CODE_RE.search(text)
    if code:
        return code.group(0)
    for symbol, currency in CURRENCY_SYMBOLS.items():
        if symbol in text:
            return currency
    return None


def parse_availability(value: Any) -> StockStatus:
    if value is None or value == "":
        return StockStatus.IN_STOCK
    lower = str(value).strip().lower()
    if lower in OUT_OF_STOCK_VALUES or any(marker in lower for marker in OUT_OF_STOCK_MARKERS):
        return StockStatus.OUT_OF_STOCK
    if any(marker in lower for marker in PREORDER_MARKERS):
        return StockStatus.PREORDER
    return StockStatus.IN_STOCK


def clean_text(value: Any) -> str:
    """Drop HTML tags and entities and collapse whitespace."""
    if value is None:
        return ""
    text = html.unescape(str(value))
    text = TAG_RE.sub(" ", text)
    return SPACE_RE.sub(" ", text).strip()


def normalize_text(value: Any, max_length: int = 255) -> str:
    if value is None:
        return ""
    return SPACE_RE.sub(" ", str(value)).strip()[:max_length]


def normalize_price(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        amount, _ = parse_price(value)
    else:
        try:
            amount = float(value)
        except (TypeError, ValueError):
            return None
    if amount is None or amount != amount or amount < 0:
        return None
    return round(amount, 2)


def normalize_currency(value: Any) -> str:
    if value is None:
        return DEFAULT_CURRENCY
    upper = SPACE_RE.sub(" ", str(value)).strip().upper()
    if not upper:
        return DEFAULT_CURRENCY
    return CURRENCY_ALIASES.get(upper) or CURRENCY_SYMBOLS.get(upper) or upper[:3]


def normalize_url(value: Any) -> str:
    if value is None:
        return ""
    url = SPACE_RE.sub("", str(value))
    if not url:
        return ""
    if url.startswith("//"):
        return "https:" + url
    if url.startswith("/") or url.lower().startswith(("http://", "https://")):
        return url
    return "https://" + url


def normalize_stock(value: Any) -> StockStatus:
    if isinstance(value, StockStatus):
        return value
    return parse_availability(value)


def normalize_attributes(attributes: Any, *, key_length: int = 50, value_length: int = 500) -> dict[str, str]:
    if not isinstance(attributes, dict):
        return {}
    normalized: dict[str, str] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        clean_key = ATTRIBUTE_KEY_RE.sub("_", str(key).lower())[:key_length]
        if not clean_key:
            continue
        if isinstance(value, (dict, list)):
            text = json.dumps(value, ensure_ascii=False, sort_keys=True)
        else:
            text = str(value)
        normalized[clean_key] = text[:value_length]
    return normalized

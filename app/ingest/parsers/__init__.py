"""Parser selection by declared format or content sniffing."""

from __future__ import annotations

import logging

from app.ingest.models import FeedFormat
from app.ingest.parsers.base import FeedParser
from app.ingest.parsers.generic import GenericParser
from app.ingest.parsers.google import GoogleMerchantParser

logger = logging.getLogger(__name__)

GOOGLE_MARKERS = ("g:id", "g:title", 'xmlns:g="http://base.google.com')
FACEBOOK_MARKERS = ("xmlns:fb", "facebook.com")

__all__ = ["FeedParser", "GenericParser", "GoogleMerchantParser", "create_parser", "detect_parser", "select_parser"]


def create_parser(format: FeedFormat | str | None) -> FeedParser:
    value = format.value if isinstance(format, FeedFormat) else (format or "").lower()
    if value == FeedFormat.GOOGLE.value:
        return GoogleMerchantParser()
    if value == FeedFormat.FACEBOOK.value:
        return GenericParser(FeedFormat.FACEBOOK.value)
    return GenericParser(FeedFormat.CUSTOM.value)


def detect_format(content: bytes | str) -> FeedFormat:
    text = content.decode("utf-8", errors="ignore") if isinstance(content, bytes) else content
    text = text.lower()
    if any(marker in text for marker in GOOGLE_MARKERS):
        return FeedFormat.GOOGLE
    if any(marker in text for marker in FACEBOOK_MARKERS):
        return FeedFormat.FACEBOOK
    return FeedFormat.CUSTOM


def detect_parser(content: bytes | str) -> FeedParser:
    detected = detect_format(content)
    logger.info("Detected %s feed format", detected.value)
    return create_parser(detected)


def select_parser(format: FeedFormat | str | None, content: bytes | str, auto_detect: bool = True) -> FeedParser:
    if format:
        return create_parser(format)
    if auto_detect:
        return detect_parser(content)
    return create_parser(FeedFormat.CUSTOM)

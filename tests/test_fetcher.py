import httpx
import pytest
import respx

from app.config import SyncSettings
from app.ingest.errors import ConnectionRefused, HostNotFound, HttpStatus, InvalidUrl, NotXml, Timeout
from app.ingest.fetcher import FeedFetcher, classify_error, is_valid_url

FEED_URL = "https://shop.example.com/feed.xml"


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_is_valid_url():
    assert is_valid_url("https://shop.example.com/feed.xml")
    assert is_valid_url("http://shop.example.com")
    assert not is_valid_url("ftp://shop.example.com/feed.xml")
    assert not is_valid_url("not a url")
    assert not is_valid_url(None)


def test_classify_connect_errors():
    assert isinstance(classify_error(httpx.ConnectError("[Errno 111] Connection refused")), ConnectionRefused)
    assert isinstance(classify_error(httpx.ConnectError("[Errno -2] Name or service not known")), HostNotFound)
    assert isinstance(classify_error(httpx.ReadTimeout("timed out")), Timeout)


@pytest.mark.asyncio
async def test_fetch_retries_with_linear_backoff():
    sleep = SleepRecorder()
    settings = SyncSettings(retry_count=3, retry_delay=0.5)
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(FEED_URL).mock(
            side_effect=[
                httpx.ConnectError("Connection refused"),
                httpx.Response(503),
                httpx.Response(200, content=b"<?xml version='1.0'?><rss/>"),
            ]
        )
        async with httpx.AsyncClient() as session:
            fetcher = FeedFetcher(settings, session=session, sleep=sleep)
            content = await fetcher.fetch(FEED_URL)
    assert content.endswith(b"<rss/>")
    assert route.call_count == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_fetch_sends_feed_headers():
    settings = SyncSettings(user_agent="FeedSyncTest/2.0")
    async with respx.mock() as router:
        route = router.get(FEED_URL).mock(return_value=httpx.Response(200, content=b"<products/>"))
        async with httpx.AsyncClient() as session:
            await FeedFetcher(settings, session=session).fetch(FEED_URL)
    request = route.calls.last.request
    assert request.headers["User-Agent"] == "FeedSyncTest/2.0"
    assert request.headers["Accept"] == "application/xml, text/xml, */*"


@pytest.mark.asyncio
async def test_fetch_rejects_non_xml_without_retry():
    sleep = SleepRecorder()
    async with respx.mock() as router:
        route = router.get(FEED_URL).mock(return_value=httpx.Response(200, text="hello"))
        async with httpx.AsyncClient() as session:
            fetcher = FeedFetcher(SyncSettings(), session=session, sleep=sleep)
            with pytest.raises(NotXml):
                await fetcher.fetch(FEED_URL)
    assert route.call_count == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_fetch_rejects_empty_body():
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(200, content=b"  \n"))
        async with httpx.AsyncClient() as session:
            with pytest.raises(NotXml, match="Empty response"):
                await FeedFetcher(SyncSettings(), session=session).fetch(FEED_URL)


@pytest.mark.asyncio
async def test_fetch_accepts_bom_prefixed_xml():
    body = b"\xef\xbb\xbf  <?xml version='1.0'?><products/>"
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(200, content=body))
        async with httpx.AsyncClient() as session:
            assert await FeedFetcher(SyncSettings(), session=session).fetch(FEED_URL) == body


@pytest.mark.asyncio
async def test_fetch_raises_last_http_status_after_all_attempts():
    sleep = SleepRecorder()
    async with respx.mock() as router:
        route = router.get(FEED_URL).mock(return_value=httpx.Response(404))
        async with httpx.AsyncClient() as session:
            fetcher = FeedFetcher(SyncSettings(retry_count=3, retry_delay=2), session=session, sleep=sleep)
            with pytest.raises(HttpStatus) as excinfo:
                await fetcher.fetch(FEED_URL)
    assert excinfo.value.status_code == 404
    assert str(excinfo.value) == "HTTP 404: Not Found"
    assert route.call_count == 3
    assert sleep.delays == [2, 4]


@pytest.mark.asyncio
async def test_invalid_url_fails_before_any_request():
    async with respx.mock(assert_all_called=False) as router:
        route = router.get(FEED_URL)
        async with httpx.AsyncClient() as session:
            with pytest.raises(InvalidUrl):
                await FeedFetcher(SyncSettings(), session=session).fetch("ftp://shop.example.com/feed.xml")
    assert route.call_count == 0


@pytest.mark.asyncio
async def test_fetch_with_metadata_reports_failure():
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(200, text="plain text"))
        async with httpx.AsyncClient() as session:
            outcome = await FeedFetcher(SyncSettings(), session=session).fetch_with_metadata(FEED_URL)
    assert outcome["success"] is False
    assert "XML" in outcome["error"]
    assert outcome["metadata"]["url"] == FEED_URL

"""
HTTP Fetching

Thin async wrapper over httpx used by every price source. Non-2xx responses
and transport errors surface as FetchError; text is decoded by trying each
candidate encoding in order.
"""

import codecs
from typing import Optional, Sequence

import httpx
import structlog

from pricefeed.core.exceptions import FetchError

logger = structlog.get_logger(__name__)

DEFAULT_ENCODINGS = ("utf-8", "windows-1250")

_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


def decode_text(content: bytes, encodings: Sequence[str] = DEFAULT_ENCODINGS) -> str:
    """
    Decode bytes with the first encoding that yields clean text.

    A byte-order mark takes precedence. When no candidate decodes cleanly the
    content is decoded as UTF-8 with replacement characters.
    """
    for bom, encoding in _BOMS:
        if content.startswith(bom):
            return content.decode(encoding)

    for encoding in encodings:
        try:
            text = content.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
        if "\ufffd" not in text:
            return text

    return content.decode("utf-8", errors="replace")


class HttpFetcher:
    """
    Shared async HTTP client.

    Use via `async with HttpFetcher(...) as fetcher:` or call `close()`.
    A custom transport can be injected for tests.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        user_agent: str = "pricefeed/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpFetcher":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_bytes(self, url: str) -> bytes:
        """GET `url` and return the body, raising FetchError for non-2xx"""
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise FetchError(
                f"Request to {url} failed: {e}",
                context={"url": url, "status_code": None},
            ) from e

        if not response.is_success:
            raise FetchError(
                f"HTTP {response.status_code} from {url}",
                context={"url": url, "status_code": response.status_code},
            )

        logger.debug("Fetched", url=url, size=len(response.content))
        return response.content

    async def fetch_text(self, url: str, encodings: Sequence[str] = DEFAULT_ENCODINGS) -> str:
        return decode_text(await self.fetch_bytes(url), encodings)

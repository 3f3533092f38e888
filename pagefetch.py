"""
pagefetch - the content fetcher behind minisearch

Given a URL, returns the page title, its outbound links with their anchor
text, its inline image references with their alt text, and the plain-text
body. The indexer never sees raw HTML or sockets; anything that implements
ContentFetcher.fetch() can stand in for HttpFetcher.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Protocol
from urllib.parse import urljoin

import aiohttp
from bs4 import BeautifulSoup


USER_AGENT = "minisearch/0.1 (closed-set search indexer)"
FETCH_TIMEOUT = 10  # seconds, per page
CONCURRENT_FETCHES = 10


class FetchError(Exception):
    """A page could not be retrieved or parsed."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


@dataclass(frozen=True)
class Link:
    """An absolute link target and the text that labels it."""

    url: str
    text: str = ""


@dataclass
class PageContent:
    """What the indexer needs from one fetched page."""

    title: str = ""
    links: List[Link] = field(default_factory=list)   # <a href>, document order
    images: List[Link] = field(default_factory=list)  # <img src>, text is alt
    body_text: str = ""


class ContentFetcher(Protocol):
    async def fetch(self, url: str) -> PageContent:
        ...


def _clean_text(text: str) -> str:
    return " ".join(text.split())


def extract_page_content(html: str, base_url: str) -> PageContent:
    """
    Parse an HTML document into a PageContent.

    Relative hrefs and srcs are resolved against base_url. Link text and
    body text are whitespace-normalized; an empty title becomes "".
    """
    soup = BeautifulSoup(html, "html.parser")

    title = ""
    if soup.title:
        title = _clean_text(soup.title.get_text(" "))

    links = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href:
            continue
        links.append(Link(urljoin(base_url, href), _clean_text(a.get_text(" "))))

    images = []
    for img in soup.find_all("img", src=True):
        src = img["src"].strip()
        if not src:
            continue
        images.append(Link(urljoin(base_url, src), _clean_text(img.get("alt", ""))))

    body = soup.body if soup.body is not None else soup
    for s in body(["script", "style", "noscript"]):
        s.decompose()
    body_text = _clean_text(body.get_text(" "))

    return PageContent(title=title, links=links, images=images, body_text=body_text)


async def fetch_page(session: aiohttp.ClientSession, url: str, timeout: int = FETCH_TIMEOUT) -> str:
    """Fetch a page and return its HTML. Raises FetchError on any failure."""
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout),
                               allow_redirects=True,
                               headers={"User-Agent": USER_AGENT}) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise FetchError(url, f"HTTP {resp.status}")
            content_type = resp.headers.get("Content-Type", "")
            if "html" not in content_type and "xml" not in content_type:
                raise FetchError(url, f"unsupported content type {content_type or 'unknown'!r}")
            return await resp.text(errors="replace")
    except asyncio.TimeoutError:
        raise FetchError(url, f"timed out after {timeout}s") from None
    except aiohttp.ClientError as e:
        raise FetchError(url, str(e) or type(e).__name__) from e


class HttpFetcher:
    """
    ContentFetcher over HTTP. Use as an async context manager so the
    underlying aiohttp session is opened and closed on the running loop:

        async with HttpFetcher(concurrent=10) as fetcher:
            content = await fetcher.fetch("http://www.example.com")
    """

    def __init__(self, concurrent: int = CONCURRENT_FETCHES, timeout: int = FETCH_TIMEOUT):
        self.concurrent = concurrent
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpFetcher":
        connector = aiohttp.TCPConnector(limit=self.concurrent)
        self._session = aiohttp.ClientSession(connector=connector)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str) -> PageContent:
        if self._session is None:
            raise RuntimeError("HttpFetcher used outside 'async with'")
        html = await fetch_page(self._session, url, timeout=self.timeout)
        return extract_page_content(html, url)

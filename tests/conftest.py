"""Shared fixtures for minisearch tests."""

from typing import Dict, Iterable, Tuple

import pytest

from pagefetch import FetchError, Link, PageContent


class FakeFetcher:
    """In-memory ContentFetcher. Unknown URLs fail like a 404."""

    def __init__(self, pages: Dict[str, PageContent]):
        self.pages = pages
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def fetch(self, url: str) -> PageContent:
        self.calls.append(url)
        if url not in self.pages:
            raise FetchError(url, "HTTP 404")
        return self.pages[url]


def make_content(
    title: str = "",
    links: Iterable[Tuple[str, str]] = (),
    images: Iterable[Tuple[str, str]] = (),
    body: str = "",
) -> PageContent:
    return PageContent(
        title=title,
        links=[Link(url, text) for url, text in links],
        images=[Link(url, alt) for url, alt in images],
        body_text=body,
    )


A = "http://www.a.com"
B = "http://www.b.com"
C = "http://www.c.com"


@pytest.fixture()
def three_page_site():
    """A links to B and C, B links to C, C links nowhere."""

    fetcher = FakeFetcher({
        A: make_content(
            title="Hello World",
            links=[("https://b.com/", "bravo page"), ("http://www.c.com#top", "charlie")],
            body="Hello world, this is the alpha page.",
        ),
        B: make_content(
            title="Bravo",
            links=[("http://m.c.com", "see charlie"), ("https://www.b.com/", "myself")],
            body="Bravo body text mentions charlie twice: charlie.",
        ),
        C: make_content(
            title="Charlie Home",
            links=[("http://www.elsewhere.org", "outside")],
            body="Charlie has no outbound links into the seed set.",
        ),
    })
    return [A, B, C], fetcher

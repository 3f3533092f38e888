"""Link-list parsing, canonicalization and graph construction."""

import asyncio

import pytest

from minisearch import LinkGraph, build_link_graph, canonical_link, parse_link_list
from pagefetch import FetchError

from .conftest import A, B, C, FakeFetcher, make_content


def test_parse_link_list_skips_malformed_lines():
    lines = [
        "Alpha,http://www.a.com/",
        "",
        "no comma here",
        "too,many,fields",
        "Empty url,",
        "  Bravo,http://www.b.com  ",
    ]
    assert parse_link_list(lines) == ["http://www.a.com", "http://www.b.com"]


def test_parse_link_list_page_count_matches_distinct_urls():
    lines = [
        "A,http://www.a.com",
        "A again,http://www.a.com/",
        "B,http://www.b.com",
    ]
    urls = parse_link_list(lines)
    assert urls == ["http://www.a.com", "http://www.b.com"]

    graph = LinkGraph.allocate(urls)
    assert len(graph) == 2
    assert len(graph.matrix) == 2
    assert all(len(row) == 2 for row in graph.matrix)
    assert [page.id for page in graph.pages] == [0, 1]


@pytest.mark.parametrize("raw, expected", [
    ("https://www.example.com", "http://www.example.com"),
    ("http://m.example.com/news", "http://www.example.com/news"),
    ("http://example.com/", "http://www.example.com"),
    ("https://example.com/page#section", "http://www.example.com/page"),
    ("http://www.example.com/docs/", "http://www.example.com/docs"),
    # the slash is stripped before the fragment, so it survives here
    ("http://www.example.com/docs/#top", "http://www.example.com/docs/"),
    ("mailto:someone@example.com", "mailto:someone@example.com"),
])
def test_canonical_link(raw, expected):
    assert canonical_link(raw) == expected


def test_build_link_graph_three_pages(three_page_site):
    urls, fetcher = three_page_site
    graph = asyncio.run(build_link_graph(urls, fetcher))

    a, b, c = 0, 1, 2
    assert graph.edges() == [(a, b), (a, c), (b, c)]
    assert graph.matrix[b][a] == 1.0
    assert graph.matrix[c][a] == 1.0
    assert graph.matrix[c][b] == 1.0
    assert all(graph.matrix[i][i] == 0.0 for i in range(3))

    assert [sum(row[j] for row in graph.matrix) for j in range(3)] == [2.0, 1.0, 0.0]
    assert [page.title for page in graph.pages] == ["Hello World", "Bravo", "Charlie Home"]
    assert graph.pages[b].anchors == {a: "bravo page"}
    assert graph.pages[c].anchors == {a: "charlie", b: "see charlie"}
    assert graph.pages[a].anchors == {}


def test_first_anchor_wins_and_images_count_as_links():
    fetcher = FakeFetcher({
        A: make_content(
            title="A",
            links=[("http://www.b.com", "first"), ("http://www.b.com/", "second")],
            images=[("http://www.b.com", "logo"), ("http://www.c.com", "c logo")],
        ),
        B: make_content(title="B"),
        C: make_content(title="C"),
    })
    graph = asyncio.run(build_link_graph([A, B, C], fetcher))

    assert graph.pages[1].anchors == {0: "first"}
    assert graph.pages[2].anchors == {0: "c logo"}
    assert graph.matrix[2][0] == 1.0


def test_links_outside_seed_set_are_ignored():
    fetcher = FakeFetcher({
        A: make_content(title="A", links=[("http://www.other.com", "x"), ("http://www.a.com", "self")]),
    })
    graph = asyncio.run(build_link_graph([A], fetcher))

    assert graph.matrix == [[0.0]]
    assert graph.pages[0].anchors == {}


def test_fetch_failure_aborts_build():
    fetcher = FakeFetcher({A: make_content(title="A"), B: make_content(title="B")})

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(build_link_graph([A, B, C], fetcher))
    assert excinfo.value.url == C


class SlowFetcher(FakeFetcher):
    """Known pages take a moment to arrive; unknown ones fail right away."""

    def __init__(self, pages):
        super().__init__(pages)
        self.finished = []

    async def fetch(self, url):
        if url in self.pages:
            await asyncio.sleep(0.05)
        content = await super().fetch(url)
        self.finished.append(url)
        return content


def test_failed_batch_waits_for_its_other_fetches():
    fetcher = SlowFetcher({A: make_content(title="A"), B: make_content(title="B")})

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(build_link_graph([A, B, C], fetcher))
    assert excinfo.value.url == C
    assert sorted(fetcher.finished) == [A, B]


def test_every_page_is_fetched_once_with_small_batches(three_page_site):
    urls, fetcher = three_page_site
    asyncio.run(build_link_graph(urls, fetcher, concurrent=2))

    assert sorted(fetcher.calls) == sorted(urls)

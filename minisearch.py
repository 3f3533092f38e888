#!/usr/bin/env python3
"""
minisearch - a small closed-set search engine

Fetch a fixed list of seed pages, record which of them link to each other,
rank them by PageRank, index their titles and inbound anchor text, and
answer single-term queries with ranked, snippet-annotated results.

Ranks and anchors are persisted to a flat metadata.txt so a build can be
separated in time from query serving.

Usage:
    minisearch <links.txt> <output_dir>   # fetch, rank, write metadata.txt, then serve queries
    minisearch <metadata.txt>             # load metadata.txt, then serve queries

links.txt holds one "label,url" entry per line. At the query prompt, enter
a single term; ZZZ quits.
"""

import argparse
import asyncio
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pagefetch import (
    CONCURRENT_FETCHES,
    FETCH_TIMEOUT,
    ContentFetcher,
    FetchError,
    HttpFetcher,
    PageContent,
)


DAMPING = 0.85
MAX_RANK_ITERATIONS = 10000
SNIPPET_SIZE = 20

METADATA_FILENAME = "metadata.txt"
METADATA_SEPARATOR = "*" * 59
ANCHORS_HEADER = "Anchors are as under:"

QUIT_SENTINEL = "ZZZ"
NO_QUERY_MESSAGE = "No query entered. Enter some query."
NOT_FOUND_MESSAGE = "Term does not exist. Please modify your search query and try again."


# ── Page Records ──────────────────────────────────────────────────────

@dataclass
class Page:
    """One seed page. `id` is its slot in the page arena."""

    id: int
    url: str
    title: str = ""
    score: Optional[float] = None
    anchors: Dict[int, str] = field(default_factory=dict)  # source page id -> anchor text

    def add_anchor(self, source_id: int, text: str):
        """Record anchor text from source_id unless one is already recorded."""
        if source_id not in self.anchors:
            self.anchors[source_id] = text


# ── Link Graph ────────────────────────────────────────────────────────

def strip_trailing_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


def canonical_link(url: str) -> str:
    """
    Normalize a discovered link so it can be compared against seed URLs.

    https becomes http, a mobile "m." host becomes "www.", one trailing slash
    is dropped, "www." is inserted into bare http hosts, and the fragment is
    removed, in that order.
    """
    if url.startswith("https://"):
        url = "http://" + url[len("https://"):]
    if url.startswith("http://m."):
        url = "http://www." + url[len("http://m."):]
    url = strip_trailing_slash(url)
    if url.startswith("http://") and not url.startswith("http://www."):
        url = "http://www." + url[len("http://"):]
    return url.split("#", 1)[0]


def parse_link_list(lines: Iterable[str]) -> List[str]:
    """
    Read seed URLs from "label,url" lines, in order, without duplicates.

    Lines that don't split into exactly two fields (or have an empty url) are
    skipped. A trailing slash on the url is dropped.
    """
    urls: List[str] = []
    seen = set()
    for line in lines:
        fields = line.strip().split(",")
        if len(fields) != 2:
            continue
        url = strip_trailing_slash(fields[1].strip())
        if not url or url in seen:
            continue
        seen.add(url)
        urls.append(url)
    return urls


@dataclass
class LinkGraph:
    """
    Pages of a closed crawl and the links between them.

    matrix[target][source] is 1.0 when page `source` links to page `target`,
    so columns are outlinks and rows are inlinks. The diagonal stays zero.
    """

    pages: List[Page]
    matrix: List[List[float]]
    url_to_id: Dict[str, int]

    @classmethod
    def allocate(cls, urls: Sequence[str]) -> "LinkGraph":
        """Build an empty graph with one page per URL, ids in list order."""
        n = len(urls)
        pages = [Page(id=i, url=url) for i, url in enumerate(urls)]
        matrix = [[0.0] * n for _ in range(n)]
        return cls(pages=pages, matrix=matrix, url_to_id={url: i for i, url in enumerate(urls)})

    def __len__(self) -> int:
        return len(self.pages)

    def add_edge(self, source_id: int, target_id: int, anchor_text: str = ""):
        """Record a link source -> target and its anchor text (first one wins)."""
        if source_id == target_id:
            return
        self.matrix[target_id][source_id] = 1.0
        self.pages[target_id].add_anchor(source_id, anchor_text)

    def record_page(self, page_id: int, content: PageContent):
        """Apply one fetched page: set its title and add edges to the seed pages it links to."""
        page = self.pages[page_id]
        page.title = content.title

        # Links first, then images: anchor text from a link beats an image's alt.
        for link in list(content.links) + list(content.images):
            target_url = canonical_link(link.url)
            if target_url == page.url:
                continue
            target_id = self.url_to_id.get(target_url)
            if target_id is None:
                continue
            self.add_edge(page_id, target_id, link.text)

    def edges(self) -> List[Tuple[int, int]]:
        """All (source, target) pairs, ordered by source then target."""
        n = len(self.pages)
        return [(j, i) for j in range(n) for i in range(n) if self.matrix[i][j]]


async def fetch_all(fetcher: ContentFetcher, urls: Sequence[str]) -> List[PageContent]:
    """
    Fetch urls concurrently, results in url order.

    Every fetch finishes before the first failure is raised, so nothing is
    left running on the fetcher once this returns.
    """
    results = await asyncio.gather(*(fetcher.fetch(url) for url in urls), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


async def build_link_graph(urls: Sequence[str], fetcher: ContentFetcher,
                           concurrent: int = CONCURRENT_FETCHES) -> LinkGraph:
    """
    Fetch every seed page and build the link graph between them.

    Pages are fetched in batches of `concurrent`. Each result is stored in the
    slot for its page id, then results are applied to the graph in id order
    so anchor text and edges come out the same regardless of fetch timing.
    Any FetchError aborts the build.
    """
    graph = LinkGraph.allocate(urls)
    n = len(graph)
    concurrent = max(1, concurrent)
    contents: List[Optional[PageContent]] = [None] * n

    print(f"fetching {n} pages ({concurrent} at a time)", flush=True)
    for start in range(0, n, concurrent):
        batch = graph.pages[start:start + concurrent]
        results = await fetch_all(fetcher, [page.url for page in batch])
        for page, content in zip(batch, results):
            contents[page.id] = content

    for page, content in zip(graph.pages, contents):
        graph.record_page(page.id, content)
        print(f"  [{page.id + 1}/{n}] {page.title[:40] or page.url[:40]}", flush=True)
    print(f"{len(graph.edges())} links between {n} pages", flush=True)

    return graph


# ── Ranking ───────────────────────────────────────────────────────────

ConvergenceTest = Callable[[Sequence[float], Sequence[float]], bool]


def exact_match(new_scores: Sequence[float], old_scores: Sequence[float]) -> bool:
    """Converged when no score changed at all between iterations."""
    return all(a == b for a, b in zip(new_scores, old_scores))


def within_tolerance(epsilon: float) -> ConvergenceTest:
    """Converged when every score moved by at most epsilon."""
    def converged(new_scores: Sequence[float], old_scores: Sequence[float]) -> bool:
        return all(abs(a - b) <= epsilon for a, b in zip(new_scores, old_scores))
    return converged


def normalize_columns(matrix: Sequence[Sequence[float]]) -> List[List[float]]:
    """
    Turn an adjacency matrix into a transition matrix.

    A column with outlinks is divided by its out-degree. A dangling column
    (no outlinks) gets 1/N everywhere except its own diagonal entry, which
    stays 0, so that column sums to (N-1)/N rather than 1.
    """
    n = len(matrix)
    degrees = [sum(matrix[i][j] for i in range(n)) for j in range(n)]
    normalized = [[0.0] * n for _ in range(n)]
    for j in range(n):
        for i in range(n):
            if degrees[j] > 0:
                normalized[i][j] = matrix[i][j] / degrees[j]
            elif i != j:
                normalized[i][j] = 1.0 / n
    return normalized


def rank_pages(matrix: Sequence[Sequence[float]], damping: float = DAMPING,
               converged: ConvergenceTest = exact_match,
               max_iterations: int = MAX_RANK_ITERATIONS) -> List[float]:
    """
    Compute PageRank by damped power iteration.

    Starts from all ones and repeats
        score = damping * M_norm * score + (1 - damping)
    until `converged(new, old)` holds. By default that means the vector
    stopped changing exactly. If max_iterations is reached first, the last
    vector is returned with a warning.
    """
    n = len(matrix)
    if n == 0:
        return []

    damped = [[damping * value for value in row] for row in normalize_columns(matrix)]
    teleport = 1 - damping
    scores = [1.0] * n

    for iteration in range(max_iterations):
        new_scores = [sum(row[j] * scores[j] for j in range(n)) + teleport for row in damped]
        if converged(new_scores, scores):
            print(f"pagerank converged after {iteration + 1} iterations", flush=True)
            return new_scores
        scores = new_scores

    print(f"warning: pagerank did not converge in {max_iterations} iterations, using last scores",
          flush=True)
    return scores


def assign_scores(pages: Sequence[Page], scores: Sequence[float]):
    if len(pages) != len(scores):
        raise ValueError(f"{len(scores)} scores for {len(pages)} pages")
    for page, score in zip(pages, scores):
        page.score = score


# ── Metadata File ─────────────────────────────────────────────────────

class MetadataError(Exception):
    """The metadata file doesn't follow the expected block layout."""

    def __init__(self, lineno: int, message: str):
        super().__init__(f"line {lineno}: {message}")
        self.lineno = lineno


def _single_line(text: str) -> str:
    return re.sub(r"[\r\n]+", " ", text)


def format_metadata(pages: Iterable[Page]) -> List[str]:
    """Render pages as metadata lines (without newlines), in page order.

    Line breaks inside titles and anchor texts become single spaces so every
    field stays on its own line.
    """
    lines = []
    for page in pages:
        if page.score is None:
            raise ValueError(f"page {page.id} ({page.url}) has no score")
        lines.append(f"{page.id}:{_single_line(page.title)}")
        lines.append(f"PageRank:{page.score!r}")
        lines.append(f"Link:{page.url}")
        lines.append(ANCHORS_HEADER)
        for source_id, text in page.anchors.items():
            lines.append(f"{source_id}:{_single_line(text)}")
        lines.append(METADATA_SEPARATOR)
    return lines


def write_metadata(pages: Iterable[Page], path: Path):
    lines = format_metadata(pages)
    with open(path, "w", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")
    print(f"saved metadata to {path} ({len(lines)} lines)")


def _labelled_value(lineno: int, line: str, label: str) -> str:
    key, sep, value = line.partition(":")
    if not sep or key != label:
        raise MetadataError(lineno, f"expected '{label}:', got {line!r}")
    return value


def _parse_block(block: List[Tuple[int, str]], expected_id: int) -> Tuple[Page, List[Tuple[int, int]]]:
    first_lineno = block[0][0]
    if len(block) < 4:
        raise MetadataError(first_lineno, f"page block has {len(block)} lines, expected at least 4")

    lineno, line = block[0]
    page_id, sep, title = line.partition(":")
    if not sep or page_id.strip() != str(expected_id):
        raise MetadataError(lineno, f"expected page id {expected_id}, got {line!r}")

    lineno, line = block[1]
    try:
        score = float(_labelled_value(lineno, line, "PageRank"))
    except ValueError:
        raise MetadataError(lineno, f"bad PageRank value in {line!r}") from None

    lineno, line = block[2]
    url = _labelled_value(lineno, line, "Link")

    lineno, line = block[3]
    if line != ANCHORS_HEADER:
        raise MetadataError(lineno, f"expected {ANCHORS_HEADER!r}, got {line!r}")

    page = Page(id=expected_id, url=url, title=title, score=score)
    anchor_refs = []
    for lineno, line in block[4:]:
        source, _, text = line.partition(":")
        try:
            source_id = int(source)
        except ValueError:
            raise MetadataError(lineno, f"bad anchor source id in {line!r}") from None
        if source_id == expected_id:
            raise MetadataError(lineno, f"page {expected_id} has an anchor from itself")
        page.add_anchor(source_id, text)
        anchor_refs.append((lineno, source_id))
    return page, anchor_refs


def parse_metadata(lines: Iterable[str]) -> List[Page]:
    """
    Rebuild pages from metadata lines.

    Blocks are separated by a line of asterisks; blank lines are ignored.
    Titles, links and anchor texts may contain ':' since only the first one
    is a delimiter. Raises MetadataError on the first malformed line.
    """
    pages: List[Page] = []
    anchor_refs: List[Tuple[int, int]] = []
    block: List[Tuple[int, str]] = []

    def close_block():
        if block:
            page, refs = _parse_block(block, len(pages))
            pages.append(page)
            anchor_refs.extend(refs)
            block.clear()

    for lineno, line in enumerate(lines, 1):
        line = line.rstrip("\r\n")
        if not line.strip():
            continue
        if line.startswith("*"):
            close_block()
        else:
            block.append((lineno, line))
    close_block()

    for lineno, source_id in anchor_refs:
        if not 0 <= source_id < len(pages):
            raise MetadataError(lineno, f"anchor source id {source_id} is not a known page")
    return pages


def read_metadata(path: Path) -> List[Page]:
    with open(path, encoding="utf-8") as f:
        pages = parse_metadata(f)
    print(f"loaded {len(pages)} pages from {path}")
    return pages


# ── Inverted Index ────────────────────────────────────────────────────

class InvertedIndex:
    """
    Lowercased term -> page ids, in insertion order without duplicates.

    Built once from titles and inbound anchor text; treat as read-only after.
    """

    def __init__(self):
        self._postings: Dict[str, List[int]] = {}

    @classmethod
    def build(cls, pages: Iterable[Page]) -> "InvertedIndex":
        """
        Index every page's title tokens, then the tokens of each anchor
        pointing at it. Anchor terms belong to the page the anchor points at.
        """
        index = cls()
        for page in pages:
            index.add_text(page.title, page.id)
            for text in page.anchors.values():
                index.add_text(text, page.id)
        return index

    def add(self, term: str, page_id: int):
        postings = self._postings.setdefault(term, [])
        if page_id not in postings:
            postings.append(page_id)

    def add_text(self, text: str, page_id: int):
        for token in text.split():
            self.add(token.lower(), page_id)

    def lookup(self, term: str) -> Optional[Tuple[int, ...]]:
        postings = self._postings.get(term)
        return tuple(postings) if postings is not None else None

    def __contains__(self, term: str) -> bool:
        return term in self._postings

    def __len__(self) -> int:
        return len(self._postings)


# ── Queries ───────────────────────────────────────────────────────────

QUERY_OK = "ok"
QUERY_EMPTY = "no query"
QUERY_NOT_FOUND = "not found"


@dataclass(frozen=True)
class SearchHit:
    rank: int
    page: Page
    snippet: str


@dataclass(frozen=True)
class QueryResult:
    status: str
    term: str = ""
    hits: List[SearchHit] = field(default_factory=list)


def first_term(raw_query: str) -> Optional[str]:
    """The first whitespace-delimited token, lowercased. Remaining tokens are discarded."""
    tokens = raw_query.split()
    if not tokens:
        return None
    return tokens[0].lower()


def rank_matches(page_ids: Iterable[int], pages: Sequence[Page]) -> List[Page]:
    """Pages by descending score; equal scores keep their order in page_ids."""
    return sorted((pages[pid] for pid in page_ids), key=lambda page: page.score, reverse=True)


def make_snippet(body: str, term: str, size: int = SNIPPET_SIZE) -> str:
    """
    Excerpt up to `size` words of body text around occurrences of term.

    If the term doesn't occur (case-insensitively), the first `size` words are
    used. Otherwise the body is split on the term and each segment
    contributes its last size/2 words when it is longer than that, or all
    of its words, with the term placed between consecutive segments.
    """
    if term.lower() not in body.lower():
        return " ".join(body.split()[:size])

    half = size // 2
    segments = re.split(re.escape(term), body, flags=re.IGNORECASE)
    words: List[str] = []
    for i, segment in enumerate(segments):
        tokens = segment.split()
        if len(tokens) > half:
            tokens = tokens[-half:]
        words.extend(tokens[:size - len(words)])
        if len(words) >= size:
            break
        if i < len(segments) - 1:
            words.append(term)
    return " ".join(words[:size])


async def resolve_query(raw_query: str, index: InvertedIndex, pages: Sequence[Page],
                        fetcher: ContentFetcher, snippet_size: int = SNIPPET_SIZE) -> QueryResult:
    """
    Answer a query with ranked pages and snippets.

    Only the first token is searched. Body text for snippets is re-fetched
    for every matching page; a FetchError propagates to the caller.
    """
    term = first_term(raw_query)
    if term is None:
        return QueryResult(status=QUERY_EMPTY)

    page_ids = index.lookup(term)
    if page_ids is None:
        return QueryResult(status=QUERY_NOT_FOUND, term=term)

    ranked = rank_matches(page_ids, pages)
    contents = await fetch_all(fetcher, [page.url for page in ranked])
    hits = [
        SearchHit(rank=i + 1, page=page, snippet=make_snippet(content.body_text, term, snippet_size))
        for i, (page, content) in enumerate(zip(ranked, contents))
    ]
    return QueryResult(status=QUERY_OK, term=term, hits=hits)


def format_result(result: QueryResult) -> str:
    if result.status == QUERY_EMPTY:
        return NO_QUERY_MESSAGE
    if result.status == QUERY_NOT_FOUND:
        return NOT_FOUND_MESSAGE
    blocks = []
    for hit in result.hits:
        page = hit.page
        blocks.append(f"{hit.rank}. {page.title}\n{page.url}\nPageRank: {page.score}\n\n{hit.snippet}\n")
    return "\n".join(blocks)


# ── CLI ───────────────────────────────────────────────────────────────

FetcherFactory = Callable[[], HttpFetcher]


async def _build(urls: Sequence[str], fetcher_factory: FetcherFactory, concurrent: int) -> LinkGraph:
    async with fetcher_factory() as fetcher:
        return await build_link_graph(urls, fetcher, concurrent=concurrent)


async def _answer(raw_query: str, index: InvertedIndex, pages: Sequence[Page],
                  fetcher_factory: FetcherFactory, snippet_size: int) -> QueryResult:
    async with fetcher_factory() as fetcher:
        return await resolve_query(raw_query, index, pages, fetcher, snippet_size)


def repl(pages: Sequence[Page], index: InvertedIndex, fetcher_factory: FetcherFactory,
         read: Optional[Callable[[str], str]] = None, snippet_size: int = SNIPPET_SIZE):
    """Answer queries until ZZZ or end of input. Query errors are reported, not fatal."""
    read = read or input
    print("System is now ready to accept queries")
    while True:
        try:
            line = read("\n\nEnter your query: ")
        except EOFError:
            break
        if line == QUIT_SENTINEL:
            break
        if not line.strip():
            print(NO_QUERY_MESSAGE)
            continue
        try:
            result = asyncio.run(_answer(line, index, pages, fetcher_factory, snippet_size))
        except FetchError as e:
            print(f"could not fetch page text for snippets: {e}")
            continue
        print(format_result(result))
    print("\nThank you for trying out the system.")


def main(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(prog="minisearch",
                                     description="minisearch - closed-set search engine with PageRank")
    parser.add_argument("paths", nargs="*",
                        help="metadata.txt to serve queries from, or a links file and an output directory to build into")
    parser.add_argument("--concurrent", "-c", type=int, default=CONCURRENT_FETCHES,
                        help=f"Concurrent page fetches (default: {CONCURRENT_FETCHES})")
    parser.add_argument("--timeout", "-t", type=int, default=FETCH_TIMEOUT,
                        help=f"Per-page fetch timeout in seconds (default: {FETCH_TIMEOUT})")
    parser.add_argument("--tolerance", type=float, default=None,
                        help="Stop PageRank once no score moves more than this (default: exact convergence)")
    parser.add_argument("--max-iterations", type=int, default=MAX_RANK_ITERATIONS,
                        help=f"PageRank iteration cap (default: {MAX_RANK_ITERATIONS})")
    args = parser.parse_args(argv)

    def fetcher_factory() -> HttpFetcher:
        return HttpFetcher(concurrent=args.concurrent, timeout=args.timeout)

    if len(args.paths) == 1:
        metadata_path = Path(args.paths[0])
        if not metadata_path.is_file():
            print("Invalid file. EXITING.")
            sys.exit(1)
        print("Constructing indices and PageRanks from the metadata file")
        try:
            pages = read_metadata(metadata_path)
        except (OSError, MetadataError) as e:
            print(f"could not load {metadata_path}: {e}")
            sys.exit(1)

    elif len(args.paths) == 2:
        links_path, output_dir = Path(args.paths[0]), Path(args.paths[1])
        if not (links_path.is_file() and output_dir.is_dir()):
            print("Invalid file and/or directory. EXITING.")
            sys.exit(1)
        print("Initializing....\nSetting up indices and computing PageRanks")
        try:
            urls = parse_link_list(links_path.read_text(encoding="utf-8").splitlines())
        except OSError as e:
            print(f"could not read {links_path}: {e}")
            sys.exit(1)

        try:
            graph = asyncio.run(_build(urls, fetcher_factory, args.concurrent))
        except FetchError as e:
            print(f"fetch failed, build aborted: {e}")
            sys.exit(1)

        converged = within_tolerance(args.tolerance) if args.tolerance is not None else exact_match
        assign_scores(graph.pages, rank_pages(graph.matrix, converged=converged,
                                              max_iterations=args.max_iterations))
        pages = graph.pages
        try:
            write_metadata(pages, output_dir / METADATA_FILENAME)
        except OSError as e:
            print(f"could not write metadata: {e}")
            sys.exit(1)

    else:
        print("Incorrect number of parameters entered. EXITING.")
        parser.print_usage()
        sys.exit(1)

    index = InvertedIndex.build(pages)
    repl(pages, index, fetcher_factory)


if __name__ == "__main__":
    main()

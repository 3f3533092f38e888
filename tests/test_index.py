"""Inverted index over titles and inbound anchor text."""

from minisearch import InvertedIndex, Page


def _pages():
    return [
        Page(id=0, url="http://www.a.com", title="Hello World", score=0.4),
        Page(id=1, url="http://www.b.com", title="Bravo hello", score=0.5, anchors={0: "Bravo Page"}),
        Page(id=2, url="http://www.c.com", title="Charlie", score=0.7,
             anchors={0: "see Charlie", 1: "world tour"}),
    ]


def test_every_title_and_anchor_token_is_indexed():
    pages = _pages()
    index = InvertedIndex.build(pages)

    for page in pages:
        texts = [page.title] + list(page.anchors.values())
        for text in texts:
            for token in text.split():
                assert page.id in index.lookup(token.lower())


def test_anchor_terms_belong_to_the_target_page():
    index = InvertedIndex.build(_pages())

    # "tour" only appears in an anchor on B pointing at C
    assert index.lookup("tour") == (2,)
    assert index.lookup("page") == (1,)


def test_postings_keep_first_insertion_order_without_duplicates():
    index = InvertedIndex.build(_pages())

    assert index.lookup("hello") == (0, 1)
    assert index.lookup("world") == (0, 2)
    assert index.lookup("charlie") == (2,)
    assert index.lookup("bravo") == (1,)


def test_terms_are_lowercased_and_missing_terms_are_none():
    index = InvertedIndex.build(_pages())

    assert "Hello" not in index
    assert "hello" in index
    assert index.lookup("nomatch") is None


def test_add_is_insert_if_absent():
    index = InvertedIndex()
    index.add("term", 3)
    index.add("term", 1)
    index.add("term", 3)

    assert index.lookup("term") == (3, 1)
    assert len(index) == 1


def test_empty_title_adds_nothing():
    index = InvertedIndex.build([Page(id=0, url="http://www.a.com", title="", score=1.0)])
    assert len(index) == 0

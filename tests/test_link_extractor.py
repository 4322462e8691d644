from scraper.parsing.html_extractor import parse_document
from scraper.parsing.link_extractor import LinkExtractor
from scraper.parsing.strategies import (
    KeywordClassifier,
    NoClassifier,
    PathDepthPriority,
    TrackingParamCanonicalizer,
)

ORIGIN = "https://example.com"


def _page(*hrefs):
    anchors = "".join(f"<a href='{href}'>link</a>" for href in hrefs)
    return parse_document(f"<html><body>{anchors}</body></html>")


def test_extract_keeps_same_origin_links_once():
    extractor = LinkExtractor(ORIGIN)
    document = _page("/a", "/a", "https://elsewhere.com/external", "javascript:void(0)", "", "/b#frag")

    links = extractor.extract(document, "/")

    assert list(links) == ["/a", "/b"]
    assert links["/a"].referrer == "/"
    assert links["/a"].priority == 0


def test_extract_resolves_relative_to_the_page():
    extractor = LinkExtractor(ORIGIN)
    document = _page("sibling", "../up?q=1", "//example.com/scheme-relative", "https://EXAMPLE.com/upper")

    links = extractor.extract(document, "/docs/guide/index.html")

    assert list(links) == ["/docs/guide/sibling", "/docs/up?q=1", "/scheme-relative", "/upper"]
    assert all(link.referrer == "/docs/guide/index.html" for link in links.values())


def test_first_seen_priority_wins():
    extractor = LinkExtractor(ORIGIN, priority=PathDepthPriority())
    document = _page("/a/b/c", "/top", "/a/b/c#again")

    links = extractor.extract(document, "/")

    assert links["/a/b/c"].priority == 3
    assert links["/top"].priority == 1
    assert len(links) == 2


def test_custom_selector_and_canonicalizer():
    extractor = LinkExtractor(
        ORIGIN,
        selector="a.follow",
        canonicalizer=TrackingParamCanonicalizer(),
    )
    document = parse_document(
        "<a class='follow' href='/post?id=7&utm_source=mail'>x</a>"
        "<a href='/ignored'>y</a>"
        "<a class='follow' href='/post?utm_campaign=z&id=7'>z</a>"
    )

    links = extractor.extract(document, "/")

    assert list(links) == ["/post?id=7"]


def test_canonicalize_strips_origin_and_fragment():
    extractor = LinkExtractor(ORIGIN)

    assert extractor.canonicalize("https://example.com") == "/"
    assert extractor.canonicalize("https://example.com/x?y=1#top") == "/x?y=1"


def test_classifiers():
    document = parse_document("<html><head><title>Release Notes</title></head><body>changelog</body></html>")

    assert NoClassifier().classify("/", document) is None
    assert KeywordClassifier({"news": ["release"]}).classify("/", document) == "news"
    assert KeywordClassifier({"log": ["changelog"]}).classify("/", document) is None
    assert KeywordClassifier({"log": ["changelog"]}, match_text=True).classify("/", document) == "log"

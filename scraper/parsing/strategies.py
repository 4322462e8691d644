"""Pluggable pieces of link handling.

Each strategy is a small class with one method so the scheduler and the
link extractor can be configured with objects instead of closures:

* a ``Canonicalizer`` turns an absolute same-origin URL into the key a
  page is stored under;
* a ``PriorityStrategy`` decides where a newly discovered URL goes in the
  frontier (lower pops first);
* a ``PageClassifier`` may tag a parsed page.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional, Protocol
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from scraper.parsing.html_extractor import extract_text, extract_title
from scraper.utils.url_utils import clean_tracking_params, strip_origin


class Canonicalizer(Protocol):
    def canonicalize(self, url: str) -> str:
        ...


class PriorityStrategy(Protocol):
    def priority(self, url: str, referrer: Optional[str]) -> int:
        ...


class PageClassifier(Protocol):
    def classify(self, url: str, document: BeautifulSoup) -> Optional[str]:
        ...


# -------------------------------------------------------
# Canonicalizers
# -------------------------------------------------------


class PathCanonicalizer:
    """Path and query; scheme, host and fragment are dropped."""

    def canonicalize(self, url: str) -> str:
        return strip_origin(url)


class TrackingParamCanonicalizer(PathCanonicalizer):
    """Like PathCanonicalizer, minus utm_*, fbclid, gclid and sessionid."""

    def canonicalize(self, url: str) -> str:
        parts = urlsplit(url)
        path = parts.path or "/"
        query = clean_tracking_params(parts.query)
        return f"{path}?{query}" if query else path


# -------------------------------------------------------
# Priorities
# -------------------------------------------------------


class ConstantPriority:
    def __init__(self, value: int = 0):
        self.value = value

    def priority(self, url: str, referrer: Optional[str]) -> int:
        return self.value


class PathDepthPriority:
    """Shallow pages first: one point per path segment."""

    def __init__(self, base: int = 0):
        self.base = base

    def priority(self, url: str, referrer: Optional[str]) -> int:
        path = urlsplit(url).path
        return self.base + len([segment for segment in path.split("/") if segment])


# -------------------------------------------------------
# Classifiers
# -------------------------------------------------------


class NoClassifier:
    def classify(self, url: str, document: BeautifulSoup) -> Optional[str]:
        return None


class KeywordClassifier:
    """
    Tag a page with the first rule whose keywords appear in its title
    (or, with ``match_text``, anywhere in its visible text).
    """

    def __init__(self, rules: Mapping[str, Iterable[str]], match_text: bool = False):
        self.rules = {tag: [k.lower() for k in keywords] for tag, keywords in rules.items()}
        self.match_text = match_text

    def classify(self, url: str, document: BeautifulSoup) -> Optional[str]:
        haystack = extract_title(document) or ""
        if self.match_text:
            haystack = f"{haystack} {extract_text(document)}"
        haystack = haystack.lower()

        for tag, keywords in self.rules.items():
            if any(keyword in haystack for keyword in keywords):
                return tag
        return None

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from bs4 import BeautifulSoup
from loguru import logger

from scraper.parsing.strategies import (
    Canonicalizer,
    ConstantPriority,
    PathCanonicalizer,
    PriorityStrategy,
)
from scraper.utils.filters import is_followable_href
from scraper.utils.url_utils import absolute_url, is_same_origin, resolve_url


@dataclass
class DiscoveredLink:
    url: str
    priority: int
    referrer: str


class LinkExtractor:
    """
    Turns a parsed page into the frontier entries it contributes: selected,
    same-origin, canonical, unique and prioritized links.
    """

    def __init__(
        self,
        origin: str,
        selector: str = "a[href]",
        attribute: str = "href",
        canonicalizer: Optional[Canonicalizer] = None,
        priority: Optional[PriorityStrategy] = None,
    ):
        self.origin = origin
        self.selector = selector
        self.attribute = attribute
        self.canonicalizer = canonicalizer or PathCanonicalizer()
        self.priority = priority or ConstantPriority(0)

    def canonicalize(self, url: str) -> str:
        return self.canonicalizer.canonicalize(url)

    def extract(self, document: BeautifulSoup, page_url: str) -> Dict[str, DiscoveredLink]:
        """
        Links of ``document`` keyed by canonical URL, in order of first
        appearance. ``page_url`` is the canonical URL of the page itself and
        becomes the referrer of every link.
        """
        base_url = absolute_url(self.origin, page_url)
        links: Dict[str, DiscoveredLink] = {}
        skipped = 0

        for node in document.select(self.selector):
            href = node.get(self.attribute)
            if isinstance(href, list):
                href = " ".join(href)
            if not is_followable_href(href):
                skipped += 1
                continue

            resolved = resolve_url(base_url, href)
            if not is_same_origin(resolved, self.origin):
                skipped += 1
                continue

            canonical = self.canonicalize(resolved)
            if canonical in links:
                continue

            links[canonical] = DiscoveredLink(
                url=canonical,
                priority=self.priority.priority(canonical, page_url),
                referrer=page_url,
            )

        logger.debug(f"Extracted {len(links)} link(s) from {page_url} ({skipped} skipped)")
        return links

from __future__ import annotations

from bs4 import BeautifulSoup


def parse_document(html: str) -> BeautifulSoup:
    """Parse page text into a queryable document (CSS selectors via .select())."""
    return BeautifulSoup(html, "lxml")


def extract_title(document: BeautifulSoup) -> str | None:
    if document.title and document.title.string:
        return document.title.string.strip()
    return None


def extract_text(document: BeautifulSoup) -> str:
    """
    Visible text of the page, whitespace collapsed. Scripts and styles are
    removed from the document.
    """
    for tag in document(["script", "style", "noscript"]):
        tag.decompose()
    text = document.get_text(separator=" ", strip=True)
    return " ".join(text.split())

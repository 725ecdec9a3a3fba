"""Social-preview metadata extraction.

Single pass over the parsed document per field, first non-empty value wins:

  title        og:title -> twitter:title -> <title>
  description  og:description -> twitter:description -> description
  image        og:image -> twitter:image, joined against the page URL

Open Graph tags are matched on ``property``, the others on ``name``.
"""

from __future__ import annotations

from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from linkpreview.models.preview import ExtractedMetadata
from linkpreview.urls import TargetUrl, host_title


def normalize_text(value: str | None) -> str | None:
    """Collapse whitespace runs and trim. Returns None for empty results."""
    if value is None:
        return None
    collapsed = " ".join(value.split())
    return collapsed or None


def _first_non_empty(*values: str | None) -> str | None:
    for value in values:
        if value:
            return value
    return None


def _meta_content(soup: BeautifulSoup, attribute: str, expected: str) -> str | None:
    for element in soup.find_all("meta"):
        if not isinstance(element, Tag):
            continue
        value = element.get(attribute)
        if not isinstance(value, str) or value.lower() != expected:
            continue
        content = element.get("content")
        cleaned = normalize_text(content if isinstance(content, str) else None)
        if cleaned:
            return cleaned
    return None


def _document_title(soup: BeautifulSoup) -> str | None:
    title = soup.find("title")
    if title is None:
        return None
    return normalize_text(title.get_text())


def _resolve_image_url(base_url: str, value: str) -> str:
    # Anything with a scheme is already absolute and passes through untouched.
    if urlsplit(value).scheme:
        return value
    return urljoin(base_url, value)


def extract_metadata(document_html: str, base_url: str) -> ExtractedMetadata:
    """Extract title, description and image from an HTML document."""
    soup = BeautifulSoup(document_html, "html.parser")

    title = _first_non_empty(
        _meta_content(soup, "property", "og:title"),
        _meta_content(soup, "name", "twitter:title"),
        _document_title(soup),
    )
    description = _first_non_empty(
        _meta_content(soup, "property", "og:description"),
        _meta_content(soup, "name", "twitter:description"),
        _meta_content(soup, "name", "description"),
    )
    image = _first_non_empty(
        _meta_content(soup, "property", "og:image"),
        _meta_content(soup, "name", "twitter:image"),
    )

    return ExtractedMetadata(
        title=title,
        description=description,
        image=_resolve_image_url(base_url, image) if image else None,
    )


def minimal_metadata(target: TargetUrl) -> ExtractedMetadata:
    """Placeholder metadata for a page that could not be fetched."""
    return ExtractedMetadata(title=host_title(target))

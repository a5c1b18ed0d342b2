"""
Generic web page extraction.

Finds the primary content block of an arbitrary HTML page, strips
navigation and ad noise, and reads title, date and author from the
page's markup and structured data.
"""

import json
import re
from typing import Any, Iterator, Optional, Union

from bs4 import BeautifulSoup, Comment, Tag

from harvester.models.domain import (
    Content,
    ContentMetadata,
    Failure,
    SourceDescriptor,
    SourceKind,
)
from harvester.services.data_ingestion.base import BaseExtractor
from harvester.services.data_ingestion.normalizer import clean_inline, parse_date

NOISE_TAGS = {"script", "style", "noscript", "nav", "header", "footer", "aside"}
AD_PATTERN = re.compile(r"ad|advertisement|banner|sidebar|promo", re.IGNORECASE)


class WebPageExtractor(BaseExtractor):
    """Extracts readable content from generic HTML pages."""

    kind = SourceKind.HTML

    async def extract(self, descriptor: SourceDescriptor) -> Union[Content, Failure]:
        response = await self.fetcher.fetch(descriptor.locator)
        if isinstance(response, Failure):
            return response

        return self.parse_html(response.text, descriptor.locator)

    def parse_html(self, html: str, locator: str) -> Union[Content, Failure]:
        """
        Extract and validate content from an HTML document.

        Args:
            html: Raw page markup
            locator: URL the markup came from

        Returns:
            Content, or Failure when the page holds no usable text
        """
        soup = BeautifulSoup(html or "", "html.parser")

        # Read page-level fields before any noise is removed
        metadata = self.extract_metadata(soup)
        title = self.extract_title(soup)
        published_at = self.extract_publish_date(soup)
        author = self.extract_author(soup)

        main = self.find_main_content(soup)
        if main is None:
            return self.parse_failure(locator, "No content found in page")

        self.remove_noise(main)
        body = self.normalizer.html_to_text(main)

        outcome = self.normalizer.build_content(
            locator=locator,
            kind=self.kind,
            body=body,
            title=title,
            author=author,
            published_at=published_at,
            metadata=metadata,
        )
        if isinstance(outcome, Content):
            self.logger.info(
                "Scraped page",
                locator=locator,
                title=outcome.content.title,
                length=outcome.content.length,
            )
        return outcome

    def find_main_content(self, soup: BeautifulSoup) -> Optional[Tag]:
        """
        Locate the primary content element.

        Priority: <article>, <main>, the <div> with the most <p>
        descendants, then <body>.
        """
        for name in ("article", "main"):
            element = soup.find(name)
            if element is not None:
                return element

        best_div, max_paragraphs = None, 0
        for div in soup.find_all("div"):
            paragraph_count = len(div.find_all("p"))
            if paragraph_count > max_paragraphs:
                best_div, max_paragraphs = div, paragraph_count
        if best_div is not None:
            return best_div

        return soup.body or (soup if soup.contents else None)

    def remove_noise(self, root: Tag):
        """Strip scripts, navigation, comments and ad-like blocks below ``root``."""
        for comment in root.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()

        for tag in root.find_all(True):
            if tag.decomposed:
                continue
            if tag.name in NOISE_TAGS or self._looks_like_ad(tag):
                tag.decompose()

    def _looks_like_ad(self, tag: Tag) -> bool:
        classes = tag.get("class") or []
        if isinstance(classes, str):
            classes = [classes]
        marker = " ".join(classes) + " " + (tag.get("id") or "")
        return bool(AD_PATTERN.search(marker))

    def extract_metadata(self, soup: BeautifulSoup) -> ContentMetadata:
        """Open Graph and meta description tags."""
        return ContentMetadata(
            og_title=_meta_content(soup, property="og:title"),
            og_description=_meta_content(soup, property="og:description"),
            og_image=_meta_content(soup, property="og:image"),
            meta_description=_meta_content(soup, name="description"),
        )

    def extract_title(self, soup: BeautifulSoup) -> Optional[str]:
        """First <h1>, then og:title, then <title>."""
        h1 = soup.find("h1")
        if h1 is not None:
            text = clean_inline(h1.get_text(" "))
            if text:
                return text

        og_title = _meta_content(soup, property="og:title")
        if og_title:
            return og_title

        if soup.title is not None:
            text = clean_inline(soup.title.get_text())
            if text:
                return text

        return None

    def extract_publish_date(self, soup: BeautifulSoup):
        """article:published_time meta, then <time datetime>, then JSON-LD."""
        published = parse_date(_meta_content(soup, property="article:published_time"))
        if published:
            return published

        time_tag = soup.find("time", attrs={"datetime": True})
        if time_tag is not None:
            published = parse_date(time_tag.get("datetime"))
            if published:
                return published

        for node in _json_ld_nodes(soup):
            published = parse_date(node.get("datePublished"))
            if published:
                return published

        return None

    def extract_author(self, soup: BeautifulSoup) -> Optional[str]:
        """meta[name=author], then a[rel=author], then JSON-LD author."""
        meta_author = _meta_content(soup, name="author")
        if meta_author:
            return meta_author

        rel_author = soup.find("a", rel="author")
        if rel_author is not None:
            text = clean_inline(rel_author.get_text(" "))
            if text:
                return text

        for node in _json_ld_nodes(soup):
            name = _author_name(node.get("author"))
            if name:
                return name

        return None


def _meta_content(soup: BeautifulSoup, **attrs: str) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    value = clean_inline(tag.get("content"))
    return value or None


def _json_ld_nodes(soup: BeautifulSoup) -> Iterator[dict[str, Any]]:
    """Objects from every JSON-LD block, including @graph members."""
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            continue

        candidates = data if isinstance(data, list) else [data]
        for node in candidates:
            if not isinstance(node, dict):
                continue
            yield node
            graph = node.get("@graph")
            if isinstance(graph, list):
                yield from (item for item in graph if isinstance(item, dict))


def _author_name(value: Any) -> Optional[str]:
    """JSON-LD author as a string, an object with ``name``, or a list of those."""
    if isinstance(value, str):
        return clean_inline(value) or None
    if isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str):
            return clean_inline(name) or None
        return None
    if isinstance(value, list):
        for item in value:
            name = _author_name(item)
            if name:
                return name
    return None

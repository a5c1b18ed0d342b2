"""
RSS/Atom feed extraction.

Parses RSS 2.0 (and RSS 1.0/RDF) and Atom feeds with ElementTree and
folds the accepted items of one feed into a single content block.
"""

import html
import re
from html.entities import name2codepoint
from typing import Optional, Union
from xml.etree import ElementTree

from harvester.models.domain import (
    Content,
    ContentMetadata,
    Failure,
    SourceDescriptor,
    SourceKind,
)
from harvester.services.data_ingestion.base import BaseExtractor, FeedItem, ParsedFeed
from harvester.services.data_ingestion.fetcher import FEED_ACCEPT
from harvester.services.data_ingestion.normalizer import (
    MAX_CONTENT_LENGTH,
    clean_inline,
    parse_date,
)

# XML namespaces
ATOM_NS = "{http://www.w3.org/2005/Atom}"

XML_ENTITIES = {"amp", "lt", "gt", "quot", "apos"}
ENTITY_PATTERN = re.compile(r"&(?:(#[0-9]+|#[xX][0-9a-fA-F]+|[A-Za-z][A-Za-z0-9]*);)?")
FEED_MARKERS = ("<rss", "<feed", "<rdf:rdf", "<channel")


class FeedParseError(ValueError):
    """The document is not a usable RSS or Atom feed."""


def looks_like_feed(text: str) -> bool:
    """Cheap check on the leading part of a response body."""
    head = text.lstrip()[:2000].lower()
    return any(marker in head for marker in FEED_MARKERS)


def sanitize_entities(xml: str) -> str:
    """
    Make HTML-flavoured XML acceptable to ElementTree.

    Named HTML entities such as ``&nbsp;`` become numeric references, the
    five XML entities are kept, and bare ampersands are escaped.
    """
    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name is None:
            return "&amp;"
        if name.startswith("#") or name in XML_ENTITIES:
            return match.group(0)
        if name in name2codepoint:
            return f"&#{name2codepoint[name]};"
        return f"&amp;{name};"

    return ENTITY_PATTERN.sub(replace, xml)


def _local(tag) -> str:
    """Tag name without its namespace."""
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _children(element: ElementTree.Element, name: str) -> list[ElementTree.Element]:
    return [child for child in element if _local(child.tag) == name]


def _element_text(element: ElementTree.Element) -> str:
    return "".join(element.itertext()).strip()


def _child_text(element: ElementTree.Element, *names: str) -> str:
    """Text of the first non-empty child among ``names``, in priority order."""
    for name in names:
        for child in _children(element, name):
            text = _element_text(child)
            if text:
                return text
    return ""


class FeedExtractor(BaseExtractor):
    """
    RSS/Atom feed extractor.

    Feeds skip the fetcher's politeness delay since they are meant to be
    polled frequently.
    """

    kind = SourceKind.FEED

    async def extract(self, descriptor: SourceDescriptor) -> Union[Content, Failure]:
        response = await self.fetcher.fetch(
            descriptor.locator,
            pre_delay=False,
            headers={"Accept": FEED_ACCEPT},
        )
        if isinstance(response, Failure):
            return response

        return self.parse_content(response.text, descriptor.locator)

    def parse_content(self, xml_content: str, feed_url: str) -> Union[Content, Failure]:
        """
        Parse a feed document into one aggregated content outcome.

        Args:
            xml_content: Raw feed XML
            feed_url: Where the feed was fetched from

        Returns:
            Content built from the feed's items, or a Failure
        """
        if not looks_like_feed(xml_content or ""):
            return self.parse_failure(feed_url, f"Content is not a valid RSS/Atom feed: {feed_url}")

        try:
            feed = self.parse_feed(xml_content)
        except FeedParseError as e:
            return self.parse_failure(feed_url, f"{e}: {feed_url}")

        if not feed.items:
            return self.parse_failure(feed_url, f"No items found in RSS feed: {feed_url}")

        self.logger.info(
            "Parsed feed",
            locator=feed_url,
            format=feed.format,
            items=len(feed.items),
        )

        body = self._combine_items(feed.items)
        dates = [item.published_at for item in feed.items if item.published_at]

        return self.normalizer.build_content(
            locator=feed_url,
            kind=self.kind,
            body=body,
            title=feed.title or feed.items[0].title,
            published_at=max(dates) if dates else None,
            metadata=ContentMetadata(
                feed_title=feed.title,
                feed_url=feed_url,
                og_description=feed.description or None,
            ),
        )

    def parse_feed(self, xml_content: str) -> ParsedFeed:
        """
        Parse RSS or Atom XML into feed fields and accepted items.

        Raises:
            FeedParseError: when the XML is malformed or not a feed
        """
        try:
            root = ElementTree.fromstring(sanitize_entities(xml_content.strip()))
        except ElementTree.ParseError as e:
            raise FeedParseError(f"Malformed feed XML ({e})") from e

        root_name = _local(root.tag).lower()
        if root_name in ("rss", "rdf", "channel"):
            return self._parse_rss(root)
        if root_name == "feed" or root.tag.startswith(ATOM_NS):
            return self._parse_atom(root)
        raise FeedParseError(f"Unknown feed format <{_local(root.tag)}>")

    def _parse_rss(self, root: ElementTree.Element) -> ParsedFeed:
        """Parse RSS 2.0 or RSS 1.0 (RDF)."""
        channel = root if _local(root.tag) == "channel" else next(
            (el for el in root.iter() if _local(el.tag) == "channel"), None
        )
        feed = ParsedFeed(format="rss")
        if channel is not None:
            feed.title = clean_inline(_child_text(channel, "title")) or None
            feed.link = _child_text(channel, "link") or None
            feed.description = self._clean_html(_child_text(channel, "description")) or None

        for item in (el for el in root.iter() if _local(el.tag) == "item"):
            parsed = self._parse_rss_item(item)
            if parsed:
                feed.items.append(parsed)

        return feed

    def _parse_rss_item(self, item: ElementTree.Element) -> Optional[FeedItem]:
        """Parse a single RSS item. Items without a title or link are dropped."""
        title = clean_inline(self._decode(_child_text(item, "title")))
        if not title:
            return None

        link = _child_text(item, "link").strip()
        if not link:
            return None

        # content:encoded wins over description
        content = self._clean_html(_child_text(item, "encoded", "description"))

        author = _child_text(item, "author", "creator")

        return FeedItem(
            title=title,
            link=link,
            content=content,
            author=clean_inline(author) or None,
            published_at=parse_date(_child_text(item, "pubDate", "date")),
            categories=[_element_text(c) for c in _children(item, "category") if _element_text(c)],
        )

    def _parse_atom(self, root: ElementTree.Element) -> ParsedFeed:
        """Parse Atom feed."""
        feed = ParsedFeed(
            format="atom",
            title=clean_inline(self._decode(_child_text(root, "title"))) or None,
            link=self._atom_link(root),
            description=self._clean_html(_child_text(root, "subtitle")) or None,
        )

        for entry in _children(root, "entry"):
            parsed = self._parse_atom_entry(entry)
            if parsed:
                feed.items.append(parsed)

        return feed

    def _parse_atom_entry(self, entry: ElementTree.Element) -> Optional[FeedItem]:
        """Parse a single Atom entry. Entries without a title or link are dropped."""
        title = clean_inline(self._decode(_child_text(entry, "title")))
        if not title:
            return None

        link = self._atom_link(entry)
        if not link:
            return None

        # <content> wins over <summary>
        content = self._clean_html(_child_text(entry, "content", "summary"))

        authors = [
            _child_text(author, "name") for author in _children(entry, "author")
        ]
        authors = [a for a in authors if a]

        # <published> wins over <updated>
        published_at = parse_date(_child_text(entry, "published")) or parse_date(
            _child_text(entry, "updated")
        )

        categories = []
        for cat in _children(entry, "category"):
            term = cat.get("term") or cat.get("label")
            if term:
                categories.append(term)

        return FeedItem(
            title=title,
            link=link,
            content=content,
            author=", ".join(authors) or None,
            published_at=published_at,
            categories=categories,
        )

    def _atom_link(self, element: ElementTree.Element) -> Optional[str]:
        """
        Pick an entry or feed link.

        An ``href`` attribute wins over element text; among hrefs the
        alternate (or rel-less) link wins.
        """
        links = _children(element, "link")
        hrefs = [(link.get("rel", "alternate"), link.get("href")) for link in links]
        for rel, href in hrefs:
            if href and rel == "alternate":
                return href.strip()
        for _, href in hrefs:
            if href:
                return href.strip()
        for link in links:
            text = _element_text(link)
            if text:
                return text
        return None

    def _decode(self, text: str) -> str:
        return html.unescape(text) if text else ""

    def _clean_html(self, text: str) -> str:
        """Decode entities, then strip tags."""
        if not text:
            return ""
        return self.normalizer.html_to_text(self._decode(text))

    def _combine_items(self, items: list[FeedItem]) -> str:
        """Item blocks joined with paragraph breaks, capped at the content maximum."""
        blocks: list[str] = []
        total = 0

        for item in items:
            lines = [item.title]
            if item.published_at:
                lines.append(f"Published: {item.published_at.isoformat()}")
            if item.content:
                lines.append(item.content)
            block = "\n\n".join(lines)

            separator = 2 if blocks else 0
            if total + separator + len(block) > MAX_CONTENT_LENGTH:
                if not blocks:
                    blocks.append(block[:MAX_CONTENT_LENGTH])
                break

            blocks.append(block)
            total += separator + len(block)

        return "\n\n".join(blocks)

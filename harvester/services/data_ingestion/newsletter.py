"""
Newsletter email extraction.

Works on an email body that was already pulled from the mailbox, so
nothing here touches the network. Outbound links are kept so the
pipeline can follow the "read more" targets.
"""

import re
from typing import Optional, Union

from bs4 import BeautifulSoup, Tag

from harvester.models.domain import (
    Content,
    ContentMetadata,
    Failure,
    RawEmail,
    SourceDescriptor,
    SourceKind,
)
from harvester.services.data_ingestion.base import BaseExtractor

NOISE_TAGS = ["style", "script", "noscript"]
NOISE_PATTERN = re.compile(r"unsubscribe|footer|header|promo|banner", re.IGNORECASE)
EXCLUDED_LINK_PATTERN = re.compile(r"unsubscribe|preferences|view-in-browser|mailto:", re.IGNORECASE)
MAIN_CONTENT_SELECTOR = "article, .content, [class*=content], .main, [class*=main]"
TEXT_TAGS = ["p", "h1", "h2", "h3", "h4", "h5", "h6", "li", "blockquote"]

DEFAULT_MAX_FOLLOW_UP_LINKS = 3


def follow_up_links(content: Content, max_links: int = DEFAULT_MAX_FOLLOW_UP_LINKS) -> list[str]:
    """The first ``max_links`` outbound links collected from a newsletter."""
    if max_links <= 0:
        return []
    return list(content.content.metadata.email_links[:max_links])


class NewsletterExtractor(BaseExtractor):
    """
    Extracts article text and outbound links from newsletter HTML.

    Email templates wrap everything in layout tables, so noise removal
    targets tracking pixels, unsubscribe blocks and full-width
    header/footer tables before looking for the body.
    """

    kind = SourceKind.NEWSLETTER

    def __init__(self, normalizer, fetcher=None, logger=None):
        super().__init__(fetcher, normalizer, logger)

    async def extract(self, descriptor: SourceDescriptor) -> Union[Content, Failure]:
        if descriptor.email is None:
            return self.parse_failure(descriptor.locator, "Newsletter job has no email body")
        return self.parse_email(descriptor.email)

    def parse_email(self, email: RawEmail) -> Union[Content, Failure]:
        """
        Extract validated content from one email.

        Args:
            email: Pre-fetched message with its HTML body

        Returns:
            Content with ``metadata.email_links`` filled in, or a Failure
        """
        soup = BeautifulSoup(email.html_body or "", "html.parser")
        self.remove_noise(soup)

        main = self.find_main_content(soup)
        if main is None:
            return self.parse_failure(email.locator, "No content found in email body")

        body = self.extract_text(main)
        links = self.extract_links(main)

        outcome = self.normalizer.build_content(
            locator=email.locator,
            kind=self.kind,
            body=body,
            title=email.subject,
            author=email.sender,
            published_at=email.date,
            metadata=ContentMetadata(email_links=links),
        )
        if isinstance(outcome, Content):
            self.logger.info(
                "Parsed newsletter",
                locator=email.locator,
                sender=email.sender,
                length=outcome.content.length,
                links=len(links),
            )
        return outcome

    def remove_noise(self, soup: BeautifulSoup):
        """Strip scripts, tracking pixels, mailto links and unsubscribe/header/footer blocks."""
        for tag in soup(NOISE_TAGS):
            tag.decompose()

        for img in soup.find_all("img"):
            if img.get("width") == "1" or img.get("height") == "1":
                img.decompose()

        for link in soup.select('a[href^="mailto:"]'):
            link.decompose()

        for tag in soup.find_all(True):
            if tag.decomposed:
                continue
            if self._is_noise_block(tag):
                tag.decompose()

        for table in soup.find_all("table", attrs={"width": "100%"}):
            if table.decomposed:
                continue
            if table.select_one('a[href*="unsubscribe"]') is not None:
                table.decompose()

    def _is_noise_block(self, tag: Tag) -> bool:
        classes = tag.get("class") or []
        if isinstance(classes, str):
            classes = [classes]
        marker = " ".join(classes) + " " + (tag.get("id") or "")
        return bool(NOISE_PATTERN.search(marker))

    def find_main_content(self, soup: BeautifulSoup) -> Optional[Tag]:
        """
        Content-like selectors, then the <div> with the most <p>, then
        <body> without thin presentation tables.
        """
        main = soup.select_one(MAIN_CONTENT_SELECTOR)
        if main is not None:
            return main

        best_div, max_paragraphs = None, 0
        for div in soup.find_all("div"):
            paragraph_count = len(div.find_all("p"))
            if paragraph_count > max_paragraphs:
                best_div, max_paragraphs = div, paragraph_count
        if best_div is not None:
            return best_div

        body = soup.body or (soup if soup.contents else None)
        if body is None:
            return None

        for table in body.find_all("table", attrs={"role": "presentation"}):
            if table.decomposed:
                continue
            if len(table.find_all("p")) < 2:
                table.decompose()
        return body

    def extract_text(self, main: Tag) -> str:
        """Text blocks joined by blank lines; whole-element text when there are none."""
        blocks = []
        for element in main.find_all(TEXT_TAGS):
            text = element.get_text(" ", strip=True)
            if text:
                blocks.append(text)

        if blocks:
            return "\n\n".join(blocks)
        return self.normalizer.html_to_text(main)

    def extract_links(self, main: Tag) -> list[str]:
        """Outbound http(s) links in document order, minus list-management links."""
        links: list[str] = []
        for anchor in main.find_all("a", href=True):
            href = anchor["href"].strip()
            if not href.lower().startswith(("http://", "https://")):
                continue
            if EXCLUDED_LINK_PATTERN.search(href):
                continue
            if href not in links:
                links.append(href)
        return links

"""
Tests for newsletter email extraction.
"""

from datetime import datetime, timezone

import pytest
from bs4 import BeautifulSoup

from harvester.models.domain import (
    Content,
    Failure,
    FailureKind,
    RawEmail,
    SourceDescriptor,
    SourceKind,
)
from harvester.services.data_ingestion.newsletter import NewsletterExtractor, follow_up_links

DIGEST_HTML = """<html><body>
<div class="header">AI Weekly Digest masthead</div>
<div class="content">
  <h1>This week in applied AI</h1>
  <p>Several large retailers rolled out conversational shopping assistants to every customer this week.</p>
  <p class="promo-banner">Sponsored: upgrade to premium for half price</p>
  <p>Early numbers suggest shoppers ask detailed product questions before buying.
     <a href="https://news.example.com/retail-assistants">Read the full story</a>
     or <a href="https://news.example.com/retail-assistants">open it here</a>.</p>
  <p>Meanwhile open model releases keep narrowing the gap with proprietary systems.
     <a href="https://models.example.org/open-release">Release notes</a>
     <a href="mailto:editor@example.com">Write to the editor</a>
     <a href="https://news.example.com/preferences?u=42">Update preferences</a>
     <a href="/relative/path">Archive</a>
     <a href="https://research.example.net/benchmarks">Benchmarks</a>
     <a href="https://jobs.example.io/listings">Jobs board</a></p>
  <img src="https://track.example.com/open.gif" width="1" height="1">
</div>
<div class="footer">You received this because you signed up.</div>
</body></html>
"""

TABLE_LAYOUT_HTML = """<html><body>
<table width="100%"><tr><td>
  <p>Manage how often you hear from us.</p>
  <a href="https://lists.example.com/unsubscribe?id=7">Unsubscribe</a>
</td></tr></table>
<table role="presentation"><tr><td>
  <p>City councils across the region approved new funding for protected bike lanes.</p>
  <p>Construction on the first corridors is scheduled to begin before the end of summer.</p>
</td></tr></table>
<table role="presentation"><tr><td><p>Spacer row</p></td></tr></table>
</body></html>
"""

SENT_AT = datetime(2024, 4, 2, 7, 30, tzinfo=timezone.utc)


def make_email(html, subject="AI Weekly #42", message_id="<digest-42@aiweekly.example>"):
    return RawEmail(
        subject=subject,
        sender="AI Weekly",
        html_body=html,
        date=SENT_AT,
        message_id=message_id,
    )


class TestNewsletterExtractor:
    """Tests for newsletter parsing."""

    def test_parse_digest(self, normalizer):
        extractor = NewsletterExtractor(normalizer)
        outcome = extractor.parse_email(make_email(DIGEST_HTML))

        assert isinstance(outcome, Content)
        content = outcome.content
        assert content.kind == SourceKind.NEWSLETTER
        assert content.title == "AI Weekly #42"
        assert content.author == "AI Weekly"
        assert content.published_at == SENT_AT
        assert content.locator == "email:<digest-42@aiweekly.example>"

        assert content.body.startswith("This week in applied AI\n\nSeveral large retailers")
        assert "Sponsored" not in content.body
        assert "masthead" not in content.body
        assert "signed up" not in content.body
        assert "Write to the editor" not in content.body

    def test_links_filtered_and_deduplicated(self, normalizer):
        extractor = NewsletterExtractor(normalizer)
        outcome = extractor.parse_email(make_email(DIGEST_HTML))

        assert outcome.content.metadata.email_links == [
            "https://news.example.com/retail-assistants",
            "https://models.example.org/open-release",
            "https://research.example.net/benchmarks",
            "https://jobs.example.io/listings",
        ]

    def test_follow_up_links_capped(self, normalizer):
        outcome = NewsletterExtractor(normalizer).parse_email(make_email(DIGEST_HTML))

        assert follow_up_links(outcome) == [
            "https://news.example.com/retail-assistants",
            "https://models.example.org/open-release",
            "https://research.example.net/benchmarks",
        ]
        assert follow_up_links(outcome, max_links=1) == ["https://news.example.com/retail-assistants"]
        assert follow_up_links(outcome, max_links=0) == []

    def test_table_layout_fallback(self, normalizer):
        """Unsubscribe tables and thin presentation tables are dropped."""
        extractor = NewsletterExtractor(normalizer)
        outcome = extractor.parse_email(make_email(TABLE_LAYOUT_HTML))

        assert isinstance(outcome, Content)
        body = outcome.content.body
        assert "protected bike lanes" in body
        assert "Manage how often" not in body
        assert "Spacer row" not in body
        assert outcome.content.metadata.email_links == []

    def test_tracking_pixel_removed(self, normalizer):
        extractor = NewsletterExtractor(normalizer)
        soup = BeautifulSoup(
            '<div><img src="https://t.example/p.gif" width="1"><img src="hero.png" width="600"></div>',
            "html.parser",
        )
        extractor.remove_noise(soup)

        assert [img["src"] for img in soup.find_all("img")] == ["hero.png"]

    def test_locator_without_message_id(self):
        email = make_email(DIGEST_HTML, message_id=None)
        assert email.locator == "email:AI Weekly/AI Weekly #42"

    def test_empty_body(self, normalizer):
        outcome = NewsletterExtractor(normalizer).parse_email(make_email(""))

        assert isinstance(outcome, Failure)
        assert outcome.reason == "No content found in email body"

    def test_thin_newsletter_rejected(self, normalizer):
        outcome = NewsletterExtractor(normalizer).parse_email(
            make_email("<div><p>See you next week!</p></div>")
        )

        assert isinstance(outcome, Failure)
        assert outcome.kind == FailureKind.QUALITY_REJECTED

    @pytest.mark.asyncio
    async def test_extract_from_descriptor(self, normalizer):
        extractor = NewsletterExtractor(normalizer)
        descriptor = SourceDescriptor.from_email(make_email(DIGEST_HTML), source_id="digest")

        outcome = await extractor.extract(descriptor)

        assert isinstance(outcome, Content)
        assert descriptor.cache_key == "digest"

    @pytest.mark.asyncio
    async def test_extract_without_email(self, normalizer):
        extractor = NewsletterExtractor(normalizer)
        descriptor = SourceDescriptor(locator="email:missing", kind=SourceKind.NEWSLETTER)

        outcome = await extractor.extract(descriptor)

        assert isinstance(outcome, Failure)
        assert outcome.kind == FailureKind.PARSE_FAILURE
        assert outcome.reason == "Newsletter job has no email body"

"""
Tests for generic web page extraction.
"""

from datetime import datetime, timezone

import httpx
import pytest
from bs4 import BeautifulSoup

from harvester.models.domain import Content, Failure, FailureKind, SourceDescriptor
from harvester.services.data_ingestion.webpage import WebPageExtractor

SAMPLE_ARTICLE = """<!DOCTYPE html>
<html>
<head>
  <title>Fallback Title | Example Times</title>
  <meta property="og:title" content="Open Graph Title">
  <meta property="og:description" content="How a small town rebuilt its library">
  <meta property="og:image" content="https://example.com/library.jpg">
  <meta name="description" content="Library reopening story">
  <meta name="author" content="Jane Writer">
  <script type="application/ld+json">
    {"@context": "https://schema.org",
     "@graph": [{"@type": "WebPage"}, {"@type": "NewsArticle", "datePublished": "2024-03-01T08:00:00Z"}]}
  </script>
</head>
<body>
  <nav><a href="/">Home</a> Navigation links for the site</nav>
  <article>
    <h1>Town Library Reopens After Flood</h1>
    <p>The public library in Millbrook reopened its doors on Monday after two years of repairs.</p>
    <div class="sidebar-promo">Subscribe today and save fifty percent</div>
    <p>Volunteers catalogued more than twelve thousand donated books during the closure.</p>
    <!-- editor note: check spelling -->
    <aside>Related stories you might enjoy</aside>
    <p>The new building includes a children's reading room and a small community kitchen.</p>
  </article>
  <footer>Copyright Example Times</footer>
</body>
</html>
"""

DIV_LAYOUT_PAGE = """<html><body>
  <div id="menu"><p>Menu item</p></div>
  <div id="story">
    <p>Researchers measured a surprising rise in coastal water temperatures this spring.</p>
    <p>The readings were taken at twelve stations along the northern shoreline.</p>
    <p>Scientists expect the warming trend to affect local fisheries within months.</p>
  </div>
</body></html>
"""

JSON_LD_AUTHOR_PAGE = """<html><head>
  <script type="application/ld+json">
    [{"@type": "Article", "author": [{"@type": "Person", "name": "Sam Lee"}],
      "datePublished": "2024-02-10"}]
  </script>
</head><body><main>
  <p>Local bakeries are experimenting with ancient grains to meet growing customer demand.</p>
  <p>Several shops now mill their own flour on site every morning before opening.</p>
</main></body></html>
"""


class TestWebPageExtractor:
    """Tests for HTML parsing."""

    def test_parse_article(self, normalizer):
        """Title, author, date and metadata come from the page; noise is removed."""
        extractor = WebPageExtractor(None, normalizer)
        outcome = extractor.parse_html(SAMPLE_ARTICLE, "https://example.com/library")

        assert isinstance(outcome, Content)
        content = outcome.content
        assert content.title == "Town Library Reopens After Flood"
        assert content.author == "Jane Writer"
        assert content.published_at == datetime(2024, 3, 1, 8, tzinfo=timezone.utc)
        assert content.metadata.og_title == "Open Graph Title"
        assert content.metadata.og_description == "How a small town rebuilt its library"
        assert content.metadata.og_image == "https://example.com/library.jpg"
        assert content.metadata.meta_description == "Library reopening story"

        assert "reopened its doors" in content.body
        assert "children's reading room" in content.body
        assert "Subscribe today" not in content.body
        assert "Navigation links" not in content.body
        assert "Related stories" not in content.body
        assert "editor note" not in content.body
        assert "Copyright" not in content.body

    def test_paragraphs_are_separated(self, normalizer):
        extractor = WebPageExtractor(None, normalizer)
        outcome = extractor.parse_html(SAMPLE_ARTICLE, "https://example.com/library")

        assert "repairs.\n\nVolunteers" in outcome.content.body

    def test_div_with_most_paragraphs(self, normalizer):
        """Without <article>/<main> the densest <div> wins."""
        extractor = WebPageExtractor(None, normalizer)
        outcome = extractor.parse_html(DIV_LAYOUT_PAGE, "https://example.com/coast")

        assert isinstance(outcome, Content)
        assert "coastal water temperatures" in outcome.content.body
        assert "Menu item" not in outcome.content.body

    def test_json_ld_author_list(self, normalizer):
        extractor = WebPageExtractor(None, normalizer)
        outcome = extractor.parse_html(JSON_LD_AUTHOR_PAGE, "https://example.com/bread")

        assert isinstance(outcome, Content)
        assert outcome.content.author == "Sam Lee"
        assert outcome.content.published_at == datetime(2024, 2, 10, tzinfo=timezone.utc)
        assert outcome.content.title is None

    def test_title_falls_back_to_og_then_title_tag(self, normalizer):
        extractor = WebPageExtractor(None, normalizer)

        with_og = BeautifulSoup(
            '<head><meta property="og:title" content="OG"><title>Tag</title></head>',
            "html.parser",
        )
        title_only = BeautifulSoup("<head><title> Tag  Title </title></head>", "html.parser")

        assert extractor.extract_title(with_og) == "OG"
        assert extractor.extract_title(title_only) == "Tag Title"

    def test_thin_page_rejected(self, normalizer):
        extractor = WebPageExtractor(None, normalizer)
        outcome = extractor.parse_html("<html><body><p>Hi.</p></body></html>", "https://example.com/x")

        assert isinstance(outcome, Failure)
        assert outcome.kind == FailureKind.QUALITY_REJECTED

    def test_garbage_input_does_not_raise(self, normalizer):
        extractor = WebPageExtractor(None, normalizer)
        outcome = extractor.parse_html("<<<>>> \x00 </div></div>", "https://example.com/x")

        assert isinstance(outcome, Failure)

    @pytest.mark.asyncio
    async def test_extract_fetches_page(self, make_fetcher, normalizer, article_page):
        fetcher = make_fetcher(lambda request: httpx.Response(200, text=article_page("Fetched Story")))
        extractor = WebPageExtractor(fetcher, normalizer)

        outcome = await extractor.extract(SourceDescriptor.from_url("https://example.com/story"))

        assert isinstance(outcome, Content)
        assert outcome.content.title == "Fetched Story"

    @pytest.mark.asyncio
    async def test_extract_propagates_fetch_failure(self, make_fetcher, normalizer):
        fetcher = make_fetcher(lambda request: httpx.Response(503))
        extractor = WebPageExtractor(fetcher, normalizer)

        outcome = await extractor.extract(SourceDescriptor.from_url("https://example.com/story"))

        assert isinstance(outcome, Failure)
        assert outcome.status_code == 503

    @pytest.mark.asyncio
    async def test_extract_waits_before_fetching(self, make_fetcher, normalizer, article_page, recorded_sleeps):
        fetcher = make_fetcher(
            lambda request: httpx.Response(200, text=article_page("Paced Story")),
            delay_range=(2.0, 5.0),
        )

        await WebPageExtractor(fetcher, normalizer).extract(SourceDescriptor.from_url("https://example.com/story"))

        assert len(recorded_sleeps) == 1
        assert 2.0 <= recorded_sleeps[0] <= 5.0

"""
Tests for Reddit extraction.

Reddit's JSON API is served from a mock transport keyed by path.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from harvester.models.domain import Content, Failure, FailureKind, SourceDescriptor, SourceKind
from harvester.services.data_ingestion.reddit import (
    RedditExtractor,
    calculate_trending_score,
    extract_comments,
    parse_reddit_url,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def comment(author, body, score, replies=None):
    data = {"author": author, "body": body, "score": score, "replies": ""}
    if replies is not None:
        data["replies"] = {"kind": "Listing", "data": {"children": replies}}
    return {"kind": "t1", "data": data}


def post_payload(post_id, title, selftext, comments, score=120, num_comments=45):
    post = {
        "id": post_id,
        "title": title,
        "selftext": selftext,
        "author": "poster",
        "subreddit": "python",
        "score": score,
        "upvote_ratio": 0.93,
        "num_comments": num_comments,
        "created_utc": (NOW - timedelta(hours=3)).timestamp(),
        "permalink": f"/r/python/comments/{post_id}/slug/",
        "is_self": True,
    }
    return [
        {"kind": "Listing", "data": {"children": [{"kind": "t3", "data": post}]}},
        {"kind": "Listing", "data": {"children": comments}},
    ]


SAMPLE_COMMENTS = [
    comment("alice", "Type hints made our large codebase much easier to refactor.", 42, replies=[
        comment("bob", "Agreed, especially combined with a strict checker in CI.", 10, replies=[
            comment("carol", "We run it on every pull request now.", 5, replies=[
                comment("dave", "This reply is too deep to be included.", 1),
            ]),
        ]),
        comment("ghost", "[deleted]", 3),
    ]),
    {"kind": "more", "data": {"count": 12, "children": ["x1", "x2"]}},
    comment("erin", "[removed]", 7),
    comment("frank", "Runtime validation libraries complement static typing nicely.", 30),
]

SAMPLE_POST = post_payload(
    "abc123",
    "Is static typing worth it for Python projects?",
    "Our team is debating whether to adopt type hints across a mature codebase.",
    SAMPLE_COMMENTS,
)


def listing_payload(posts):
    return {"kind": "Listing", "data": {"children": [{"kind": "t3", "data": p} for p in posts]}}


class TestRedditUrls:
    """Tests for URL classification."""

    def test_post_url(self):
        info = parse_reddit_url("https://www.reddit.com/r/python/comments/abc123/some_title/")
        assert info.type == "post"
        assert info.subreddit == "python"
        assert info.post_id == "abc123"

    def test_subreddit_url_defaults_to_hot(self):
        info = parse_reddit_url("https://reddit.com/r/programming")
        assert info.type == "subreddit"
        assert info.sort == "hot"

    def test_subreddit_sort(self):
        assert parse_reddit_url("https://www.reddit.com/r/python/top/").sort == "top"

    def test_unrecognized(self):
        assert parse_reddit_url("https://www.reddit.com/user/someone") is None

    def test_dispatch(self):
        assert SourceDescriptor.from_url("https://old.reddit.com/r/python").kind == SourceKind.REDDIT


class TestTrendingScore:
    """Tests for the trending score formula."""

    BASE = {
        "score": 100,
        "upvote_ratio": 0.8,
        "num_comments": 20,
        "created_utc": (NOW - timedelta(hours=6)).timestamp(),
    }

    def score(self, **changes):
        return calculate_trending_score({**self.BASE, **changes}, now=NOW)

    def test_increasing_in_score(self):
        assert self.score(score=1000) > self.score(score=100) > self.score(score=10)

    def test_increasing_in_comments(self):
        assert self.score(num_comments=500) > self.score(num_comments=20) > self.score(num_comments=2)

    def test_increasing_in_upvote_ratio(self):
        assert self.score(upvote_ratio=0.95) > self.score(upvote_ratio=0.8) > self.score(upvote_ratio=0.1)

    def test_decreasing_in_age(self):
        recent = self.score(created_utc=(NOW - timedelta(hours=1)).timestamp())
        older = self.score(created_utc=(NOW - timedelta(hours=24)).timestamp())
        oldest = self.score(created_utc=(NOW - timedelta(hours=47)).timestamp())
        assert recent > older > oldest

    def test_known_value(self):
        """Fresh post, 100 upvotes, 10 comments, 50% ratio."""
        post = {"score": 100, "upvote_ratio": 0.5, "num_comments": 10, "created_utc": NOW.timestamp()}
        expected = 0.4 * 20 + 0.2 * 50 + 0.3 * 10 + 0.1 * 10
        assert calculate_trending_score(post, now=NOW) == pytest.approx(expected)

    def test_missing_fields(self):
        """Missing ratio counts as 0.5; missing counts as 0."""
        assert calculate_trending_score({}, now=NOW) == pytest.approx(0.2 * 50)


class TestExtractComments:
    """Tests for comment tree flattening."""

    def test_depth_and_filtering(self):
        lines = extract_comments(SAMPLE_COMMENTS, max_depth=2)

        assert lines == [
            "[Comment by u/alice (42 points)]: Type hints made our large codebase much easier to refactor.",
            "[Comment by u/bob (10 points)]: Agreed, especially combined with a strict checker in CI.",
            "[Comment by u/carol (5 points)]: We run it on every pull request now.",
            "[Comment by u/frank (30 points)]: Runtime validation libraries complement static typing nicely.",
        ]

    def test_malformed_children_ignored(self):
        assert extract_comments([{"kind": "t1", "data": "oops"}, {"kind": "t1"}]) == []


def reddit_handler(routes):
    def handler(request):
        payload = routes.get(request.url.path)
        if payload is None:
            return httpx.Response(404)
        if isinstance(payload, int):
            return httpx.Response(payload)
        return httpx.Response(200, text=json.dumps(payload))
    return handler


class TestRedditExtractor:
    """Tests for post and subreddit scraping."""

    @pytest.mark.asyncio
    async def test_single_post(self, make_fetcher, normalizer):
        fetcher = make_fetcher(reddit_handler({"/r/python/comments/abc123.json": SAMPLE_POST}))
        extractor = RedditExtractor(fetcher, normalizer, post_spacing_seconds=0)

        outcome = await extractor.extract(
            SourceDescriptor.from_url("https://www.reddit.com/r/python/comments/abc123/slug/")
        )

        assert isinstance(outcome, Content)
        content = outcome.content
        assert content.title == "Is static typing worth it for Python projects?"
        assert content.author == "u/poster"
        assert content.metadata.subreddit == "python"
        assert content.metadata.meta_description == (
            "Reddit post from r/python with 45 comments and 120 upvotes"
        )
        assert content.body.startswith("Title: Is static typing worth it")
        assert "Post Content:\nOur team is debating" in content.body
        assert "Score: 120 (93% upvoted)" in content.body
        assert "[Comment by u/alice (42 points)]" in content.body
        assert "too deep" not in content.body
        # Top-level comments are ordered by score
        assert content.body.index("u/alice") < content.body.index("u/frank")
        assert content.excerpt.endswith("...")

    @pytest.mark.asyncio
    async def test_short_post_rejected(self, make_fetcher, normalizer):
        tiny = post_payload("t1", "Hi", "", [], score=1, num_comments=0)
        fetcher = make_fetcher(reddit_handler({"/r/python/comments/t1.json": tiny}))
        extractor = RedditExtractor(fetcher, normalizer, post_spacing_seconds=0)

        outcome = await extractor.extract(
            SourceDescriptor.from_url("https://www.reddit.com/r/python/comments/t1/")
        )

        assert isinstance(outcome, Failure)
        assert outcome.kind == FailureKind.QUALITY_REJECTED

    @pytest.mark.asyncio
    async def test_invalid_json(self, make_fetcher, normalizer):
        def handler(request):
            return httpx.Response(200, text="<html>blocked</html>")

        extractor = RedditExtractor(make_fetcher(handler), normalizer, post_spacing_seconds=0)
        outcome = await extractor.extract(
            SourceDescriptor.from_url("https://www.reddit.com/r/python/comments/abc123/")
        )

        assert isinstance(outcome, Failure)
        assert outcome.kind == FailureKind.PARSE_FAILURE

    @pytest.mark.asyncio
    async def test_subreddit_discovery(self, make_fetcher, normalizer):
        """Top posts by trending score are scraped and concatenated."""
        listing_posts = []
        routes = {}
        for index in range(4):
            post_id = f"p{index}"
            payload = post_payload(
                post_id,
                f"Python release discussion number {index}",
                "Detailed notes about the new interpreter features and what they mean for us.",
                [comment("alice", "Looking forward to trying the faster startup times.", 12)],
                score=10 ** (index + 1),
            )
            listing_posts.append(payload[0]["data"]["children"][0]["data"])
            routes[f"/r/python/comments/{post_id}.json"] = payload
        routes["/r/python/hot.json"] = listing_payload(listing_posts)

        extractor = RedditExtractor(
            make_fetcher(reddit_handler(routes)),
            normalizer,
            top_posts=2,
            post_spacing_seconds=0,
        )
        outcome = await extractor.extract(SourceDescriptor.from_url("https://www.reddit.com/r/python"))

        assert isinstance(outcome, Content)
        content = outcome.content
        assert content.title == "Trending Posts from r/python"
        assert content.body.startswith("=== TRENDING POSTS FROM r/PYTHON ===")
        assert "Scraped 2 trending posts from 4 total posts" in content.body
        assert "POST 1 of 2" in content.body
        # Highest-scored posts win
        assert "discussion number 3" in content.body
        assert "discussion number 2" in content.body
        assert "discussion number 0" not in content.body
        assert content.metadata.og_description == "Top 2 trending posts from r/python"
        assert content.excerpt.startswith("Aggregated content from 2 trending posts in r/python.")

    @pytest.mark.asyncio
    async def test_subreddit_all_posts_fail(self, make_fetcher, normalizer):
        posts = [post_payload("p0", "A post", "text", [])[0]["data"]["children"][0]["data"]]
        routes = {
            "/r/python/hot.json": listing_payload(posts),
            "/r/python/comments/p0.json": 500,
        }
        extractor = RedditExtractor(make_fetcher(reddit_handler(routes)), normalizer, post_spacing_seconds=0)

        outcome = await extractor.extract(SourceDescriptor.from_url("https://www.reddit.com/r/python/"))

        assert isinstance(outcome, Failure)
        assert outcome.reason.startswith("Failed to scrape any posts from subreddit: r/python")

    @pytest.mark.asyncio
    async def test_empty_subreddit(self, make_fetcher, normalizer):
        routes = {"/r/empty/new.json": listing_payload([])}
        extractor = RedditExtractor(make_fetcher(reddit_handler(routes)), normalizer, post_spacing_seconds=0)

        outcome = await extractor.extract(SourceDescriptor.from_url("https://www.reddit.com/r/empty/new"))

        assert isinstance(outcome, Failure)
        assert outcome.reason == "No posts found in subreddit: r/empty"

    def subreddit_routes(self, count):
        listing_posts = []
        routes = {}
        for index in range(count):
            post_id = f"p{index}"
            payload = post_payload(
                post_id,
                f"Python packaging discussion number {index}",
                "Long notes about build backends, lock files and how teams ship wheels today.",
                [comment("alice", "Lock files finally made our deployments reproducible.", 12)],
            )
            listing_posts.append(payload[0]["data"]["children"][0]["data"])
            routes[f"/r/python/comments/{post_id}.json"] = payload
        routes["/r/python/hot.json"] = listing_payload(listing_posts)
        return routes

    @pytest.mark.asyncio
    async def test_subreddit_tolerates_non_finite_fields(self, make_fetcher, normalizer):
        """Infinite scores and out-of-range timestamps do not sink the other posts."""
        routes = self.subreddit_routes(3)
        poisoned = routes["/r/python/comments/p1.json"]
        poisoned[0]["data"]["children"][0]["data"]["created_utc"] = 1e20
        poisoned[0]["data"]["children"][0]["data"]["score"] = "nan"
        poisoned[1]["data"]["children"].append(
            comment("mallory", "Scores like this should never appear in a real listing.", "Infinity")
        )
        extractor = RedditExtractor(make_fetcher(reddit_handler(routes)), normalizer, top_posts=3, post_spacing_seconds=0)

        outcome = await extractor.extract(SourceDescriptor.from_url("https://www.reddit.com/r/python"))

        assert isinstance(outcome, Content)
        assert "Scraped 3 trending posts from 3 total posts" in outcome.content.body
        assert "[Comment by u/mallory (0 points)]" in outcome.content.body
        assert "Score: 0 (93% upvoted)" in outcome.content.body

    @pytest.mark.asyncio
    async def test_subreddit_post_error_isolated(self, make_fetcher, normalizer):
        """A post that blows up while being assembled counts as one error."""

        class BrittleExtractor(RedditExtractor):
            def _build_post_text(self, url, post, comments):
                if post.get("id") == "p1":
                    raise OverflowError("cannot convert float infinity to integer")
                return super()._build_post_text(url, post, comments)

        routes = self.subreddit_routes(3)
        extractor = BrittleExtractor(make_fetcher(reddit_handler(routes)), normalizer, top_posts=3, post_spacing_seconds=0)

        outcome = await extractor.extract(SourceDescriptor.from_url("https://www.reddit.com/r/python"))

        assert isinstance(outcome, Content)
        assert "Scraped 2 trending posts from 3 total posts" in outcome.content.body
        assert "discussion number 1" not in outcome.content.body

    @pytest.mark.asyncio
    async def test_post_waits_once(self, make_fetcher, normalizer, recorded_sleeps):
        fetcher = make_fetcher(
            reddit_handler({"/r/python/comments/abc123.json": SAMPLE_POST}),
            delay_range=(2.0, 5.0),
        )

        await RedditExtractor(fetcher, normalizer).extract(
            SourceDescriptor.from_url("https://www.reddit.com/r/python/comments/abc123/slug/")
        )

        assert len(recorded_sleeps) == 1
        assert 2.0 <= recorded_sleeps[0] <= 5.0

    @pytest.mark.asyncio
    async def test_subreddit_post_fetches_spaced(self, make_fetcher, normalizer, recorded_sleeps):
        """Listing fetch gets the pre-delay, later post fetches the fixed spacing."""
        fetcher = make_fetcher(reddit_handler(self.subreddit_routes(3)), delay_range=(2.0, 5.0))
        extractor = RedditExtractor(fetcher, normalizer, top_posts=3)

        outcome = await extractor.extract(SourceDescriptor.from_url("https://www.reddit.com/r/python"))

        assert isinstance(outcome, Content)
        assert len(recorded_sleeps) == 3
        assert 2.0 <= recorded_sleeps[0] <= 5.0
        assert recorded_sleeps[1:] == [2.0, 2.0]

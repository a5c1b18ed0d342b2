"""
Reddit extraction through Reddit's public JSON endpoints.

Two entry shapes:
- a post URL is scraped as title, self-text, details and top comments
- a subreddit URL is ranked by a trending score and its top posts are
  scraped one by one and concatenated
"""

import asyncio
import json
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union
from urllib.parse import urlparse

from harvester.models.domain import (
    Content,
    ContentMetadata,
    Failure,
    FailureKind,
    SourceDescriptor,
    SourceKind,
    utc_now,
)
from harvester.services.data_ingestion.base import BaseExtractor
from harvester.services.data_ingestion.fetcher import JSON_ACCEPT
from harvester.services.data_ingestion.normalizer import MAX_CONTENT_LENGTH, MIN_CONTENT_LENGTH

REDDIT_BASE_URL = "https://www.reddit.com"
REDDIT_USER_AGENT = "ContentHarvester/1.0 (Trending topic discovery)"

POST_PATH = re.compile(r"/r/([^/]+)/comments/([^/]+)")
SUBREDDIT_PATH = re.compile(r"/r/([^/]+)(?:/(hot|top|new|rising))?/?$")

REMOVED_BODIES = {"[deleted]", "[removed]"}
POST_EXCERPT_LENGTH = 300
RECENCY_WINDOW_HOURS = 48


@dataclass
class RedditUrlInfo:
    """What a Reddit URL points at."""
    type: str  # "post" or "subreddit"
    subreddit: str
    post_id: Optional[str] = None
    sort: str = "hot"


@dataclass
class RedditPostText:
    """Assembled text of one post plus the fields the content record needs."""
    url: str
    title: str
    text: str
    subreddit: str
    author: Optional[str] = None
    selftext: str = ""
    thumbnail: Optional[str] = None
    published_at: Optional[datetime] = None
    score: int = 0
    num_comments: int = 0


def parse_reddit_url(url: str) -> Optional[RedditUrlInfo]:
    """Classify a Reddit URL as a post or a subreddit listing."""
    try:
        path = urlparse(url).path
    except ValueError:
        return None

    post_match = POST_PATH.search(path)
    if post_match:
        subreddit, post_id = post_match.groups()
        return RedditUrlInfo(type="post", subreddit=subreddit, post_id=post_id)

    subreddit_match = SUBREDDIT_PATH.search(path)
    if subreddit_match:
        subreddit, sort = subreddit_match.groups()
        return RedditUrlInfo(type="subreddit", subreddit=subreddit, sort=sort or "hot")

    return None


def post_json_url(info: RedditUrlInfo) -> str:
    return f"{REDDIT_BASE_URL}/r/{info.subreddit}/comments/{info.post_id}.json"


def listing_json_url(info: RedditUrlInfo, limit: int = 25) -> str:
    return f"{REDDIT_BASE_URL}/r/{info.subreddit}/{info.sort}.json?limit={limit}"


def _as_float(value: Any, default: float = 0.0) -> float:
    """Numeric field as a finite float; anything else falls back to ``default``."""
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return default
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return default


def _as_datetime(value: Any) -> Optional[datetime]:
    """Epoch seconds as an aware datetime, or None when out of range."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _listing_children(listing: Any) -> list[dict]:
    """``data.children`` of a listing, or [] for anything else (e.g. replies == "")."""
    if not isinstance(listing, dict):
        return []
    data = listing.get("data")
    if not isinstance(data, dict):
        return []
    children = data.get("children")
    if not isinstance(children, list):
        return []
    return [child for child in children if isinstance(child, dict)]


def _comment_data(child: dict) -> Optional[dict]:
    """Comment payload, skipping "more" stubs and non-comment things."""
    if child.get("kind") == "more":
        return None
    data = child.get("data")
    if not isinstance(data, dict) or "body" not in data:
        return None
    return data


def calculate_trending_score(post: dict, now: Optional[datetime] = None) -> float:
    """
    Rank a listing post by how much it is trending.

    Weighted: log-scaled upvotes 40%, upvote ratio 20%, log-scaled
    comment count 30%, recency bonus for posts under 48 hours 10%.
    """
    now = now or utc_now()

    score = _as_float(post.get("score"))
    ratio = post.get("upvote_ratio")
    upvote_ratio = _as_float(ratio) if ratio is not None else 0.5
    comments = _as_float(post.get("num_comments"))

    created = post.get("created_utc")
    if created is None or isinstance(created, bool):
        age_hours = math.inf
    else:
        age_hours = (now.timestamp() - _as_float(created, now.timestamp())) / 3600

    normalized_score = math.log10(max(score, 1)) * 10
    normalized_comments = math.log10(max(comments, 1)) * 10
    recency_boost = max(0.0, 1 - age_hours / RECENCY_WINDOW_HOURS)

    return (
        0.4 * normalized_score
        + 0.2 * upvote_ratio * 100
        + 0.3 * normalized_comments
        + 0.1 * recency_boost * 10
    )


def extract_comments(children: list[dict], max_depth: int = 2) -> list[str]:
    """
    Flatten a comment tree in reading order.

    Top-level comments are depth 0; replies are followed while the
    parent's depth is below ``max_depth``. Deleted or removed comments
    are skipped together with their replies.
    """
    lines: list[str] = []
    stack: list[tuple[dict, int]] = [(child, 0) for child in reversed(children)]

    while stack:
        child, depth = stack.pop()
        data = _comment_data(child)
        if data is None:
            continue

        body = _as_str(data.get("body")).strip()
        if body in REMOVED_BODIES:
            continue

        if body:
            author = _as_str(data.get("author")) or "unknown"
            score = int(_as_float(data.get("score")))
            lines.append(f"[Comment by u/{author} ({score} points)]: {body}")

        if depth < max_depth:
            replies = _listing_children(data.get("replies"))
            stack.extend((reply, depth + 1) for reply in reversed(replies))

    return lines


class RedditExtractor(BaseExtractor):
    """
    Reddit post and subreddit extractor.

    Features:
    - JSON endpoints instead of HTML scraping
    - Top comments by score, replies to a bounded depth
    - Subreddit discovery ranked by trending score, spaced post fetches
    """

    kind = SourceKind.REDDIT

    def __init__(
        self,
        fetcher,
        normalizer,
        listing_limit: int = 25,
        top_posts: int = 7,
        max_comments: int = 20,
        comment_depth: int = 2,
        post_spacing_seconds: float = 2.0,
        logger=None,
    ):
        super().__init__(fetcher, normalizer, logger)
        self.listing_limit = listing_limit
        self.top_posts = top_posts
        self.max_comments = max_comments
        self.comment_depth = comment_depth
        self.post_spacing_seconds = post_spacing_seconds

    async def extract(self, descriptor: SourceDescriptor) -> Union[Content, Failure]:
        info = parse_reddit_url(descriptor.locator)
        if info is None:
            self.logger.warning("Unrecognized Reddit URL", locator=descriptor.locator)
            return Failure(
                locator=descriptor.locator,
                kind=FailureKind.INVALID_LOCATOR,
                reason=f"Invalid Reddit URL format: {descriptor.locator}",
            )

        if info.type == "post":
            return await self.scrape_post(descriptor.locator, info)
        return await self.scrape_subreddit(descriptor.locator, info)

    async def scrape_post(self, url: str, info: RedditUrlInfo) -> Union[Content, Failure]:
        """Scrape a single post URL."""
        post = await self._fetch_post(url, info, pre_delay=True)
        if isinstance(post, Failure):
            return post

        self.logger.info("Scraped Reddit post", locator=url, length=len(post.text))

        excerpt = post.text[:POST_EXCERPT_LENGTH].strip() + "..."
        return self.normalizer.build_content(
            locator=url,
            kind=self.kind,
            body=post.text,
            title=post.title,
            excerpt=excerpt,
            author=f"u/{post.author}" if post.author else None,
            published_at=post.published_at,
            metadata=ContentMetadata(
                og_title=post.title or None,
                og_description=post.selftext[:200] or None,
                og_image=post.thumbnail,
                meta_description=(
                    f"Reddit post from r/{post.subreddit} with "
                    f"{post.num_comments} comments and {post.score} upvotes"
                ),
                subreddit=post.subreddit,
            ),
        )

    async def scrape_subreddit(self, url: str, info: RedditUrlInfo) -> Union[Content, Failure]:
        """Rank a subreddit listing and aggregate its top trending posts."""
        data = await self._fetch_json(
            listing_json_url(info, self.listing_limit), url, pre_delay=True
        )
        if isinstance(data, Failure):
            return data

        posts = [
            child["data"]
            for child in _listing_children(data)
            if isinstance(child.get("data"), dict) and "title" in child["data"]
        ]
        if not posts:
            return self.parse_failure(url, f"No posts found in subreddit: r/{info.subreddit}")

        now = utc_now()
        ranked = sorted(posts, key=lambda p: calculate_trending_score(p, now), reverse=True)
        selected = ranked[: self.top_posts]

        self.logger.info(
            "Selected trending posts",
            subreddit=info.subreddit,
            found=len(posts),
            selected=len(selected),
        )

        scraped: list[RedditPostText] = []
        errors: list[Failure] = []

        for index, post in enumerate(selected):
            if index > 0 and self.post_spacing_seconds > 0:
                await asyncio.sleep(self.post_spacing_seconds)

            permalink = _as_str(post.get("permalink"))
            post_info = parse_reddit_url(permalink)
            if post_info is None or post_info.type != "post":
                errors.append(self.parse_failure(url, f"Post without a usable permalink: {post.get('title')!r}"))
                continue

            post_url = f"{REDDIT_BASE_URL}{permalink}"
            try:
                result = await self._fetch_post(post_url, post_info, pre_delay=False)
            except Exception as e:
                self.logger.exception("Error scraping subreddit post", locator=post_url, error=str(e))
                result = self.parse_failure(post_url, f"Unexpected error scraping post: {e}")
            if isinstance(result, Failure):
                errors.append(result)
            else:
                scraped.append(result)

        if not scraped:
            reasons = "; ".join(error.reason for error in errors)
            kind = errors[0].kind if errors else FailureKind.PARSE_FAILURE
            self.logger.warning("No subreddit posts scraped", subreddit=info.subreddit, errors=len(errors))
            return Failure(
                locator=url,
                kind=kind,
                reason=f"Failed to scrape any posts from subreddit: r/{info.subreddit}. Errors: {reasons}",
            )

        body = self._aggregate(info.subreddit, scraped, total_posts=len(posts))
        first_excerpt = scraped[0].text[:POST_EXCERPT_LENGTH].strip()
        excerpt = (
            f"Aggregated content from {len(scraped)} trending posts in "
            f"r/{info.subreddit}. {first_excerpt}"
        )[:POST_EXCERPT_LENGTH].strip() + "..."

        self.logger.info(
            "Scraped subreddit",
            locator=url,
            posts_scraped=len(scraped),
            errors=len(errors),
            length=len(body),
        )

        return self.normalizer.build_content(
            locator=url,
            kind=self.kind,
            body=body,
            title=f"Trending Posts from r/{info.subreddit}",
            excerpt=excerpt,
            published_at=scraped[0].published_at,
            metadata=ContentMetadata(
                og_title=f"Trending Posts from r/{info.subreddit}",
                og_description=f"Top {len(scraped)} trending posts from r/{info.subreddit}",
                meta_description=(
                    f"Aggregated trending content from r/{info.subreddit} "
                    f"with {len(scraped)} posts"
                ),
                subreddit=info.subreddit,
            ),
        )

    async def _fetch_json(self, json_url: str, locator: str, pre_delay: bool) -> Union[Any, Failure]:
        response = await self.fetcher.fetch(
            json_url,
            pre_delay=pre_delay,
            headers={"Accept": JSON_ACCEPT, "User-Agent": REDDIT_USER_AGENT},
        )
        if isinstance(response, Failure):
            return Failure(
                locator=locator,
                kind=response.kind,
                reason=response.reason,
                status_code=response.status_code,
            )

        try:
            return json.loads(response.text)
        except ValueError:
            return self.parse_failure(locator, f"Invalid Reddit API response format: {locator}")

    async def _fetch_post(
        self,
        url: str,
        info: RedditUrlInfo,
        pre_delay: bool,
    ) -> Union[RedditPostText, Failure]:
        """Fetch a post's JSON and assemble its text block."""
        data = await self._fetch_json(post_json_url(info), url, pre_delay)
        if isinstance(data, Failure):
            return data

        if not isinstance(data, list) or not data:
            return self.parse_failure(url, "Invalid Reddit API response format")

        post_children = _listing_children(data[0])
        post = post_children[0].get("data") if post_children else None
        if not isinstance(post, dict):
            return self.parse_failure(url, "No post data found in Reddit response")

        comments = []
        if len(data) > 1:
            comments = [c for c in _listing_children(data[1]) if _comment_data(c) is not None]

        post_text = self._build_post_text(url, post, comments)
        if len(post_text.text) < MIN_CONTENT_LENGTH:
            self.logger.info("Reddit post too short", locator=url, length=len(post_text.text))
            return Failure(
                locator=url,
                kind=FailureKind.QUALITY_REJECTED,
                reason=(
                    f"Reddit post content too short: {len(post_text.text)} characters "
                    f"(minimum {MIN_CONTENT_LENGTH})"
                ),
            )
        return post_text

    def _build_post_text(self, url: str, post: dict, comments: list[dict]) -> RedditPostText:
        title = _as_str(post.get("title")).strip()
        selftext = _as_str(post.get("selftext")).strip()
        subreddit = _as_str(post.get("subreddit"))
        author = _as_str(post.get("author"))
        score = int(_as_float(post.get("score")))
        upvote_ratio = _as_float(post.get("upvote_ratio"))
        num_comments = int(_as_float(post.get("num_comments")))

        parts = [f"Title: {title}"]
        if post.get("is_self") and selftext:
            parts.append(f"\nPost Content:\n{selftext}")

        details = [
            f"Subreddit: r/{subreddit}",
            f"Author: u/{author}",
            f"Score: {score} ({round(upvote_ratio * 100)}% upvoted)",
            f"Comments: {num_comments}",
        ]
        parts.append("\nPost Details:\n" + "\n".join(details))
        text = "\n".join(parts)

        top_comments = sorted(
            comments,
            key=lambda c: _as_float(c["data"].get("score")),
            reverse=True,
        )[: self.max_comments]
        comment_lines = extract_comments(top_comments, self.comment_depth)

        if comment_lines:
            text += "\n\n\nTop Comments:\n"
            kept: list[str] = []
            for line in comment_lines:
                if len(text) + len("\n\n".join(kept + [line])) > MAX_CONTENT_LENGTH:
                    break
                kept.append(line)
            text += "\n\n".join(kept)

        published_at = _as_datetime(post.get("created_utc"))
        thumbnail = _as_str(post.get("thumbnail"))

        return RedditPostText(
            url=url,
            title=title,
            text=text,
            subreddit=subreddit,
            author=author or None,
            selftext=selftext,
            thumbnail=thumbnail if thumbnail.startswith("http") else None,
            published_at=published_at,
            score=score,
            num_comments=num_comments,
        )

    def _aggregate(self, subreddit: str, posts: list[RedditPostText], total_posts: int) -> str:
        """Concatenate scraped posts under a banner, capped at the content maximum."""
        separator = "=" * 60
        parts = [
            f"=== TRENDING POSTS FROM r/{subreddit.upper()} ===\n",
            f"Scraped {len(posts)} trending posts from {total_posts} total posts\n",
        ]
        text = "\n".join(parts)

        for index, post in enumerate(posts, start=1):
            block = "\n".join([
                f"\n{separator}",
                f"POST {index} of {len(posts)}",
                f"{separator}\n",
                post.text,
                "\n",
            ])
            if len(text) + 1 + len(block) > MAX_CONTENT_LENGTH:
                break
            text += "\n" + block

        return text

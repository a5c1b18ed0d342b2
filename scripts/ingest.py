#!/usr/bin/env python3
"""
CLI tool for source scraping and topic discovery.

Usage:
    # Scrape sources and store new topics for a tenant
    python -m scripts.ingest scrape https://example.com/blog https://www.reddit.com/r/python

    # Run a saved newsletter email through the pipeline
    python -m scripts.ingest newsletter issue.html --subject "Weekly digest" --sender news@example.com

    # Scrape only and show the extracted content
    python -m scripts.ingest preview https://example.com/feed
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(__file__).rsplit("/", 2)[0])

from harvester.config import get_settings
from harvester.logging_config import configure_logging
from harvester.jobs.source_scrape import PipelineResult, TopicDiscoveryPipeline
from harvester.models.database import Database
from harvester.models.domain import Content, RawEmail, SourceDescriptor, utc_now
from harvester.services.data_ingestion import SourceAggregator
from harvester.services.topic_store import InMemoryTopicStore, SQLTopicStore


def print_result(result: PipelineResult, verbose: bool = False):
    """Print pipeline counters, topics and failures."""
    stats = result.stats

    print("\n" + "=" * 60)
    print("SCRAPE RESULTS")
    print("=" * 60)
    print(f"Tenant: {result.tenant_id}")
    print(
        f"Sources: {stats.sources_succeeded}/{stats.sources_total} scraped, "
        f"{stats.sources_failed} failed, {stats.sources_unchanged} unchanged"
    )
    print(
        f"Topics: {stats.topics_extracted} extracted, "
        f"{stats.topics_duplicate} duplicate, {stats.topics_saved} saved"
    )
    print(f"Time: {result.elapsed_seconds:.1f}s")

    if result.topics:
        print("-" * 60)
        for topic in result.topics:
            print(f"[{topic.trending_score:3d}] {topic.title} ({topic.category})")
            if verbose:
                print(f"      {topic.description}")
                print(f"      Relevance: {topic.relevance}")

    if result.failures:
        print("-" * 60)
        print("FAILURES")
        for failure in result.failures:
            print(f"  ✗ {failure}")


def write_output(result: PipelineResult, path: str):
    output_data = {
        "tenant_id": result.tenant_id,
        "stats": result.stats.to_dict(),
        "topics": [topic.model_dump() for topic in result.topics],
        "failures": [failure.model_dump(mode="json") for failure in result.failures],
        "attempts": {source: at.isoformat() for source, at in result.attempts.items()},
    }
    with open(path, "w") as f:
        json.dump(output_data, f, indent=2)

    print(f"\nResults saved to: {path}")


async def run_pipeline(args, jobs: list[SourceDescriptor]) -> PipelineResult:
    """Run the pipeline against the configured database, or in memory."""
    settings = get_settings()

    if args.memory:
        pipeline = TopicDiscoveryPipeline.from_settings(settings, InMemoryTopicStore())
        return await pipeline.run(jobs, args.tenant, args.industry, args.interest)

    database = Database(settings.database_url)
    await database.create_tables()
    try:
        pipeline = TopicDiscoveryPipeline.from_settings(settings, SQLTopicStore(database))
        return await pipeline.run(jobs, args.tenant, args.industry, args.interest)
    finally:
        await database.dispose()


async def cmd_scrape(args):
    """Scrape URLs and extract topics."""
    jobs = [SourceDescriptor.from_url(url) for url in args.urls]

    print(f"Scraping {len(jobs)} sources...")
    for job in jobs:
        print(f"  [{job.kind.value}] {job.locator}")

    result = await run_pipeline(args, jobs)
    print_result(result, args.verbose)

    if args.output:
        write_output(result, args.output)

    return 0 if result.stats.sources_succeeded or not jobs else 1


async def cmd_newsletter(args):
    """Run one saved newsletter email through the pipeline."""
    path = Path(args.file)
    if not path.exists():
        print(f"File not found: {path}")
        return 1

    email = RawEmail(
        subject=args.subject,
        sender=args.sender,
        html_body=path.read_text(encoding="utf-8", errors="replace"),
        date=utc_now(),
    )
    print(f"Processing newsletter: {email.subject} ({email.sender})")

    result = await run_pipeline(args, [SourceDescriptor.from_email(email)])
    print_result(result, args.verbose)

    if args.output:
        write_output(result, args.output)

    return 0 if result.stats.sources_succeeded else 1


async def cmd_preview(args):
    """Scrape only and print the extracted content."""
    aggregator = SourceAggregator.from_settings(get_settings())
    jobs = [SourceDescriptor.from_url(url) for url in args.urls]

    outcomes = await aggregator.scrape_batch(jobs)

    failed = 0
    for outcome in outcomes:
        print("\n" + "=" * 60)
        if isinstance(outcome, Content):
            content = outcome.content
            print(f"✓ [{content.kind.value}] {content.locator}")
            print(f"  Title: {content.title}")
            print(f"  Author: {content.author}")
            print(f"  Published: {content.published_at}")
            print(f"  Length: {content.length} characters")
            print(f"  Excerpt: {content.excerpt}")
            if content.metadata.email_links:
                print(f"  Links: {', '.join(content.metadata.email_links)}")
            if args.full:
                print("-" * 60)
                print(content.body)
        else:
            failed += 1
            print(f"✗ {outcome}")

    return 0 if failed < len(outcomes) or not outcomes else 1


def add_pipeline_arguments(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--tenant", "-t",
        default="local",
        help="Tenant the topics belong to (default: local)"
    )
    parser.add_argument(
        "--industry",
        help="Industry context for topic extraction"
    )
    parser.add_argument(
        "--interest",
        action="append",
        help="Interest for topic extraction (repeatable)"
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use an in-memory topic store instead of the database"
    )
    parser.add_argument(
        "--output", "-o",
        help="Output file for results (JSON)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show topic descriptions"
    )


def main():
    parser = argparse.ArgumentParser(
        description="Content Harvester - Source Scraping CLI"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Scrape command
    scrape_parser = subparsers.add_parser("scrape", help="Scrape sources and extract topics")
    scrape_parser.add_argument("urls", nargs="+", help="Web page, feed or Reddit URLs")
    add_pipeline_arguments(scrape_parser)

    # Newsletter command
    newsletter_parser = subparsers.add_parser("newsletter", help="Process a saved newsletter email")
    newsletter_parser.add_argument("file", help="HTML body of the email")
    newsletter_parser.add_argument("--subject", "-s", required=True, help="Email subject")
    newsletter_parser.add_argument("--sender", "-f", required=True, help="Email sender")
    add_pipeline_arguments(newsletter_parser)

    # Preview command
    preview_parser = subparsers.add_parser("preview", help="Scrape without topic extraction")
    preview_parser.add_argument("urls", nargs="+", help="URLs to scrape")
    preview_parser.add_argument(
        "--full",
        action="store_true",
        help="Print the whole extracted body"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    # Run command
    if args.command == "scrape":
        return asyncio.run(cmd_scrape(args))
    elif args.command == "newsletter":
        return asyncio.run(cmd_newsletter(args))
    elif args.command == "preview":
        return asyncio.run(cmd_preview(args))

    return 0


if __name__ == "__main__":
    sys.exit(main())

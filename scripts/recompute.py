#!/usr/bin/env python3
"""Command-line trigger for the ranking jobs.

Usage:
    python scripts/recompute.py anime
    python scripts/recompute.py reviews --verbose
    python scripts/recompute.py stats
    python scripts/recompute.py reset-counters --window weekly
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from catalogrank.core.logging import setup_logging, get_logger
from catalogrank.core.repositories import VIEW_COUNTER_COLUMNS
from catalogrank.core.settings import settings
from catalogrank.ranker.errors import RankingError
from catalogrank.ranker.pipeline import (
    get_job_stats,
    recompute_anime_popularity,
    recompute_manga_popularity,
    recompute_review_rankings,
    reset_view_counters,
)

logger = get_logger("catalogrank.scripts.recompute")

JOBS = {
    'anime': recompute_anime_popularity,
    'manga': recompute_manga_popularity,
    'reviews': recompute_review_rankings,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recompute CatalogRank popularity rankings")
    parser.add_argument(
        'command',
        choices=sorted(JOBS) + ['stats', 'reset-counters'],
        help="Job to run",
    )
    parser.add_argument(
        '--window',
        choices=sorted(VIEW_COUNTER_COLUMNS),
        default='daily',
        help="Counter window for reset-counters (default: daily)",
    )
    parser.add_argument('--verbose', '-v', action='store_true', help="Enable debug logging")
    return parser


def print_report(result: dict) -> None:
    """Print a ranking run summary."""
    stats = result['stats']
    print("=" * 60)
    print(f"{result['entity_class'].upper()} RANKING: {result['message']}")
    print("=" * 60)
    print(f"Total: {stats['total']}  Updated: {stats['updated']}  Errors: {stats['errors']}")
    print(f"Runtime: {result['runtime_seconds']:.2f}s")

    if result['top10']:
        print("\nTop entries:")
        for entry in result['top10']:
            title = entry.get('title') or f"#{entry['id']}"
            tier = f" [{entry['tier']}]" if entry.get('tier') else ""
            print(f"  {entry['rank']:3d}. {title} - {entry['score']:.2f} ({entry['change']}){tier}")


async def run(args: argparse.Namespace) -> int:
    try:
        if args.command in JOBS:
            print_report(await JOBS[args.command]())
        elif args.command == 'stats':
            print(json.dumps(await get_job_stats(), indent=2, default=str))
        else:
            result = await reset_view_counters(args.window)
            print(f"Reset {args.window} view counters on {result['rows']} reviews")
        return 0

    except RankingError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


def main() -> int:
    args = build_parser().parse_args()
    if args.verbose:
        settings.log_level = "DEBUG"
    setup_logging("recompute")
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())

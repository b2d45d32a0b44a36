#!/usr/bin/env python3
"""
Parse a retailer CSV export through the full cascade and print the outcome.

Nothing is committed unless --commit is given (in-memory repository by
default, so --commit is mostly useful with a host INVENTORY_REPOSITORY).

Usage:
    python scripts/parse_csv_file.py <csv_path> <retailer> [--household H] [--user U] [--commit]

Example:
    KV_STORE_BACKEND=memory python scripts/parse_csv_file.py ~/Downloads/amazon_orders.csv amazon
"""
import sys
import os
import argparse
import asyncio

# Add parent directory to path so we can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from packages.common.config import get_settings
from packages.common.logging_config import configure_logging
from packages.common.pipeline_factory import build_pipeline
from packages.domain.budget.governor import BudgetScope


async def main():
    parser = argparse.ArgumentParser(description="Parse a purchase CSV export")
    parser.add_argument("csv_path")
    parser.add_argument("retailer")
    parser.add_argument("--household", default="cli-household")
    parser.add_argument("--user", default="cli-user")
    parser.add_argument("--commit", action="store_true")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)

    with open(args.csv_path, encoding="utf-8-sig") as f:
        csv_text = f.read()

    pipeline = build_pipeline(settings)
    await pipeline.start()
    try:
        scope = BudgetScope(household_id=args.household, user_id=args.user)
        result = await pipeline.ingestion.parse_csv(csv_text, args.retailer, scope)

        print(f"\n{'=' * 80}")
        print(f"{len(result.candidates)} lines from {args.csv_path}")
        print(f"{'=' * 80}")
        for candidate in result.candidates:
            brand = f"{candidate.brand} " if candidate.brand else ""
            merge = candidate.merge.kind if candidate.merge else "-"
            print(f"  [{candidate.resolution_method.value:5}] {candidate.confidence:.2f} "
                  f"{candidate.line_outcome.value:24} {merge:11} "
                  f"{brand}{candidate.canonical_name} "
                  f"({candidate.package_size} {candidate.package_unit.value})")

        print(f"\nAuto-accepted: {result.auto_accepted}")
        print(f"Needs review:  {result.needs_review}")
        print(f"Fallbacks:     {result.fallbacks}")
        print(f"Budget denied: {result.budget_denials}")
        print(f"By method:     {result.by_method}")
        print(f"Avg conf:      {result.average_confidence:.3f}")

        stats = await pipeline.cache.get_stats()
        print(f"Cache hit rate (this run): {stats['hit_rate']:.1%}")

        if args.commit:
            committed = await pipeline.ingestion.commit_candidates(args.household, result.candidates, args.user)
            print(f"\nCommitted {committed.transactions_created} transactions "
                  f"({committed.items_created} new items, {committed.skipped} skipped)")
    finally:
        await pipeline.close()


if __name__ == "__main__":
    asyncio.run(main())

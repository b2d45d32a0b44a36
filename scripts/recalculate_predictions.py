#!/usr/bin/env python3
"""
Run the daily prediction recalculation once, outside Celery.

Usage:
    python scripts/recalculate_predictions.py [household_id]
"""
import sys
import os
import asyncio

# Add parent directory to path so we can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from packages.common.config import get_settings
from packages.common.logging_config import configure_logging
from services.worker.tasks.recalculate_predictions import run_recalculation


async def main():
    configure_logging(get_settings())

    household_id = sys.argv[1] if len(sys.argv) > 1 else None
    target = household_id or "all households"
    print(f"Recalculating predictions for {target}...")

    result = await run_recalculation(household_id)

    print("\nResult:")
    for key, value in result.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    asyncio.run(main())

#!/usr/bin/env python3
"""
Re-run categorization for one receipt.

Usage:
    python scripts/recategorize_receipt.py <receipt_id> [--min-confidence 0.8] [--queue]

Example:
    python scripts/recategorize_receipt.py acafec2a-00e1-4484-96e7-ccb05e43185f

--queue sends the work to the Celery worker instead of running it inline.
"""
import argparse
import asyncio
import os
import sys

# Add parent directory to path so we can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from apps.api.tasks import queue_receipt_categorization
from packages.common.logging_setup import configure_logging
from services.worker.tasks.categorize_receipt import categorize_one


async def main():
    parser = argparse.ArgumentParser(description="Re-run receipt categorization")
    parser.add_argument("receipt_id")
    parser.add_argument("--min-confidence", type=float, default=None)
    parser.add_argument("--queue", action="store_true", help="Queue on the worker instead of running inline")
    args = parser.parse_args()

    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    if args.queue:
        task_id = queue_receipt_categorization(args.receipt_id)
        print(f"Queued receipt {args.receipt_id} (task {task_id})")
        return

    print(f"Categorizing receipt {args.receipt_id}...")
    result = await categorize_one(args.receipt_id, args.min_confidence)

    print("\nResult:")
    print(f"  OK: {result.get('ok')}")
    if result.get('ok'):
        print(f"  Category: {result.get('category')} (id {result.get('category_id')})")
        print(f"  Confidence: {result.get('confidence')}")
        print(f"  Source: {result.get('category_source')}")
        if result.get('note'):
            print(f"  Note: {result.get('note')}")
    else:
        print(f"  Reason: {result.get('reason')}")
        if result.get('error'):
            print(f"  Error: {result.get('error')}")


if __name__ == "__main__":
    asyncio.run(main())

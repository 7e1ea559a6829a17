#!/usr/bin/env python3
"""
Reprocess webhook events that were accepted but never finished.

A delivery that crashed (or hit a Retryable/Fatal result) leaves its ledger
row with processed_at = NULL. Stripe usually redelivers, but gives up after
a few days; this sweep replays the stored payloads so nothing is left
behind. Safe to run on a schedule: handlers are idempotent.

Usage:
    python scripts/reprocess_webhooks.py                      # Default age threshold
    python scripts/reprocess_webhooks.py --older-than 30      # Only rows older than 30 minutes
    python scripts/reprocess_webhooks.py --limit 20 --dry-run # Just list what would be replayed
    python scripts/reprocess_webhooks.py --max-attempts 0     # Include events that keep failing
"""

import argparse
import sys
from collections import Counter
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from giving.core.config import settings  # noqa: E402
from giving.db import new_session  # noqa: E402
from giving.webhooks.processor import WebhookProcessor  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay unprocessed webhook events from the ledger")
    parser.add_argument(
        "--older-than",
        type=int,
        default=settings.REPROCESS_AFTER_MINUTES,
        help=f"Only replay events received more than N minutes ago (default: {settings.REPROCESS_AFTER_MINUTES})",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=settings.REPROCESS_MAX_ATTEMPTS,
        help=f"Skip events that already failed N times (default: {settings.REPROCESS_MAX_ATTEMPTS}, 0 = no cap)",
    )
    parser.add_argument("--limit", type=int, default=100, help="Maximum events to replay (default: 100)")
    parser.add_argument("--dry-run", action="store_true", help="List pending events without replaying them")
    args = parser.parse_args()

    processor = WebhookProcessor.from_settings(settings, new_session)
    max_attempts = args.max_attempts or None

    if args.dry_run:
        pending = processor.ledger.pending_events(
            older_than_minutes=args.older_than, limit=args.limit, max_attempts=max_attempts
        )
        print(f"[Reprocess] {len(pending)} pending events")
        for record in pending:
            print(
                f"  {record.external_event_id} {record.event_type} "
                f"attempts={record.attempts} last_error={(record.last_error or '')[:80]}"
            )
        return 0

    results = processor.reprocess_pending(
        older_than_minutes=args.older_than, limit=args.limit, max_attempts=max_attempts
    )
    counts = Counter(result.outcome.value for result in results)
    print(f"[Reprocess] Replayed {len(results)} events: {dict(counts)}")
    for result in results:
        if not result.acknowledged:
            print(f"  {result.event_id} {result.event_type}: {result.outcome.value} - {result.detail}")

    # Non-zero exit lets a scheduler flag runs that left work behind
    return 0 if all(result.acknowledged for result in results) else 1


if __name__ == "__main__":
    sys.exit(main())

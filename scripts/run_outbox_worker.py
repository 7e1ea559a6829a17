#!/usr/bin/env python3
"""
Deferred Effect Worker - Retries receipts, analytics and failure notices.

Run with: python scripts/run_outbox_worker.py

Webhook handlers park failed secondary effects in the deferred_effect table
instead of dropping them. This worker drains it with a bounded number of
attempts per effect. Effects are claimed with SELECT FOR UPDATE SKIP LOCKED,
so multiple workers can run side by side.

Usage:
    python scripts/run_outbox_worker.py                 # Run until Ctrl+C
    python scripts/run_outbox_worker.py --once          # Drain one batch and exit
    python scripts/run_outbox_worker.py --batch-size 20 --idle-seconds 10
"""

import argparse
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from giving.core.config import Settings, settings  # noqa: E402
from giving.db import SessionFactory, new_session  # noqa: E402
from giving.services.analytics import DatabaseAnalyticsSink  # noqa: E402
from giving.services.email import ResendEmailSender, recurring_gifts_url  # noqa: E402
from giving.services.outbox import DeferredEffectRunner, Outbox  # noqa: E402
from giving.services.receipts import ReceiptNotifier  # noqa: E402

# Global shutdown flag
shutdown_requested = False


def handle_shutdown(signum, frame):
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    global shutdown_requested
    print("\n[Outbox] Shutdown requested, finishing current batch...")
    shutdown_requested = True


def build_runner(config: Settings, session_factory: SessionFactory) -> DeferredEffectRunner:
    email_sender = ResendEmailSender(config.RESEND_API_KEY)
    outbox = Outbox(session_factory, max_attempts=config.OUTBOX_MAX_ATTEMPTS)
    notifier = ReceiptNotifier(
        email_sender,
        fallback_domain=config.RECEIPT_FROM_DOMAIN,
        default_organization_name=config.DEFAULT_ORGANIZATION_NAME,
    )
    return DeferredEffectRunner(
        outbox,
        session_factory,
        notifier=notifier,
        analytics=DatabaseAnalyticsSink(session_factory),
        email_sender=email_sender,
        notice_from=config.NOTICE_FROM_EMAIL,
        update_payment_url=recurring_gifts_url(config.APP_BASE_URL),
    )


def worker_loop(runner: DeferredEffectRunner, outbox: Outbox, batch_size: int, idle_seconds: float, once: bool):
    """Claim and run effects until shutdown (or one batch, with --once)."""
    reset = outbox.reset_stale(timeout_minutes=30)
    if reset:
        print(f"[Outbox] Reset {reset} stale effects from previous run")
    print(f"[Outbox] Queue stats: {outbox.stats()}")

    completed_total = failed_total = 0
    idle_count = 0

    while not shutdown_requested:
        counts = runner.run_batch(limit=batch_size)
        completed_total += counts["completed"]
        failed_total += counts["failed"]

        if once:
            break

        if counts["completed"] or counts["failed"]:
            idle_count = 0
            print(f"[Outbox] Batch done: {counts}")
            continue

        idle_count += 1
        # Log about once a minute when idle
        if idle_count % max(1, int(60 / idle_seconds)) == 1:
            print(f"[Outbox] Queue empty, waiting... (stats: {outbox.stats()})")
        time.sleep(idle_seconds)

    print(f"[Outbox] Shutting down... Completed: {completed_total}, Failed attempts: {failed_total}")


def main():
    parser = argparse.ArgumentParser(description="Deferred Effect Worker - Retry parked receipts and notices")
    parser.add_argument("--batch-size", type=int, default=50, help="Effects per batch (default: 50)")
    parser.add_argument("--idle-seconds", type=float, default=5.0, help="Sleep when the queue is empty (default: 5)")
    parser.add_argument("--once", action="store_true", help="Run a single batch and exit")
    args = parser.parse_args()

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    print(f"[Outbox] Starting at {datetime.now(timezone.utc).isoformat()}")
    print("[Outbox] Press Ctrl+C to gracefully shutdown")

    outbox = Outbox(new_session, max_attempts=settings.OUTBOX_MAX_ATTEMPTS)
    runner = build_runner(settings, new_session)
    worker_loop(runner, outbox, args.batch_size, args.idle_seconds, args.once)


if __name__ == "__main__":
    main()

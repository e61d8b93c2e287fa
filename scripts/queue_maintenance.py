"""Drain the subscription queue or run its sweeps from the command line."""

import argparse

from dotenv import load_dotenv

from license_billing.config import settings
from license_billing.db import SessionLocal
from license_billing.logging import configure_logging
from license_billing.services.queue import QueueService


def parse_args():
    parser = argparse.ArgumentParser(description="Subscription queue maintenance.")
    parser.add_argument(
        "action",
        choices=["drain", "requeue-stale", "sweep-orphans", "status"],
        help="What to run.",
    )
    parser.add_argument("--limit", type=int, default=10, help="Rows to drain.")
    parser.add_argument("--payment-intent", help="Payment intent id for status.")
    return parser.parse_args()


def main():
    load_dotenv()
    configure_logging(settings.log_level)
    args = parse_args()
    db = SessionLocal()
    try:
        svc = QueueService(db)
        if args.action == "drain":
            print(svc.process_batch(limit=args.limit).as_dict())
        elif args.action == "requeue-stale":
            print(f"Requeued {svc.requeue_stale_processing()} rows.")
        elif args.action == "sweep-orphans":
            print(f"Removed {svc.sweep_orphaned_items()} orphaned items.")
        else:
            if not args.payment_intent:
                raise SystemExit("--payment-intent is required for status")
            print(svc.status_for_payment_intent(args.payment_intent))
        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Reconcile local payments against the payment gateway.

Usage:
    # Every completed payment that is not fully refunded
    python scripts/reconcile_refunds.py

    # One payment
    python scripts/reconcile_refunds.py --payment-id sq_pay_123

    # Refunds the gateway issued in a window (defaults to the last 30 days)
    python scripts/reconcile_refunds.py --begin 2025-10-01 --end 2025-10-31

    # Also resolve charges that were taken but never recorded locally
    python scripts/reconcile_refunds.py --recover-orphans
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

# Add the project root to the path so we can import registrar modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from registrar.database import db  # noqa: E402
from registrar.gateway import get_gateway  # noqa: E402
from registrar.services import payment_service, refund_service  # noqa: E402
from registrar.services.notification_dispatcher import get_notification_dispatcher  # noqa: E402
from registrar.utils.datetime_utils import ensure_aware  # noqa: E402


def parse_date(value: str) -> datetime:
    """Parse YYYY-MM-DD or a full ISO timestamp; naive values are taken as UTC."""
    try:
        return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date: {value}")


async def run(args) -> int:
    gateway = get_gateway()
    async with db.AsyncSessionLocal() as session:
        try:
            if args.recover_orphans:
                orphans = await payment_service.recover_orphaned_charges(session, gateway=gateway)
                print(f"Orphaned charges: {json.dumps(orphans.to_dict(), indent=2)}")

            if args.payment_id:
                result = await refund_service.reconcile_payment(session, args.payment_id, gateway=gateway)
                print(f"✅ Payment {result.gateway_payment_id}: {result.refund_status} refund, status {result.status}")
                print(f"   Refunded: {result.refunded_amount}")
                print(f"   Added: {result.refunds_added or 'none'}  Updated: {result.refunds_updated or 'none'}")
                if result.needs_review:
                    print(f"⚠️  Flagged for review: {result.conflicts}")
                return 0

            if args.begin or args.end:
                summary = await refund_service.reconcile_by_date_range(
                    session, begin=args.begin, end=args.end, gateway=gateway
                )
            else:
                summary = await refund_service.reconcile_all(session, delay_seconds=args.delay, gateway=gateway)
        except Exception as e:
            await session.rollback()
            print(f"❌ Error reconciling: {e}")
            raise
        finally:
            # Deliver queued refund/payment emails before exiting
            await get_notification_dispatcher().drain()
            await gateway.close()

    print(f"Refund sync: {json.dumps(summary.to_dict(), indent=2)}")
    return 1 if summary.failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile refunds with the payment gateway")
    parser.add_argument("--payment-id", type=str, help="Gateway payment id to reconcile", default=None)
    parser.add_argument("--begin", type=parse_date, help="Window start (YYYY-MM-DD or ISO timestamp)", default=None)
    parser.add_argument("--end", type=parse_date, help="Window end (YYYY-MM-DD or ISO timestamp)", default=None)
    parser.add_argument("--delay", type=float, help="Seconds between gateway calls in a full sweep", default=None)
    parser.add_argument(
        "--recover-orphans",
        action="store_true",
        help="Resolve charge attempts that were never recorded locally first",
    )
    args = parser.parse_args()

    if args.payment_id and (args.begin or args.end):
        parser.error("--payment-id cannot be combined with --begin/--end")

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())

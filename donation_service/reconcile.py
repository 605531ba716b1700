"""Poll Razorpay for PENDING donations and settle them.

    python -m donation_service.reconcile --max 100 --minutes 120
"""
import argparse
import logging
import sys

from donation_service.errors import DonationError
from donation_service.models import DonationStatus

logger = logging.getLogger(__name__)


def reconcile_pending(service, limit=100, minutes=120, out=sys.stdout):
    checked = 0
    updated = 0
    for donation in service.store.list_pending(created_within_minutes=minutes, limit=limit):
        checked += 1
        try:
            synced, payment_status = service.poll_and_sync_status(donation.order_id)
        except DonationError as exc:
            logger.warning("Could not reconcile donation %s: %s", donation.id, exc)
            out.write(f"{donation.id}: error {exc}\n")
            continue
        if synced.status != DonationStatus.PENDING.value:
            updated += 1
        out.write(f"Donation {donation.id} ({donation.order_id}): {synced.status} [{payment_status}]\n")
    out.write(f"Checked {checked}, updated {updated} donations.\n")
    return checked, updated


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reconcile PENDING donations against Razorpay")
    parser.add_argument("--max", type=int, default=100, help="Max donations to process")
    parser.add_argument("--minutes", type=int, default=120, help="Only donations created within last N minutes (0=all)")
    args = parser.parse_args(argv)

    from donation_service.config import get_settings
    from donation_service.dependencies import get_reconciliation_service

    logging.basicConfig(level=get_settings().log_level)
    service = get_reconciliation_service()
    reconcile_pending(service, limit=args.max, minutes=args.minutes)
    # Let queued thank-you emails go out before the process ends
    service.executor.shutdown(wait=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())

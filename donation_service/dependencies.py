from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache

import razorpay

from donation_service.config import get_settings
from donation_service.database import SessionLocal
from donation_service.notifier import SendGridNotifier
from donation_service.razorpay_gateway import RazorpayGateway
from donation_service.reconciliation import ReconciliationService
from donation_service.store import DonationStore


@lru_cache()
def get_reconciliation_service() -> ReconciliationService:
    """Build the process-wide service; clients and pools live until exit."""
    settings = get_settings()
    gateway = RazorpayGateway(
        razorpay.Client(auth=(settings.razorpay_key_id, settings.razorpay_key_secret)),
        key_secret=settings.razorpay_key_secret,
        webhook_secret=settings.razorpay_webhook_secret,
        currency=settings.currency,
        max_attempts=settings.gateway_max_attempts,
        backoff=settings.gateway_backoff_seconds,
    )
    store = DonationStore(
        SessionLocal,
        attempts=settings.gateway_max_attempts,
        backoff=settings.gateway_backoff_seconds,
    )
    notifier = SendGridNotifier(
        settings.sendgrid_api_key,
        settings.email_from,
        admin_emails=settings.admin_emails,
    )
    return ReconciliationService(
        store,
        gateway,
        notifier,
        min_amount_minor=settings.min_amount_minor,
        executor=ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify"),
    )

"""Donation / payment-order reconciliation.

Creates a donation together with its Razorpay order and settles the donation
from whichever channel reports the outcome first: the client verify call, the
checkout redirect, the webhook, or status polling. The channels are not
ordered against each other; every status write is a conditional update from
the allowed source states, and side effects (emails) only follow a write that
actually applied.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import pydantic

from donation_service.errors import (
    AuthenticationError,
    DonationNotFound,
    OrphanedOrderError,
    PersistenceError,
    RefundNotAllowed,
    ValidationError,
)
from donation_service.models import ALLOWED_SOURCES, SETTLED, DonationStatus, utcnow
from donation_service.razorpay_gateway import (
    CAPTURED,
    FAILED,
    PENDING,
    GatewayPayment,
    GatewayRefund,
    from_minor_units,
    to_minor_units,
)
from donation_service.schemas import WebhookEvent

logger = logging.getLogger(__name__)

_OUTCOMES = {
    CAPTURED: DonationStatus.COMPLETED,
    FAILED: DonationStatus.FAILED,
}

# What a poll reports for a donation that no gateway signal can move any more
_SETTLED_PAYMENT_STATUS = {
    DonationStatus.COMPLETED.value: CAPTURED,
    DonationStatus.REFUNDED.value: "refunded",
    DonationStatus.FAILED.value: FAILED,
}


def parse_amount(amount) -> Decimal:
    if isinstance(amount, bool) or amount is None:
        raise ValidationError("Invalid amount: amount must be a number")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid amount: amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Invalid amount: amount must be greater than 0")
    # The stored amount has paisa precision; anything finer would be charged differently
    if value.as_tuple().exponent < -2:
        raise ValidationError("Invalid amount: at most two decimal places are allowed")
    return value


def normalize_donor_info(donor_info) -> dict:
    info = {}
    for key, value in dict(donor_info or {}).items():
        info[key] = value.strip() if isinstance(value, str) else value
    if isinstance(info.get("email"), str):
        info["email"] = info["email"].lower()
    if not info.get("name") or not info.get("email"):
        raise ValidationError("Invalid donor info: name and email are required")
    return info


@dataclass
class RefundResult:
    refund_id: str
    status: str
    amount: Decimal
    donation: object


class ReconciliationService:

    def __init__(self, store, gateway, notifier, min_amount_minor=100, executor=None):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.min_amount_minor = min_amount_minor
        self.executor = executor

    # ------------------------------------------------------------- creation

    def create_donation_and_order(self, amount, donor_info, donation_type=None, user_id=None):
        amount = parse_amount(amount)
        donor = normalize_donor_info(donor_info)
        donation_type = (donation_type or "general").strip().lower()

        amount_minor = to_minor_units(amount)
        if amount_minor < self.min_amount_minor:
            raise ValidationError(
                f"Amount must be at least {from_minor_units(self.min_amount_minor)}"
            )

        # The id goes into the order receipt, so an orphaned order still names it
        donation_id = uuid.uuid4().hex
        order = self.gateway.create_order(
            amount_minor,
            receipt=f"don_{donation_id}",
            notes={
                "donationId": donation_id,
                "donationType": donation_type,
                "donorName": donor["name"],
                "donorEmail": donor["email"],
            },
        )

        try:
            donation = self.store.create({
                "id": donation_id,
                "amount": amount,
                "currency": order.currency,
                "donor_info": donor,
                "donation_type": donation_type,
                "order_id": order.order_id,
                "user_id": user_id,
                "payment_details": {
                    "razorpay_order_id": order.order_id,
                    "amount_minor": order.amount_minor,
                    "order": order.raw,
                    "created_at": utcnow().isoformat(),
                },
            })
        except PersistenceError as exc:
            logger.error(
                "Orphaned order %s: donation %s for %d minor units could not be recorded (%s)",
                order.order_id, donation_id, amount_minor, exc,
            )
            raise OrphanedOrderError(order.order_id, donation_id) from exc

        logger.info("Donation %s created with order %s (%s %s)", donation.id, order.order_id, amount, order.currency)
        return donation, order

    # ------------------------------------------------------- reconciliation

    def verify_and_finalize_payment(self, payment_id, order_id=None, donation_id=None, signature=None):
        """Settle a donation from a client-reported payment id.

        ``signature`` is the checkout's ``razorpay_signature``; when given it
        must match ``order_id|payment_id``. The outcome itself always comes
        from the gateway, never from the client.
        """
        if not payment_id:
            raise ValidationError("paymentId is required")
        if signature is not None:
            if not order_id or not self.gateway.verify_payment_signature(order_id, payment_id, signature):
                raise AuthenticationError("Invalid payment signature")

        donation = self._find(donation_id=donation_id, order_id=order_id)
        if donation.status in SETTLED:
            return donation

        payment = self.gateway.fetch_payment(payment_id)
        if payment.order_id and payment.order_id != donation.order_id:
            raise ValidationError(f"Payment {payment_id} does not belong to order {donation.order_id}")
        return self._apply_payment(donation, payment, source="verify")

    def handle_webhook_event(self, raw_body, signature):
        if not self.gateway.verify_webhook(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise AuthenticationError("Invalid webhook signature")

        try:
            event = WebhookEvent.model_validate_json(raw_body)
        except pydantic.ValidationError as exc:
            logger.warning("Ignoring malformed webhook payload (%d error(s))", exc.error_count())
            return

        handlers = {
            "payment.captured": self._on_payment_captured,
            "payment.failed": self._on_payment_failed,
            "refund.processed": self._on_refund_processed,
        }
        handler = handlers.get(event.event)
        if handler is None:
            logger.info("Unhandled webhook event %s", event.event)
            return
        handler(event)

    def poll_and_sync_status(self, identifier):
        """Return ``(donation, payment_status)`` after syncing with the gateway.

        ``identifier`` may be the order id, the payment id or the donation id.
        """
        donation = (
            self.store.get_by_order_id(identifier)
            or self.store.get_by_payment_id(identifier)
            or self.store.get_by_id(identifier)
        )
        if donation is None:
            raise DonationNotFound(identifier)
        if donation.status in SETTLED:
            return donation, _SETTLED_PAYMENT_STATUS[donation.status]

        payment = self._latest_payment(donation)
        if payment is None:
            return donation, PENDING
        return self._apply_payment(donation, payment, source="poll"), payment.status

    def cancel_donation(self, donation_id, reason=None):
        donation = self._find(donation_id=donation_id)
        return self._transition(
            donation,
            DonationStatus.CANCELLED,
            payment_details={
                "cancelled_at": utcnow().isoformat(),
                "cancel_reason": reason or "checkout dismissed",
            },
        )

    # --------------------------------------------------------------- refunds

    def initiate_refund(self, donation_id, amount=None, reason=None, actor=None):
        donation = self._find(donation_id=donation_id)
        if donation.status != DonationStatus.COMPLETED.value:
            raise RefundNotAllowed("Only completed donations can be refunded")
        if not donation.payment_id:
            raise RefundNotAllowed("Donation has no captured payment to refund")

        refund_amount = donation.amount if amount is None else parse_amount(amount)
        if refund_amount > donation.amount:
            raise RefundNotAllowed("Refund amount cannot exceed the donation amount")
        reason = reason or "Refund requested by admin"

        refund = self.gateway.refund(
            donation.payment_id,
            to_minor_units(refund_amount),
            notes={"reason": reason, "initiatedBy": str(actor or ""), "donationId": donation.id},
        )
        details = {
            "refund_id": refund.refund_id,
            "amount": float(refund_amount),
            "reason": reason,
            "status": refund.status,
            "initiated_by": actor,
            "initiated_at": utcnow().isoformat(),
        }

        try:
            updated, applied = self.store.transition(
                donation.id,
                DonationStatus.REFUNDED,
                ALLOWED_SOURCES[DonationStatus.REFUNDED],
                refund_details=details,
            )
            if not applied:
                # refund.processed webhook got there first
                updated = self.store.update(donation.id, refund_details=details)
        except PersistenceError:
            logger.error(
                "Untracked refund %s for donation %s (payment %s): gateway refund succeeded but was not recorded",
                refund.refund_id, donation.id, donation.payment_id,
            )
            raise

        logger.info("Refund %s initiated for donation %s by %s", refund.refund_id, donation.id, actor)
        self._notify("refund_initiated", updated, details)
        return RefundResult(refund_id=refund.refund_id, status=refund.status, amount=refund_amount, donation=updated)

    def sync_refund_status(self, donation_id):
        donation = self._find(donation_id=donation_id)
        details = donation.refund_details or {}
        if not details.get("refund_id"):
            raise RefundNotAllowed("No refund found for this donation")

        refund = self.gateway.fetch_refund(details["refund_id"])
        if refund.status != details.get("status"):
            donation = self.store.update(
                donation.id,
                refund_details={"status": refund.status, "last_checked": utcnow().isoformat()},
            )
        return donation, refund

    # --------------------------------------------------------------- webhook

    def _on_payment_captured(self, event):
        payment = GatewayPayment.from_entity({**event.entity("payment"), "status": "captured"})
        donation = self._match_order(payment, event.event)
        if donation is not None:
            self._apply_payment(donation, payment, source="webhook")

    def _on_payment_failed(self, event):
        payment = GatewayPayment.from_entity({**event.entity("payment"), "status": "failed"})
        donation = self._match_order(payment, event.event)
        if donation is not None:
            self._apply_payment(donation, payment, source="webhook")

    def _on_refund_processed(self, event):
        refund = GatewayRefund.from_entity(event.entity("refund"))
        donation = self.store.get_by_payment_id(refund.payment_id) if refund.payment_id else None
        if donation is None:
            # Acknowledged anyway, otherwise the gateway retries forever
            logger.warning("No donation for refunded payment %s (refund %s)", refund.payment_id, refund.refund_id)
            return

        details = {
            "refund_id": refund.refund_id,
            "amount": float(from_minor_units(refund.amount_minor)),
            "status": refund.status,
            "processed_at": utcnow().isoformat(),
        }
        if donation.status == DonationStatus.COMPLETED.value:
            donation, applied = self.store.transition(
                donation.id,
                DonationStatus.REFUNDED,
                ALLOWED_SOURCES[DonationStatus.REFUNDED],
                refund_details=details,
            )
            if applied:
                logger.info("Donation %s refunded (refund %s)", donation.id, refund.refund_id)
                return
        if donation.status != DonationStatus.REFUNDED.value:
            logger.warning(
                "Refund %s processed for donation %s in status %s; recording it without a status change",
                refund.refund_id, donation.id, donation.status,
            )
        self.store.update(donation.id, refund_details=details)

    def _match_order(self, payment, event_name):
        donation = self.store.get_by_order_id(payment.order_id) if payment.order_id else None
        if donation is None:
            logger.warning("No donation for %s on order %s (payment %s)", event_name, payment.order_id, payment.payment_id)
        return donation

    # --------------------------------------------------------------- helpers

    def _find(self, donation_id=None, order_id=None):
        donation = None
        if donation_id:
            donation = self.store.get_by_id(donation_id)
        if donation is None and order_id:
            donation = self.store.get_by_order_id(order_id)
        if donation is None:
            raise DonationNotFound(donation_id or order_id)
        return donation

    def _latest_payment(self, donation):
        if donation.payment_id:
            return self.gateway.fetch_payment(donation.payment_id)
        payments = self.gateway.fetch_order_payments(donation.order_id)
        if not payments:
            return None
        for payment in payments:
            if payment.status == CAPTURED:
                return payment
        return max(payments, key=lambda p: p.raw.get("created_at") or 0)

    def _apply_payment(self, donation, payment, source):
        target = _OUTCOMES.get(payment.status)
        if target is None:
            return donation

        if target is DonationStatus.COMPLETED:
            expected = to_minor_units(donation.amount)
            if payment.amount_minor and payment.amount_minor != expected:
                logger.warning(
                    "Amount mismatch on donation %s: expected %d, captured %d",
                    donation.id, expected, payment.amount_minor,
                )
            details = {
                "razorpay_payment_id": payment.payment_id,
                "razorpay_order_id": payment.order_id or donation.order_id,
                "method": payment.method,
                "amount": float(from_minor_units(payment.amount_minor)),
                "currency": payment.currency,
                "captured": True,
                "captured_at": utcnow().isoformat(),
                "confirmed_via": source,
            }
            return self._transition(donation, target, payment_id=payment.payment_id, payment_details=details)

        raw = payment.raw
        details = {
            "razorpay_payment_id": payment.payment_id,
            "error": {
                "code": raw.get("error_code"),
                "description": raw.get("error_description"),
                "reason": raw.get("error_reason"),
                "source": raw.get("error_source"),
                "step": raw.get("error_step"),
            },
            "failed_at": utcnow().isoformat(),
            "confirmed_via": source,
        }
        return self._transition(donation, target, payment_details=details)

    def _transition(self, donation, target, **fields):
        updated, applied = self.store.transition(donation.id, target, ALLOWED_SOURCES[target], **fields)
        if not applied:
            if updated.status == target.value:
                logger.info("Donation %s already %s", donation.id, target.value)
            else:
                logger.warning(
                    "Ignoring transition %s -> %s for donation %s",
                    updated.status, target.value, donation.id,
                )
            return updated

        logger.info("Donation %s: %s -> %s", donation.id, donation.status, target.value)
        if target is DonationStatus.COMPLETED:
            self._notify("donation_completed", updated)
        return updated

    def _notify(self, event, donation, *args):
        if self.executor is None:
            self._deliver(event, donation, *args)
            return
        try:
            self.executor.submit(self._deliver, event, donation, *args)
        except RuntimeError:
            logger.exception("Could not schedule %s notification for donation %s", event, donation.id)

    def _deliver(self, event, donation, *args):
        try:
            getattr(self.notifier, event)(donation, *args)
        except Exception:
            logger.exception("Notifier %s failed for donation %s", event, donation.id)

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import requests
from razorpay import errors as razorpay_errors

from donation_service.errors import GatewayError
from donation_service.retry import call_with_retry

logger = logging.getLogger(__name__)

CAPTURED = "captured"
FAILED = "failed"
PENDING = "pending"

# Razorpay payment states folded into the three outcomes reconciliation cares about
_PAYMENT_STATES = {
    "captured": CAPTURED,
    "refunded": CAPTURED,
    "failed": FAILED,
}


def to_minor_units(amount) -> int:
    """Rupees -> paise, rounded half-up to the nearest paisa."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor) -> Decimal:
    return (Decimal(int(amount_minor)) / 100).quantize(Decimal("0.01"))


def verify_signature(payload, signature, secret) -> bool:
    """HMAC-SHA256 hex check, compared in constant time."""
    if not signature or not secret:
        return False
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))


@dataclass
class GatewayOrder:
    order_id: str
    amount_minor: int
    currency: str
    status: str
    raw: dict = field(default_factory=dict)


@dataclass
class GatewayPayment:
    payment_id: str
    order_id: Optional[str]
    status: str
    amount_minor: int
    currency: str
    method: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_entity(cls, entity):
        return cls(
            payment_id=entity.get("id"),
            order_id=entity.get("order_id"),
            status=_PAYMENT_STATES.get(str(entity.get("status", "")).lower(), PENDING),
            amount_minor=int(entity.get("amount") or 0),
            currency=entity.get("currency") or "",
            method=entity.get("method"),
            raw=dict(entity),
        )


@dataclass
class GatewayRefund:
    refund_id: str
    payment_id: Optional[str]
    amount_minor: int
    status: str
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_entity(cls, entity):
        return cls(
            refund_id=entity.get("id"),
            payment_id=entity.get("payment_id"),
            amount_minor=int(entity.get("amount") or 0),
            status=entity.get("status") or "",
            raw=dict(entity),
        )


class RazorpayGateway:
    """Thin wrapper over ``razorpay.Client``.

    Knows nothing about donations. Provider rejections become non-transient
    ``GatewayError``; provider 5xx and transport failures are transient and
    retried with exponential backoff (refund creation excepted).
    """

    def __init__(self, client, key_secret="", webhook_secret="", currency="INR",
                 max_attempts=3, backoff=0.5):
        self.client = client
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.max_attempts = max_attempts
        self.backoff = backoff

    def _invoke(self, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except razorpay_errors.BadRequestError as exc:
            raise GatewayError(f"Razorpay rejected the request: {exc}") from exc
        except (razorpay_errors.ServerError, razorpay_errors.GatewayError) as exc:
            raise GatewayError(f"Razorpay error: {exc}", transient=True) from exc
        except requests.RequestException as exc:
            raise GatewayError(f"Razorpay unreachable: {exc}", transient=True) from exc

    def _call(self, func, *args, retry=True, **kwargs):
        return call_with_retry(
            self._invoke, func, *args,
            attempts=self.max_attempts if retry else 1,
            backoff=self.backoff,
            should_retry=lambda exc: isinstance(exc, GatewayError) and exc.transient,
            **kwargs,
        )

    def create_order(self, amount_minor: int, receipt: str = None, notes: dict = None) -> GatewayOrder:
        if not isinstance(amount_minor, int) or amount_minor <= 0:
            raise GatewayError(f"Order amount must be a positive integer in minor units, got {amount_minor!r}")
        data = {
            "amount": amount_minor,
            "currency": self.currency,
            "payment_capture": 1,
            "notes": notes or {},
        }
        if receipt:
            data["receipt"] = receipt
        response = self._call(self.client.order.create, data=data)
        logger.info("Razorpay order %s created for %d %s", response.get("id"), amount_minor, self.currency)
        return GatewayOrder(
            order_id=response["id"],
            amount_minor=int(response.get("amount", amount_minor)),
            currency=response.get("currency", self.currency),
            status=response.get("status", "created"),
            raw=dict(response),
        )

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        return GatewayPayment.from_entity(self._call(self.client.payment.fetch, payment_id))

    def fetch_order_payments(self, order_id: str):
        response = self._call(self.client.order.payments, order_id)
        items = response.get("items") or []
        return [GatewayPayment.from_entity(item) for item in items]

    def refund(self, payment_id: str, amount_minor: int, notes: dict = None) -> GatewayRefund:
        # Not retried: a timed-out refund may still have been issued
        response = self._call(
            self.client.payment.refund, payment_id,
            {"amount": amount_minor, "notes": notes or {}},
            retry=False,
        )
        return GatewayRefund.from_entity(response)

    def fetch_refund(self, refund_id: str) -> GatewayRefund:
        return GatewayRefund.from_entity(self._call(self.client.refund.fetch, refund_id))

    def verify_webhook(self, raw_body, signature) -> bool:
        return verify_signature(raw_body, signature, self.webhook_secret)

    def verify_payment_signature(self, order_id, payment_id, signature) -> bool:
        return verify_signature(f"{order_id}|{payment_id}", signature, self.key_secret)

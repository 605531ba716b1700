from decimal import Decimal

import pytest
import requests
from razorpay import errors as razorpay_errors

from donation_service.errors import GatewayError
from donation_service.razorpay_gateway import (
    CAPTURED,
    FAILED,
    PENDING,
    GatewayPayment,
    from_minor_units,
    to_minor_units,
    verify_signature,
)
from donation_service.retry import call_with_retry

from conftest import KEY_SECRET, checkout_signature, order_response, payment_entity, refund_entity, sign


@pytest.mark.parametrize("amount, expected", [
    (Decimal("500"), 50000),
    ("10.50", 1050),
    (Decimal("0.005"), 1),
    (99.99, 9999),
])
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


def test_from_minor_units():
    assert from_minor_units(1050) == Decimal("10.50")


def test_create_order_sends_minor_units(gateway, razorpay_client):
    razorpay_client.order.create.return_value = order_response(amount=1050)

    order = gateway.create_order(1050, receipt="don_abc", notes={"donationId": "abc"})

    razorpay_client.order.create.assert_called_once_with(data={
        "amount": 1050,
        "currency": "INR",
        "payment_capture": 1,
        "notes": {"donationId": "abc"},
        "receipt": "don_abc",
    })
    assert order.order_id == "order_1"
    assert order.amount_minor == 1050
    assert order.currency == "INR"


@pytest.mark.parametrize("amount", [0, -5, 10.5])
def test_create_order_rejects_bad_amount(gateway, razorpay_client, amount):
    with pytest.raises(GatewayError):
        gateway.create_order(amount)
    razorpay_client.order.create.assert_not_called()


def test_bad_request_is_not_retried(gateway, razorpay_client):
    razorpay_client.order.create.side_effect = razorpay_errors.BadRequestError("The amount must be at least INR 1.00")

    with pytest.raises(GatewayError) as exc_info:
        gateway.create_order(100)

    assert not exc_info.value.transient
    assert razorpay_client.order.create.call_count == 1


def test_server_error_is_retried(gateway, razorpay_client):
    razorpay_client.payment.fetch.side_effect = [
        razorpay_errors.ServerError("upstream 502"),
        requests.ConnectionError("reset"),
        payment_entity(),
    ]

    payment = gateway.fetch_payment("pay_1")

    assert payment.status == CAPTURED
    assert razorpay_client.payment.fetch.call_count == 3


def test_transient_error_exhausts_attempts(gateway, razorpay_client):
    razorpay_client.payment.fetch.side_effect = requests.Timeout("slow")

    with pytest.raises(GatewayError) as exc_info:
        gateway.fetch_payment("pay_1")

    assert exc_info.value.transient
    assert razorpay_client.payment.fetch.call_count == 3


def test_refund_is_never_retried(gateway, razorpay_client):
    razorpay_client.payment.refund.side_effect = requests.Timeout("slow")

    with pytest.raises(GatewayError):
        gateway.refund("pay_1", 50000)

    assert razorpay_client.payment.refund.call_count == 1


def test_refund_and_fetch_refund(gateway, razorpay_client):
    razorpay_client.payment.refund.return_value = refund_entity(status="pending")
    razorpay_client.refund.fetch.return_value = refund_entity(status="processed")

    refund = gateway.refund("pay_1", 50000, notes={"reason": "duplicate"})
    razorpay_client.payment.refund.assert_called_once_with("pay_1", {"amount": 50000, "notes": {"reason": "duplicate"}})
    assert refund.refund_id == "rfnd_1"
    assert refund.status == "pending"

    assert gateway.fetch_refund("rfnd_1").status == "processed"


@pytest.mark.parametrize("raw_status, expected", [
    ("captured", CAPTURED),
    ("refunded", CAPTURED),
    ("failed", FAILED),
    ("authorized", PENDING),
    ("created", PENDING),
])
def test_payment_status_normalization(raw_status, expected):
    assert GatewayPayment.from_entity(payment_entity(status=raw_status)).status == expected


def test_fetch_order_payments(gateway, razorpay_client):
    razorpay_client.order.payments.return_value = {
        "entity": "collection",
        "count": 2,
        "items": [payment_entity("pay_a", status="failed"), payment_entity("pay_b")],
    }

    payments = gateway.fetch_order_payments("order_1")

    assert [p.payment_id for p in payments] == ["pay_a", "pay_b"]
    razorpay_client.order.payments.assert_called_once_with("order_1")


def test_verify_signature():
    body = b'{"event":"payment.captured"}'
    assert verify_signature(body, sign(body, "s3cret"), "s3cret")
    assert not verify_signature(body, sign(body, "other"), "s3cret")
    assert not verify_signature(body + b" ", sign(body, "s3cret"), "s3cret")
    assert not verify_signature(body, "", "s3cret")
    assert not verify_signature(body, sign(body, "s3cret"), "")


def test_verify_payment_signature(gateway):
    assert gateway.verify_payment_signature("order_1", "pay_1", checkout_signature("order_1", "pay_1"))
    assert not gateway.verify_payment_signature("order_1", "pay_2", checkout_signature("order_1", "pay_1"))
    assert KEY_SECRET != gateway.webhook_secret


def test_call_with_retry_backoff(mocker):
    sleep = mocker.Mock()
    func = mocker.Mock(side_effect=[ValueError("a"), ValueError("b"), "ok"])

    result = call_with_retry(func, attempts=3, backoff=0.5, should_retry=lambda exc: True, sleep=sleep)

    assert result == "ok"
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


def test_call_with_retry_stops_on_permanent_error(mocker):
    func = mocker.Mock(side_effect=KeyError("x"))

    with pytest.raises(KeyError):
        call_with_retry(func, attempts=5, should_retry=lambda exc: isinstance(exc, ValueError), sleep=mocker.Mock())

    assert func.call_count == 1

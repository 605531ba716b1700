import hashlib
import hmac
import json
import os
from decimal import Decimal

# Must be set before any donation_service import reads the environment
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_donations.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("SENDGRID_API_KEY", "")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from donation_service.database import Base
from donation_service.dependencies import get_reconciliation_service
from donation_service.main import app as fastapi_app
from donation_service.notifier import SendGridNotifier
from donation_service.razorpay_gateway import RazorpayGateway
from donation_service.reconciliation import ReconciliationService
from donation_service.store import DonationStore

KEY_SECRET = os.environ["RAZORPAY_KEY_SECRET"]
WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]
JWT_SECRET = os.environ["JWT_SECRET"]

SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def razorpay_client(mocker):
    return mocker.Mock()


@pytest.fixture
def gateway(razorpay_client):
    return RazorpayGateway(
        razorpay_client,
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        currency="INR",
        max_attempts=3,
        backoff=0,
    )


@pytest.fixture
def store():
    return DonationStore(TestingSessionLocal, attempts=3, backoff=0)


@pytest.fixture
def notifier(mocker):
    return mocker.Mock(spec=SendGridNotifier)


@pytest.fixture
def service(store, gateway, notifier):
    # executor=None delivers notifications inline so tests can assert on them
    return ReconciliationService(store, gateway, notifier, min_amount_minor=100)


@pytest.fixture
def client(service):
    fastapi_app.dependency_overrides[get_reconciliation_service] = lambda: service
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def make_donation(store):
    """Insert a donation row directly, bypassing order creation."""

    def _make(donation_id="don_1", order_id="order_1", amount="500.00", status="PENDING", **extra):
        data = {
            "id": donation_id,
            "amount": Decimal(amount),
            "currency": "INR",
            "donor_info": {"name": "Asha Naik", "email": "asha@example.com"},
            "donation_type": "general",
            "order_id": order_id,
            "status": status,
            "payment_details": {"razorpay_order_id": order_id},
        }
        data.update(extra)
        return store.create(data)

    return _make


def order_response(order_id="order_1", amount=50000, currency="INR"):
    return {"id": order_id, "entity": "order", "amount": amount, "currency": currency, "status": "created"}


def payment_entity(payment_id="pay_1", order_id="order_1", status="captured", amount=50000, **extra):
    entity = {
        "id": payment_id,
        "entity": "payment",
        "order_id": order_id,
        "status": status,
        "amount": amount,
        "currency": "INR",
        "method": "upi",
        "created_at": 1700000000,
    }
    entity.update(extra)
    return entity


def refund_entity(refund_id="rfnd_1", payment_id="pay_1", amount=50000, status="processed"):
    return {"id": refund_id, "entity": "refund", "payment_id": payment_id, "amount": amount, "status": status}


def webhook_body(event, **entities):
    payload = {name: {"entity": entity} for name, entity in entities.items()}
    return json.dumps({"entity": "event", "event": event, "payload": payload, "created_at": 1700000000}).encode()


def sign(payload, secret=WEBHOOK_SECRET):
    if isinstance(payload, str):
        payload = payload.encode()
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def checkout_signature(order_id, payment_id):
    return sign(f"{order_id}|{payment_id}", KEY_SECRET)


def auth_header(admin=True, sub="admin_1"):
    claims = {"sub": sub, "role": "admin" if admin else "donor"}
    return {"Authorization": f"Bearer {jwt.encode(claims, JWT_SECRET, algorithm='HS256')}"}

import hashlib
import hmac
import itertools
import json
import time

import pytest

from app import create_app
from auth.identity import IdentityProvider, Principal
from billing.services.stripe_client import (
    METADATA_USER_KEY,
    ProviderCustomer,
    ProviderPaymentMethod,
    ProviderSubscription,
    StripeGateway,
)
from errors import NotFound, Unauthenticated
from extensions import db

WEBHOOK_SECRET = "whsec_test_secret"

USERS = {
    "token-u1": Principal(uid="u1", email="u1@example.com"),
    "token-u2": Principal(uid="u2", email="u2@example.com"),
    "token-noemail": Principal(uid="u3"),
}


class StaticIdentityProvider(IdentityProvider):
    def __init__(self, tokens):
        self.tokens = dict(tokens)

    def verify_token(self, token):
        principal = self.tokens.get(token)
        if principal is None:
            raise Unauthenticated("Unauthorized")
        return principal


class FakeStripeGateway(StripeGateway):
    """In-memory Stripe. Network methods are faked; signature verification is the real one."""

    def __init__(self, webhook_secret=WEBHOOK_SECRET):
        super().__init__(api_key=None, webhook_secret=webhook_secret)
        self._ids = itertools.count(1)
        self.customers = {}
        self.subscriptions = {}
        self.payment_methods = {}    # pm id -> customer id or None
        self.default_payment_method = {}
        self.idempotent = {}
        self.calls = []
        self.fail_with = None

    def _next(self, prefix):
        return f"{prefix}_{next(self._ids):04d}"

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail_with is not None:
            raise self.fail_with

    def find_customers_by_email(self, email, limit=10):
        self._record("find_customers_by_email", email)
        return [c for c in self.customers.values() if c.email == email][:limit]

    def create_customer(self, user_id, email=None, idempotency_key=None):
        self._record("create_customer", user_id)
        if idempotency_key and idempotency_key in self.idempotent:
            return self.idempotent[idempotency_key]
        customer = ProviderCustomer(id=self._next("cus"), email=email, metadata={METADATA_USER_KEY: user_id})
        self.customers[customer.id] = customer
        if idempotency_key:
            self.idempotent[idempotency_key] = customer
        return customer

    def add_customer(self, email, owner_uid=None):
        metadata = {METADATA_USER_KEY: owner_uid} if owner_uid else {}
        customer = ProviderCustomer(id=self._next("cus"), email=email, metadata=metadata)
        self.customers[customer.id] = customer
        return customer

    def tag_customer(self, customer_id, user_id):
        self._record("tag_customer", customer_id, user_id)
        old = self.customers[customer_id]
        self.customers[customer_id] = ProviderCustomer(old.id, old.email, {**old.metadata, METADATA_USER_KEY: user_id})

    def retrieve_customer(self, customer_id):
        self._record("retrieve_customer", customer_id)
        if customer_id not in self.customers:
            raise NotFound("Not found")
        return self.customers[customer_id]

    def create_subscription(self, customer_id, price_id, *, user_id, plan_code, idempotency_key=None):
        self._record("create_subscription", customer_id, price_id)
        if idempotency_key and idempotency_key in self.idempotent:
            return self.idempotent[idempotency_key]
        sub_id = self._next("sub")
        sub = ProviderSubscription(id=sub_id, customer_id=customer_id, status="incomplete",
                                   client_secret=f"pi_{sub_id}_secret_abc")
        self.subscriptions[sub_id] = sub
        if idempotency_key:
            self.idempotent[idempotency_key] = sub
        return sub

    def add_subscription(self, customer_id, status="active"):
        sub = ProviderSubscription(id=self._next("sub"), customer_id=customer_id, status=status)
        self.subscriptions[sub.id] = sub
        return sub

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id)
        if subscription_id not in self.subscriptions:
            raise NotFound("Not found")
        return self.subscriptions[subscription_id]

    def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id)
        old = self.subscriptions[subscription_id]
        canceled = ProviderSubscription(id=old.id, customer_id=old.customer_id, status="canceled")
        self.subscriptions[subscription_id] = canceled
        return canceled

    def create_ephemeral_key(self, customer_id):
        self._record("create_ephemeral_key", customer_id)
        return f"ek_test_{customer_id}"

    def retrieve_payment_method(self, payment_method_id):
        self._record("retrieve_payment_method", payment_method_id)
        if payment_method_id not in self.payment_methods:
            raise NotFound("Not found")
        return ProviderPaymentMethod(id=payment_method_id, customer_id=self.payment_methods[payment_method_id])

    def attach_payment_method(self, payment_method_id, customer_id):
        self._record("attach_payment_method", payment_method_id, customer_id)
        if self.payment_methods.get(payment_method_id):
            raise AssertionError("payment method already attached")
        self.payment_methods[payment_method_id] = customer_id

    def set_default_payment_method(self, customer_id, payment_method_id):
        self._record("set_default_payment_method", customer_id, payment_method_id)
        self.default_payment_method[customer_id] = payment_method_id

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def payments():
    return FakeStripeGateway()


@pytest.fixture
def identity():
    return StaticIdentityProvider(USERS)


@pytest.fixture
def app(tmp_path, payments, identity):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'billing.db'}",
        "RATELIMIT_ENABLED": False,
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "STRIPE_PRICE_PREMIUM_MONTHLY": "price_premium_monthly",
        "STRIPE_PRICE_PREMIUM_YEARLY": None,
    }, payments=payments, identity=identity)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def u1_headers():
    return bearer("token-u1")


@pytest.fixture
def u2_headers():
    return bearer("token-u2")


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does (HMAC-SHA256 over 't.payload')."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_id, event_type, obj, created=None):
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    }).encode("utf-8")


@pytest.fixture
def deliver(client):
    """POST a signed event to /webhook."""
    def _deliver(event_id, event_type, obj, created=None, secret=WEBHOOK_SECRET):
        payload = make_event(event_id, event_type, obj, created)
        return client.post("/webhook", data=payload, headers={
            "Stripe-Signature": sign_payload(payload, secret),
            "Content-Type": "application/json",
        })
    return _deliver


@pytest.fixture
def subscribed(client, u1_headers):
    """u1 with a fresh incomplete premium-monthly subscription."""
    resp = client.post("/create-subscription", json={"plan": "premium-monthly"}, headers=u1_headers)
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()

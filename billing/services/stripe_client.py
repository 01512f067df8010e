from __future__ import annotations
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import stripe

from errors import InvalidSignature, NotFound, ProviderError, ProviderTimeout, ValidationError
from ..lifecycle import from_epoch

log = logging.getLogger("billing.stripe")

STRIPE_API_VERSION = "2023-10-16"
# Mobile SDKs need ephemeral keys minted for the API version they were built against
EPHEMERAL_KEY_API_VERSION = "2023-10-16"
METADATA_USER_KEY = "firebaseUID"
GENERIC_PROVIDER_MESSAGE = "The payment provider could not complete the request"


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read `key` from a StripeObject or plain dict; unexpanded ids and missing keys give `default`."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError, IndexError):
        return default
    return default if value is None else value


@dataclass(frozen=True)
class ProviderCustomer:
    id: str
    email: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def owner_uid(self) -> Optional[str]:
        return self.metadata.get(METADATA_USER_KEY) or None


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    customer_id: str
    status: str
    client_secret: Optional[str] = None
    current_period_start: Optional[Any] = None
    current_period_end: Optional[Any] = None


@dataclass(frozen=True)
class ProviderPaymentMethod:
    id: str
    customer_id: Optional[str] = None


def customer_from_stripe(obj: Any) -> ProviderCustomer:
    metadata = _field(obj, "metadata", {}) or {}
    return ProviderCustomer(
        id=_field(obj, "id"),
        email=_field(obj, "email"),
        metadata={str(k): str(metadata[k]) for k in metadata.keys()} if metadata else {},
    )


def period_from_subscription(obj: Any):
    """(start, end) as aware datetimes; newer API versions moved these onto the items."""
    start = _field(obj, "current_period_start")
    end = _field(obj, "current_period_end")
    if start is None or end is None:
        items = _field(_field(obj, "items"), "data", []) or []
        if items:
            start = start if start is not None else _field(items[0], "current_period_start")
            end = end if end is not None else _field(items[0], "current_period_end")
    return from_epoch(start), from_epoch(end)


def subscription_from_stripe(obj: Any) -> ProviderSubscription:
    invoice = _field(obj, "latest_invoice")
    client_secret = (
        _field(_field(invoice, "payment_intent"), "client_secret")
        or _field(_field(invoice, "confirmation_secret"), "client_secret")
    )
    customer = _field(obj, "customer")
    start, end = period_from_subscription(obj)
    return ProviderSubscription(
        id=_field(obj, "id"),
        customer_id=customer if isinstance(customer, str) else _field(customer, "id"),
        status=_field(obj, "status", ""),
        client_secret=client_secret,
        current_period_start=start,
        current_period_end=end,
    )


def construct_event_from_request(payload: bytes, sig_header: Optional[str], secret: Optional[str],
                                 tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header against the raw payload, then parse it.
    Nothing in the payload is read before the signature checks out.
    """
    if not secret:
        log.error("[billing.stripe] webhook signing secret is not configured")
        raise ProviderError("Webhook endpoint is not configured")
    if not sig_header:
        raise InvalidSignature("Missing signature")
    if isinstance(payload, (bytes, bytearray)):
        # verify_header formats the payload into the signed string, so it must be text
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignature("Invalid signature") from e
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature("Invalid signature") from e
    try:
        event = json.loads(payload)
    except ValueError as e:
        raise ValidationError("Malformed event payload") from e
    if not isinstance(event, dict):
        raise ValidationError("Malformed event payload")
    return event


class StripeGateway:
    """
    Explicitly constructed Stripe client. Each service holds its own instance,
    so tests can swap in a double.
    """

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None, *,
                 api_version: str = STRIPE_API_VERSION, timeout: float = 10.0,
                 max_network_retries: int = 2, signature_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
                 client: Optional[stripe.StripeClient] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.timeout = timeout
        self.max_network_retries = max_network_retries
        self.signature_tolerance = signature_tolerance
        self._client = client

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "StripeGateway":
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            api_version=config.get("STRIPE_API_VERSION") or STRIPE_API_VERSION,
            timeout=float(config.get("STRIPE_TIMEOUT_SECONDS") or 10.0),
            max_network_retries=int(config.get("STRIPE_MAX_NETWORK_RETRIES") or 0),
            signature_tolerance=int(config.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS") or stripe.Webhook.DEFAULT_TOLERANCE),
        )

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self.api_key:
                log.error("[billing.stripe] STRIPE_SECRET_KEY is not configured")
                raise ProviderError("Payments are not configured")
            self._client = stripe.StripeClient(
                self.api_key,
                stripe_version=self.api_version,
                max_network_retries=self.max_network_retries,
                http_client=stripe.RequestsClient(timeout=self.timeout),
            )
        return self._client

    @contextmanager
    def _translate_errors(self, operation: str, **context):
        try:
            yield
        except stripe.APIConnectionError as e:
            log.warning("[billing.stripe] %s timed out / unreachable %s: %s", operation, context, e)
            raise ProviderTimeout("The payment provider did not respond in time") from e
        except stripe.InvalidRequestError as e:
            log.warning("[billing.stripe] %s rejected %s code=%s: %s", operation, context, e.code, e)
            if e.code == "resource_missing":
                raise NotFound("Not found") from e
            raise ProviderError(GENERIC_PROVIDER_MESSAGE) from e
        except stripe.CardError as e:
            # card errors are the only ones Stripe words for end users
            log.info("[billing.stripe] %s declined %s code=%s", operation, context, e.code)
            raise ProviderError(e.user_message or GENERIC_PROVIDER_MESSAGE) from e
        except stripe.StripeError as e:
            log.warning("[billing.stripe] %s failed %s type=%s: %s", operation, context, type(e).__name__, e)
            raise ProviderError(GENERIC_PROVIDER_MESSAGE) from e

    # customers
    def find_customers_by_email(self, email: str, limit: int = 10) -> List[ProviderCustomer]:
        with self._translate_errors("customers.list", email=email):
            result = self.client.customers.list(params={"email": email, "limit": limit})
        return [customer_from_stripe(c) for c in (_field(result, "data", []) or [])]

    def create_customer(self, user_id: str, email: Optional[str] = None,
                        idempotency_key: Optional[str] = None) -> ProviderCustomer:
        params: Dict[str, Any] = {"metadata": {METADATA_USER_KEY: user_id}}
        if email:
            params["email"] = email
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        with self._translate_errors("customers.create", user_id=user_id):
            return customer_from_stripe(self.client.customers.create(params=params, options=options))

    def tag_customer(self, customer_id: str, user_id: str) -> None:
        with self._translate_errors("customers.update", customer=customer_id):
            self.client.customers.update(customer_id, params={"metadata": {METADATA_USER_KEY: user_id}})

    def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        with self._translate_errors("customers.retrieve", customer=customer_id):
            return customer_from_stripe(self.client.customers.retrieve(customer_id))

    # subscriptions
    def create_subscription(self, customer_id: str, price_id: str, *, user_id: str, plan_code: str,
                            idempotency_key: Optional[str] = None) -> ProviderSubscription:
        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": {METADATA_USER_KEY: user_id, "plan": plan_code},
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        with self._translate_errors("subscriptions.create", user_id=user_id, customer=customer_id):
            return subscription_from_stripe(self.client.subscriptions.create(params=params, options=options))

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        with self._translate_errors("subscriptions.retrieve", subscription=subscription_id):
            return subscription_from_stripe(self.client.subscriptions.retrieve(subscription_id))

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        with self._translate_errors("subscriptions.cancel", subscription=subscription_id):
            return subscription_from_stripe(self.client.subscriptions.cancel(subscription_id))

    def create_ephemeral_key(self, customer_id: str) -> str:
        with self._translate_errors("ephemeral_keys.create", customer=customer_id):
            key = self.client.ephemeral_keys.create(
                params={"customer": customer_id},
                options={"stripe_version": EPHEMERAL_KEY_API_VERSION},
            )
        return _field(key, "secret")

    # payment methods
    def retrieve_payment_method(self, payment_method_id: str) -> ProviderPaymentMethod:
        with self._translate_errors("payment_methods.retrieve", payment_method=payment_method_id):
            pm = self.client.payment_methods.retrieve(payment_method_id)
        customer = _field(pm, "customer")
        return ProviderPaymentMethod(
            id=_field(pm, "id"),
            customer_id=customer if isinstance(customer, str) or customer is None else _field(customer, "id"),
        )

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        with self._translate_errors("payment_methods.attach", payment_method=payment_method_id, customer=customer_id):
            self.client.payment_methods.attach(payment_method_id, params={"customer": customer_id})

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        with self._translate_errors("customers.update", customer=customer_id):
            self.client.customers.update(
                customer_id,
                params={"invoice_settings": {"default_payment_method": payment_method_id}},
            )

    # webhooks
    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        return construct_event_from_request(payload, sig_header, self.webhook_secret, self.signature_tolerance)

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
from flask import current_app
from sqlalchemy.exc import IntegrityError

from errors import ValidationError
from . import BaseService
from .stripe_client import StripeGateway, _field, period_from_subscription
from ..lifecycle import EventOutcome, EventType, SubscriptionStatus, from_epoch
from ..models import ProcessedStripeEvent, Subscription
from ..repositories import BillingRepo


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: EventOutcome
    subscription_id: Optional[str] = None


Handled = Tuple[EventOutcome, Optional[str]]


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = _field(invoice, "subscription")
    if sub is None:
        # newer API versions nest it under parent.subscription_details
        sub = _field(_field(_field(invoice, "parent"), "subscription_details"), "subscription")
    return sub if isinstance(sub, str) or sub is None else _field(sub, "id")


def _invoice_period(invoice: Dict[str, Any]):
    lines = _field(_field(invoice, "lines"), "data", []) or []
    period = _field(lines[0], "period", {}) if lines else {}
    return from_epoch(_field(period, "start")), from_epoch(_field(period, "end"))


class WebhookReconciler(BaseService):
    """
    Applies signed Stripe events to local Subscription records.
    Safe under redelivery: an event id is applied at most once.
    """

    def __init__(self, gateway: StripeGateway):
        super().__init__()
        self.gateway = gateway
        self.repo = BillingRepo(self.session)

    def handle_event(self, payload: bytes, sig_header: Optional[str]) -> WebhookResult:
        event = self.gateway.verify_event(payload, sig_header)

        event_id = event.get("id")
        raw_type = event.get("type")
        if not event_id or not raw_type:
            raise ValidationError("Event is missing id or type")
        event_type = EventType.parse(raw_type)
        data_obj = (event.get("data") or {}).get("object") or {}
        event_at = from_epoch(event.get("created"))

        if self.repo.event_seen(event_id):
            return self._log(WebhookResult(event_id, raw_type, EventOutcome.DUPLICATE))

        handler = HANDLERS[event_type]

        def _apply() -> Handled:
            outcome, subscription_id = handler(self, data_obj, event_at)
            self.repo.add(ProcessedStripeEvent(
                event_id=event_id,
                event_type=raw_type,
                stripe_subscription_id=subscription_id,
                outcome=outcome.value,
            ))
            return outcome, subscription_id

        try:
            outcome, subscription_id = self.write_with_retry(_apply, what=f"event {event_id}")
        except IntegrityError:
            # a concurrent delivery of the same event committed first
            if self.repo.event_seen(event_id):
                return self._log(WebhookResult(event_id, raw_type, EventOutcome.DUPLICATE))
            raise
        return self._log(WebhookResult(event_id, raw_type, outcome, subscription_id))

    def _log(self, result: WebhookResult) -> WebhookResult:
        current_app.logger.info(
            "[billing.webhook] event=%s type=%s subscription=%s outcome=%s",
            result.event_id, result.event_type, result.subscription_id, result.outcome.value,
        )
        return result

    # ── handlers ──────────────────────────────────────────────
    def _apply_to_subscription(self, subscription_id: Optional[str], target: Optional[SubscriptionStatus],
                               period, event_at: Optional[datetime]) -> Handled:
        record = self.repo.subscription(subscription_id, lock=True)
        if record is None:
            current_app.logger.warning("[billing.webhook] unknown subscription=%s", subscription_id)
            return EventOutcome.IGNORED, subscription_id
        start, end = period
        changed = record.transition_to(target, period_start=start, period_end=end, event_at=event_at)
        return (EventOutcome.APPLIED if changed else EventOutcome.NOOP), subscription_id

    def on_subscription_changed(self, subscription: Dict[str, Any], event_at: Optional[datetime],
                                target: Optional[SubscriptionStatus] = None) -> Handled:
        subscription_id = _field(subscription, "id")
        raw_status = _field(subscription, "status")
        target = target or SubscriptionStatus.from_provider(raw_status)
        if target is None:
            current_app.logger.info("[billing.webhook] untracked status=%s subscription=%s",
                                    raw_status, subscription_id)
            return EventOutcome.NOOP, subscription_id

        if self.repo.subscription(subscription_id) is None:
            return self._adopt_subscription(subscription, target, event_at)
        return self._apply_to_subscription(subscription_id, target, period_from_subscription(subscription), event_at)

    def _adopt_subscription(self, subscription: Dict[str, Any], status: SubscriptionStatus,
                            event_at: Optional[datetime]) -> Handled:
        """Event arrived before (or without) the local create; record it if the customer is ours."""
        subscription_id = _field(subscription, "id")
        link = self.repo.link_for_customer(_field(subscription, "customer"))
        if link is None:
            current_app.logger.warning("[billing.webhook] subscription=%s for unlinked customer=%s",
                                       subscription_id, _field(subscription, "customer"))
            return EventOutcome.IGNORED, subscription_id
        start, end = period_from_subscription(subscription)
        self.repo.add(Subscription(
            stripe_subscription_id=subscription_id,
            user_id=link.user_id,
            stripe_customer_id=link.stripe_customer_id,
            plan_code=_field(_field(subscription, "metadata"), "plan"),
            status=status.value,
            current_period_start=start,
            current_period_end=end,
            last_event_at=event_at,
        ))
        return EventOutcome.APPLIED, subscription_id

    def on_subscription_deleted(self, subscription: Dict[str, Any], event_at: Optional[datetime]) -> Handled:
        return self.on_subscription_changed(subscription, event_at, target=SubscriptionStatus.CANCELED)

    def on_invoice_paid(self, invoice: Dict[str, Any], event_at: Optional[datetime]) -> Handled:
        return self._apply_to_subscription(_invoice_subscription_id(invoice), SubscriptionStatus.ACTIVE,
                                           _invoice_period(invoice), event_at)

    def on_invoice_payment_failed(self, invoice: Dict[str, Any], event_at: Optional[datetime]) -> Handled:
        return self._apply_to_subscription(_invoice_subscription_id(invoice), SubscriptionStatus.PAST_DUE,
                                           (None, None), event_at)

    def on_payment_intent_succeeded(self, intent: Dict[str, Any], event_at: Optional[datetime]) -> Handled:
        current_app.logger.info("[billing.webhook] payment_intent succeeded id=%s", _field(intent, "id"))
        return EventOutcome.LOGGED, None

    def on_payment_intent_failed(self, intent: Dict[str, Any], event_at: Optional[datetime]) -> Handled:
        error = _field(intent, "last_payment_error", {})
        current_app.logger.warning("[billing.webhook] payment_intent failed id=%s code=%s message=%s",
                                   _field(intent, "id"), _field(error, "code"), _field(error, "message"))
        return EventOutcome.LOGGED, None

    def on_unhandled(self, obj: Dict[str, Any], event_at: Optional[datetime]) -> Handled:
        current_app.logger.info("[billing.webhook] unhandled object=%s id=%s", _field(obj, "object"), _field(obj, "id"))
        return EventOutcome.IGNORED, None


HANDLERS: Dict[EventType, Callable[..., Handled]] = {
    EventType.SUBSCRIPTION_CREATED: WebhookReconciler.on_subscription_changed,
    EventType.SUBSCRIPTION_UPDATED: WebhookReconciler.on_subscription_changed,
    EventType.SUBSCRIPTION_DELETED: WebhookReconciler.on_subscription_deleted,
    EventType.INVOICE_PAID: WebhookReconciler.on_invoice_paid,
    EventType.INVOICE_PAYMENT_FAILED: WebhookReconciler.on_invoice_payment_failed,
    EventType.PAYMENT_INTENT_SUCCEEDED: WebhookReconciler.on_payment_intent_succeeded,
    EventType.PAYMENT_INTENT_FAILED: WebhookReconciler.on_payment_intent_failed,
    EventType.UNHANDLED: WebhookReconciler.on_unhandled,
}

_missing = set(EventType) - set(HANDLERS)
if _missing:
    raise RuntimeError(f"No webhook handler for {sorted(t.value for t in _missing)}")

from __future__ import annotations
import enum
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional


class SubscriptionStatus(str, enum.Enum):
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> Optional["SubscriptionStatus"]:
        """
        Map a Stripe subscription status onto ours.
        Returns None for statuses we don't track (e.g. 'paused').
        """
        if not raw:
            return None
        raw = str(raw).lower()
        alias = _PROVIDER_ALIASES.get(raw)
        if alias is not None:
            return alias
        try:
            return cls(raw)
        except ValueError:
            return None


_PROVIDER_ALIASES = {
    "trialing": SubscriptionStatus.ACTIVE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.ACTIVE, S.CANCELED}),
    S.ACTIVE:     frozenset({S.PAST_DUE, S.UNPAID, S.CANCELED}),
    S.PAST_DUE:   frozenset({S.ACTIVE, S.UNPAID, S.CANCELED}),
    S.UNPAID:     frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED:   frozenset(),  # terminal
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class EventType(enum.Enum):
    """Stripe webhook event types the reconciler knows about."""
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    UNHANDLED = "unhandled"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "EventType":
        try:
            return cls(raw)
        except ValueError:
            return cls.UNHANDLED


class EventOutcome(str, enum.Enum):
    APPLIED = "applied"
    NOOP = "noop"
    IGNORED = "ignored"
    LOGGED = "logged"
    DUPLICATE = "duplicate"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch(ts) -> Optional[datetime]:
    if ts in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, DateTime
from extensions import db
from .lifecycle import SubscriptionStatus, as_utc, can_transition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingCustomer(db.Model):
    """One Stripe customer per application user."""
    __tablename__ = "billing_customer"
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    stripe_customer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Subscription(db.Model):
    __tablename__ = "billing_subscription"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stripe_subscription_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    stripe_customer_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    plan_code: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SubscriptionStatus.INCOMPLETE.value)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    # UPDATEs carry "WHERE version = :old"; a concurrent writer raises StaleDataError
    __mapper_args__ = {"version_id_col": version}

    @property
    def status_enum(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)

    def transition_to(
        self,
        target: Optional[SubscriptionStatus],
        *,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        event_at: Optional[datetime] = None,
    ) -> bool:
        """
        Move towards `target` if the state machine allows it and advance the
        billing period if `period_end` is newer. Returns True when anything changed.
        Events older than the last applied one are ignored.
        """
        last = as_utc(self.last_event_at)
        if event_at is not None and last is not None and event_at < last:
            return False

        now = _utcnow()
        changed = False
        current = self.status_enum
        if target is not None and target is not current:
            if not can_transition(current, target):
                return False
            self.status = target.value
            if target is SubscriptionStatus.CANCELED:
                self.canceled_at = now
            changed = True

        if self.status_enum is not SubscriptionStatus.CANCELED and period_end is not None:
            known_end = as_utc(self.current_period_end)
            if known_end is None or period_end > known_end:
                self.current_period_start = period_start
                self.current_period_end = period_end
                changed = True

        if changed:
            if event_at is not None:
                self.last_event_at = event_at
            self.updated_at = now
        return changed

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value):
            value = as_utc(value)
            return value.isoformat() if value else None
        return {
            "id": self.stripe_subscription_id,
            "customerId": self.stripe_customer_id,
            "plan": self.plan_code,
            "status": self.status,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "canceledAt": _iso(self.canceled_at),
        }


class ProcessedStripeEvent(db.Model):
    __tablename__ = "billing_processed_event"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

from typing import Any, List, Optional
from sqlalchemy import select
from extensions import db
from .models import BillingCustomer, ProcessedStripeEvent, Subscription


def _supports_for_update(session) -> bool:
    try:
        # SQLite doesn't support SELECT ... FOR UPDATE
        return (session.get_bind().dialect.name or "").lower() not in ("sqlite",)
    except Exception:
        return False


class BaseRepo:
    def __init__(self, session=None):
        self.session = session or db.session

    def add(self, obj: Any):
        self.session.add(obj)
        return obj


class BillingRepo(BaseRepo):
    # customer links
    def link_for_user(self, user_id: str) -> Optional[BillingCustomer]:
        return self.session.get(BillingCustomer, user_id)

    def link_for_customer(self, customer_id: Optional[str]) -> Optional[BillingCustomer]:
        if not customer_id:
            return None
        return self.session.execute(
            select(BillingCustomer).where(BillingCustomer.stripe_customer_id == customer_id)
        ).scalar_one_or_none()

    # subscriptions
    def subscription(self, stripe_subscription_id: Optional[str], *, lock: bool = False) -> Optional[Subscription]:
        if not stripe_subscription_id:
            return None
        stmt = select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        if lock and _supports_for_update(self.session):
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def subscriptions_for_user(self, user_id: str) -> List[Subscription]:
        stmt = (select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.created_at.desc(), Subscription.id.desc()))
        return list(self.session.execute(stmt).scalars())

    # webhook events
    def event_seen(self, event_id: str) -> bool:
        stmt = select(ProcessedStripeEvent.id).where(ProcessedStripeEvent.event_id == event_id)
        return self.session.execute(stmt).first() is not None

from __future__ import annotations
from typing import Any, Dict, Optional
from flask import current_app
from sqlalchemy.exc import IntegrityError

from auth.identity import Principal
from errors import Forbidden, NotFound
from plans.catalog import resolve_plan
from . import BaseService
from .stripe_client import ProviderCustomer, ProviderSubscription, StripeGateway
from ..lifecycle import SubscriptionStatus
from ..models import BillingCustomer, Subscription
from ..repositories import BillingRepo


class SubscriptionService(BaseService):
    """
    User-initiated subscription operations. Identity always comes from the
    verified Principal; caller-supplied user ids are never consulted.
    """

    def __init__(self, gateway: StripeGateway):
        super().__init__()
        self.gateway = gateway
        self.repo = BillingRepo(self.session)

    # ── create ────────────────────────────────────────────────
    def create_subscription(self, principal: Principal, plan_code: Optional[str],
                            idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        plan, price_id = resolve_plan(self.text_field(plan_code, "plan"), current_app.config)
        idempotency_key = self.text_field(idempotency_key, "idempotencyKey", required=False)
        link = self.ensure_customer_link(principal)

        created = self.gateway.create_subscription(
            link.stripe_customer_id, price_id,
            user_id=principal.uid, plan_code=plan.code,
            idempotency_key=f"subscription-{principal.uid}-{idempotency_key}" if idempotency_key else None,
        )
        record = self._record_new_subscription(link, plan.code, created)
        ephemeral_key = self.gateway.create_ephemeral_key(link.stripe_customer_id)

        current_app.logger.info(
            "[billing.subscriptions] created user=%s customer=%s subscription=%s plan=%s status=%s",
            principal.uid, link.stripe_customer_id, record.stripe_subscription_id, plan.code, record.status,
        )
        return {
            "subscriptionId": record.stripe_subscription_id,
            "clientSecret": created.client_secret,
            "customerId": link.stripe_customer_id,
            "ephemeralKey": ephemeral_key,
        }

    def ensure_customer_link(self, principal: Principal) -> BillingCustomer:
        link = self.repo.link_for_user(principal.uid)
        if link:
            return link

        customer = self._recover_customer_by_email(principal)
        if customer is None:
            # Same key for concurrent first-time requests -> Stripe returns one customer
            customer = self.gateway.create_customer(
                principal.uid, principal.email, idempotency_key=f"customer-link-{principal.uid}"
            )

        link = self.repo.add(BillingCustomer(user_id=principal.uid, stripe_customer_id=customer.id))
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            link = self.repo.link_for_user(principal.uid)
            if link is None:
                raise
            current_app.logger.info("[billing.subscriptions] customer link raced user=%s customer=%s",
                                    principal.uid, link.stripe_customer_id)
            return link
        current_app.logger.info("[billing.subscriptions] linked user=%s customer=%s", principal.uid, customer.id)
        return link

    def _recover_customer_by_email(self, principal: Principal) -> Optional[ProviderCustomer]:
        """First-time linkage only: adopt an existing Stripe customer with this email if it is ours to take."""
        if not principal.email:
            return None
        for customer in self.gateway.find_customers_by_email(principal.email):
            if customer.owner_uid and customer.owner_uid != principal.uid:
                continue
            if self.repo.link_for_customer(customer.id) is not None:
                continue
            if not customer.owner_uid:
                self.gateway.tag_customer(customer.id, principal.uid)
            current_app.logger.info("[billing.subscriptions] recovered customer=%s for user=%s by email",
                                    customer.id, principal.uid)
            return customer
        return None

    def _record_new_subscription(self, link: BillingCustomer, plan_code: str,
                                 created: ProviderSubscription) -> Subscription:
        existing = self.repo.subscription(created.id)
        if existing is not None:
            # webhook beat us to it
            return existing
        record = self.repo.add(Subscription(
            stripe_subscription_id=created.id,
            user_id=link.user_id,
            stripe_customer_id=link.stripe_customer_id,
            plan_code=plan_code,
            status=(SubscriptionStatus.from_provider(created.status) or SubscriptionStatus.INCOMPLETE).value,
            current_period_start=created.current_period_start,
            current_period_end=created.current_period_end,
        ))
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            record = self.ensure_found(self.repo.subscription(created.id), message="Subscription not found")
        return record

    # ── cancel ────────────────────────────────────────────────
    def cancel_subscription(self, principal: Principal, subscription_id: Optional[str]) -> Dict[str, Any]:
        subscription_id = self.text_field(subscription_id, "subscriptionId")

        record = self._load_owned_subscription(principal, subscription_id)
        if record.status_enum is SubscriptionStatus.CANCELED:
            return record.to_dict()

        confirmed = self.gateway.cancel_subscription(subscription_id)

        def _apply():
            fresh = self.ensure_found(self.repo.subscription(subscription_id, lock=True),
                                      message="Subscription not found")
            fresh.transition_to(
                SubscriptionStatus.from_provider(confirmed.status),
                period_start=confirmed.current_period_start,
                period_end=confirmed.current_period_end,
            )
            return fresh

        record = self.write_with_retry(_apply, what=f"subscription {subscription_id}")
        current_app.logger.info("[billing.subscriptions] cancel user=%s subscription=%s provider_status=%s status=%s",
                                principal.uid, subscription_id, confirmed.status, record.status)
        return record.to_dict()

    def _load_owned_subscription(self, principal: Principal, subscription_id: str) -> Subscription:
        link = self.repo.link_for_user(principal.uid)
        record = self.repo.subscription(subscription_id)
        if record is None:
            if link is None:
                raise NotFound("Subscription not found")
            record = self._import_subscription(principal, link, subscription_id)

        if (link is None or record.user_id != principal.uid
                or record.stripe_customer_id != link.stripe_customer_id):
            current_app.logger.warning("[billing.subscriptions] ownership mismatch user=%s subscription=%s",
                                       principal.uid, subscription_id)
            raise Forbidden("You do not have permission to modify this subscription")
        return record

    def _import_subscription(self, principal: Principal, link: BillingCustomer, subscription_id: str) -> Subscription:
        """Adopt a subscription that exists in Stripe but not locally, if it belongs to the caller's customer."""
        remote = self.gateway.retrieve_subscription(subscription_id)
        if remote.customer_id != link.stripe_customer_id:
            current_app.logger.warning("[billing.subscriptions] ownership mismatch user=%s subscription=%s (remote)",
                                       principal.uid, subscription_id)
            raise Forbidden("You do not have permission to modify this subscription")
        with self.atomic():
            record = self.repo.add(Subscription(
                stripe_subscription_id=remote.id,
                user_id=principal.uid,
                stripe_customer_id=link.stripe_customer_id,
                status=(SubscriptionStatus.from_provider(remote.status) or SubscriptionStatus.INCOMPLETE).value,
                current_period_start=remote.current_period_start,
                current_period_end=remote.current_period_end,
            ))
        current_app.logger.info("[billing.subscriptions] imported subscription=%s for user=%s",
                                subscription_id, principal.uid)
        return record

    # ── payment method ────────────────────────────────────────
    def update_default_payment_method(self, principal: Principal, payment_method_id: Optional[str]) -> Dict[str, Any]:
        payment_method_id = self.text_field(payment_method_id, "paymentMethodId")

        link = self.repo.link_for_user(principal.uid)
        if link is None:
            raise NotFound("Customer not found")
        customer_id = link.stripe_customer_id

        pm = self.gateway.retrieve_payment_method(payment_method_id)
        if pm.customer_id is None:
            self.gateway.attach_payment_method(payment_method_id, customer_id)
        elif pm.customer_id != customer_id:
            current_app.logger.warning("[billing.subscriptions] payment method owned elsewhere user=%s pm=%s",
                                       principal.uid, payment_method_id)
            raise Forbidden("Payment method belongs to another customer")
        self.gateway.set_default_payment_method(customer_id, payment_method_id)

        current_app.logger.info("[billing.subscriptions] default payment method user=%s customer=%s pm=%s",
                                principal.uid, customer_id, payment_method_id)
        return {"success": True}

    # ── status ────────────────────────────────────────────────
    def subscription_status(self, principal: Principal) -> Dict[str, Any]:
        link = self.repo.link_for_user(principal.uid)
        return {
            "customerId": link.stripe_customer_id if link else None,
            "subscriptions": [s.to_dict() for s in self.repo.subscriptions_for_user(principal.uid)],
        }

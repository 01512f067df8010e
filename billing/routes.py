from __future__ import annotations
import logging
from typing import Any, Dict, Iterable
from flask import current_app, g, jsonify, request

from auth.utils import current_principal, principal_required
from errors import BillingError, ServerError, ValidationError
from extensions import limiter
from . import billing_bp
from .services import get_subscription_service


def get_json(*, required: Iterable[str] = ()) -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object body")
    missing = [k for k in required if not data.get(k)]
    if missing:
        raise ValidationError("Missing required fields", details={"fields": missing})
    return data


@billing_bp.get("/_health")
@limiter.exempt
def _health():
    return jsonify({"ok": True, "service": "billing"}), 200


@billing_bp.post("/create-subscription")
@limiter.limit("10 per minute")
@principal_required
def create_subscription():
    data = get_json(required=("plan",))
    result = get_subscription_service().create_subscription(
        current_principal(), data.get("plan"), idempotency_key=data.get("idempotencyKey"),
    )
    return jsonify(result)


@billing_bp.post("/cancel-subscription")
@principal_required
def cancel_subscription():
    data = get_json(required=("subscriptionId",))
    subscription = get_subscription_service().cancel_subscription(current_principal(), data.get("subscriptionId"))
    return jsonify({"subscription": subscription})


@billing_bp.post("/update-payment-method")
@principal_required
def update_payment_method():
    data = get_json(required=("paymentMethodId",))
    result = get_subscription_service().update_default_payment_method(current_principal(), data.get("paymentMethodId"))
    return jsonify(result)


@billing_bp.get("/subscription-status")
@principal_required
def subscription_status():
    return jsonify(get_subscription_service().subscription_status(current_principal()))


# Centralized error handling for BillingError and unexpected exceptions
@billing_bp.app_errorhandler(BillingError)
def handle_billing_error(err: BillingError):
    principal = g.get("principal")
    level = logging.WARNING if err.status_code >= 500 else logging.INFO
    current_app.logger.log(level, "[billing] rejected code=%s status=%s user=%s path=%s: %s",
                           err.code, err.status_code, principal.uid if principal else None,
                           request.path, err.message)
    return jsonify(err.to_dict()), err.status_code


@billing_bp.app_errorhandler(Exception)
def handle_uncaught_error(err: Exception):
    # HTTP errors raised by Flask itself (404, 405, 429 ...) keep their status
    code = getattr(err, "code", None)
    if isinstance(code, int) and 400 <= code < 500:
        return jsonify({"ok": False, "error": {"code": "http_error", "message": getattr(err, "description", str(err))}}), code
    current_app.logger.exception("[billing] unhandled error on %s", request.path)
    payload = ServerError("Something went wrong").to_dict()
    if current_app.debug:
        payload["error"]["details"] = {"exception": repr(err)}
    return jsonify(payload), 500


@billing_bp.teardown_app_request
def _forget_principal(exc):
    g.pop("principal", None)

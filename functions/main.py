"""
Serverless entry points for the subscription operations.

Each function speaks the Firebase callable protocol over plain HTTP:
request body {"data": {...}}, success {"result": {...}},
failure {"error": {"status": "<CALLABLE_STATUS>", "message": "..."}}.

Deploy with the Functions Framework, e.g.
    functions-framework --source functions/main.py --target create_subscription
"""
from __future__ import annotations
import logging
from functools import wraps
from typing import Any, Callable, Dict

import functions_framework
from flask import Flask

from app import create_app
from auth.utils import authenticate_header
from billing.services import get_subscription_service
from errors import BillingError
from plans.catalog import DEFAULT_PLAN

log = logging.getLogger("functions")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

_app = None


def get_app() -> Flask:
    # one application (db engine, Stripe and Firebase clients) per warm instance
    global _app
    if _app is None:
        _app = create_app()
    return _app


def _error(status: str, message: str, http_status: int):
    return {"error": {"status": status, "message": message}}, http_status, CORS_HEADERS


def callable_function(handler: Callable[[Any, Dict[str, Any]], Dict[str, Any]]):
    @wraps(handler)
    def endpoint(request):
        if request.method == "OPTIONS":
            return "", 204, CORS_HEADERS
        if request.method != "POST":
            return _error("INVALID_ARGUMENT", "Callable functions only accept POST", 405)

        app = get_app()
        with app.app_context():
            try:
                principal = authenticate_header(request.headers.get("Authorization"))
                body = request.get_json(silent=True) or {}
                data = body.get("data") if isinstance(body, dict) else None
                result = handler(principal, data if isinstance(data, dict) else {})
            except BillingError as e:
                return _error(e.callable_status, e.message, e.status_code)
            except Exception:
                log.exception("[functions] %s failed", handler.__name__)
                return _error("INTERNAL", "Internal error", 500)
        return {"result": result}, 200, CORS_HEADERS
    return endpoint


@functions_framework.http
@callable_function
def create_subscription(principal, data):
    return get_subscription_service().create_subscription(
        principal, data.get("plan") or DEFAULT_PLAN, idempotency_key=data.get("idempotencyKey"),
    )


@functions_framework.http
@callable_function
def cancel_subscription(principal, data):
    subscription = get_subscription_service().cancel_subscription(principal, data.get("subscriptionId"))
    return {"success": True, "subscription": subscription}


@functions_framework.http
@callable_function
def update_payment_method(principal, data):
    return get_subscription_service().update_default_payment_method(principal, data.get("paymentMethodId"))

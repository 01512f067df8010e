from __future__ import annotations
from flask import request, jsonify, current_app
from errors import InvalidSignature
from extensions import limiter
from . import billing_webhooks_bp
from .services import get_webhook_reconciler


@billing_webhooks_bp.post("")
@limiter.exempt
def stripe_webhook():
    payload = request.get_data()
    sig = request.headers.get("Stripe-Signature", "")

    try:
        result = get_webhook_reconciler().handle_event(payload, sig)
    except InvalidSignature:
        current_app.logger.warning("[billing.webhook] signature rejected remote=%s", request.remote_addr)
        raise

    return jsonify({"received": True, "event": result.event_id, "outcome": result.outcome.value}), 200

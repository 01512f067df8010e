from flask import Blueprint

billing_bp = Blueprint("billing_bp", __name__)

billing_webhooks_bp = Blueprint("billing_webhooks_bp", __name__, url_prefix="/webhook")

from . import routes, webhooks

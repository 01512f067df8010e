from __future__ import annotations
from functools import wraps
from typing import Optional
from flask import current_app, g, request

from errors import BillingError, Unauthenticated
from .identity import IdentityProvider, Principal

BEARER_PREFIX = "bearer "


def get_identity_provider() -> IdentityProvider:
    return current_app.extensions["identity_provider"]


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if not header or not header[:len(BEARER_PREFIX)].lower() == BEARER_PREFIX:
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def authenticate_header(header: Optional[str]) -> Principal:
    """
    Turn an Authorization header into a verified Principal.
    Missing, malformed and invalid credentials all fail the same way.
    """
    token = _bearer_token(header)
    if token is None:
        current_app.logger.warning("[auth] rejected reason=missing_or_malformed_header path=%s",
                                   request.path if request else None)
        raise Unauthenticated("Unauthorized")
    return get_identity_provider().verify_token(token)


def principal_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if g.get("principal") is None:
            g.principal = authenticate_header(request.headers.get("Authorization"))
        return func(*args, **kwargs)
    return wrapper


def peek_principal() -> Optional[Principal]:
    """
    Verify the bearer token ahead of the view, e.g. for the rate-limit key.
    Returns None instead of raising; principal_required still rejects the request.
    """
    principal = g.get("principal")
    if principal is not None:
        return principal
    if _bearer_token(request.headers.get("Authorization")) is None:
        return None
    try:
        g.principal = authenticate_header(request.headers.get("Authorization"))
    except BillingError:
        return None
    return g.principal


def current_principal() -> Principal:
    principal = g.get("principal")
    if principal is None:
        raise Unauthenticated("Unauthorized")
    return principal

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_migrate    import Migrate
import os

from auth.utils import peek_principal

db      = SQLAlchemy()
migrate = Migrate()


def _rate_limit_key():
    """
    Key by the verified principal when the request carries a valid bearer
    token, else by client IP. Limits run before the view, so the token is
    verified here and cached on g for principal_required.
    """
    principal = peek_principal()
    if principal is not None and principal.uid:
        return f"user:{principal.uid}"
    return get_remote_address()

limiter = Limiter(
    key_func=_rate_limit_key,
    storage_uri=os.environ.get("RATELIMIT_STORAGE_URI")
                 or os.environ.get("REDIS_URL")
                 or "memory://",
    default_limits=["300 per 5 minutes"],
)

from contextlib import contextmanager
from typing import Any, Callable, Optional, TypeVar
from flask import current_app
from sqlalchemy.orm.exc import StaleDataError
from extensions import db
from errors import NotFound, ServerError, ValidationError

T = TypeVar("T")

MAX_WRITE_ATTEMPTS = 3


class BaseService:
    def __init__(self):
        self.session = db.session

    @contextmanager
    def atomic(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def write_with_retry(self, fn: Callable[[], T], *, what: str) -> T:
        """
        Run `fn` and commit. A StaleDataError means someone else updated the same
        versioned row first: roll back and run `fn` again against fresh state.
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                result = fn()
                self.session.commit()
                return result
            except StaleDataError:
                self.session.rollback()
                current_app.logger.info("[billing] concurrent update on %s, retry %d", what, attempt)
            except Exception:
                self.session.rollback()
                raise
        current_app.logger.error("[billing] gave up writing %s after %d attempts", what, MAX_WRITE_ATTEMPTS)
        raise ServerError("Could not save changes, please retry")

    def ensure_found(self, obj: Any, *, message: str = "Not found"):
        if obj is None:
            raise NotFound(message)
        return obj

    def text_field(self, value: Any, field: str, *, required: bool = True) -> Optional[str]:
        """Strip a string field from a request body; anything that is not a string is a bad request."""
        if value is None or value == "":
            if required:
                raise ValidationError(f"{field} is required", details={"fields": [field]})
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{field} must be a string", details={"fields": [field]})
        value = value.strip()
        if required and not value:
            raise ValidationError(f"{field} is required", details={"fields": [field]})
        return value or None


def get_subscription_service():
    return current_app.extensions["billing"]["subscriptions"]


def get_webhook_reconciler():
    return current_app.extensions["billing"]["reconciler"]

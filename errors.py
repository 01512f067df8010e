from typing import Any, Dict, Optional

class BillingError(Exception):
    status_code = 400
    code = "billing_error"
    callable_status = "INVALID_ARGUMENT"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message or self.code.replace("_", " ").capitalize()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"ok": False, "error": {"code": self.code, "message": self.message}}
        if self.details:
            payload["error"]["details"] = self.details
        return payload


class ValidationError(BillingError):  status_code = 400; code = "validation_error"; callable_status = "INVALID_ARGUMENT"
class PlanInvalid(ValidationError):   status_code = 400; code = "plan_invalid";     callable_status = "INVALID_ARGUMENT"
class InvalidSignature(BillingError): status_code = 400; code = "invalid_signature"; callable_status = "INVALID_ARGUMENT"
class Unauthenticated(BillingError):  status_code = 401; code = "unauthenticated";  callable_status = "UNAUTHENTICATED"
class Forbidden(BillingError):        status_code = 403; code = "forbidden";        callable_status = "PERMISSION_DENIED"
class NotFound(BillingError):         status_code = 404; code = "not_found";        callable_status = "NOT_FOUND"
class ServerError(BillingError):      status_code = 500; code = "server_error";     callable_status = "INTERNAL"
class ProviderError(BillingError):    status_code = 502; code = "provider_error";   callable_status = "UNAVAILABLE"
class ProviderTimeout(ProviderError): status_code = 504; code = "provider_timeout"; callable_status = "DEADLINE_EXCEEDED"

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import auth, credentials, exceptions as firebase_exceptions

from errors import ProviderError, ProviderTimeout, Unauthenticated

log = logging.getLogger("auth.identity")


@dataclass(frozen=True)
class Principal:
    """Verified caller identity. Built per request, never stored."""
    uid: str
    email: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Principal":
        uid = claims.get("uid") or claims.get("sub")
        if not uid:
            raise Unauthenticated("Unauthorized")
        return cls(uid=str(uid), email=claims.get("email") or None)


class IdentityProvider:
    def verify_token(self, token: str) -> Principal:
        raise NotImplementedError


class FirebaseIdentityProvider(IdentityProvider):
    """
    Verifies Firebase ID tokens with firebase-admin.
    Every rejection surfaces as the same Unauthenticated; the reason is only logged.
    """

    def __init__(self, project_id: Optional[str] = None, *, http_timeout: float = 10.0,
                 check_revoked: bool = True, app_name: str = "billing-identity"):
        self.project_id = project_id
        self.http_timeout = http_timeout
        self.check_revoked = check_revoked
        self.app_name = app_name
        self._firebase_app: Optional[firebase_admin.App] = None

    def _app(self) -> firebase_admin.App:
        if self._firebase_app is not None:
            return self._firebase_app
        try:
            self._firebase_app = firebase_admin.get_app(self.app_name)
        except ValueError:
            options = {"httpTimeout": self.http_timeout}
            if self.project_id:
                options["projectId"] = self.project_id
            self._firebase_app = firebase_admin.initialize_app(
                credentials.ApplicationDefault(), options=options, name=self.app_name
            )
            log.info("[auth] firebase app initialised project=%s", self.project_id)
        return self._firebase_app

    def verify_token(self, token: str) -> Principal:
        try:
            claims = auth.verify_id_token(token, app=self._app(), check_revoked=self.check_revoked)
        except auth.CertificateFetchError as e:
            log.warning("[auth] public key fetch failed: %s", e)
            raise ProviderTimeout("Identity provider unavailable") from e
        except (firebase_exceptions.DeadlineExceededError, firebase_exceptions.UnavailableError) as e:
            log.warning("[auth] identity provider timed out: %s", e)
            raise ProviderTimeout("Identity provider unavailable") from e
        except (auth.InvalidIdTokenError, auth.UserDisabledError, auth.UserNotFoundError, ValueError) as e:
            # Expired and revoked tokens are InvalidIdTokenError subclasses; a deleted
            # user surfaces as UserNotFoundError when revocation is checked
            log.warning("[auth] token rejected reason=%s", type(e).__name__)
            raise Unauthenticated("Unauthorized") from e
        except firebase_exceptions.FirebaseError as e:
            log.warning("[auth] identity provider error: %s", e)
            raise ProviderError("Identity provider unavailable") from e
        return Principal.from_claims(claims)

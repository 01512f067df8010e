from unittest.mock import patch

import pytest
from firebase_admin import auth as firebase_auth
from firebase_admin import exceptions as firebase_exceptions

from auth.identity import FirebaseIdentityProvider, Principal
from errors import ProviderTimeout, Unauthenticated
from extensions import _rate_limit_key


@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": ""},
    {"Authorization": "Token token-u1"},
    {"Authorization": "Bearer "},
    {"Authorization": "Bearer not-a-real-token"},
])
def test_rejected_credentials_look_identical(client, headers):
    resp = client.post("/create-subscription", json={"plan": "premium-monthly"}, headers=headers)
    assert resp.status_code == 401
    assert resp.get_json() == {"ok": False, "error": {"code": "unauthenticated", "message": "Unauthorized"}}


def test_every_user_route_requires_a_token(client):
    for path in ("/create-subscription", "/cancel-subscription", "/update-payment-method"):
        assert client.post(path, json={}).status_code == 401
    assert client.get("/subscription-status").status_code == 401


def test_health_is_public(client):
    assert client.get("/_health").get_json() == {"ok": True, "service": "billing"}


def test_bearer_scheme_is_case_insensitive(client):
    resp = client.get("/subscription-status", headers={"Authorization": "bearer token-u1"})
    assert resp.status_code == 200


class TestFirebaseIdentityProvider:

    def _provider(self):
        provider = FirebaseIdentityProvider("demo-project", check_revoked=False)
        provider._firebase_app = object()  # skip real initialisation
        return provider

    def test_valid_token_becomes_principal(self):
        with patch.object(firebase_auth, "verify_id_token", return_value={"uid": "abc", "email": "a@b.c"}) as verify:
            principal = self._provider().verify_token("tok")
        assert principal == Principal(uid="abc", email="a@b.c")
        assert verify.call_args.kwargs["check_revoked"] is False

    @pytest.mark.parametrize("error", [
        firebase_auth.ExpiredIdTokenError("expired", cause=None),
        firebase_auth.RevokedIdTokenError("revoked"),
        firebase_auth.InvalidIdTokenError("bad signature"),
        firebase_auth.UserNotFoundError("user was deleted"),
        ValueError("empty token"),
    ])
    def test_token_failures_are_uniform(self, error):
        with patch.object(firebase_auth, "verify_id_token", side_effect=error):
            with pytest.raises(Unauthenticated) as exc:
                self._provider().verify_token("tok")
        assert exc.value.message == "Unauthorized"

    @pytest.mark.parametrize("error", [
        firebase_exceptions.DeadlineExceededError("slow"),
        firebase_exceptions.UnavailableError("down"),
    ])
    def test_provider_outage_is_a_timeout(self, error):
        with patch.object(firebase_auth, "verify_id_token", side_effect=error):
            with pytest.raises(ProviderTimeout):
                self._provider().verify_token("tok")

    def test_key_fetch_failure_is_a_timeout(self):
        error = firebase_auth.CertificateFetchError("fetch failed", cause=None)
        with patch.object(firebase_auth, "verify_id_token", side_effect=error):
            with pytest.raises(ProviderTimeout):
                self._provider().verify_token("tok")

    def test_claims_without_uid_are_rejected(self):
        with patch.object(firebase_auth, "verify_id_token", return_value={"email": "a@b.c"}):
            with pytest.raises(Unauthenticated):
                self._provider().verify_token("tok")


class TestRateLimitKey:

    @pytest.mark.parametrize("headers,expected", [
        ({"Authorization": "Bearer token-u1"}, "user:u1"),
        ({"Authorization": "Bearer not-a-real-token"}, "10.0.0.7"),
        ({}, "10.0.0.7"),
    ])
    def test_key_uses_verified_principal_else_ip(self, app, headers, expected):
        with app.test_request_context("/create-subscription", method="POST", headers=headers,
                                      environ_base={"REMOTE_ADDR": "10.0.0.7"}):
            assert _rate_limit_key() == expected

    def test_principal_does_not_leak_between_requests(self, client, u1_headers, u2_headers):
        client.get("/subscription-status", headers=u1_headers)
        assert client.get("/subscription-status").status_code == 401
        client.post("/create-subscription", json={"plan": "premium-monthly"}, headers=u2_headers)
        body = client.get("/subscription-status", headers=u2_headers).get_json()
        assert [s["customerId"] for s in body["subscriptions"]] == [body["customerId"]]

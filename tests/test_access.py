from datetime import datetime, timedelta, timezone
from unittest import mock

import jwt
import pytest

import auth
from auth import PERMISSIONS, TokenVerifier, issue_session_token, same_email
from errors import ApiError, Unauthenticated
from tests.conftest import auth as auth_header

SECRET = "test-secret"


def test_every_operation_declares_known_roles():
    for operation, roles in PERMISSIONS.items():
        assert roles, operation
        assert set(roles) <= {"donor", "volunteer", "admin"}, operation


def test_same_email_is_case_insensitive():
    assert same_email("A@X.com", "a@x.com ")
    assert not same_email(None, None)
    assert not same_email("a@x.com", "b@x.com")


# ---------------- TokenVerifier -----------------

def test_session_token_round_trip():
    token = jwt.encode({"email": "A@x.com"}, SECRET, algorithm="HS256")
    assert TokenVerifier(SECRET).verify(token) == "a@x.com"


def test_expired_session_token_is_rejected():
    expired = datetime.now(timezone.utc) - timedelta(minutes=1)
    token = jwt.encode({"email": "a@x.com", "exp": expired}, SECRET, algorithm="HS256")
    with pytest.raises(Unauthenticated):
        TokenVerifier(SECRET).verify(token)


def test_token_signed_with_other_secret_is_rejected():
    token = jwt.encode({"email": "a@x.com"}, "other", algorithm="HS256")
    with pytest.raises(Unauthenticated):
        TokenVerifier(SECRET).verify(token)


def test_token_without_email_is_rejected():
    token = jwt.encode({"sub": "123"}, SECRET, algorithm="HS256")
    with pytest.raises(Unauthenticated):
        TokenVerifier(SECRET).verify(token)


def test_firebase_token_is_used_when_session_decode_fails():
    firebase_app = object()
    with mock.patch.object(auth.firebase_auth, "verify_id_token", return_value={"email": "d@x.com"}) as verify:
        assert TokenVerifier(SECRET, firebase_app).verify("firebase-id-token") == "d@x.com"
    verify.assert_called_once_with("firebase-id-token", app=firebase_app)


def test_rejected_firebase_token_is_unauthenticated():
    with mock.patch.object(auth.firebase_auth, "verify_id_token", side_effect=ValueError("bad token")):
        with pytest.raises(Unauthenticated):
            TokenVerifier(None, object()).verify("garbage")


def test_no_verifier_configured_rejects_everything():
    with pytest.raises(Unauthenticated):
        TokenVerifier().verify("anything")


def test_issue_session_token(monkeypatch):
    monkeypatch.setattr(auth.Config, "JWT_SECRET_KEY", SECRET)
    token = issue_session_token("a@x.com")
    claims = jwt.decode(token, SECRET, algorithms=["HS256"])
    assert claims["email"] == "a@x.com"
    assert claims["exp"] > claims["iat"]


def test_issue_session_token_needs_secret(monkeypatch):
    monkeypatch.setattr(auth.Config, "JWT_SECRET_KEY", None)
    with pytest.raises(ApiError):
        issue_session_token("a@x.com")


# ---------------- HTTP gate -----------------

def test_missing_token_is_401(client):
    res = client.get("/donationRequests")
    assert res.status_code == 401


def test_non_bearer_scheme_is_401(client):
    res = client.get("/donationRequests", headers={"Authorization": "Basic token-a@x.com"})
    assert res.status_code == 401


def test_unverifiable_token_is_401(client):
    res = client.get("/donationRequests", headers={"Authorization": "Bearer nope"})
    assert res.status_code == 401


def test_token_cookie_is_accepted(client):
    res = client.get("/donationRequests", headers={"Cookie": "token=token-a@x.com"})
    assert res.status_code == 200


def test_unknown_user_is_403(client):
    res = client.get("/donationRequests", headers=auth_header("ghost@x.com"))
    assert res.status_code == 403


def test_role_outside_allowed_set_is_403(client):
    res = client.patch("/users/000000000000000000000000/role", json={"role": "admin"}, headers=auth_header("v@x.com"))
    assert res.status_code == 403


def test_jwt_route_sets_cookie(client, monkeypatch):
    monkeypatch.setattr(auth.Config, "JWT_SECRET_KEY", SECRET)
    res = client.post("/jwt", headers=auth_header("a@x.com"))
    assert res.status_code == 200
    assert jwt.decode(res.json()["token"], SECRET, algorithms=["HS256"])["email"] == "a@x.com"
    assert "token" in res.cookies


def test_jwt_route_needs_credential(client):
    assert client.post("/jwt").status_code == 401

"""
tests/test_api_routes.py -- Integration tests for the auth and Pro routes.

These tests exercise the full stack: middleware -> FastAPI routing -> guard
dependency injection -> UserStore/UsageStore -> response model serialization.

Coverage:
  - Sign-in: register 201, duplicate 409, login 200/401, cookie attributes
  - Token transport: cookie and header fallback, legacy header tokens
  - Revocation: sign-out and account deletion invalidate outstanding tokens
  - Pro: verify issues a Pro token only with an active license; features
    and entitlement follow the live license
  - Trial: one trial per email, repeat inside the week, trial_used after it
  - Edge policy: 429 with Retry-After, foreign Origin 403, oversized body 413

Fixtures used (from conftest.py):
  - api_client: (client, user_store, clock) -- TestClient over the real app
"""

from __future__ import annotations

import itertools
import os

from fastapi.testclient import TestClient
from starlette.requests import Request

from api.limiter import client_ip
from api.main import app
from auth import signing
from auth.models import ProLicense
from auth.tokens import auth_message

_seq = itertools.count()

PASSWORD = "correct-horse-9"


def _email(prefix: str = "user") -> str:
    return f"{prefix}{next(_seq)}@example.com"


def _register(client: TestClient, email: str) -> dict:
    resp = client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _auth_headers(auth: dict) -> dict:
    return {
        "X-Auth-Token": auth["token"],
        "X-Auth-Email": auth["email"],
        "X-Auth-Ts": auth["issued_at"],
        "X-Auth-User-Id": auth["user_id"],
        "X-Auth-Session-Version": auth["session_version"],
    }


class TestSignIn:
    def test_register_sets_cookie_and_returns_token(self, api_client):
        client, _store, _clock = api_client
        email = _email("reg")
        resp = client.post("/api/v1/auth/register", json={"email": email.upper(), "password": PASSWORD})
        assert resp.status_code == 201
        data = resp.json()
        assert data["user"]["email"] == email
        assert data["auth"]["session_version"] == "1"
        assert data["auth"]["expires_in"] == 14400
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("pc_auth=")
        assert "HttpOnly" in cookie
        assert "Path=/api" in cookie
        assert "Max-Age=14400" in cookie
        assert "samesite=lax" in cookie.lower()
        assert resp.headers["Cache-Control"] == "no-store"

    def test_register_duplicate(self, api_client):
        client, _store, _clock = api_client
        email = _email("dup")
        _register(client, email)
        resp = client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_register_short_password(self, api_client):
        client, _store, _clock = api_client
        resp = client.post("/api/v1/auth/register", json={"email": _email(), "password": "short"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_login(self, api_client):
        client, _store, _clock = api_client
        email = _email("login")
        _register(client, email)
        client.cookies.clear()
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me").json()["email"] == email

    def test_login_wrong_password_and_unknown_email_look_the_same(self, api_client):
        client, _store, _clock = api_client
        email = _email("bad")
        _register(client, email)
        wrong = client.post("/api/v1/auth/login", json={"email": email, "password": "nope-nope"})
        unknown = client.post("/api/v1/auth/login", json={"email": _email("ghost"), "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"

    def test_login_is_rate_limited_per_ip(self, api_client):
        client, _store, _clock = api_client
        statuses = [
            client.post("/api/v1/auth/login", json={"email": "nobody@example.com", "password": "x"}).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

    def test_register_is_rate_limited_per_ip(self, api_client):
        client, _store, _clock = api_client
        statuses = [
            client.post("/api/v1/auth/register", json={"email": _email("flood"), "password": PASSWORD}).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [201] * 10
        assert statuses[10] == 429


class TestAuthentication:
    def test_me_requires_auth(self, api_client):
        client, _store, _clock = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_header_fallback(self, api_client):
        client, _store, _clock = api_client
        auth = _register(client, _email("hdr"))["auth"]
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers=_auth_headers(auth))
        assert resp.status_code == 200
        assert resp.json()["user_id"] == auth["user_id"]
        assert resp.json()["legacy_token"] is False

    def test_legacy_header_token(self, api_client):
        client, _store, clock = api_client
        email = _email("legacy")
        ts = str(clock.now())
        sig = signing.sign(os.environ["AUTH_TOKEN_SECRET"], auth_message(email, ts))
        resp = client.get("/api/v1/auth/me", headers={"X-Auth-Token": sig, "X-Auth-Email": email, "X-Auth-Ts": ts})
        assert resp.status_code == 200
        assert resp.json()["legacy_token"] is True
        assert resp.json()["user_id"] is None

    def test_token_expires(self, api_client):
        client, _store, clock = api_client
        auth = _register(client, _email("exp"))["auth"]
        clock.advance(14400)
        assert client.get("/api/v1/auth/me").status_code == 200
        clock.advance(1)
        assert client.get("/api/v1/auth/me").status_code == 401
        assert client.get("/api/v1/auth/me", headers=_auth_headers(auth)).status_code == 401

    def test_tampered_header_token(self, api_client):
        client, _store, _clock = api_client
        auth = _register(client, _email("tamper"))["auth"]
        client.cookies.clear()
        headers = _auth_headers(auth)
        headers["X-Auth-Session-Version"] = "2"
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 401


class TestRevocation:
    def test_signout_revokes_every_session(self, api_client):
        client, _store, _clock = api_client
        email = _email("signout")
        phone = _register(client, email)["auth"]
        resp = client.post("/api/v1/auth/signout")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Signed out."
        assert "pc_auth=" in resp.headers["set-cookie"]
        client.cookies.clear()
        assert client.get("/api/v1/auth/me", headers=_auth_headers(phone)).status_code == 401

        client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
        me = client.get("/api/v1/auth/me")
        assert me.status_code == 200

    def test_signout_without_session(self, api_client):
        client, _store, _clock = api_client
        resp = client.post("/api/v1/auth/signout")
        assert resp.status_code == 200
        assert resp.json()["message"] is None

    def test_signout_clears_cookies_when_datastore_is_down(self, api_client, monkeypatch):
        client, _store, _clock = api_client
        _register(client, _email("outage"))

        def unavailable(principal):
            raise TimeoutError("statement timeout")

        monkeypatch.setattr(app.state.revoker, "sign_out", unavailable)
        resp = client.post("/api/v1/auth/signout")
        assert resp.status_code == 200
        assert resp.json()["message"] is None
        cleared = resp.headers.get_list("set-cookie")
        assert any(c.startswith("pc_auth=") for c in cleared)
        assert any(c.startswith("pc_pro=") for c in cleared)

    def test_delete_account_email_mismatch(self, api_client):
        client, _store, _clock = api_client
        _register(client, _email("keep"))
        resp = client.post("/api/v1/auth/account/delete", json={"email": _email("other")})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "email_mismatch"

    def test_delete_account(self, api_client):
        client, store, _clock = api_client
        email = _email("delete")
        auth = _register(client, email)["auth"]
        store.upsert_license(ProLicense(email=email, plan="monthly"))
        resp = client.post("/api/v1/auth/account/delete", json={"email": email})
        assert resp.status_code == 200
        assert store.get_by_email(email) is None
        assert store.get_license(email) is None
        client.cookies.clear()
        assert client.get("/api/v1/auth/me", headers=_auth_headers(auth)).status_code == 401


class TestPro:
    def test_verify_without_license(self, api_client):
        client, _store, _clock = api_client
        email = _email("free")
        _register(client, email)
        resp = client.post("/api/v1/pro/verify", json={"email": email})
        assert resp.status_code == 200
        assert resp.json()["pro"] is False
        assert "pc_pro" not in resp.headers.get("set-cookie", "")

    def test_verify_other_email_is_forbidden(self, api_client):
        client, store, _clock = api_client
        victim = _email("victim")
        store.upsert_license(ProLicense(email=victim, plan="annual"))
        _register(client, _email("snoop"))
        resp = client.post("/api/v1/pro/verify", json={"email": victim})
        assert resp.status_code == 403

    def test_verify_requires_auth(self, api_client):
        client, _store, _clock = api_client
        assert client.post("/api/v1/pro/verify", json={"email": _email()}).status_code == 401

    def test_full_pro_flow(self, api_client):
        client, store, _clock = api_client
        email = _email("pro")
        user_id = _register(client, email)["auth"]["user_id"]
        store.upsert_license(ProLicense(email=email, plan="annual"))

        verify = client.post("/api/v1/pro/verify", json={"email": email})
        assert verify.status_code == 200
        body = verify.json()
        assert body["pro"] is True
        assert body["plan"] == "annual"
        assert body["user_id"] == user_id
        assert "pc_pro=" in verify.headers["set-cookie"]

        assert client.get("/api/v1/auth/me").json()["pro"] is True
        assert client.post("/api/v1/features/check", json={"feature": "pdf"}).json()["allowed"] is True
        entitlement = client.get("/api/v1/pro/entitlement")
        assert entitlement.status_code == 200
        assert entitlement.json()["plan"] == "annual"

        store.set_license_active(email, False)
        assert client.get("/api/v1/auth/me").json()["pro"] is False
        assert client.post("/api/v1/features/check", json={"feature": "pdf"}).json()["allowed"] is False
        resp = client.get("/api/v1/pro/entitlement")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_pro_token_from_headers(self, api_client):
        client, store, _clock = api_client
        email = _email("prohdr")
        auth = _register(client, email)["auth"]
        store.upsert_license(ProLicense(email=email, plan="monthly"))
        pro = client.post("/api/v1/pro/verify", json={"email": email}).json()
        client.cookies.clear()
        headers = {
            **_auth_headers(auth),
            "X-Pro-Token": pro["token"],
            "X-Pro-Email": email,
            "X-Pro-Ts": pro["issued_at"],
            "X-Pro-User-Id": pro["user_id"],
        }
        assert client.get("/api/v1/auth/me", headers=headers).json()["pro"] is True

    def test_borrowed_pro_token_is_ignored(self, api_client):
        client, store, _clock = api_client
        owner = _email("owner")
        _register(client, owner)
        store.upsert_license(ProLicense(email=owner, plan="annual"))
        pro = client.post("/api/v1/pro/verify", json={"email": owner}).json()

        client.cookies.clear()
        thief = _register(client, _email("thief"))["auth"]
        client.cookies.clear()
        headers = {
            **_auth_headers(thief),
            "X-Pro-Token": pro["token"],
            "X-Pro-Email": owner,
            "X-Pro-Ts": pro["issued_at"],
            "X-Pro-User-Id": pro["user_id"],
        }
        assert client.get("/api/v1/auth/me", headers=headers).json()["pro"] is False

    def test_unknown_feature(self, api_client):
        client, _store, _clock = api_client
        _register(client, _email("feat"))
        assert client.post("/api/v1/features/check", json={"feature": "teleport"}).status_code == 422

    def test_check_feature_rate_limit(self, api_client):
        client, _store, _clock = api_client
        _register(client, _email("busy"))
        statuses = [client.post("/api/v1/features/check", json={"feature": "picks"}).status_code for _ in range(21)]
        assert statuses[:20] == [200] * 20
        assert statuses[20] == 429
        resp = client.post("/api/v1/features/check", json={"feature": "picks"})
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "3600"
        assert resp.json()["error"]["code"] == "rate_limited"


class TestEdgePolicy:
    def test_foreign_origin_rejected(self, api_client):
        client, _store, _clock = api_client
        resp = client.post(
            "/api/v1/auth/signout",
            headers={"Origin": "https://evil.example"},
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "origin_not_allowed"

    def test_allowed_origin_gets_credentialed_cors(self, api_client):
        client, _store, _clock = api_client
        resp = client.get("/api/v1/health", headers={"Origin": "http://localhost:3000"})
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert resp.headers["access-control-allow-credentials"] == "true"

    def test_oversized_body(self, api_client):
        client, _store, _clock = api_client
        resp = client.post(
            "/api/v1/auth/login",
            content=b"{" + b" " * 1_000_001 + b"}",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 413
        assert resp.json()["error"]["code"] == "payload_too_large"

    @staticmethod
    def _request(headers: dict) -> Request:
        raw = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
        return Request({"type": "http", "headers": raw, "client": ("10.9.9.9", 4321)})

    def test_client_ip_prefers_proxy_headers(self):
        assert client_ip(self._request({})) == "10.9.9.9"
        assert client_ip(self._request({"X-Forwarded-For": "6.6.6.6, 203.0.113.7"})) == "203.0.113.7"
        assert client_ip(self._request({"X-Real-IP": "198.51.100.2", "X-Forwarded-For": "203.0.113.7"})) == "198.51.100.2"

    def test_client_ip_ignores_blank_headers(self):
        assert client_ip(self._request({"X-Real-IP": " ", "X-Forwarded-For": "1.2.3.4, "})) == "10.9.9.9"


class TestTrial:
    WEEK = 7 * 24 * 3600

    def _relogin(self, client: TestClient, email: str) -> None:
        client.cookies.clear()
        assert client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD}).status_code == 200

    def test_first_start(self, api_client):
        client, store, clock = api_client
        email = _email("trial")
        _register(client, email)
        resp = client.post("/api/v1/trial/start", json={"email": email})
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "trial_start": clock.now(),
            "expires_at": clock.now() + self.WEEK,
            "error": None,
            "message": None,
        }
        assert resp.headers["Cache-Control"] == "no-store"
        assert store.get_trial_start(email) == clock.now()

    def test_repeat_inside_trial_keeps_original_start(self, api_client):
        client, _store, clock = api_client
        email = _email("again")
        _register(client, email)
        started = client.post("/api/v1/trial/start", json={"email": email}).json()["trial_start"]

        clock.advance(self.WEEK)
        self._relogin(client, email)
        resp = client.post("/api/v1/trial/start", json={"email": email})
        assert resp.json()["success"] is True
        assert resp.json()["trial_start"] == started

    def test_lapsed_trial_is_used(self, api_client):
        client, _store, clock = api_client
        email = _email("lapsed")
        _register(client, email)
        client.post("/api/v1/trial/start", json={"email": email})

        clock.advance(self.WEEK + 1)
        self._relogin(client, email)
        resp = client.post("/api/v1/trial/start", json={"email": email})
        assert resp.status_code == 200
        assert resp.json()["success"] is False
        assert resp.json()["error"] == "trial_used"
        assert resp.json()["trial_start"] is None

    def test_deleting_the_account_does_not_reset_the_trial(self, api_client):
        client, store, clock = api_client
        email = _email("reborn")
        _register(client, email)
        client.post("/api/v1/trial/start", json={"email": email})
        assert client.post("/api/v1/auth/account/delete", json={"email": email}).status_code == 200

        clock.advance(60)
        client.cookies.clear()
        _register(client, email)
        resp = client.post("/api/v1/trial/start", json={"email": email})
        assert resp.json()["trial_start"] == clock.now() - 60
        assert store.get_trial_start(email) == clock.now() - 60

    def test_other_email_is_forbidden(self, api_client):
        client, store, _clock = api_client
        _register(client, _email("starter"))
        victim = _email("victim")
        resp = client.post("/api/v1/trial/start", json={"email": victim})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "email_mismatch"
        assert store.get_trial_start(victim) is None

    def test_requires_auth(self, api_client):
        client, _store, _clock = api_client
        assert client.post("/api/v1/trial/start", json={"email": _email()}).status_code == 401

    def test_rate_limited(self, api_client):
        client, _store, _clock = api_client
        email = _email("eager")
        _register(client, email)
        statuses = [client.post("/api/v1/trial/start", json={"email": email}).status_code for _ in range(11)]
        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429

"""Unit tests for auth/guard.py -- Pro resolution and anti-escalation.

The guard is driven with plain dicts for cookies and headers, backed by a
real in-memory UserStore for session versions and licenses.
"""

import pytest

from auth import signing
from auth.codec import AUTH_COOKIE, PRO_COOKIE, encode_auth_cookie, encode_pro_cookie
from auth.guard import AuthorizationGuard
from auth.models import CurrentProToken, LegacyAuthToken, LegacyProToken, ProLicense, User
from auth.tokens import TokenIssuer, TokenVerifier, auth_message, pro_message

AUTH = "a" * 40
PRO = "p" * 40


@pytest.fixture
def world(user_store, clock):
    """Two users, alice (Pro) and bob (not Pro), plus a guard over them."""
    alice_id = user_store.create_user(User(email="alice@example.com"))
    bob_id = user_store.create_user(User(email="bob@example.com"))
    user_store.upsert_license(ProLicense(email="alice@example.com", plan="annual"))
    verifier = TokenVerifier(AUTH, PRO, user_store, clock=clock)
    issuer = TokenIssuer(AUTH, PRO, clock=clock)
    guard = AuthorizationGuard(verifier, user_store)
    return {
        "guard": guard,
        "issuer": issuer,
        "store": user_store,
        "alice": user_store.get_by_id(alice_id),
        "bob": user_store.get_by_id(bob_id),
    }


def _cookies(world, user, pro_for=None):
    cookies = {AUTH_COOKIE: encode_auth_cookie(world["issuer"].issue_auth(user))}
    if pro_for is not None:
        cookies[PRO_COOKIE] = encode_pro_cookie(world["issuer"].issue_pro(str(pro_for.id), pro_for.email))
    return cookies


class TestAuthenticate:
    def test_no_token(self, world):
        assert world["guard"].authenticate({}, {}) is None

    def test_cookie(self, world):
        principal = world["guard"].authenticate(_cookies(world, world["alice"]), {})
        assert principal.email == "alice@example.com"
        assert principal.user_id == str(world["alice"].id)
        assert not principal.is_legacy
        assert not principal.is_pro

    def test_headers(self, world):
        token = world["issuer"].issue_auth(world["bob"])
        headers = {
            "X-Auth-Token": token.signature,
            "X-Auth-Email": token.email,
            "X-Auth-Ts": token.issued_at,
            "X-Auth-User-Id": token.user_id,
            "X-Auth-Session-Version": token.session_version,
        }
        assert world["guard"].authenticate({}, headers).email == "bob@example.com"

    def test_legacy_cookie(self, world, clock):
        sig = signing.sign(AUTH, auth_message("bob@example.com", clock.now()))
        cookies = {AUTH_COOKIE: encode_auth_cookie(LegacyAuthToken("bob@example.com", str(clock.now()), sig))}
        principal = world["guard"].authenticate(cookies, {})
        assert principal.is_legacy

    def test_revoked(self, world):
        cookies = _cookies(world, world["alice"])
        world["store"].bump_session_version(world["alice"].id)
        assert world["guard"].authenticate(cookies, {}) is None


class TestAuthorize:
    def test_pro_user_with_own_pro_token(self, world):
        alice = world["alice"]
        principal = world["guard"].authorize(_cookies(world, alice, pro_for=alice), {}, require_pro=True)
        assert principal.is_pro

    def test_require_pro_false_skips_pro_resolution(self, world):
        alice = world["alice"]
        principal = world["guard"].authorize(_cookies(world, alice, pro_for=alice), {})
        assert not principal.is_pro

    def test_no_pro_token(self, world):
        principal = world["guard"].authorize(_cookies(world, world["alice"]), {}, require_pro=True)
        assert principal is not None
        assert not principal.is_pro

    def test_unauthenticated_returns_none(self, world):
        alice = world["alice"]
        cookies = _cookies(world, alice, pro_for=alice)
        del cookies[AUTH_COOKIE]
        assert world["guard"].authorize(cookies, {}, require_pro=True) is None

    def test_borrowed_pro_token_is_ignored(self, world):
        """Bob presents alice's valid Pro token next to his own Auth token."""
        cookies = _cookies(world, world["bob"], pro_for=world["alice"])
        assert not world["guard"].authorize(cookies, {}, require_pro=True).is_pro

    def test_user_id_mismatch_with_matching_email(self, world, clock):
        alice = world["alice"]
        ts = str(clock.now())
        forged_uid = str(world["bob"].id)
        sig = signing.sign(PRO, pro_message(alice.email, ts, forged_uid))
        cookies = _cookies(world, alice)
        cookies[PRO_COOKIE] = encode_pro_cookie(CurrentProToken(forged_uid, alice.email, ts, sig))
        assert not world["guard"].authorize(cookies, {}, require_pro=True).is_pro

    def test_legacy_pro_token_with_matching_email(self, world, clock):
        alice = world["alice"]
        ts = str(clock.now())
        sig = signing.sign(PRO, pro_message(alice.email, ts))
        cookies = _cookies(world, alice)
        cookies[PRO_COOKIE] = encode_pro_cookie(LegacyProToken(alice.email, ts, sig))
        assert world["guard"].authorize(cookies, {}, require_pro=True).is_pro

    def test_cancelled_license_takes_effect_immediately(self, world):
        alice = world["alice"]
        cookies = _cookies(world, alice, pro_for=alice)
        world["store"].set_license_active(alice.email, False)
        assert not world["guard"].authorize(cookies, {}, require_pro=True).is_pro

    def test_valid_pro_token_without_license(self, world):
        bob = world["bob"]
        assert not world["guard"].authorize(_cookies(world, bob, pro_for=bob), {}, require_pro=True).is_pro

    def test_expired_pro_token(self, world, clock):
        alice = world["alice"]
        pro = world["issuer"].issue_pro(str(alice.id), alice.email)
        clock.advance(14401)
        cookies = _cookies(world, alice)
        cookies[PRO_COOKIE] = encode_pro_cookie(pro)
        assert not world["guard"].authorize(cookies, {}, require_pro=True).is_pro

    def test_license_lookup_error_denies_pro(self, world, clock):
        class BrokenLicenses:
            def has_active_license(self, email):
                raise ConnectionError("db down")

        verifier = TokenVerifier(AUTH, PRO, world["store"], clock=clock)
        guard = AuthorizationGuard(verifier, BrokenLicenses())
        alice = world["alice"]
        principal = guard.authorize(_cookies(world, alice, pro_for=alice), {}, require_pro=True)
        assert principal is not None
        assert not principal.is_pro

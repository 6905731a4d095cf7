"""Unit tests for access/refresh token issuance, verification and revocation."""

import base64
import json

import pytest

from authcore.service.errors import (
    SecondFactorRequiredError,
    TokenExpiredError,
    TokenMalformedError,
    TokenRevokedError,
    WrongTokenKindError,
)
from authcore.service.tokens import ACCESS, REFRESH, TokenManager, hash_token
from authcore.storage.errors import CacheUnavailable
from authcore.storage.memory_cache import MemoryCache

ACCESS_SECRET = "unit-test-access-secret-0123456789abcdef"
REFRESH_SECRET = "unit-test-refresh-secret-0123456789abcdef"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenCache(MemoryCache):
    async def is_jti_revoked(self, jti):
        raise CacheUnavailable("is_jti_revoked")

    async def revoke_jti(self, jti, ttl_seconds):
        raise CacheUnavailable("revoke_jti")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def manager(cache, clock):
    return TokenManager(
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        issuer="authcore",
        audience="authcore-clients",
        access_ttl_seconds=1800,
        refresh_ttl_seconds=7 * 86400,
        second_factor_ttl_seconds=300,
        cache=cache,
        clock=clock,
    )


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def _reencode(token: str, payload: dict) -> str:
    header, _, signature = token.split(".")
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
    return f"{header}.{body}.{signature}"


def test_identical_secrets_are_rejected():
    with pytest.raises(ValueError):
        TokenManager(
            access_secret=ACCESS_SECRET,
            refresh_secret=ACCESS_SECRET,
            issuer="authcore",
            audience="authcore-clients",
            access_ttl_seconds=60,
            refresh_ttl_seconds=60,
            second_factor_ttl_seconds=60,
        )


def test_hash_token_is_stable_sha256():
    assert hash_token("abc") == hash_token("abc")
    assert hash_token("abc") != hash_token("abd")
    assert len(hash_token("abc")) == 64


class TestIssuance:
    def test_pair_carries_standard_claims(self, manager, clock):
        pair = manager.issue_pair("acct-1", "device-1", {"email": "a@example.com"}, session_id="sess-1")

        access = _payload(pair.access_token)
        refresh = _payload(pair.refresh_token)
        assert access["kind"] == ACCESS
        assert refresh["kind"] == REFRESH
        assert access["sub"] == refresh["sub"] == "acct-1"
        assert access["sid"] == refresh["sid"] == "sess-1"
        assert access["did"] == "device-1"
        assert access["iss"] == "authcore"
        assert access["aud"] == "authcore-clients"
        assert access["exp"] == int(clock.now) + 1800
        assert refresh["exp"] == int(clock.now) + 7 * 86400
        assert access["jti"] != refresh["jti"]
        assert access["email"] == "a@example.com"

    def test_refresh_ttl_override(self, manager, clock):
        pair = manager.issue_pair("acct-1", None, refresh_ttl_seconds=30 * 86400)
        assert pair.refresh_exp == int(clock.now) + 30 * 86400
        assert pair.access_ttl == 1800

    def test_caller_claims_cannot_override_reserved_claims(self, manager):
        issued = manager.issue_access(
            "acct-1", claims={"sub": "someone-else", "kind": REFRESH, "role": "customer"}
        )
        payload = _payload(issued.token)
        assert payload["sub"] == "acct-1"
        assert payload["kind"] == ACCESS
        assert payload["role"] == "customer"

    def test_session_meta_lists_both_jtis(self, manager):
        pair = manager.issue_pair("acct-1", "device-1", session_id="sess-1")
        meta = pair.session_meta()
        assert meta["access_jti"] == pair.access_jti
        assert meta["refresh_jti"] == pair.refresh_jti
        assert meta["access_exp"] == pair.access_exp


class TestVerification:
    async def test_verify_access_round_trip(self, manager):
        issued = manager.issue_access("acct-1", session_id="sess-1")
        claims = await manager.verify_access(issued.token)
        assert claims["sub"] == "acct-1"
        assert claims["jti"] == issued.jti

    async def test_refresh_token_rejected_as_access(self, manager):
        issued = manager.issue_refresh("acct-1")
        with pytest.raises(WrongTokenKindError):
            await manager.verify_access(issued.token)

    async def test_access_token_rejected_as_refresh(self, manager):
        issued = manager.issue_access("acct-1")
        with pytest.raises(WrongTokenKindError):
            await manager.verify_refresh(issued.token)

    async def test_expired_token(self, manager, clock):
        issued = manager.issue_access("acct-1")
        clock.advance(1801)
        with pytest.raises(TokenExpiredError):
            await manager.verify_access(issued.token)

    async def test_token_expiring_exactly_now_is_expired(self, manager, clock):
        issued = manager.issue_access("acct-1")
        clock.now = float(issued.expires_at)
        with pytest.raises(TokenExpiredError):
            await manager.verify_access(issued.token)

    async def test_tampered_payload_fails_signature(self, manager):
        issued = manager.issue_access("acct-1")
        payload = _payload(issued.token)
        payload["sub"] = "acct-2"
        with pytest.raises(TokenMalformedError):
            await manager.verify_access(_reencode(issued.token, payload))

    async def test_kind_flip_fails_signature(self, manager):
        issued = manager.issue_refresh("acct-1")
        payload = _payload(issued.token)
        payload["kind"] = ACCESS
        with pytest.raises(TokenMalformedError):
            await manager.verify_access(_reencode(issued.token, payload))

    async def test_wrong_issuer_or_audience(self, manager, cache, clock):
        other = TokenManager(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            issuer="someone-else",
            audience="authcore-clients",
            access_ttl_seconds=60,
            refresh_ttl_seconds=60,
            second_factor_ttl_seconds=60,
            cache=cache,
            clock=clock,
        )
        with pytest.raises(TokenMalformedError):
            await manager.verify_access(other.issue_access("acct-1").token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    async def test_malformed_tokens(self, manager, token):
        with pytest.raises(TokenMalformedError):
            await manager.verify_access(token)

    async def test_none_algorithm_is_rejected(self, manager):
        issued = manager.issue_access("acct-1")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        _, body, _ = issued.token.split(".")
        with pytest.raises(TokenMalformedError):
            await manager.verify_access(f"{header}.{body}.")

    async def test_second_factor_token_is_not_an_access_token(self, manager):
        temp = manager.issue_second_factor_token("acct-1", device_id="device-1")
        with pytest.raises(SecondFactorRequiredError):
            await manager.verify_access(temp.token)
        claims = await manager.verify_second_factor_token(temp.token)
        assert claims["sub"] == "acct-1"
        assert claims["did"] == "device-1"

    async def test_plain_access_token_is_not_a_second_factor_token(self, manager):
        issued = manager.issue_access("acct-1")
        with pytest.raises(WrongTokenKindError):
            await manager.verify_second_factor_token(issued.token)


class TestRevocation:
    async def test_revoked_token_fails_verification(self, manager):
        issued = manager.issue_access("acct-1")
        assert await manager.revoke(issued.token) is True
        assert await manager.is_revoked(issued.token) is True
        with pytest.raises(TokenRevokedError):
            await manager.verify_access(issued.token)

    async def test_blacklist_entry_expires_with_token(self, manager, cache, clock):
        issued = manager.issue_access("acct-1")
        await manager.revoke_jti(issued.jti, issued.expires_at)
        clock.advance(1801)
        assert await cache.is_jti_revoked(issued.jti) is False

    async def test_revoking_expired_token_is_a_noop(self, manager, clock):
        issued = manager.issue_access("acct-1")
        clock.advance(1801)
        assert await manager.revoke(issued.token) is False

    async def test_revocation_check_fails_closed_by_default(self, clock):
        manager = TokenManager(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            issuer="authcore",
            audience="authcore-clients",
            access_ttl_seconds=60,
            refresh_ttl_seconds=60,
            second_factor_ttl_seconds=60,
            cache=BrokenCache(clock=clock),
            clock=clock,
        )
        issued = manager.issue_access("acct-1")
        with pytest.raises(TokenRevokedError):
            await manager.verify_access(issued.token)

    async def test_revocation_check_can_fail_open(self, clock):
        manager = TokenManager(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            issuer="authcore",
            audience="authcore-clients",
            access_ttl_seconds=60,
            refresh_ttl_seconds=60,
            second_factor_ttl_seconds=60,
            cache=BrokenCache(clock=clock),
            revocation_fail_open=True,
            clock=clock,
        )
        issued = manager.issue_access("acct-1")
        claims = await manager.verify_access(issued.token)
        assert claims["sub"] == "acct-1"

    async def test_failed_blacklist_write_reports_false(self, clock):
        manager = TokenManager(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            issuer="authcore",
            audience="authcore-clients",
            access_ttl_seconds=60,
            refresh_ttl_seconds=60,
            second_factor_ttl_seconds=60,
            cache=BrokenCache(clock=clock),
            clock=clock,
        )
        issued = manager.issue_access("acct-1")
        assert await manager.revoke_jti(issued.jti, issued.expires_at) is False

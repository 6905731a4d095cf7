"""Tests for TOTP primitives, backup codes and the second-factor lifecycle."""

import time

import pytest

from authcore.service.errors import (
    BackupCodeExhaustedError,
    ConflictError,
    InvalidSecondFactorCodeError,
    NotFoundError,
    RateLimitedError,
)
from authcore.service.totp import (
    SecondFactorService,
    VerificationResult,
    generate_backup_codes,
    generate_secret,
    hash_backup_code,
    looks_like_backup_code,
    normalize_code,
    provisioning_uri,
    totp_at,
    verify_totp,
)
from authcore.storage.errors import CacheUnavailable
from authcore.storage.memory import MemoryStore
from authcore.storage.memory_cache import MemoryCache

# RFC 6238 appendix B seed ("12345678901234567890") in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class LockoutUnavailableCache(MemoryCache):
    async def is_second_factor_locked(self, account_id):
        raise CacheUnavailable("is_second_factor_locked")

    async def record_second_factor_failure(self, account_id, max_attempts, lockout_seconds):
        raise CacheUnavailable("record_second_factor_failure")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="second-factor-test-key")


@pytest.fixture
def account(store):
    return store.create_account("totp@example.com", status="active", verification_level="email_verified")


@pytest.fixture
def service(store):
    return SecondFactorService(store, MemoryCache(), max_attempts=3, lockout_seconds=60)


async def _enabled(service, account):
    setup = await service.setup(account.id, account.email)
    await service.enable(account.id, totp_at(setup.secret, time.time()))
    return setup


class TestPrimitives:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924"), (2000000000, "279037")],
    )
    def test_rfc6238_vectors(self, timestamp, expected):
        assert totp_at(RFC_SECRET, timestamp) == expected

    def test_window_accepts_adjacent_steps(self):
        now = 1_700_000_000
        previous = totp_at(RFC_SECRET, now - 30)
        assert verify_totp(RFC_SECRET, previous, window=1, at=now)
        far = totp_at(RFC_SECRET, now - 90)
        assert not verify_totp(RFC_SECRET, far, window=1, at=now)

    # 1_700_000_010 opens a 30 second step
    @pytest.mark.parametrize("issued_at", [1_700_000_010, 1_700_000_039], ids=["step-start", "step-end"])
    @pytest.mark.parametrize("drift", [-59, 59])
    def test_default_window_tolerates_a_minute_of_drift(self, issued_at, drift):
        code = totp_at(RFC_SECRET, issued_at)
        assert verify_totp(RFC_SECRET, code, at=issued_at + drift)

    @pytest.mark.parametrize("issued_at", [1_700_000_010, 1_700_000_039], ids=["step-start", "step-end"])
    @pytest.mark.parametrize("drift", [-90, 90])
    def test_default_window_rejects_ninety_seconds_of_drift(self, issued_at, drift):
        code = totp_at(RFC_SECRET, issued_at)
        assert not verify_totp(RFC_SECRET, code, at=issued_at + drift)

    def test_code_formatting_is_normalized(self):
        now = 1_700_000_000
        code = totp_at(RFC_SECRET, now)
        assert verify_totp(RFC_SECRET, f"{code[:3]} {code[3:]}", at=now)
        assert verify_totp(RFC_SECRET, f"{code[:3]}-{code[3:]}", at=now)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_rejects_bad_shapes(self, code):
        assert not verify_totp(RFC_SECRET, code, at=1_700_000_000)

    def test_generated_secret_is_base32(self):
        secret = generate_secret()
        assert len(secret) == 32
        assert totp_at(secret, time.time()).isdigit()

    def test_backup_codes(self):
        codes = generate_backup_codes(10)
        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(looks_like_backup_code(c) for c in codes)
        assert hash_backup_code(codes[0].lower()) == hash_backup_code(codes[0])
        assert normalize_code("ab-12 cd") == "AB12CD"

    def test_provisioning_uri(self):
        uri = provisioning_uri("SECRET", "user@example.com", "AuthCore")
        assert uri.startswith("otpauth://totp/AuthCore%3Auser%40example.com?")
        assert "secret=SECRET" in uri
        assert "issuer=AuthCore" in uri

    def test_low_backup_code_warning_threshold(self):
        assert VerificationResult(True, "backup_code", 2).low_on_backup_codes
        assert not VerificationResult(True, "backup_code", 3).low_on_backup_codes
        assert not VerificationResult(True, "totp").low_on_backup_codes


class TestLifecycle:
    async def test_setup_is_pending_until_enabled(self, service, account):
        setup = await service.setup(account.id, account.email)
        assert len(setup.backup_codes) == 10
        assert not service.is_enabled(account.id)

        await service.enable(account.id, totp_at(setup.secret, time.time()))
        assert service.is_enabled(account.id)

    async def test_secret_is_encrypted_at_rest(self, service, store, account):
        setup = await service.setup(account.id, account.email)
        assert store.second_factors[account.id].secret != setup.secret
        assert store.get_second_factor(account.id).secret == setup.secret

    async def test_enable_with_wrong_code(self, service, account):
        await service.setup(account.id, account.email)
        with pytest.raises(InvalidSecondFactorCodeError):
            await service.enable(account.id, "000000")
        assert not service.is_enabled(account.id)

    async def test_enable_without_setup(self, service, account):
        with pytest.raises(NotFoundError):
            await service.enable(account.id, "123456")

    async def test_setup_refused_when_enabled(self, service, account):
        await _enabled(service, account)
        with pytest.raises(ConflictError):
            await service.setup(account.id, account.email)

    async def test_consume_totp(self, service, account):
        setup = await _enabled(service, account)
        result = await service.consume_if_valid(account.id, totp_at(setup.secret, time.time()))
        assert result.verified
        assert result.method == "totp"

    async def test_backup_code_is_single_use(self, service, account):
        setup = await _enabled(service, account)
        code = setup.backup_codes[0]

        first = await service.consume_if_valid(account.id, code)
        assert first.verified
        assert first.method == "backup_code"
        assert first.remaining_backup_codes == 9

        second = await service.consume_if_valid(account.id, code)
        assert not second.verified
        assert second.reason == "invalid_code"

    async def test_exhausted_backup_codes(self, store, account):
        service = SecondFactorService(store, MemoryCache(), backup_code_count=1, max_attempts=10)
        setup = await _enabled(service, account)

        result = await service.require(account.id, setup.backup_codes[0])
        assert result.remaining_backup_codes == 0
        assert result.low_on_backup_codes

        with pytest.raises(BackupCodeExhaustedError):
            await service.require(account.id, "ABCDEF12")

    async def test_reusing_last_backup_code_is_invalid(self, store, account):
        service = SecondFactorService(store, MemoryCache(), backup_code_count=1, max_attempts=10)
        setup = await _enabled(service, account)
        last = setup.backup_codes[0]

        assert (await service.require(account.id, last)).remaining_backup_codes == 0
        with pytest.raises(InvalidSecondFactorCodeError):
            await service.require(account.id, last)
        with pytest.raises(BackupCodeExhaustedError):
            await service.require(account.id, "ABCDEF12")

    async def test_not_enabled(self, service, account):
        result = await service.consume_if_valid(account.id, "123456")
        assert not result.verified
        assert result.reason == "not_enabled"

    async def test_lockout_after_repeated_failures(self, service, account):
        setup = await _enabled(service, account)
        for _ in range(2):
            with pytest.raises(InvalidSecondFactorCodeError):
                await service.require(account.id, "000000")
        with pytest.raises(RateLimitedError) as excinfo:
            await service.require(account.id, "000000")
        assert excinfo.value.detail["retry_after"] == 60

        # Even a correct code is refused while locked
        with pytest.raises(RateLimitedError):
            await service.require(account.id, totp_at(setup.secret, time.time()))

    async def test_success_clears_failure_count(self, service, account):
        setup = await _enabled(service, account)
        for _ in range(2):
            with pytest.raises(InvalidSecondFactorCodeError):
                await service.require(account.id, "000000")
        await service.require(account.id, totp_at(setup.secret, time.time()))
        for _ in range(2):
            with pytest.raises(InvalidSecondFactorCodeError):
                await service.require(account.id, "000000")

    async def test_lockout_cache_outage_does_not_block(self, store, account):
        service = SecondFactorService(store, LockoutUnavailableCache())
        setup = await _enabled(service, account)
        result = await service.require(account.id, totp_at(setup.secret, time.time()))
        assert result.verified
        with pytest.raises(InvalidSecondFactorCodeError):
            await service.require(account.id, "000000")

    async def test_disable_keeps_row_and_clears_codes(self, service, store, account):
        setup = await _enabled(service, account)
        result = await service.disable(account.id, totp_at(setup.secret, time.time()))

        assert result.method == "totp"
        credential = store.get_second_factor(account.id)
        assert credential is not None
        assert not credential.enabled
        assert credential.backup_code_hashes == []
        assert service.status(account.id)["enabled"] is False

    async def test_disable_with_backup_code(self, service, account):
        setup = await _enabled(service, account)
        result = await service.disable(account.id, setup.backup_codes[3])
        assert result.method == "backup_code"

    async def test_disable_when_not_enabled(self, service, account):
        with pytest.raises(NotFoundError):
            await service.disable(account.id, "123456")

    async def test_regenerate_requires_totp(self, service, account):
        setup = await _enabled(service, account)
        with pytest.raises(InvalidSecondFactorCodeError):
            await service.regenerate(account.id, setup.backup_codes[0])

        codes = await service.regenerate(account.id, totp_at(setup.secret, time.time()))
        assert len(codes) == 10
        assert set(codes).isdisjoint(setup.backup_codes)
        old = await service.consume_if_valid(account.id, setup.backup_codes[1])
        assert not old.verified

    async def test_status(self, service, account):
        assert service.status(account.id) == {
            "enabled": False,
            "has_backup_codes": False,
            "backup_codes_count": 0,
            "enabled_at": None,
        }
        await _enabled(service, account)
        status = service.status(account.id)
        assert status["enabled"] is True
        assert status["backup_codes_count"] == 10
        assert status["enabled_at"] is not None

import pytest
from argon2 import PasswordHasher, Type

from authcore.service.passwords import (
    PASSWORD_ALGO,
    CredentialVerifier,
    check_password_policy,
    password_strength,
)


@pytest.fixture(scope="module")
def verifier():
    # Cheap parameters keep the suite fast; the algorithm is unchanged
    return CredentialVerifier(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID))


class TestPolicy:
    def test_strong_password_passes(self):
        result = check_password_policy("TestPassword123!")
        assert result.is_valid
        assert result.errors == []
        assert result.strength in {"strong", "very_strong"}

    @pytest.mark.parametrize(
        "password,message",
        [
            ("Ab1!", "at least 8"),
            ("lowercase1!", "uppercase"),
            ("UPPERCASE1!", "lowercase"),
            ("NoDigitsHere!", "number"),
            ("NoSpecial123", "special"),
            ("Abc!123456x", "sequential"),
            ("Paaassword1!", "repeated"),
        ],
    )
    def test_each_rule_reports(self, password, message):
        result = check_password_policy(password)
        assert not result.is_valid
        assert any(message in error for error in result.errors)

    def test_empty_password(self):
        result = check_password_policy("")
        assert not result.is_valid
        assert result.strength == "weak"

    def test_too_long(self):
        result = check_password_policy("Aa1!" * 40)
        assert any("no more than 128" in e for e in result.errors)

    def test_email_local_part_rejected(self):
        result = check_password_policy("Traveler!2024x", email="traveler@example.com")
        assert "Password cannot contain your email address" in result.errors

    def test_short_local_part_ignored(self):
        result = check_password_policy("AbXyz!2024q", email="ab@example.com")
        assert result.is_valid


class TestStrength:
    def test_ordering(self):
        assert password_strength("") == "weak"
        assert password_strength("abc") == "weak"
        assert password_strength("Xk9!mQ2#vL7$pR4&") == "very_strong"

    def test_sequences_penalized(self):
        assert password_strength("Qwerty12!") != "very_strong"


class TestCredentialVerifier:
    def test_hash_and_verify(self, verifier):
        stored, algo = verifier.hash("TestPassword123!")
        assert algo == PASSWORD_ALGO
        assert stored.startswith("$argon2id$")
        assert verifier.verify(stored, "TestPassword123!")
        assert not verifier.verify(stored, "TestPassword123?")

    def test_unknown_algo_fails(self, verifier):
        stored, _ = verifier.hash("TestPassword123!")
        assert not verifier.verify(stored, "TestPassword123!", algo="bcrypt")

    def test_garbage_hash_fails(self, verifier):
        assert not verifier.verify("not-a-hash", "TestPassword123!")

    def test_burn_never_raises(self, verifier):
        verifier.burn("anything")
        verifier.burn("")

    def test_needs_rehash(self, verifier):
        stored, _ = verifier.hash("TestPassword123!")
        assert verifier.needs_rehash(stored) is False
        assert CredentialVerifier().needs_rehash(stored) is True
        assert verifier.needs_rehash("not-a-hash") is True

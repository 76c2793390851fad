import pytest

from swimo.service.credentials import CredentialVerifier
from swimo.service.errors import InvalidCredentialsError


@pytest.fixture(scope="module")
def verifier():
    return CredentialVerifier()


def test_hash_is_salted_argon2id(verifier):
    first = verifier.hash("CorrectHorse1!")
    second = verifier.hash("CorrectHorse1!")

    assert first.startswith("$argon2id$")
    assert first != second
    assert "CorrectHorse1!" not in first


def test_compare_accepts_matching_password(verifier):
    stored = verifier.hash("CorrectHorse1!")
    verifier.compare(stored, "CorrectHorse1!")


def test_compare_rejects_wrong_password(verifier):
    stored = verifier.hash("CorrectHorse1!")
    with pytest.raises(InvalidCredentialsError) as excinfo:
        verifier.compare(stored, "wrong-password")
    assert excinfo.value.message == "invalid email or password"


def test_compare_rejects_malformed_hash_with_same_error(verifier):
    with pytest.raises(InvalidCredentialsError) as excinfo:
        verifier.compare("not-a-hash", "whatever")
    assert excinfo.value.message == "invalid email or password"


def test_compare_dummy_always_fails(verifier):
    with pytest.raises(InvalidCredentialsError):
        verifier.compare_dummy("swimo-dummy-password")
    with pytest.raises(InvalidCredentialsError):
        verifier.compare_dummy("")

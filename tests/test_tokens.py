"""Tests for access token signing/verification and refresh credential generation."""

import base64
import json
import re
import time

import pytest

from swimo.service.errors import (
    ExpiredTokenError,
    InvalidSignatureError,
    InvalidTokenError,
)
from swimo.service.tokens import (
    _sign,
    issue_access_token,
    new_refresh_token,
    verify_access_token,
)
from swimo.storage.models import SessionKind

SECRET = "unit-test-signing-secret"


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _forge(payload: dict, header: dict | None = None, secret: str = SECRET) -> str:
    signing_input = f"{_b64(header or {'alg': 'HS256', 'typ': 'JWT'})}.{_b64(payload)}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


class TestIssueAndVerify:
    def test_user_token_round_trip(self):
        token, expires_at = issue_access_token(
            SECRET, 900, "sess-1", SessionKind.USER, "acct-1", "user-1"
        )
        claims = verify_access_token(token, SECRET)

        assert claims.session_id == "sess-1"
        assert claims.kind is SessionKind.USER
        assert claims.aid == "acct-1"
        assert claims.uid == "user-1"
        assert claims.exp - claims.iat == 900
        assert int(expires_at.timestamp()) == claims.exp

    def test_guest_token_omits_identifiers(self):
        token, _ = issue_access_token(SECRET, 900, "sess-g", "guest")
        payload_segment = token.split(".")[1]
        payload = json.loads(base64.urlsafe_b64decode(payload_segment + "=" * (-len(payload_segment) % 4)))

        assert "aid" not in payload
        assert "uid" not in payload
        assert payload["kind"] == "guest"

    def test_segments_are_unpadded_base64url(self):
        token, _ = issue_access_token(SECRET, 900, "sess-1", SessionKind.GUEST)
        assert token.count(".") == 2
        assert "=" not in token
        header = json.loads(base64.urlsafe_b64decode(token.split(".")[0] + "=="))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_issue_is_deterministic_for_fixed_time(self):
        now = 1_700_000_000
        first, _ = issue_access_token(SECRET, 60, "s", SessionKind.GUEST, now=now)
        second, _ = issue_access_token(SECRET, 60, "s", SessionKind.GUEST, now=now)
        assert first == second

    def test_issue_rejects_kind_identifier_mismatch(self):
        with pytest.raises(ValueError):
            issue_access_token(SECRET, 60, "s", SessionKind.GUEST, account_id="acct")
        with pytest.raises(ValueError):
            issue_access_token(SECRET, 60, "s", SessionKind.USER, account_id="acct")

    def test_issue_requires_session_id(self):
        with pytest.raises(ValueError):
            issue_access_token(SECRET, 60, "", SessionKind.GUEST)


class TestVerificationFailures:
    def test_tampered_payload_fails_signature(self):
        token, _ = issue_access_token(SECRET, 900, "sess-1", SessionKind.GUEST)
        header, _, signature = token.split(".")
        forged_payload = _b64({"sub": "someone-else", "kind": "guest", "iat": 1, "exp": 2**40})

        with pytest.raises(InvalidSignatureError):
            verify_access_token(f"{header}.{forged_payload}.{signature}", SECRET)

    def test_flipped_signature_character_fails(self):
        token, _ = issue_access_token(SECRET, 900, "sess-1", SessionKind.GUEST)
        replacement = "A" if token[-1] != "A" else "B"
        with pytest.raises(InvalidSignatureError):
            verify_access_token(token[:-1] + replacement, SECRET)

    def test_wrong_secret_fails_signature(self):
        token, _ = issue_access_token(SECRET, 900, "sess-1", SessionKind.GUEST)
        with pytest.raises(InvalidSignatureError):
            verify_access_token(token, "another-secret")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_wrong_segment_count_is_invalid(self, token):
        with pytest.raises(InvalidTokenError):
            verify_access_token(token, SECRET)

    def test_unparseable_payload_is_invalid(self):
        signing_input = f"{_b64({'alg': 'HS256', 'typ': 'JWT'})}.bm90LWpzb24"
        token = f"{signing_input}.{_sign(signing_input, SECRET)}"
        with pytest.raises(InvalidTokenError):
            verify_access_token(token, SECRET)

    def test_non_hs256_header_is_invalid(self):
        token = _forge(
            {"sub": "s", "kind": "guest", "iat": 1, "exp": 2**40},
            header={"alg": "none", "typ": "JWT"},
        )
        with pytest.raises(InvalidTokenError):
            verify_access_token(token, SECRET)

    def test_empty_subject_is_invalid(self):
        token = _forge({"sub": "", "kind": "guest", "iat": 1, "exp": 2**40})
        with pytest.raises(InvalidTokenError):
            verify_access_token(token, SECRET)

    def test_guest_claims_with_account_are_invalid(self):
        token = _forge({"sub": "s", "aid": "a", "kind": "guest", "iat": 1, "exp": 2**40})
        with pytest.raises(InvalidTokenError):
            verify_access_token(token, SECRET)

    def test_user_claims_without_user_id_are_invalid(self):
        token = _forge({"sub": "s", "aid": "a", "kind": "user", "iat": 1, "exp": 2**40})
        with pytest.raises(InvalidTokenError):
            verify_access_token(token, SECRET)

    def test_unknown_kind_is_invalid(self):
        token = _forge({"sub": "s", "kind": "admin", "iat": 1, "exp": 2**40})
        with pytest.raises(InvalidTokenError):
            verify_access_token(token, SECRET)

    def test_invalid_errors_are_authentication_failures(self):
        with pytest.raises(InvalidTokenError) as excinfo:
            verify_access_token("x", SECRET)
        assert excinfo.value.status_code == 401
        assert excinfo.value.error_code == "unauthorized"


class TestExpiry:
    def test_expired_one_second_ago(self):
        now = int(time.time())
        token = _forge({"sub": "s", "kind": "guest", "iat": now - 60, "exp": now - 1})
        with pytest.raises(ExpiredTokenError):
            verify_access_token(token, SECRET, now=now)

    def test_valid_until_one_second_ahead(self):
        now = int(time.time())
        token = _forge({"sub": "s", "kind": "guest", "iat": now, "exp": now + 1})
        claims = verify_access_token(token, SECRET, now=now)
        assert claims.exp == now + 1

    def test_zero_ttl_guest_token_is_expired(self):
        now = 1_700_000_000
        token, _ = issue_access_token(SECRET, 0, "sess-g", SessionKind.GUEST, now=now)
        with pytest.raises(ExpiredTokenError):
            verify_access_token(token, SECRET, now=now)

    def test_signature_checked_before_expiry(self):
        now = int(time.time())
        token = _forge({"sub": "s", "kind": "guest", "iat": 0, "exp": 1}, secret="other")
        with pytest.raises(InvalidSignatureError):
            verify_access_token(token, SECRET, now=now)


class TestRefreshToken:
    def test_refresh_token_is_64_lowercase_hex(self):
        token = new_refresh_token()
        assert re.fullmatch(r"[0-9a-f]{64}", token)

    def test_refresh_tokens_are_unique(self):
        tokens = {new_refresh_token() for _ in range(200)}
        assert len(tokens) == 200

    def test_refresh_token_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            new_refresh_token(0)

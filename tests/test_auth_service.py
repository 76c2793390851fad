"""Tests for the session lifecycle service.

Covers sign-up atomicity, sign-in failure modes, device single-session,
guest sign-in and its rate ceiling, refresh rotation and sign-out.
"""

import asyncio
import time

import pytest

from swimo.config import Settings
from swimo.service.auth import AuthService, NewProfile
from swimo.service.credentials import CredentialVerifier
from swimo.service.errors import (
    AccountExistsError,
    AccountLockedError,
    AuthenticationError,
    ExpiredRefreshTokenError,
    ExpiredTokenError,
    GuestDisabledError,
    GuestRateLimitedError,
    InvalidCredentialsError,
    OperationCancelledError,
    ServerError,
    ValidationError,
)
from swimo.service.tokens import verify_access_token
from swimo.storage.errors import StoreError
from swimo.storage.memory import MemoryStore
from swimo.storage.models import ProfileHint, SessionKind

PASSWORD = "CorrectHorse1!"
SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(scope="module")
def credentials():
    return CredentialVerifier()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=SECRET,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=3600,
        guest_rate_per_minute=0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def auth(settings, store, credentials):
    return AuthService(settings, store, store, credentials)


def _profile(**overrides):
    values = {"name": "Ada", "weight_kg": 62.5, "height_cm": 170.0, "age_years": 36}
    values.update(overrides)
    return NewProfile(**values)


async def _signup(auth, email="ada@example.com"):
    return await auth.signup(email, PASSWORD, PASSWORD, _profile())


class ProfileFaultStore(MemoryStore):
    def create_profile(self, *args, **kwargs):
        raise StoreError("profile insert failed", operation="create_profile")


class SlowStore(MemoryStore):
    def get_account_by_email(self, email):
        time.sleep(0.3)
        return super().get_account_by_email(email)


class TestSignup:
    async def test_signup_creates_account_and_profile(self, auth, store):
        account = await _signup(auth, "  Ada@Example.COM ")

        assert account.email == "ada@example.com"
        assert account.password_hash.startswith("$argon2id$")
        profile = store.get_profile_by_account_id(account.id)
        assert profile.name == "Ada"
        assert profile.age_years == 36

    async def test_duplicate_signup_conflicts(self, auth):
        await _signup(auth)
        with pytest.raises(AccountExistsError) as excinfo:
            await _signup(auth, "ADA@example.com")
        assert excinfo.value.status_code == 409

    async def test_profile_fault_rolls_back_account(self, settings, credentials):
        store = ProfileFaultStore()
        auth = AuthService(settings, store, store, credentials)

        with pytest.raises(StoreError):
            await _signup(auth)

        assert store.get_account_by_email("ada@example.com") is None
        assert store.accounts == {}
        assert store.profiles == {}

    async def test_mismatched_confirmation_is_rejected(self, auth, store):
        with pytest.raises(ValidationError) as excinfo:
            await auth.signup("ada@example.com", PASSWORD, "different", _profile())
        assert excinfo.value.detail == {"field": "confirm_password"}
        assert store.accounts == {}

    @pytest.mark.parametrize(
        "overrides",
        [{"weight_kg": 0}, {"height_cm": -1}, {"age_years": 0}, {"name": "   "}],
    )
    async def test_invalid_profile_is_rejected(self, auth, overrides):
        with pytest.raises(ValidationError):
            await auth.signup("ada@example.com", PASSWORD, PASSWORD, _profile(**overrides))


class TestSignin:
    async def test_signin_returns_profile_and_tokens(self, auth, settings):
        account = await _signup(auth)

        result = await auth.signin("ADA@example.com", PASSWORD, "phone")

        assert result.account.id == account.id
        assert result.profile.name == "Ada"
        assert result.tokens.expires_in_ms == 900 * 1000
        claims = verify_access_token(result.tokens.access_token, settings.jwt_secret)
        assert claims.kind is SessionKind.USER
        assert claims.aid == account.id
        assert claims.uid == result.profile.id
        assert claims.session_id == result.tokens.session_id

    async def test_wrong_password_and_unknown_email_fail_identically(self, auth):
        await _signup(auth)

        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth.signin("ada@example.com", "not-the-password", "phone")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await auth.signin("nobody@example.com", PASSWORD, "phone")

        assert type(wrong_password.value) is type(unknown_email.value)
        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.status_code == unknown_email.value.status_code == 401

    async def test_locked_account_is_forbidden(self, auth, store):
        account = await _signup(auth)
        store.set_account_locked(account.id, True)

        with pytest.raises(AccountLockedError) as excinfo:
            await auth.signin("ada@example.com", PASSWORD, "phone")
        assert excinfo.value.status_code == 403

    async def test_signin_on_same_device_revokes_previous_session(self, auth, store):
        await _signup(auth)

        first = await auth.signin("ada@example.com", PASSWORD, "phone")
        other_device = await auth.signin("ada@example.com", PASSWORD, "laptop")
        second = await auth.signin("ada@example.com", PASSWORD, "phone")

        assert store.get_session(first.tokens.session_id).revoked_at is not None
        assert store.get_session(second.tokens.session_id).revoked_at is None
        assert store.get_session(other_device.tokens.session_id).revoked_at is None
        with pytest.raises(ExpiredRefreshTokenError):
            await auth.refresh(first.tokens.refresh_token)

    async def test_missing_profile_is_internal_error(self, auth, store):
        with store.transaction() as tx:
            store.create_account("orphan@example.com", auth.credentials.hash(PASSWORD), tx=tx)

        with pytest.raises(ServerError):
            await auth.signin("orphan@example.com", PASSWORD, "phone")

    async def test_deadline_raises_operation_cancelled(self, settings, credentials):
        store = SlowStore()
        auth = AuthService(settings, store, store, credentials)

        with pytest.raises(OperationCancelledError) as excinfo:
            await auth.signin("ada@example.com", PASSWORD, "phone", timeout=0.05)
        assert excinfo.value.status_code == 503
        assert excinfo.value.error_code == "unavailable"


class TestGuest:
    async def test_guest_signin_issues_guest_token(self, auth, settings, store):
        hint = ProfileHint(weight_kg=80.0)

        result = await auth.signin_guest("browser", hint)

        assert result.hint.weight_kg == 80.0
        assert result.hint.height_cm is None
        claims = verify_access_token(result.tokens.access_token, settings.jwt_secret)
        assert claims.kind is SessionKind.GUEST
        assert claims.aid is None and claims.uid is None
        session = store.get_session(result.tokens.session_id)
        assert session.kind is SessionKind.GUEST
        assert session.account_id is None

    async def test_guest_disabled(self, settings, store, credentials):
        settings.guest_enabled = False
        auth = AuthService(settings, store, store, credentials)

        with pytest.raises(GuestDisabledError) as excinfo:
            await auth.signin_guest("browser")
        assert excinfo.value.status_code == 403

    async def test_guest_ceiling_per_user_agent(self, settings, store, credentials):
        settings.guest_rate_per_minute = 3
        auth = AuthService(settings, store, store, credentials)

        for _ in range(3):
            await auth.signin_guest("browser")
        with pytest.raises(GuestRateLimitedError) as excinfo:
            await auth.signin_guest("browser")
        assert excinfo.value.status_code == 429

        await auth.signin_guest("another-browser")

    async def test_zero_ttl_guest_token_is_expired(self, settings, store, credentials):
        settings.access_token_ttl_seconds = 0
        auth = AuthService(settings, store, store, credentials)

        result = await auth.signin_guest("browser")

        with pytest.raises(ExpiredTokenError):
            verify_access_token(result.tokens.access_token, settings.jwt_secret)


class TestRefreshAndSignout:
    async def test_refresh_is_single_use(self, auth, store):
        await _signup(auth)
        signed_in = await auth.signin("ada@example.com", PASSWORD, "phone")

        rotated = await auth.refresh(signed_in.tokens.refresh_token)

        assert rotated.session_id != signed_in.tokens.session_id
        assert rotated.refresh_token != signed_in.tokens.refresh_token
        assert store.get_session(signed_in.tokens.session_id).revoked_at is not None
        with pytest.raises(ExpiredRefreshTokenError):
            await auth.refresh(signed_in.tokens.refresh_token)

    async def test_refresh_keeps_kind_and_account(self, auth, settings):
        account = await _signup(auth)
        signed_in = await auth.signin("ada@example.com", PASSWORD, "phone")

        rotated = await auth.refresh(signed_in.tokens.refresh_token)

        claims = verify_access_token(rotated.access_token, settings.jwt_secret)
        assert claims.kind is SessionKind.USER
        assert claims.aid == account.id
        assert claims.uid == signed_in.profile.id

    async def test_guest_refresh_stays_guest(self, auth, settings):
        guest = await auth.signin_guest("browser")

        rotated = await auth.refresh(guest.tokens.refresh_token)

        claims = verify_access_token(rotated.access_token, settings.jwt_secret)
        assert claims.kind is SessionKind.GUEST

    async def test_concurrent_refresh_lets_one_caller_rotate(self, auth):
        guest = await auth.signin_guest("browser")
        token = guest.tokens.refresh_token

        results = await asyncio.gather(
            auth.refresh(token), auth.refresh(token), return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, ExpiredRefreshTokenError)]
        assert len(successes) == 1
        assert len(failures) == 1

    async def test_unknown_refresh_token(self, auth):
        with pytest.raises(ExpiredRefreshTokenError):
            await auth.refresh("0" * 64)
        with pytest.raises(ExpiredRefreshTokenError):
            await auth.refresh("")

    async def test_signout_is_idempotent(self, auth, store):
        guest = await auth.signin_guest("browser")

        await auth.signout(guest.tokens.session_id)
        await auth.signout(guest.tokens.session_id)
        await auth.signout("missing-session")

        assert store.get_session(guest.tokens.session_id).revoked_at is not None
        with pytest.raises(ExpiredRefreshTokenError):
            await auth.refresh(guest.tokens.refresh_token)


class TestAuthenticate:
    async def test_bearer_header_is_verified(self, auth):
        guest = await auth.signin_guest("browser")

        claims = auth.authenticate(f"bearer {guest.tokens.access_token}")

        assert claims.session_id == guest.tokens.session_id

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Token x"])
    def test_missing_or_malformed_header(self, auth, header):
        with pytest.raises(AuthenticationError):
            auth.authenticate(header)

    def test_service_requires_secret(self, store, credentials):
        settings = Settings(jwt_secret="placeholder")
        settings.jwt_secret = None
        with pytest.raises(ValueError):
            AuthService(settings, store, store, credentials)

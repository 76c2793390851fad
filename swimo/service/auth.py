"""Session lifecycle: sign-up, sign-in, guest sign-in, sign-out and refresh.

Every public operation is a coroutine. Blocking store and hashing calls run in
worker threads through :func:`asyncio.to_thread` and the whole operation is
bounded by an optional ``timeout``. A timed-out operation raises
:class:`OperationCancelledError`; a worker thread already started is not
interrupted and may still complete its store call.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, ContextManager, Optional, Protocol, TypeVar

from swimo.config import Settings
from swimo.logging import get_logger
from swimo.service.credentials import CredentialVerifier
from swimo.service.errors import (
    AccountExistsError,
    AccountLockedError,
    AuthenticationError,
    ExpiredRefreshTokenError,
    GuestDisabledError,
    OperationCancelledError,
    ServerError,
    ValidationError,
)
from swimo.service.rate_limit import GuestRateLimiter
from swimo.service.tokens import Claims, issue_access_token, new_refresh_token, verify_access_token
from swimo.storage.errors import ConstraintViolation, StoreError
from swimo.storage.models import (
    Account,
    Profile,
    ProfileHint,
    Session,
    SessionKind,
    TokenPair,
    utcnow,
)

T = TypeVar("T")


class SessionStore(Protocol):
    def create_user_session(self, session: Session) -> str: ...

    def create_guest_session(self, session: Session) -> str: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def revoke_session_by_id(self, session_id: str) -> bool: ...

    def revoke_sessions_by_account(self, account_id: str, user_agent: str) -> int: ...

    def count_recent_guest_sessions(self, user_agent: str, since: datetime) -> int: ...


class AccountStore(Protocol):
    def transaction(self) -> ContextManager[Any]: ...

    def create_account(self, email: str, password_hash: str, *, tx: Any) -> Account: ...

    def create_profile(
        self,
        account_id: str,
        name: str,
        weight_kg: float,
        height_cm: float,
        age_years: int,
        *,
        tx: Any,
    ) -> Profile: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def set_account_locked(self, account_id: str, locked: bool) -> Optional[Account]: ...


class AuthStore(SessionStore, AccountStore, Protocol):
    """Everything the lifecycle needs from one persistence backend."""


class ProfileRepository(Protocol):
    def get_profile_id_by_account_id(self, account_id: str) -> Optional[str]: ...

    def get_profile_by_account_id(self, account_id: str) -> Optional[Profile]: ...


@dataclass
class NewProfile:
    name: str
    weight_kg: float
    height_cm: float
    age_years: int


@dataclass
class SignInResult:
    account: Account
    profile: Profile
    tokens: TokenPair


@dataclass
class GuestSignInResult:
    hint: ProfileHint
    tokens: TokenPair


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Issues, rotates and revokes sessions for accounts and guests."""

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        profiles: ProfileRepository,
        credentials: CredentialVerifier,
        rate_limiter: Optional[GuestRateLimiter] = None,
        logger=None,
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("settings.jwt_secret is required")
        self.settings = settings
        self.store = store
        self.profiles = profiles
        self.credentials = credentials
        self.logger = logger or get_logger(__name__)
        self.rate_limiter = rate_limiter or GuestRateLimiter(
            store, settings.guest_rate_per_minute, logger=self.logger
        )

    async def _run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        timeout: Optional[float],
    ) -> T:
        try:
            return await asyncio.wait_for(call(), timeout)
        except asyncio.TimeoutError:
            self.logger.warning("auth_operation_timeout", operation=operation, timeout=timeout)
            raise OperationCancelledError(
                f"{operation} did not finish in time", detail={"operation": operation}
            ) from None

    # sign-up
    async def signup(
        self,
        email: str,
        password: str,
        confirm_password: str,
        profile: NewProfile,
        *,
        timeout: Optional[float] = None,
    ) -> Account:
        normalized = normalize_email(email)
        self._validate_signup(normalized, password, confirm_password, profile)
        return await self._run(
            "signup",
            lambda: self._signup(normalized, password, profile),
            timeout,
        )

    def _validate_signup(
        self, email: str, password: str, confirm_password: str, profile: NewProfile
    ) -> None:
        if not email or "@" not in email:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        if password != confirm_password:
            raise ValidationError(
                "passwords do not match", detail={"field": "confirm_password"}
            )
        if not (profile.name or "").strip():
            raise ValidationError("name is required", detail={"field": "name"})
        for field in ("weight_kg", "height_cm", "age_years"):
            value = getattr(profile, field)
            if value is None or value <= 0:
                raise ValidationError(f"{field} must be positive", detail={"field": field})

    async def _signup(self, email: str, password: str, profile: NewProfile) -> Account:
        password_hash = await asyncio.to_thread(self.credentials.hash, password)
        try:
            account = await asyncio.to_thread(
                self._create_account_with_profile, email, password_hash, profile
            )
        except ConstraintViolation as exc:
            self.logger.info("signup_rollback", reason="constraint", detail=exc.detail)
            if exc.detail.get("field") == "email":
                raise AccountExistsError("account already exists") from exc
            raise ServerError("failed to create account") from exc
        except StoreError:
            self.logger.error("signup_rollback", reason="store_error")
            raise
        self.logger.info("signup_succeeded", account_id=account.id)
        return account

    def _create_account_with_profile(
        self, email: str, password_hash: str, profile: NewProfile
    ) -> Account:
        with self.store.transaction() as tx:
            account = self.store.create_account(email, password_hash, tx=tx)
            self.store.create_profile(
                account.id,
                profile.name.strip(),
                profile.weight_kg,
                profile.height_cm,
                profile.age_years,
                tx=tx,
            )
        return account

    # sign-in
    async def signin(
        self,
        email: str,
        password: str,
        user_agent: str,
        *,
        timeout: Optional[float] = None,
    ) -> SignInResult:
        return await self._run(
            "signin",
            lambda: self._signin(normalize_email(email), password, user_agent or ""),
            timeout,
        )

    async def _signin(self, email: str, password: str, user_agent: str) -> SignInResult:
        account = await asyncio.to_thread(self.store.get_account_by_email, email)
        if account is None:
            self.logger.info("signin_failed", reason="unknown_account")
            # compare_dummy always raises InvalidCredentialsError
            await asyncio.to_thread(self.credentials.compare_dummy, password)
        if account.is_locked:
            self.logger.info("signin_failed", reason="locked", account_id=account.id)
            raise AccountLockedError("account is locked")
        try:
            await asyncio.to_thread(self.credentials.compare, account.password_hash, password)
        except AuthenticationError:
            self.logger.info("signin_failed", reason="bad_password", account_id=account.id)
            raise

        profile = await asyncio.to_thread(self.profiles.get_profile_by_account_id, account.id)
        if profile is None:
            self.logger.error("profile_missing", account_id=account.id)
            raise ServerError("profile missing for account")

        revoked = await asyncio.to_thread(
            self.store.revoke_sessions_by_account, account.id, user_agent
        )
        tokens = await self._mint_tokens(
            SessionKind.USER, user_agent, account.id, profile_id=profile.id
        )
        self.logger.info(
            "signin_succeeded",
            account_id=account.id,
            session_id=tokens.session_id,
            revoked_sessions=revoked,
        )
        return SignInResult(account=account, profile=profile, tokens=tokens)

    # guests
    async def signin_guest(
        self,
        user_agent: str,
        hint: Optional[ProfileHint] = None,
        *,
        timeout: Optional[float] = None,
    ) -> GuestSignInResult:
        if not self.settings.guest_enabled:
            raise GuestDisabledError("guest sign-in is disabled")
        return await self._run(
            "signin_guest",
            lambda: self._signin_guest(user_agent or "", hint or ProfileHint()),
            timeout,
        )

    async def _signin_guest(self, user_agent: str, hint: ProfileHint) -> GuestSignInResult:
        await asyncio.to_thread(self.rate_limiter.check, user_agent)
        tokens = await self._mint_tokens(SessionKind.GUEST, user_agent)
        self.logger.info("guest_signin_succeeded", session_id=tokens.session_id)
        return GuestSignInResult(hint=hint, tokens=tokens)

    # sign-out / refresh
    async def signout(self, session_id: str, *, timeout: Optional[float] = None) -> None:
        revoked = await self._run(
            "signout",
            lambda: asyncio.to_thread(self.store.revoke_session_by_id, session_id),
            timeout,
        )
        self.logger.info("signout", session_id=session_id, revoked=revoked)

    async def refresh(
        self, refresh_token: str, *, timeout: Optional[float] = None
    ) -> TokenPair:
        if not refresh_token:
            raise ExpiredRefreshTokenError("refresh token expired or revoked")
        return await self._run("refresh", lambda: self._refresh(refresh_token), timeout)

    async def _refresh(self, refresh_token: str) -> TokenPair:
        session = await asyncio.to_thread(self.store.get_session_by_refresh_hash, refresh_token)
        if session is None:
            self.logger.info("refresh_rejected", reason="not_found")
            raise ExpiredRefreshTokenError("refresh token expired or revoked")
        # Only the caller whose revoke flipped the row may rotate
        consumed = await asyncio.to_thread(self.store.revoke_session_by_id, session.id)
        if not consumed:
            self.logger.warning("refresh_rejected", reason="replayed", session_id=session.id)
            raise ExpiredRefreshTokenError("refresh token expired or revoked")
        tokens = await self._mint_tokens(session.kind, session.user_agent, session.account_id)
        self.logger.info(
            "refresh_succeeded",
            previous_session_id=session.id,
            session_id=tokens.session_id,
        )
        return tokens

    # bearer authentication
    def authenticate(
        self, authorization: Optional[str], *, now: Optional[float] = None
    ) -> Claims:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing or malformed bearer token")
        return verify_access_token(token, self.settings.jwt_secret, now=now)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def _mint_tokens(
        self,
        kind: SessionKind,
        user_agent: str,
        account_id: Optional[str] = None,
        *,
        profile_id: Optional[str] = None,
    ) -> TokenPair:
        kind = SessionKind(kind)
        if kind is SessionKind.USER:
            if not account_id:
                raise ServerError("user session requires an account")
            if profile_id is None:
                profile_id = await asyncio.to_thread(
                    self.profiles.get_profile_id_by_account_id, account_id
                )
            if not profile_id:
                self.logger.error("profile_missing", account_id=account_id)
                raise ServerError("profile missing for account")

        now = utcnow()
        session = Session.new(
            kind,
            user_agent,
            new_refresh_token(self.settings.refresh_token_bytes),
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            account_id=account_id if kind is SessionKind.USER else None,
            now=now,
        )
        if kind is SessionKind.USER:
            session_id = await asyncio.to_thread(self.store.create_user_session, session)
        else:
            session_id = await asyncio.to_thread(self.store.create_guest_session, session)

        access_token, expires_at = issue_access_token(
            self.settings.jwt_secret,
            self.settings.access_token_ttl_seconds,
            session_id,
            kind,
            session.account_id,
            profile_id if kind is SessionKind.USER else None,
            now=now.timestamp(),
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=session.refresh_token_hash,
            expires_in_ms=self.settings.access_token_ttl_seconds * 1000,
            session_id=session_id,
            expires_at=expires_at,
        )


__all__ = [
    "AccountStore",
    "AuthService",
    "AuthStore",
    "GuestSignInResult",
    "NewProfile",
    "ProfileRepository",
    "SessionStore",
    "SignInResult",
    "normalize_email",
]

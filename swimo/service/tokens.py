"""Signed access tokens and opaque refresh credentials.

Access tokens are compact HS256 JWTs (``header.claims.signature``, each
segment base64url without padding). They are verified purely from the
signature and expiry; revocation is only tracked for refresh credentials.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from swimo.service.errors import (
    ExpiredTokenError,
    InvalidSignatureError,
    InvalidTokenError,
)
from swimo.storage.models import SessionKind

_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class Claims:
    sub: str
    kind: SessionKind
    iat: int
    exp: int
    aid: Optional[str] = None
    uid: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.sub

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"sub": self.sub}
        if self.aid is not None:
            payload["aid"] = self.aid
        if self.uid is not None:
            payload["uid"] = self.uid
        payload.update({"kind": self.kind.value, "iat": self.iat, "exp": self.exp})
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> "Claims":
        if not isinstance(payload, dict):
            raise InvalidTokenError("invalid token payload")
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise InvalidTokenError("invalid token subject")
        try:
            kind = SessionKind(payload.get("kind"))
        except ValueError as exc:
            raise InvalidTokenError("invalid token kind") from exc
        iat, exp = payload.get("iat"), payload.get("exp")
        for value in (iat, exp):
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidTokenError("invalid token timestamps")
        aid, uid = payload.get("aid"), payload.get("uid")
        for value in (aid, uid):
            if value is not None and not isinstance(value, str):
                raise InvalidTokenError("invalid token identifiers")
        if not _identifiers_match_kind(kind, aid, uid):
            raise InvalidTokenError("token identifiers do not match kind")
        return cls(sub=sub, kind=kind, iat=iat, exp=exp, aid=aid, uid=uid)


def _identifiers_match_kind(
    kind: SessionKind, account_id: Optional[str], user_id: Optional[str]
) -> bool:
    if kind is SessionKind.GUEST:
        return account_id is None and user_id is None
    return bool(account_id) and bool(user_id)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def issue_access_token(
    secret: str,
    ttl_seconds: int,
    session_id: str,
    kind: SessionKind | str,
    account_id: Optional[str] = None,
    user_id: Optional[str] = None,
    *,
    now: Optional[float] = None,
) -> tuple[str, datetime]:
    """Sign a new access token and return it with its expiry.

    Raises ``ValueError`` when the identifiers do not match ``kind``; that is a
    caller bug, not a client error.
    """
    kind = SessionKind(kind)
    if not session_id:
        raise ValueError("session_id is required")
    if not _identifiers_match_kind(kind, account_id, user_id):
        raise ValueError(f"identifiers do not match session kind {kind.value!r}")
    issued_at = int(time.time() if now is None else now)
    claims = Claims(
        sub=session_id,
        kind=kind,
        iat=issued_at,
        exp=issued_at + int(ttl_seconds),
        aid=account_id,
        uid=user_id,
    )
    header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload_enc = _encode_segment(
        json.dumps(claims.to_payload(), separators=(",", ":")).encode()
    )
    signing_input = f"{header_enc}.{payload_enc}"
    token = f"{signing_input}.{_sign(signing_input, secret)}"
    return token, datetime.fromtimestamp(claims.exp, tz=timezone.utc)


def verify_access_token(token: str, secret: str, *, now: Optional[float] = None) -> Claims:
    if not isinstance(token, str):
        raise InvalidTokenError("invalid token format")
    parts = token.split(".")
    if len(parts) != 3:
        raise InvalidTokenError("invalid token format")
    header_b64, payload_b64, sig_b64 = parts

    expected_sig = _sign(f"{header_b64}.{payload_b64}", secret)
    # SECURITY: constant-time comparison; bytes so non-ASCII input cannot raise
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
        raise InvalidSignatureError("invalid token signature")

    try:
        header = json.loads(_decode_segment(header_b64))
        payload = json.loads(_decode_segment(payload_b64))
    except ValueError as exc:
        raise InvalidTokenError("invalid token format") from exc
    if not isinstance(header, dict) or header.get("alg") != _HEADER["alg"]:
        raise InvalidTokenError("unsupported token algorithm")

    claims = Claims.from_payload(payload)
    current = int(time.time() if now is None else now)
    # An expiry equal to the current second is already expired
    if current >= claims.exp:
        raise ExpiredTokenError("token expired")
    return claims


def new_refresh_token(n_bytes: int = 32) -> str:
    """Return a 64-char hex refresh credential derived from ``n_bytes`` of randomness.

    The SHA-256 digest is both what the client holds and what the store keeps,
    so it acts as a fixed-length opaque bearer secret.
    """
    if n_bytes <= 0:
        raise ValueError("n_bytes must be positive")
    return hashlib.sha256(secrets.token_bytes(n_bytes)).hexdigest()

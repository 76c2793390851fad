from __future__ import annotations

import contextlib
import json
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

from swimo.logging import get_logger
from swimo.storage.errors import ConstraintViolation, StoreError
from swimo.storage.models import Account, Profile, Session, SessionKind, utcnow


@dataclass
class MemoryTransaction:
    """Writes staged by a sign-up; applied only when the block exits cleanly."""

    accounts: Dict[str, Account] = field(default_factory=dict)
    profiles: Dict[str, Profile] = field(default_factory=dict)


class MemoryStore:
    """In-process account/profile/session store.

    State lives in dictionaries guarded by a re-entrant lock. When ``fs_root``
    is given, every write is mirrored to ``<fs_root>/state/memory_store.json``
    and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.profiles: Dict[str, Profile] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so a transaction can call the create helpers while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # accounts / profiles
    @contextlib.contextmanager
    def transaction(self) -> Iterator[MemoryTransaction]:
        tx = MemoryTransaction()
        with self._data_lock:
            yield tx
            self.accounts.update(tx.accounts)
            self.profiles.update(tx.profiles)
            self._persist_state()

    def create_account(
        self, email: str, password_hash: str, *, tx: MemoryTransaction
    ) -> Account:
        with self._data_lock:
            taken = list(self.accounts.values()) + list(tx.accounts.values())
            if any(existing.email == email for existing in taken):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(id=str(uuid.uuid4()), email=email, password_hash=password_hash)
            tx.accounts[account.id] = account
            return account

    def create_profile(
        self,
        account_id: str,
        name: str,
        weight_kg: float,
        height_cm: float,
        age_years: int,
        *,
        tx: MemoryTransaction,
    ) -> Profile:
        with self._data_lock:
            if account_id not in self.accounts and account_id not in tx.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            owners = list(self.profiles.values()) + list(tx.profiles.values())
            if any(existing.account_id == account_id for existing in owners):
                raise ConstraintViolation("profile already exists", {"field": "account_id"})
            profile = Profile(
                id=str(uuid.uuid4()),
                account_id=account_id,
                name=name,
                weight_kg=weight_kg,
                height_cm=height_cm,
                age_years=age_years,
            )
            tx.profiles[profile.id] = profile
            return profile

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def set_account_locked(self, account_id: str, locked: bool) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_locked = locked
            self._persist_state()
            return account

    def get_profile_by_account_id(self, account_id: str) -> Optional[Profile]:
        with self._data_lock:
            return next(
                (p for p in self.profiles.values() if p.account_id == account_id), None
            )

    def get_profile_id_by_account_id(self, account_id: str) -> Optional[str]:
        profile = self.get_profile_by_account_id(account_id)
        return profile.id if profile else None

    # sessions
    def create_user_session(self, session: Session) -> str:
        if session.account_id is None:
            raise StoreError("user session requires an account", operation="create_user_session")
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise StoreError("session account missing", operation="create_user_session")
            return self._insert_session(replace(session, kind=SessionKind.USER))

    def create_guest_session(self, session: Session) -> str:
        with self._data_lock:
            return self._insert_session(
                replace(session, kind=SessionKind.GUEST, account_id=None)
            )

    def _insert_session(self, session: Session) -> str:
        if session.id in self.sessions:
            raise StoreError("duplicate session id", operation="create_session")
        if any(
            s.refresh_token_hash == session.refresh_token_hash
            for s in self.sessions.values()
        ):
            raise StoreError("duplicate refresh token", operation="create_session")
        self.sessions[session.id] = session
        self._persist_state()
        return session.id

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        now = utcnow()
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.refresh_token_hash == refresh_token_hash and sess.is_refreshable(now):
                    return replace(sess)
            return None

    def revoke_session_by_id(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return False
            sess.revoked_at = utcnow()
            self._persist_state()
            return True

    def revoke_sessions_by_account(self, account_id: str, user_agent: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for sess in self.sessions.values():
                if (
                    sess.account_id == account_id
                    and sess.user_agent == user_agent
                    and sess.revoked_at is None
                ):
                    sess.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def count_recent_guest_sessions(self, user_agent: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for sess in self.sessions.values()
                if sess.kind is SessionKind.GUEST
                and sess.user_agent == user_agent
                and sess.created_at >= since
            )


    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "profiles": [self._serialize_profile(p) for p in self.profiles.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.profiles = {
            p["id"]: self._deserialize_profile(p) for p in data.get("profiles", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "is_locked": account.is_locked,
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            is_locked=data.get("is_locked", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_profile(self, profile: Profile) -> dict:
        return {
            "id": profile.id,
            "account_id": profile.account_id,
            "name": profile.name,
            "weight_kg": profile.weight_kg,
            "height_cm": profile.height_cm,
            "age_years": profile.age_years,
            "created_at": self._serialize_datetime(profile.created_at),
        }

    def _deserialize_profile(self, data: dict) -> Profile:
        return Profile(
            id=data["id"],
            account_id=data["account_id"],
            name=data["name"],
            weight_kg=float(data["weight_kg"]),
            height_cm=float(data["height_cm"]),
            age_years=int(data["age_years"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "kind": session.kind.value,
            "account_id": session.account_id,
            "user_agent": session.user_agent,
            "refresh_token_hash": session.refresh_token_hash,
            "expires_at": self._serialize_datetime(session.expires_at),
            "refresh_expires_at": self._serialize_datetime(session.refresh_expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "revoked_at": self._serialize_datetime(session.revoked_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            kind=SessionKind(data["kind"]),
            account_id=data.get("account_id"),
            user_agent=data.get("user_agent", ""),
            refresh_token_hash=data["refresh_token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            refresh_expires_at=self._deserialize_datetime(data["refresh_expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

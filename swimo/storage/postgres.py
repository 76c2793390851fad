from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from swimo.logging import get_logger
from swimo.storage.errors import ConstraintViolation, StoreError
from swimo.storage.models import Account, Profile, Session, SessionKind, utcnow

_SESSION_COLUMNS = (
    "id, account_id, kind, user_agent, expires_at, refresh_token_hash, "
    "refresh_expires_at, created_at, revoked_at"
)


class PostgresStore:
    """Postgres-backed account, profile and session store."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: Optional[float] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        pool_kwargs: dict[str, Any] = {}
        if timeout is not None:
            pool_kwargs["timeout"] = timeout
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
            **pool_kwargs,
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (errors.Error, PoolTimeout) as exc:
            self.logger.error(
                "store_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(f"{operation} failed", operation=operation) from exc

    def _verify_required_schema(self) -> None:
        """Fail fast when the tables from ``scripts/schema.sql`` are missing."""

        required_tables = ["accounts", "users", "sessions"]
        with self._guard("verify_schema"), self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._guard("verify_connection"), self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # accounts / profiles
    @contextlib.contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self._guard("transaction"), self._connect() as conn, conn.transaction():
            yield conn

    def create_account(self, email: str, password_hash: str, *, tx: Connection) -> Account:
        try:
            row = tx.execute(
                """
                INSERT INTO accounts (email, password_hash)
                VALUES (%s, %s)
                RETURNING id, email, password_hash, is_locked, created_at
                """,
                (email, password_hash),
            ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def create_profile(
        self,
        account_id: str,
        name: str,
        weight_kg: float,
        height_cm: float,
        age_years: int,
        *,
        tx: Connection,
    ) -> Profile:
        try:
            row = tx.execute(
                """
                INSERT INTO users (account_id, name, weight_kg, height_cm, age_years)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id, account_id, name, weight_kg, height_cm, age_years, created_at
                """,
                (account_id, name, weight_kg, height_cm, age_years),
            ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("profile already exists", {"field": "account_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return self._profile_from_row(row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._guard("get_account_by_email"), self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, password_hash, is_locked, created_at FROM accounts WHERE email = %s",
                (email,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_account_locked(self, account_id: str, locked: bool) -> Optional[Account]:
        with self._guard("set_account_locked"), self._connect() as conn:
            row = conn.execute(
                """
                UPDATE accounts SET is_locked = %s WHERE id = %s
                RETURNING id, email, password_hash, is_locked, created_at
                """,
                (locked, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_profile_id_by_account_id(self, account_id: str) -> Optional[str]:
        with self._guard("get_profile_id_by_account_id"), self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM users WHERE account_id = %s", (account_id,)
            ).fetchone()
        return str(row["id"]) if row else None

    def get_profile_by_account_id(self, account_id: str) -> Optional[Profile]:
        with self._guard("get_profile_by_account_id"), self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, account_id, name, weight_kg, height_cm, age_years, created_at
                FROM users WHERE account_id = %s
                """,
                (account_id,),
            ).fetchone()
        return self._profile_from_row(row) if row else None

    # sessions
    def create_user_session(self, session: Session) -> str:
        if session.account_id is None:
            raise StoreError("user session requires an account", operation="create_user_session")
        return self._insert_session(session, SessionKind.USER, session.account_id)

    def create_guest_session(self, session: Session) -> str:
        return self._insert_session(session, SessionKind.GUEST, None)

    def _insert_session(
        self, session: Session, kind: SessionKind, account_id: Optional[str]
    ) -> str:
        operation = f"create_{kind.value}_session"
        with self._guard(operation), self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO sessions (id, account_id, kind, user_agent, expires_at,
                                      refresh_token_hash, refresh_expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    session.id,
                    account_id,
                    kind.value,
                    session.user_agent,
                    session.expires_at,
                    session.refresh_token_hash,
                    session.refresh_expires_at,
                    session.created_at,
                ),
            ).fetchone()
        return str(row["id"])

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._guard("get_session"), self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._guard("get_session_by_refresh_hash"), self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM sessions
                WHERE refresh_token_hash = %s
                  AND revoked_at IS NULL
                  AND refresh_expires_at > now()
                """,
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session_by_id(self, session_id: str) -> bool:
        with self._guard("revoke_session_by_id"), self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions SET revoked_at = now()
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (session_id,),
            ).fetchone()
        return row is not None

    def revoke_sessions_by_account(self, account_id: str, user_agent: str) -> int:
        with self._guard("revoke_sessions_by_account"), self._connect() as conn:
            result = conn.execute(
                """
                UPDATE sessions SET revoked_at = now()
                WHERE account_id = %s AND user_agent = %s AND revoked_at IS NULL
                """,
                (account_id, user_agent),
            )
            return result.rowcount

    def count_recent_guest_sessions(self, user_agent: str, since: datetime) -> int:
        with self._guard("count_recent_guest_sessions"), self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM sessions
                WHERE kind = 'guest' AND user_agent = %s AND created_at >= %s
                """,
                (user_agent, since),
            ).fetchone()
        return int(row["total"]) if row else 0

    # row mapping
    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            is_locked=bool(row.get("is_locked", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _profile_from_row(row: dict) -> Profile:
        return Profile(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            name=row["name"],
            weight_kg=float(row["weight_kg"]),
            height_cm=float(row["height_cm"]),
            age_years=int(row["age_years"]),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        account_id = row.get("account_id")
        return Session(
            id=str(row["id"]),
            kind=SessionKind(row["kind"]),
            account_id=str(account_id) if account_id is not None else None,
            user_agent=row.get("user_agent") or "",
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=row["expires_at"],
            refresh_expires_at=row["refresh_expires_at"],
            created_at=row.get("created_at") or utcnow(),
            revoked_at=row.get("revoked_at"),
        )

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeep.logging import get_logger
from gatekeep.storage.common import (
    check_user_fields,
    generate_uuid,
    normalize_email,
    safe_row_value,
    token_from_row,
    user_from_row,
)
from gatekeep.storage.errors import ConstraintViolation, StoreTransactionError
from gatekeep.storage.models import (
    Account,
    Token,
    TokenKind,
    TwoFactorConfirmation,
    User,
    UserRole,
    utcnow,
)

TOKEN_TABLES = {
    TokenKind.PASSWORD_RESET: "password_reset_token",
    TokenKind.VERIFICATION: "verification_token",
    TokenKind.TWO_FACTOR: "two_factor_token",
}

# user field -> column
_USER_COLUMNS = {
    "name": "name",
    "email": "email",
    "password_hash": "password",
    "role": "role",
    "email_verified": "email_verified",
    "is_two_factor_enabled": "is_two_factor_enabled",
    "image": "image",
}

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        password TEXT,
        role TEXT NOT NULL DEFAULT 'USER',
        email_verified TIMESTAMPTZ,
        is_two_factor_enabled BOOLEAN NOT NULL DEFAULT false,
        image TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    *[
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            token TEXT NOT NULL UNIQUE,
            expires TIMESTAMPTZ NOT NULL
        )
        """
        for table in TOKEN_TABLES.values()
    ],
    """
    CREATE TABLE IF NOT EXISTS two_factor_confirmation (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE REFERENCES app_user(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        provider TEXT NOT NULL,
        provider_account_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_account_id)
    )
    """,
]


class PostgresStore:
    """Postgres-backed store. Compound writes run inside ``conn.transaction()``."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: UserRole = UserRole.USER,
    ) -> User:
        user = User.new(
            normalize_email(email), name=name, password_hash=password_hash, role=role
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password, role, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.password_hash,
                        user.role.value,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        check_user_fields(fields)
        if not fields:
            return self.get_user(user_id)
        try:
            with self._connect() as conn:
                row = self._update_user(conn, user_id, fields)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user_from_row(row) if row else None

    def _update_user(self, conn, user_id: str, fields: dict[str, Any]):
        assignments = []
        params: list[Any] = []
        for field_name, value in fields.items():
            if field_name == "email":
                value = normalize_email(value)
            elif isinstance(value, UserRole):
                value = value.value
            assignments.append(
                sql.SQL("{} = %s").format(sql.Identifier(_USER_COLUMNS[field_name]))
            )
            params.append(value)
        query = sql.SQL("UPDATE app_user SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(assignments)
        )
        return conn.execute(query, (*params, user_id)).fetchone()

    # tokens
    def get_token_by_value(self, kind: TokenKind, value: str) -> Optional[Token]:
        query = sql.SQL("SELECT * FROM {} WHERE token = %s").format(
            sql.Identifier(TOKEN_TABLES[kind])
        )
        with self._connect() as conn:
            row = conn.execute(query, (value,)).fetchone()
        return token_from_row(kind, row) if row else None

    def get_token_by_email(self, kind: TokenKind, email: str) -> Optional[Token]:
        query = sql.SQL("SELECT * FROM {} WHERE email = %s").format(
            sql.Identifier(TOKEN_TABLES[kind])
        )
        with self._connect() as conn:
            row = conn.execute(query, (normalize_email(email),)).fetchone()
        return token_from_row(kind, row) if row else None

    def replace_token(
        self, kind: TokenKind, email: str, value: str, expires: datetime
    ) -> Token:
        # Upsert on the unique email column: concurrent issuers serialize on the
        # row and no reader ever sees zero or two tokens for the address.
        query = sql.SQL(
            """
            INSERT INTO {} (id, email, token, expires)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (email) DO UPDATE
            SET id = EXCLUDED.id, token = EXCLUDED.token, expires = EXCLUDED.expires
            RETURNING *
            """
        ).format(sql.Identifier(TOKEN_TABLES[kind]))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    query, (generate_uuid(), normalize_email(email), value, expires)
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token value already exists", {"field": "token"})
        return token_from_row(kind, row)

    def delete_token(self, kind: TokenKind, token_id: str) -> bool:
        query = sql.SQL("DELETE FROM {} WHERE id = %s").format(
            sql.Identifier(TOKEN_TABLES[kind])
        )
        with self._connect() as conn:
            result = conn.execute(query, (token_id,))
            return result.rowcount > 0

    # two-factor confirmations
    def get_two_factor_confirmation(
        self, user_id: str
    ) -> Optional[TwoFactorConfirmation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_confirmation WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorConfirmation(id=str(row["id"]), user_id=str(row["user_id"]))

    def confirm_two_factor(self, token_id: str, user_id: str) -> TwoFactorConfirmation:
        try:
            with self._connect() as conn, conn.transaction():
                deleted = conn.execute(
                    "DELETE FROM two_factor_token WHERE id = %s RETURNING id",
                    (token_id,),
                ).fetchone()
                if not deleted:
                    raise ConstraintViolation(
                        "two-factor token already consumed", {"token_id": token_id}
                    )
                row = conn.execute(
                    """
                    INSERT INTO two_factor_confirmation (id, user_id)
                    VALUES (%s, %s)
                    ON CONFLICT (user_id) DO UPDATE SET id = EXCLUDED.id
                    RETURNING *
                    """,
                    (generate_uuid(), user_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except psycopg.Error as exc:
            raise self._transaction_failed("confirm_two_factor", exc)
        return TwoFactorConfirmation(id=str(row["id"]), user_id=str(row["user_id"]))

    def delete_two_factor_confirmation(self, confirmation_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM two_factor_confirmation WHERE id = %s", (confirmation_id,)
            )
            return result.rowcount > 0

    # external identities
    def get_account_by_user_id(self, user_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE user_id = %s LIMIT 1", (user_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def link_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        linked_at: datetime,
        type: str = "oauth",
    ) -> Account:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO account (id, user_id, type, provider, provider_account_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (provider, provider_account_id) DO NOTHING
                    RETURNING *
                    """,
                    (generate_uuid(), user_id, type, provider, provider_account_id, linked_at),
                ).fetchone()
                if row:
                    conn.execute(
                        "UPDATE app_user SET email_verified = %s WHERE id = %s",
                        (linked_at, user_id),
                    )
                    return self._account_from_row(row)
                row = conn.execute(
                    "SELECT * FROM account WHERE provider = %s AND provider_account_id = %s",
                    (provider, provider_account_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        if str(row["user_id"]) != user_id:
            raise ConstraintViolation(
                "external identity linked to another user", {"provider": provider}
            )
        return self._account_from_row(row)

    # compound operations
    def reset_password(self, user_id: str, password_hash: str, token_id: str) -> User:
        try:
            with self._connect() as conn, conn.transaction():
                row = self._update_user(conn, user_id, {"password_hash": password_hash})
                if not row:
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
                result = conn.execute(
                    "DELETE FROM password_reset_token WHERE id = %s", (token_id,)
                )
                if result.rowcount == 0:
                    raise ConstraintViolation(
                        "password reset token already consumed", {"token_id": token_id}
                    )
        except psycopg.Error as exc:
            raise self._transaction_failed("reset_password", exc)
        return user_from_row(row)

    def verify_email(
        self, user_id: str, email: str, verified_at: datetime, token_id: str
    ) -> User:
        try:
            with self._connect() as conn, conn.transaction():
                row = self._update_user(
                    conn, user_id, {"email_verified": verified_at, "email": email}
                )
                if not row:
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
                result = conn.execute(
                    "DELETE FROM verification_token WHERE id = %s", (token_id,)
                )
                if result.rowcount == 0:
                    raise ConstraintViolation(
                        "verification token already consumed", {"token_id": token_id}
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except psycopg.Error as exc:
            raise self._transaction_failed("verify_email", exc)
        return user_from_row(row)

    def _transaction_failed(self, operation: str, exc: Exception) -> StoreTransactionError:
        self.logger.error(
            "postgres_transaction_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return StoreTransactionError(f"{operation} failed", {"operation": operation})

    @staticmethod
    def _account_from_row(row: Any) -> Account:
        return Account(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            provider_account_id=row["provider_account_id"],
            type=safe_row_value(row, "type", "oauth"),
            created_at=safe_row_value(row, "created_at", utcnow()),
        )

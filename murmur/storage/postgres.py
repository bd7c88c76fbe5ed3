from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from murmur.logging import get_logger
from murmur.storage.errors import AlreadyRevoked, ConstraintViolation
from murmur.storage.models import Message, Notification, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        age INTEGER NOT NULL CHECK (age BETWEEN 18 AND 100),
        gender TEXT NOT NULL CHECK (gender IN ('male', 'female')),
        phone_encrypted TEXT,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        is_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        confirm_otp_hash TEXT,
        reset_otp_hash TEXT,
        reset_otp_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_name_key UNIQUE (first_name, last_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        id UUID PRIMARY KEY,
        receiver_id UUID NOT NULL REFERENCES app_user(id),
        content TEXT NOT NULL CHECK (char_length(content) BETWEEN 1 AND 500),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS message_receiver_created_idx ON message (receiver_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        jti TEXT PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS revoked_token_expires_idx ON revoked_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS notification_outbox (
        id UUID PRIMARY KEY,
        kind TEXT NOT NULL,
        to_email TEXT NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        claimed_at TIMESTAMPTZ,
        processed_at TIMESTAMPTZ
    )
    """,
    "ALTER TABLE notification_outbox ADD COLUMN IF NOT EXISTS claimed_at TIMESTAMPTZ",
    "CREATE INDEX IF NOT EXISTS notification_outbox_status_idx ON notification_outbox (status, created_at)",
)

_USER_COLUMNS = {
    "email",
    "first_name",
    "last_name",
    "age",
    "gender",
    "phone_encrypted",
    "role",
    "is_confirmed",
    "confirm_otp_hash",
    "reset_otp_hash",
    "reset_otp_expires_at",
}


def _unique_violation_detail(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if constraint == "app_user_name_key":
        return ConstraintViolation(
            "a user with this name already exists", {"field": "name"}
        )
    return ConstraintViolation("email already exists", {"field": "email"})


class PostgresStore:
    """Postgres-backed store for users, messages, revocations and the outbox."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            age=row["age"],
            gender=row["gender"],
            phone_encrypted=row.get("phone_encrypted"),
            role=row.get("role", "user"),
            is_confirmed=row.get("is_confirmed", False),
            confirm_otp_hash=row.get("confirm_otp_hash"),
            reset_otp_hash=row.get("reset_otp_hash"),
            reset_otp_expires_at=row.get("reset_otp_expires_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_message(row: dict) -> Message:
        return Message(
            id=str(row["id"]),
            receiver_id=str(row["receiver_id"]),
            content=row["content"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_notification(row: dict) -> Notification:
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        return Notification(
            id=str(row["id"]),
            kind=row["kind"],
            to_email=row["to_email"],
            payload=payload,
            status=row["status"],
            attempts=row.get("attempts", 0),
            error=row.get("error"),
            created_at=row["created_at"],
            claimed_at=row.get("claimed_at"),
            processed_at=row.get("processed_at"),
        )

    @staticmethod
    def _valid_uuid(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    # users
    def create_user(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        age: int,
        gender: str,
        phone_encrypted: Optional[str] = None,
        role: str = "user",
        confirm_otp_hash: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, age, gender, phone_encrypted, role, confirm_otp_hash)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        first_name,
                        last_name,
                        age,
                        gender,
                        phone_encrypted,
                        role,
                        confirm_otp_hash,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation_detail(exc) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not user_id or not self._valid_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_name(self, first_name: str, last_name: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE first_name = %s AND last_name = %s",
                (first_name, last_name),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")
        if not self._valid_uuid(user_id):
            return None
        if not changes:
            return self.get_user(user_id)
        # Column names come from the allow-list above, values are parameterized
        assignments = ", ".join(f"{name} = %s" for name in changes)
        params = list(changes.values()) + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation_detail(exc) from exc
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self.update_user(user_id, role=role)

    def delete_user(self, user_id: str) -> bool:
        if not self._valid_uuid(user_id):
            return False
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM message WHERE receiver_id = %s", (user_id,))
                conn.execute(
                    "DELETE FROM user_auth_credential WHERE user_id = %s", (user_id,)
                )
                result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
                deleted = result.rowcount > 0
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # messages
    def count_messages_since(self, receiver_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM message WHERE receiver_id = %s AND created_at >= %s",
                (receiver_id, since),
            ).fetchone()
        return int(row["total"]) if row else 0

    def append_message(
        self,
        receiver_id: str,
        content: str,
        *,
        limit: int,
        window_seconds: int,
    ) -> Optional[Message]:
        """Insert a message unless the receiver already got ``limit`` in the window.

        The receiver row is locked for the duration of the check so concurrent
        senders are serialized per receiver. Returns None when the limit is reached.
        """
        now = utcnow()
        since = now - timedelta(seconds=window_seconds)
        with self._connect() as conn:
            with conn.transaction():
                receiver = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (receiver_id,)
                ).fetchone()
                if not receiver:
                    raise ConstraintViolation(
                        "receiver not found", {"receiver_id": receiver_id}
                    )
                row = conn.execute(
                    "SELECT count(*) AS total FROM message WHERE receiver_id = %s AND created_at >= %s",
                    (receiver_id, since),
                ).fetchone()
                if int(row["total"]) >= limit:
                    return None
                inserted = conn.execute(
                    """
                    INSERT INTO message (id, receiver_id, content, created_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), receiver_id, content, now),
                ).fetchone()
        return self._row_to_message(inserted)

    def count_messages(self, receiver_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM message WHERE receiver_id = %s",
                (receiver_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def list_messages(
        self, receiver_id: str, *, offset: int = 0, limit: int = 20
    ) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM message WHERE receiver_id = %s
                ORDER BY created_at DESC
                OFFSET %s LIMIT %s
                """,
                (receiver_id, offset, limit),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    # revoked tokens
    def revoke_token(self, jti: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            # An expired row with the same jti is replaced rather than rejected
            row = conn.execute(
                """
                INSERT INTO revoked_token (jti, expires_at) VALUES (%s, %s)
                ON CONFLICT (jti) DO UPDATE SET expires_at = EXCLUDED.expires_at
                WHERE revoked_token.expires_at <= now()
                RETURNING jti
                """,
                (jti, expires_at),
            ).fetchone()
        if not row:
            raise AlreadyRevoked(jti)

    def is_token_revoked(self, jti: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM revoked_token WHERE jti = %s AND expires_at > now()",
                (jti,),
            ).fetchone()
        return row is not None

    def purge_revoked_tokens(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM revoked_token WHERE expires_at <= now()")
            return result.rowcount

    # notification outbox
    def enqueue_notification(
        self, kind: str, to_email: str, payload: Optional[dict] = None
    ) -> Notification:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO notification_outbox (id, kind, to_email, payload)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), kind, to_email, json.dumps(payload or {})),
            ).fetchone()
        return self._row_to_notification(row)

    def claim_notifications(self, limit: int = 20) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE notification_outbox
                SET status = 'sending', attempts = attempts + 1, claimed_at = now()
                WHERE id IN (
                    SELECT id FROM notification_outbox
                    WHERE status = 'pending'
                    ORDER BY created_at
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (limit,),
            ).fetchall()
        return sorted(
            (self._row_to_notification(row) for row in rows),
            key=lambda n: n.created_at,
        )

    def complete_notification(
        self, job_id: str, *, success: bool, error: Optional[str] = None
    ) -> None:
        with self._connect() as conn:
            if success:
                conn.execute(
                    """
                    UPDATE notification_outbox
                    SET status = 'sent', error = NULL, payload = '{}'::jsonb, processed_at = now()
                    WHERE id = %s
                    """,
                    (job_id,),
                )
            else:
                conn.execute(
                    """
                    UPDATE notification_outbox
                    SET status = 'failed', error = %s, processed_at = now()
                    WHERE id = %s
                    """,
                    (error, job_id),
                )

    def expire_stale_notifications(self, claimed_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE notification_outbox
                SET status = 'failed', error = 'delivery interrupted',
                    payload = '{}'::jsonb, processed_at = now()
                WHERE status = 'sending' AND claimed_at <= %s
                """,
                (claimed_before,),
            )
            return result.rowcount

    def list_notifications(
        self, *, status: Optional[str] = None, to_email: Optional[str] = None
    ) -> List[Notification]:
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        if to_email is not None:
            clauses.append("to_email = %s")
            params.append(to_email)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM notification_outbox {where} ORDER BY created_at",
                params,
            ).fetchall()
        return [self._row_to_notification(row) for row in rows]

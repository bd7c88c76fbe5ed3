from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from murmur.logging import get_logger
from murmur.storage.errors import AlreadyRevoked, ConstraintViolation
from murmur.storage.models import Message, Notification, User, utcnow

_USER_FIELDS = {
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


class MemoryStore:
    """In-memory backing store persisted to a JSON snapshot under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/murmur") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.revoked_tokens: Dict[str, datetime] = {}
        self.notifications: Dict[str, Notification] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def verify_connection(self) -> None:
        self._state_path()

    # users
    def _check_unique(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.first_name == first_name and existing.last_name == last_name:
                raise ConstraintViolation(
                    "a user with this name already exists", {"field": "name"}
                )

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
        with self._data_lock:
            self._check_unique(email, first_name, last_name)
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                age=age,
                gender=gender,
                phone_encrypted=phone_encrypted,
                role=role,
                confirm_otp_hash=confirm_otp_hash,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return copy.copy(user) if user else None

    def find_user_by_name(self, first_name: str, last_name: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.first_name == first_name and u.last_name == last_name
                ),
                None,
            )
            return copy.copy(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [copy.copy(u) for u in ordered[:limit]]

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if {"email", "first_name", "last_name"} & set(changes):
                self._check_unique(
                    changes.get("email", user.email),
                    changes.get("first_name", user.first_name),
                    changes.get("last_name", user.last_name),
                    exclude_id=user_id,
                )
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return copy.copy(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self.update_user(user_id, role=role)

    def delete_user(self, user_id: str) -> bool:
        """Remove a user with its credentials and received messages.

        The in-memory maps are restored if the snapshot cannot be written, so a
        failed delete never leaves orphaned messages behind.
        """
        with self._data_lock:
            if user_id not in self.users:
                return False
            snapshot = (
                dict(self.users),
                dict(self.credentials),
                dict(self.messages),
            )
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.messages.pop(user_id, None)
            try:
                self._persist_state()
            except RuntimeError:
                self.users, self.credentials, self.messages = snapshot
                raise
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # messages
    def count_messages_since(self, receiver_id: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1 for m in self.messages.get(receiver_id, []) if m.created_at >= since
            )

    def append_message(
        self,
        receiver_id: str,
        content: str,
        *,
        limit: int,
        window_seconds: int,
    ) -> Optional[Message]:
        """Insert a message unless the receiver already got ``limit`` in the window.

        Returns None when the limit is reached.
        """
        with self._data_lock:
            if receiver_id not in self.users:
                raise ConstraintViolation(
                    "receiver not found", {"receiver_id": receiver_id}
                )
            now = utcnow()
            since = now - timedelta(seconds=window_seconds)
            if self.count_messages_since(receiver_id, since) >= limit:
                return None
            message = Message(
                id=str(uuid.uuid4()),
                receiver_id=receiver_id,
                content=content,
                created_at=now,
            )
            self.messages.setdefault(receiver_id, []).append(message)
            self._persist_state()
            return message

    def count_messages(self, receiver_id: str) -> int:
        with self._data_lock:
            return len(self.messages.get(receiver_id, []))

    def list_messages(
        self, receiver_id: str, *, offset: int = 0, limit: int = 20
    ) -> List[Message]:
        with self._data_lock:
            ordered = sorted(
                self.messages.get(receiver_id, []),
                key=lambda m: m.created_at,
                reverse=True,
            )
            return ordered[offset : offset + limit]

    # revoked tokens
    def revoke_token(self, jti: str, expires_at: datetime) -> None:
        with self._data_lock:
            existing = self.revoked_tokens.get(jti)
            if existing is not None and existing > utcnow():
                raise AlreadyRevoked(jti)
            self.revoked_tokens[jti] = expires_at
            self._persist_state()

    def is_token_revoked(self, jti: str) -> bool:
        with self._data_lock:
            expires_at = self.revoked_tokens.get(jti)
            return expires_at is not None and expires_at > utcnow()

    def purge_revoked_tokens(self) -> int:
        with self._data_lock:
            now = utcnow()
            expired = [jti for jti, exp in self.revoked_tokens.items() if exp <= now]
            for jti in expired:
                self.revoked_tokens.pop(jti, None)
            if expired:
                self._persist_state()
            return len(expired)

    # notification outbox
    def enqueue_notification(
        self, kind: str, to_email: str, payload: Optional[dict] = None
    ) -> Notification:
        with self._data_lock:
            job = Notification(
                id=str(uuid.uuid4()),
                kind=kind,
                to_email=to_email,
                payload=dict(payload or {}),
            )
            self.notifications[job.id] = job
            self._persist_state()
            return copy.copy(job)

    def claim_notifications(self, limit: int = 20) -> List[Notification]:
        with self._data_lock:
            pending = sorted(
                (n for n in self.notifications.values() if n.status == "pending"),
                key=lambda n: n.created_at,
            )[:limit]
            now = utcnow()
            for job in pending:
                job.status = "sending"
                job.attempts += 1
                job.claimed_at = now
            if pending:
                self._persist_state()
            return [copy.copy(job) for job in pending]

    def complete_notification(
        self, job_id: str, *, success: bool, error: Optional[str] = None
    ) -> None:
        with self._data_lock:
            job = self.notifications.get(job_id)
            if not job:
                return
            job.status = "sent" if success else "failed"
            job.error = error
            job.processed_at = utcnow()
            if success:
                job.payload = {}
            self._persist_state()

    def expire_stale_notifications(self, claimed_before: datetime) -> int:
        """Fail jobs stuck in ``sending`` since before ``claimed_before``."""
        with self._data_lock:
            now = utcnow()
            stale = [
                n
                for n in self.notifications.values()
                if n.status == "sending"
                and (n.claimed_at is None or n.claimed_at <= claimed_before)
            ]
            for job in stale:
                job.status = "failed"
                job.error = "delivery interrupted"
                job.payload = {}
                job.processed_at = now
            if stale:
                self._persist_state()
            return len(stale)

    def list_notifications(
        self, *, status: Optional[str] = None, to_email: Optional[str] = None
    ) -> List[Notification]:
        with self._data_lock:
            jobs = [
                copy.copy(n)
                for n in self.notifications.values()
                if (status is None or n.status == status)
                and (to_email is None or n.to_email == to_email)
            ]
            return sorted(jobs, key=lambda n: n.created_at)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "messages": [
                self._serialize_message(m)
                for msgs in self.messages.values()
                for m in msgs
            ],
            "revoked_tokens": [
                {"jti": jti, "expires_at": self._serialize_datetime(exp)}
                for jti, exp in self.revoked_tokens.items()
            ],
            "notifications": [
                self._serialize_notification(n) for n in self.notifications.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.messages = {}
        for msg_data in data.get("messages", []):
            msg = self._deserialize_message(msg_data)
            self.messages.setdefault(msg.receiver_id, []).append(msg)
        self.revoked_tokens = {
            entry["jti"]: self._deserialize_datetime(entry["expires_at"])
            for entry in data.get("revoked_tokens", [])
        }
        self.notifications = {
            n["id"]: self._deserialize_notification(n)
            for n in data.get("notifications", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "age": user.age,
            "gender": user.gender,
            "phone_encrypted": user.phone_encrypted,
            "role": user.role,
            "is_confirmed": user.is_confirmed,
            "confirm_otp_hash": user.confirm_otp_hash,
            "reset_otp_hash": user.reset_otp_hash,
            "reset_otp_expires_at": self._serialize_datetime(user.reset_otp_expires_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            first_name=data["first_name"],
            last_name=data["last_name"],
            age=data["age"],
            gender=data["gender"],
            phone_encrypted=data.get("phone_encrypted"),
            role=data.get("role", "user"),
            is_confirmed=data.get("is_confirmed", False),
            confirm_otp_hash=data.get("confirm_otp_hash"),
            reset_otp_hash=data.get("reset_otp_hash"),
            reset_otp_expires_at=self._deserialize_datetime(
                data.get("reset_otp_expires_at")
            ),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "id": message.id,
            "receiver_id": message.receiver_id,
            "content": message.content,
            "created_at": self._serialize_datetime(message.created_at),
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            id=data["id"],
            receiver_id=data["receiver_id"],
            content=data["content"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_notification(self, job: Notification) -> dict:
        return {
            "id": job.id,
            "kind": job.kind,
            "to_email": job.to_email,
            "payload": job.payload,
            "status": job.status,
            "attempts": job.attempts,
            "error": job.error,
            "created_at": self._serialize_datetime(job.created_at),
            "claimed_at": self._serialize_datetime(job.claimed_at),
            "processed_at": self._serialize_datetime(job.processed_at),
        }

    def _deserialize_notification(self, data: dict) -> Notification:
        return Notification(
            id=data["id"],
            kind=data["kind"],
            to_email=data["to_email"],
            payload=data.get("payload") or {},
            status=data.get("status", "pending"),
            attempts=data.get("attempts", 0),
            error=data.get("error"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            claimed_at=self._deserialize_datetime(data.get("claimed_at")),
            processed_at=self._deserialize_datetime(data.get("processed_at")),
        )

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from murmur.config import Settings
from murmur.logging import get_logger
from murmur.service.crypto import FieldCipher
from murmur.service.errors import (
    AlreadySignedOutError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    MissingTokenError,
    NotFoundError,
    TokenRevokedError,
    UnknownSubjectError,
    ValidationError,
)
from murmur.service.outbox import (
    KIND_CONFIRM_EMAIL,
    KIND_RESET_PASSWORD,
    NotificationOutbox,
)
from murmur.service.tokens import TokenError, issue_token, verify_token
from murmur.storage.errors import AlreadyRevoked, ConstraintViolation
from murmur.storage.models import User
from murmur.storage.redis_cache import RedisCache

logger = get_logger(__name__)

OTP_ALPHABET = "abcdefgh12345678"
OTP_LENGTH = 5
PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_name(self, first_name: str, last_name: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def revoke_token(self, jti: str, expires_at: datetime) -> None: ...

    def is_token_revoked(self, jti: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    user: User
    claims: Dict[str, Any] = field(default_factory=dict)


class AuthService:
    """Credentials, bearer tokens, revocation and the account lifecycle."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        outbox: NotificationOutbox,
        cipher: FieldCipher,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.outbox = outbox
        self.cipher = cipher
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # hashing
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_hash(self, stored_hash: str, secret: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, secret)
        except (VerificationError, InvalidHash):
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        # Unknown emails pay the same argon2 cost as a wrong password
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._verify_hash(self._dummy_hash, password)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self._verify_hash(stored_hash, password)

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    @staticmethod
    def _generate_otp() -> str:
        return "".join(secrets.choice(OTP_ALPHABET) for _ in range(OTP_LENGTH))

    # tokens
    def _issue(self, user: User, token_type: str) -> str:
        if token_type == "access":
            secret = self.settings.jwt_access_secret
            ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        else:
            secret = self.settings.jwt_refresh_secret
            ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        token, _ = issue_token(
            {"sub": user.id, "email": user.email, "token_type": token_type},
            secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl=ttl,
        )
        return token

    def _decode(self, token: str, token_type: str) -> Dict[str, Any]:
        """Verify a token of the given class and return its claims.

        Raises:
            AuthenticationError: with ``reason`` detail describing the failure
        """
        secret = (
            self.settings.jwt_access_secret
            if token_type == "access"
            else self.settings.jwt_refresh_secret
        )
        try:
            claims = verify_token(
                token,
                secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                leeway=self.settings.jwt_leeway_seconds,
            )
        except TokenError as exc:
            self.logger.info(
                "token_rejected", token_type=token_type, reason=exc.reason
            )
            raise AuthenticationError(
                "invalid or expired token", detail={"reason": exc.reason}
            ) from exc
        if claims.get("token_type") != token_type:
            raise AuthenticationError(
                "invalid or expired token", detail={"reason": "wrong_token_type"}
            )
        if not claims.get("jti"):
            raise AuthenticationError(
                "invalid or expired token", detail={"reason": "missing_jti"}
            )
        return claims

    async def _revoke_jti(self, jti: str, expires_at: datetime) -> None:
        """Record a revoked jti. Raises AlreadyRevoked on a duplicate."""
        if self.cache:
            try:
                await self.cache.revoke_token(jti, expires_at)
                return
            except AlreadyRevoked:
                raise
            except Exception as exc:
                # Recorded in the primary store instead; lookups consult both
                self.logger.warning(
                    "cache_revoke_failed_using_store", jti=jti, error=str(exc)
                )
        self.store.revoke_token(jti, expires_at)

    async def _is_revoked(self, jti: str) -> bool:
        if self.store.is_token_revoked(jti):
            return True
        if self.cache:
            try:
                return await self.cache.is_token_revoked(jti)
            except Exception as exc:
                # Fail closed: an unreachable cache must not admit a revoked token
                self.logger.warning(
                    "revocation_check_failed_defaulting_to_revoked",
                    jti=jti,
                    error=str(exc),
                )
                return True
        return False

    # authentication gate
    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise MissingTokenError("access token is required")
        claims = self._decode(access_token, "access")
        if await self._is_revoked(claims["jti"]):
            self.logger.info("access_token_revoked", jti=claims["jti"])
            raise TokenRevokedError(
                "token has been revoked", detail={"reason": "revoked"}
            )
        user = self.store.get_user(str(claims.get("sub") or ""))
        if not user:
            raise UnknownSubjectError("user not found")
        return AuthContext(user_id=user.id, role=user.role, user=user, claims=claims)

    @staticmethod
    def require_role(ctx: AuthContext, role: str) -> None:
        if ctx.role != role:
            raise ForbiddenError(
                "you are not allowed to access this resource",
                detail={"required_role": role},
            )

    # sessions
    async def signin(self, email: str, password: str) -> Tuple[User, Dict[str, str]]:
        user = self.store.get_user_by_email(email)
        if not user:
            self._burn_dummy_verify(password)
            raise InvalidCredentialsError("invalid email or password")
        if not self.verify_password(user.id, password):
            self.logger.info("signin_failed", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")
        tokens = {
            "access_token": self._issue(user, "access"),
            "refresh_token": self._issue(user, "refresh"),
        }
        self.logger.info("signin_succeeded", user_id=user.id)
        return user, tokens

    async def signout(self, claims: Dict[str, Any]) -> None:
        jti = claims.get("jti")
        if not jti:
            raise AuthenticationError(
                "invalid or expired token", detail={"reason": "missing_jti"}
            )
        expires_at = datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc)
        try:
            await self._revoke_jti(jti, expires_at)
        except AlreadyRevoked as exc:
            raise AlreadySignedOutError("already signed out") from exc
        self.logger.info("signout_succeeded", user_id=claims.get("sub"), jti=jti)

    async def refresh_access_token(self, refresh_token: Optional[str]) -> str:
        if not refresh_token:
            raise MissingTokenError("refresh token is required")
        claims = self._decode(refresh_token, "refresh")
        if await self._is_revoked(claims["jti"]):
            raise TokenRevokedError(
                "token has been revoked", detail={"reason": "revoked"}
            )
        user = self.store.get_user(str(claims.get("sub") or ""))
        if not user:
            raise UnknownSubjectError("user not found")
        self.logger.info("access_token_refreshed", user_id=user.id)
        return self._issue(user, "access")

    # account lifecycle
    def _ensure_unique(
        self,
        *,
        email: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> None:
        if email:
            existing = self.store.get_user_by_email(email)
            if existing and existing.id != exclude_id:
                raise ConflictError("email already exists", detail={"field": "email"})
        if first_name and last_name:
            existing = self.store.find_user_by_name(first_name, last_name)
            if existing and existing.id != exclude_id:
                raise ConflictError(
                    "a user with this name already exists", detail={"field": "name"}
                )

    async def signup(
        self,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        age: int,
        gender: str,
        phone: Optional[str] = None,
    ) -> User:
        self._ensure_unique(email=email, first_name=first_name, last_name=last_name)
        otp = self._generate_otp()
        try:
            user = self.store.create_user(
                email=email,
                first_name=first_name,
                last_name=last_name,
                age=age,
                gender=gender,
                phone_encrypted=self.cipher.encrypt(phone),
                role="user",
                confirm_otp_hash=self._pwd_hasher.hash(otp),
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        try:
            self.save_password(user.id, password)
            self.outbox.enqueue(KIND_CONFIRM_EMAIL, user.email, {"code": otp})
        except Exception as exc:
            # Never leave a user row without credentials
            self.logger.error(
                "signup_rolled_back",
                user_id=user.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self.store.delete_user(user.id)
            raise
        self.logger.info("signup_succeeded", user_id=user.id)
        return user

    async def confirm_email(self, email: str, otp: str) -> User:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        if user.is_confirmed:
            raise ValidationError("email already confirmed")
        if not user.confirm_otp_hash or not self._verify_hash(user.confirm_otp_hash, otp):
            self.logger.info("email_confirmation_failed", user_id=user.id)
            raise ValidationError("invalid code")
        updated = self.store.update_user(
            user.id, is_confirmed=True, confirm_otp_hash=None
        )
        self.logger.info("email_confirmed", user_id=user.id)
        return updated or user

    async def request_password_reset(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        otp = self._generate_otp()
        ttl_minutes = self.settings.otp_ttl_minutes
        self.store.update_user(
            user.id,
            reset_otp_hash=self._pwd_hasher.hash(otp),
            reset_otp_expires_at=self._now() + timedelta(minutes=ttl_minutes),
        )
        self.outbox.enqueue(
            KIND_RESET_PASSWORD,
            user.email,
            {"code": otp, "expires_minutes": ttl_minutes},
        )
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, email: str, otp: str, new_password: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        if not user.reset_otp_hash or not user.reset_otp_expires_at:
            raise ValidationError("invalid or expired code")
        if user.reset_otp_expires_at <= self._now():
            self.store.update_user(
                user.id, reset_otp_hash=None, reset_otp_expires_at=None
            )
            raise ValidationError("invalid or expired code")
        if not self._verify_hash(user.reset_otp_hash, otp):
            self.logger.info("password_reset_code_mismatch", user_id=user.id)
            raise ValidationError("invalid code")
        self.save_password(user.id, new_password)
        self.store.update_user(user.id, reset_otp_hash=None, reset_otp_expires_at=None)
        # Outstanding tokens stay valid until they expire or are signed out
        self.logger.info("password_reset_completed", user_id=user.id)

    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> User:
        if not changes:
            raise ValidationError("at least one field must be provided for update")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")

        updates: Dict[str, Any] = {
            key: changes[key]
            for key in ("first_name", "last_name", "age", "gender")
            if changes.get(key) is not None
        }
        if changes.get("phone") is not None:
            updates["phone_encrypted"] = self.cipher.encrypt(changes["phone"])

        new_email = changes.get("email")
        otp: Optional[str] = None
        if new_email and new_email != user.email:
            updates["email"] = new_email
            otp = self._generate_otp()
            updates["is_confirmed"] = False
            updates["confirm_otp_hash"] = self._pwd_hasher.hash(otp)

        name_changed = "first_name" in updates or "last_name" in updates
        self._ensure_unique(
            email=updates.get("email"),
            first_name=updates.get("first_name", user.first_name) if name_changed else None,
            last_name=updates.get("last_name", user.last_name) if name_changed else None,
            exclude_id=user.id,
        )
        try:
            updated = self.store.update_user(user.id, **updates)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not updated:
            raise NotFoundError("user not found")
        if otp:
            self.outbox.enqueue(KIND_CONFIRM_EMAIL, updated.email, {"code": otp})
        self.logger.info(
            "profile_updated", user_id=user.id, fields=sorted(updates.keys())
        )
        return updated

    async def delete_account(self, user_id: str) -> Dict[str, str]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if not self.store.delete_user(user.id):
            raise NotFoundError("user not found")
        self.logger.info("account_deleted", user_id=user.id)
        return {"id": user.id, "email": user.email, "full_name": user.full_name}

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    def user_profile(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "full_name": user.full_name,
            "age": user.age,
            "gender": user.gender,
            "phone": self.cipher.decrypt(user.phone_encrypted),
            "role": user.role,
            "is_confirmed": user.is_confirmed,
            "created_at": user.created_at,
            "updated_at": user.updated_at,
        }

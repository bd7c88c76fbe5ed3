"""Unit tests for AuthService against the in-memory store."""

from datetime import datetime, timedelta, timezone

import pytest

from murmur.config import Settings
from murmur.service.auth import OTP_ALPHABET, OTP_LENGTH, AuthService
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
from murmur.storage.memory import MemoryStore

PASSWORD = "Secret@123"


class _BrokenCache:
    """Cache whose every call fails, as if Redis went away."""

    async def revoke_token(self, jti, expires_at):
        raise ConnectionError("redis down")

    async def is_token_revoked(self, jti):
        raise ConnectionError("redis down")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_access_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
    )


@pytest.fixture
def auth(store, settings):
    return AuthService(
        store, None, settings, NotificationOutbox(store), FieldCipher("unit-key")
    )


async def _signup(auth, email="alice@example.com", first="alice", last="smith", **extra):
    return await auth.signup(
        email=email,
        password=PASSWORD,
        first_name=first,
        last_name=last,
        age=25,
        gender="female",
        **extra,
    )


def _last_code(store, email, kind):
    jobs = [j for j in store.list_notifications(to_email=email) if j.kind == kind]
    return jobs[-1].payload["code"]


class TestSignup:
    async def test_signup_creates_unconfirmed_user_and_queues_code(self, auth, store):
        user = await _signup(auth)
        assert user.role == "user"
        assert user.is_confirmed is False
        assert user.confirm_otp_hash and user.confirm_otp_hash.startswith("$argon2id$")

        code = _last_code(store, "alice@example.com", KIND_CONFIRM_EMAIL)
        assert len(code) == OTP_LENGTH
        assert set(code) <= set(OTP_ALPHABET)
        assert auth._verify_hash(user.confirm_otp_hash, code)

    async def test_password_stored_as_argon2id(self, auth, store):
        user = await _signup(auth)
        pwd_hash, algo = store.get_password_record(user.id)
        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    async def test_phone_encrypted_at_rest(self, auth, store):
        user = await _signup(auth, phone="01012345678")
        assert user.phone_encrypted
        assert "01012345678" not in user.phone_encrypted
        assert auth.user_profile(user)["phone"] == "01012345678"

    async def test_duplicate_email_conflicts(self, auth):
        await _signup(auth)
        with pytest.raises(ConflictError) as exc_info:
            await _signup(auth, first="bob", last="jones")
        assert exc_info.value.message == "email already exists"

    async def test_duplicate_name_pair_conflicts(self, auth):
        await _signup(auth)
        with pytest.raises(ConflictError) as exc_info:
            await _signup(auth, email="other@example.com")
        assert exc_info.value.detail == {"field": "name"}

    async def test_same_first_name_different_last_name_allowed(self, auth):
        await _signup(auth)
        user = await _signup(auth, email="other@example.com", last="jones")
        assert user.full_name == "alice jones"

    async def test_failed_credential_write_removes_user(self, auth, store, monkeypatch):
        def _fail(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "save_password", _fail)
        with pytest.raises(RuntimeError):
            await _signup(auth)
        assert store.get_user_by_email("alice@example.com") is None
        assert store.find_user_by_name("alice", "smith") is None

        monkeypatch.undo()
        user = await _signup(auth)
        assert store.get_password_record(user.id) is not None

    async def test_failed_enqueue_removes_user(self, auth, store, monkeypatch):
        def _fail(*args, **kwargs):
            raise RuntimeError("outbox unavailable")

        monkeypatch.setattr(store, "enqueue_notification", _fail)
        with pytest.raises(RuntimeError):
            await _signup(auth)
        assert store.get_user_by_email("alice@example.com") is None
        assert store.credentials == {}


class TestConfirmEmail:
    async def test_confirm_with_queued_code(self, auth, store):
        await _signup(auth)
        code = _last_code(store, "alice@example.com", KIND_CONFIRM_EMAIL)
        user = await auth.confirm_email("alice@example.com", code)
        assert user.is_confirmed is True
        assert user.confirm_otp_hash is None

    async def test_wrong_code(self, auth, store):
        await _signup(auth)
        code = _last_code(store, "alice@example.com", KIND_CONFIRM_EMAIL)
        wrong = "aaaaa" if code != "aaaaa" else "bbbbb"
        with pytest.raises(ValidationError) as exc_info:
            await auth.confirm_email("alice@example.com", wrong)
        assert exc_info.value.message == "invalid code"

    async def test_already_confirmed(self, auth, store):
        await _signup(auth)
        code = _last_code(store, "alice@example.com", KIND_CONFIRM_EMAIL)
        await auth.confirm_email("alice@example.com", code)
        with pytest.raises(ValidationError) as exc_info:
            await auth.confirm_email("alice@example.com", code)
        assert exc_info.value.message == "email already confirmed"

    async def test_unknown_email(self, auth):
        with pytest.raises(NotFoundError):
            await auth.confirm_email("ghost@example.com", "abcde")


class TestSignin:
    async def test_signin_returns_token_pair(self, auth):
        user = await _signup(auth)
        signed_in, tokens = await auth.signin("alice@example.com", PASSWORD)
        assert signed_in.id == user.id
        assert set(tokens) == {"access_token", "refresh_token"}
        assert tokens["access_token"] != tokens["refresh_token"]

    async def test_unknown_email_and_wrong_password_look_identical(self, auth):
        await _signup(auth)
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.signin("ghost@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.signin("alice@example.com", "Wrong@1234")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401
        assert unknown.value.detail == wrong.value.detail

    async def test_unconfirmed_user_can_sign_in(self, auth):
        user = await _signup(auth)
        assert not user.is_confirmed
        await auth.signin("alice@example.com", PASSWORD)


class TestTokenGate:
    async def test_authenticate_with_access_token(self, auth):
        user = await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        ctx = await auth.authenticate(tokens["access_token"])
        assert ctx.user_id == user.id
        assert ctx.role == "user"
        assert ctx.claims["token_type"] == "access"

    async def test_missing_token(self, auth):
        with pytest.raises(MissingTokenError):
            await auth.authenticate(None)
        with pytest.raises(MissingTokenError):
            await auth.authenticate("")

    async def test_refresh_token_rejected_as_access_token(self, auth):
        await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.authenticate(tokens["refresh_token"])
        assert exc_info.value.detail["reason"] == "invalid_signature"

    async def test_access_token_rejected_for_refresh(self, auth):
        await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        with pytest.raises(AuthenticationError):
            await auth.refresh_access_token(tokens["access_token"])

    async def test_garbage_token(self, auth):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth.authenticate("not-a-token")
        assert exc_info.value.status_code == 401

    async def test_deleted_subject(self, auth):
        user = await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        await auth.delete_account(user.id)
        with pytest.raises(UnknownSubjectError):
            await auth.authenticate(tokens["access_token"])

    async def test_require_role(self, auth):
        await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        ctx = await auth.authenticate(tokens["access_token"])
        with pytest.raises(ForbiddenError):
            auth.require_role(ctx, "admin")
        auth.require_role(ctx, "user")


class TestSignout:
    async def test_signed_out_token_is_rejected(self, auth):
        await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        ctx = await auth.authenticate(tokens["access_token"])
        await auth.signout(ctx.claims)
        with pytest.raises(TokenRevokedError) as exc_info:
            await auth.authenticate(tokens["access_token"])
        assert exc_info.value.detail == {"reason": "revoked"}

    async def test_second_signout_reports_already_signed_out(self, auth):
        await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        ctx = await auth.authenticate(tokens["access_token"])
        await auth.signout(ctx.claims)
        with pytest.raises(AlreadySignedOutError):
            await auth.signout(ctx.claims)

    async def test_refresh_still_works_after_signout(self, auth):
        await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        ctx = await auth.authenticate(tokens["access_token"])
        await auth.signout(ctx.claims)
        fresh = await auth.refresh_access_token(tokens["refresh_token"])
        new_ctx = await auth.authenticate(fresh)
        assert new_ctx.claims["jti"] != ctx.claims["jti"]

    async def test_other_sessions_unaffected(self, auth):
        await _signup(auth)
        _, first = await auth.signin("alice@example.com", PASSWORD)
        _, second = await auth.signin("alice@example.com", PASSWORD)
        ctx = await auth.authenticate(first["access_token"])
        await auth.signout(ctx.claims)
        await auth.authenticate(second["access_token"])

    async def test_revocation_falls_back_to_store_when_cache_fails(self, store, settings):
        auth = AuthService(
            store,
            _BrokenCache(),
            settings,
            NotificationOutbox(store),
            FieldCipher("unit-key"),
        )
        await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        ctx_claims = auth._decode(tokens["access_token"], "access")
        await auth.signout(ctx_claims)
        assert store.is_token_revoked(ctx_claims["jti"])

    async def test_unreachable_cache_fails_closed(self, store, settings):
        auth = AuthService(
            store,
            _BrokenCache(),
            settings,
            NotificationOutbox(store),
            FieldCipher("unit-key"),
        )
        await _signup(auth)
        _, tokens = await auth.signin("alice@example.com", PASSWORD)
        with pytest.raises(TokenRevokedError):
            await auth.authenticate(tokens["access_token"])


class TestPasswordReset:
    async def test_reset_flow(self, auth, store):
        await _signup(auth)
        await auth.request_password_reset("alice@example.com")
        job = store.list_notifications(to_email="alice@example.com")[-1]
        assert job.kind == KIND_RESET_PASSWORD
        assert job.payload["expires_minutes"] == 10

        await auth.reset_password("alice@example.com", job.payload["code"], "Newpass@123")
        await auth.signin("alice@example.com", "Newpass@123")
        with pytest.raises(InvalidCredentialsError):
            await auth.signin("alice@example.com", PASSWORD)

    async def test_code_is_single_use(self, auth, store):
        await _signup(auth)
        await auth.request_password_reset("alice@example.com")
        code = _last_code(store, "alice@example.com", KIND_RESET_PASSWORD)
        await auth.reset_password("alice@example.com", code, "Newpass@123")
        with pytest.raises(ValidationError):
            await auth.reset_password("alice@example.com", code, "Other@1234")

    async def test_expired_code(self, auth, store):
        user = await _signup(auth)
        await auth.request_password_reset("alice@example.com")
        code = _last_code(store, "alice@example.com", KIND_RESET_PASSWORD)
        store.update_user(
            user.id,
            reset_otp_expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
        )
        with pytest.raises(ValidationError) as exc_info:
            await auth.reset_password("alice@example.com", code, "Newpass@123")
        assert exc_info.value.message == "invalid or expired code"
        assert store.get_user(user.id).reset_otp_hash is None

    async def test_reset_without_request(self, auth):
        await _signup(auth)
        with pytest.raises(ValidationError):
            await auth.reset_password("alice@example.com", "abcde", "Newpass@123")

    async def test_unknown_email(self, auth):
        with pytest.raises(NotFoundError):
            await auth.request_password_reset("ghost@example.com")


class TestProfile:
    async def test_update_fields(self, auth):
        user = await _signup(auth)
        updated = await auth.update_profile(user.id, {"age": 30, "phone": "01112345678"})
        assert updated.age == 30
        assert auth.user_profile(updated)["phone"] == "01112345678"

    async def test_email_change_requires_reconfirmation(self, auth, store):
        user = await _signup(auth)
        code = _last_code(store, "alice@example.com", KIND_CONFIRM_EMAIL)
        await auth.confirm_email("alice@example.com", code)

        updated = await auth.update_profile(user.id, {"email": "new@example.com"})
        assert updated.email == "new@example.com"
        assert updated.is_confirmed is False
        assert store.list_notifications(to_email="new@example.com")

    async def test_name_change_checks_uniqueness(self, auth):
        await _signup(auth)
        bob = await _signup(auth, email="bob@example.com", first="bob", last="smith")
        with pytest.raises(ConflictError):
            await auth.update_profile(bob.id, {"first_name": "alice"})

    async def test_empty_changes_rejected(self, auth):
        user = await _signup(auth)
        with pytest.raises(ValidationError):
            await auth.update_profile(user.id, {})


class TestDeleteAccount:
    async def test_delete_returns_summary_and_removes_user(self, auth, store):
        user = await _signup(auth)
        deleted = await auth.delete_account(user.id)
        assert deleted == {
            "id": user.id,
            "email": "alice@example.com",
            "full_name": "alice smith",
        }
        assert store.get_user(user.id) is None
        assert store.get_password_record(user.id) is None

    async def test_delete_twice(self, auth):
        user = await _signup(auth)
        await auth.delete_account(user.id)
        with pytest.raises(NotFoundError):
            await auth.delete_account(user.id)

"""Unit tests for the JSON-backed in-memory store."""

from datetime import timedelta

import pytest

from murmur.storage.errors import AlreadyRevoked, ConstraintViolation
from murmur.storage.memory import MemoryStore
from murmur.storage.models import utcnow
from murmur.storage.redis_cache import RedisCache


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _user(store, email="alice@example.com", first="alice", last="smith"):
    return store.create_user(
        email=email, first_name=first, last_name=last, age=25, gender="female"
    )


class TestUsers:
    def test_create_and_lookup(self, store):
        user = _user(store)
        assert store.get_user(user.id).email == "alice@example.com"
        assert store.get_user_by_email("alice@example.com").id == user.id
        assert store.find_user_by_name("alice", "smith").id == user.id
        assert store.get_user("missing") is None

    def test_unique_email(self, store):
        _user(store)
        with pytest.raises(ConstraintViolation) as exc_info:
            _user(store, first="bob", last="jones")
        assert exc_info.value.detail == {"field": "email"}

    def test_unique_name_pair(self, store):
        _user(store)
        with pytest.raises(ConstraintViolation) as exc_info:
            _user(store, email="other@example.com")
        assert exc_info.value.detail == {"field": "name"}

    def test_update_rejects_unknown_fields(self, store):
        user = _user(store)
        with pytest.raises(ValueError):
            store.update_user(user.id, id="hijack")

    def test_update_checks_uniqueness(self, store):
        _user(store)
        bob = _user(store, email="bob@example.com", first="bob", last="jones")
        with pytest.raises(ConstraintViolation):
            store.update_user(bob.id, email="alice@example.com")

    def test_returned_users_are_copies(self, store):
        user = _user(store)
        user.role = "admin"
        assert store.get_user(user.id).role == "user"

    def test_state_survives_reload(self, store, tmp_path):
        user = _user(store)
        store.save_password(user.id, "hash", "argon2id")
        store.append_message(user.id, "hello", limit=10, window_seconds=3600)
        store.revoke_token("jti-1", utcnow() + timedelta(minutes=5))

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_user(user.id).email == "alice@example.com"
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.count_messages(user.id) == 1
        assert reloaded.is_token_revoked("jti-1")

    def test_save_password_for_missing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")


class TestDeleteCascade:
    def test_delete_removes_credentials_and_messages(self, store):
        user = _user(store)
        other = _user(store, email="bob@example.com", first="bob", last="jones")
        store.save_password(user.id, "hash", "argon2id")
        store.append_message(user.id, "hi", limit=10, window_seconds=3600)
        store.append_message(other.id, "hi bob", limit=10, window_seconds=3600)

        assert store.delete_user(user.id) is True
        assert store.get_user(user.id) is None
        assert store.get_password_record(user.id) is None
        assert store.count_messages(user.id) == 0
        assert store.count_messages(other.id) == 1

    def test_delete_missing_user(self, store):
        assert store.delete_user("missing") is False

    def test_failed_persist_restores_state(self, store, monkeypatch):
        user = _user(store)
        store.append_message(user.id, "hi", limit=10, window_seconds=3600)

        def _fail():
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "_persist_state", _fail)
        with pytest.raises(RuntimeError):
            store.delete_user(user.id)
        assert store.get_user(user.id) is not None
        assert store.count_messages(user.id) == 1


class TestMessages:
    def test_append_respects_limit(self, store):
        user = _user(store)
        for i in range(3):
            assert store.append_message(user.id, f"m{i}", limit=3, window_seconds=60)
        assert store.append_message(user.id, "m3", limit=3, window_seconds=60) is None
        assert store.count_messages(user.id) == 3

    def test_append_to_missing_receiver(self, store):
        with pytest.raises(ConstraintViolation):
            store.append_message("missing", "hi", limit=3, window_seconds=60)

    def test_list_messages_newest_first(self, store):
        user = _user(store)
        first = store.append_message(user.id, "first", limit=10, window_seconds=60)
        second = store.append_message(user.id, "second", limit=10, window_seconds=60)
        first.created_at -= timedelta(seconds=10)
        listed = store.list_messages(user.id, offset=0, limit=10)
        assert [m.id for m in listed] == [second.id, first.id]
        assert store.list_messages(user.id, offset=1, limit=10)[0].id == first.id


class TestRevokedTokens:
    def test_revoke_and_check(self, store):
        store.revoke_token("jti-1", utcnow() + timedelta(minutes=5))
        assert store.is_token_revoked("jti-1")
        assert not store.is_token_revoked("jti-2")

    def test_duplicate_revoke(self, store):
        store.revoke_token("jti-1", utcnow() + timedelta(minutes=5))
        with pytest.raises(AlreadyRevoked) as exc_info:
            store.revoke_token("jti-1", utcnow() + timedelta(minutes=5))
        assert exc_info.value.jti == "jti-1"

    def test_expired_entries_are_ignored_and_purged(self, store):
        store.revoke_token("old", utcnow() - timedelta(seconds=1))
        store.revoke_token("live", utcnow() + timedelta(minutes=5))
        assert not store.is_token_revoked("old")
        assert store.purge_revoked_tokens() == 1
        assert "old" not in store.revoked_tokens
        assert store.is_token_revoked("live")


class TestNotifications:
    def test_claim_marks_sending(self, store):
        job = store.enqueue_notification("confirm_email", "a@example.com", {"code": "abcde"})
        claimed = store.claim_notifications(10)
        assert [c.id for c in claimed] == [job.id]
        assert claimed[0].status == "sending"
        assert claimed[0].attempts == 1
        assert claimed[0].claimed_at is not None
        assert store.claim_notifications(10) == []

    def test_complete_success_drops_payload(self, store):
        job = store.enqueue_notification("confirm_email", "a@example.com", {"code": "abcde"})
        store.claim_notifications(10)
        store.complete_notification(job.id, success=True)
        (done,) = store.list_notifications(to_email="a@example.com")
        assert done.status == "sent"
        assert done.payload == {}
        assert done.processed_at is not None

    def test_complete_failure_keeps_error(self, store):
        job = store.enqueue_notification("reset_password", "a@example.com", {"code": "abcde"})
        store.claim_notifications(10)
        store.complete_notification(job.id, success=False, error="smtp down")
        (failed,) = store.list_notifications(status="failed")
        assert failed.error == "smtp down"

    def test_stale_claims_expire_and_drop_code(self, store):
        stale = store.enqueue_notification("confirm_email", "a@example.com", {"code": "abcde"})
        store.claim_notifications(10)
        fresh = store.enqueue_notification("confirm_email", "b@example.com", {"code": "12345"})
        store.claim_notifications(10)
        store.notifications[stale.id].claimed_at = utcnow() - timedelta(minutes=10)

        assert store.expire_stale_notifications(utcnow() - timedelta(minutes=5)) == 1
        (failed,) = store.list_notifications(status="failed")
        assert failed.id == stale.id
        assert failed.payload == {}
        assert failed.error == "delivery interrupted"
        (sending,) = store.list_notifications(status="sending")
        assert sending.id == fresh.id


class TestRedisKeys:
    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("signin:alice@example.com")
        assert key.startswith("rate:")
        assert "alice" not in key
        assert key == RedisCache._normalize_rate_key("signin:alice@example.com")

    def test_revoked_key(self):
        assert RedisCache._revoked_key("jti-1") == "auth:revoked:jti-1"

    def test_ttl_is_at_least_one_second(self):
        assert RedisCache._ttl_seconds(utcnow() - timedelta(minutes=1)) == 1
        assert 290 <= RedisCache._ttl_seconds(utcnow() + timedelta(minutes=5)) <= 300

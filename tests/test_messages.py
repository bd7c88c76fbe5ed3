"""Tests for anonymous messages: sending, the per-receiver hourly cap and the inbox."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from murmur import app as app_module
from murmur.config import Settings
from murmur.service.errors import NotFoundError, RateLimitedError, ValidationError
from murmur.service.messages import MessageService
from murmur.service.runtime import get_runtime
from murmur.storage.memory import MemoryStore

PASSWORD = "Secret@123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", first="alice", last="smith"):
    response = client.post(
        "/users/signup",
        json={
            "firstName": first,
            "lastName": last,
            "age": 25,
            "email": email,
            "password": PASSWORD,
        },
    )
    assert response.status_code == 201, response.text
    user_id = response.json()["data"]["id"]
    signin = client.post("/users/signin", json={"email": email, "password": PASSWORD})
    return user_id, {"accesstoken": signin.json()["data"]["access_token"]}


class TestSendMessage:
    def test_send_without_auth(self, client):
        receiver_id, _ = _register(client)
        response = client.post(
            f"/messages/send/{receiver_id}", json={"content": "  hello there  "}
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["receiver_id"] == receiver_id
        assert data["content"] == "hello there"
        assert "sender" not in data

    def test_tenth_message_ok_eleventh_limited(self, client):
        receiver_id, _ = _register(client)
        for i in range(10):
            response = client.post(
                f"/messages/send/{receiver_id}", json={"content": f"message {i}"}
            )
            assert response.status_code == 201, i
        response = client.post(
            f"/messages/send/{receiver_id}", json={"content": "one too many"}
        )
        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["message"] == "too many messages sent, please try again later"
        assert get_runtime().store.count_messages(receiver_id) == 10

    def test_limit_is_per_receiver(self, client):
        alice_id, _ = _register(client)
        bob_id, _ = _register(client, email="bob@example.com", first="bob", last="jones")
        for i in range(10):
            client.post(f"/messages/send/{alice_id}", json={"content": f"m{i}"})
        response = client.post(f"/messages/send/{bob_id}", json={"content": "hi bob"})
        assert response.status_code == 201

    def test_unknown_receiver(self, client):
        response = client.post(
            "/messages/send/00000000-0000-4000-8000-000000000000",
            json={"content": "hello"},
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "receiver not found"

    def test_malformed_receiver_id(self, client):
        response = client.post("/messages/send/not-a-uuid", json={"content": "hello"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid receiver id"

    @pytest.mark.parametrize("content", ["", "   ", "x" * 501])
    def test_invalid_content(self, client, content):
        receiver_id, _ = _register(client)
        response = client.post(
            f"/messages/send/{receiver_id}", json={"content": content}
        )
        assert response.status_code == 400

    def test_content_at_max_length(self, client):
        receiver_id, _ = _register(client)
        response = client.post(
            f"/messages/send/{receiver_id}", json={"content": "x" * 500}
        )
        assert response.status_code == 201


class TestInbox:
    def test_inbox_requires_token(self, client):
        response = client.get("/messages")
        assert response.status_code == 400

    def test_inbox_newest_first_without_sender(self, client):
        receiver_id, headers = _register(client)
        for text in ("first", "second", "third"):
            client.post(f"/messages/send/{receiver_id}", json={"content": text})

        response = client.get("/messages", headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert [m["content"] for m in data["items"]] == ["third", "second", "first"]
        assert set(data["items"][0]) == {"id", "content", "created_at"}
        assert data["pagination"] == {
            "current_page": 1,
            "total_pages": 1,
            "total_messages": 3,
            "messages_per_page": 20,
            "has_next_page": False,
            "has_prev_page": False,
        }

    def test_pagination(self, client):
        receiver_id, headers = _register(client)
        for i in range(5):
            client.post(f"/messages/send/{receiver_id}", json={"content": f"m{i}"})

        response = client.get("/messages?page=2&limit=2", headers=headers)
        data = response.json()["data"]
        assert len(data["items"]) == 2
        assert data["pagination"]["total_pages"] == 3
        assert data["pagination"]["has_next_page"] is True
        assert data["pagination"]["has_prev_page"] is True

    def test_page_must_be_positive(self, client):
        _, headers = _register(client)
        response = client.get("/messages?page=0", headers=headers)
        assert response.status_code == 400

    def test_empty_inbox(self, client):
        _, headers = _register(client)
        data = client.get("/messages", headers=headers).json()["data"]
        assert data["items"] == []
        assert data["pagination"]["total_pages"] == 0

    def test_inbox_only_shows_own_messages(self, client):
        alice_id, alice_headers = _register(client)
        bob_id, bob_headers = _register(
            client, email="bob@example.com", first="bob", last="jones"
        )
        client.post(f"/messages/send/{alice_id}", json={"content": "for alice"})
        client.post(f"/messages/send/{bob_id}", json={"content": "for bob"})

        alice_items = client.get("/messages", headers=alice_headers).json()["data"]["items"]
        assert [m["content"] for m in alice_items] == ["for alice"]


class TestDeleteCascade:
    def test_delete_removes_received_messages(self, client):
        receiver_id, headers = _register(client)
        for i in range(3):
            client.post(f"/messages/send/{receiver_id}", json={"content": f"m{i}"})
        store = get_runtime().store
        assert store.count_messages(receiver_id) == 3

        response = client.delete("/users/delete", headers=headers)
        assert response.status_code == 200
        assert store.count_messages(receiver_id) == 0
        assert store.get_user(receiver_id) is None

    def test_messages_to_deleted_user_rejected(self, client):
        receiver_id, headers = _register(client)
        client.delete("/users/delete", headers=headers)
        response = client.post(
            f"/messages/send/{receiver_id}", json={"content": "anyone there?"}
        )
        assert response.status_code == 404


class TestMessageService:
    @pytest.fixture
    def store(self, tmp_path):
        return MemoryStore(fs_root=str(tmp_path))

    @pytest.fixture
    def service(self, store, tmp_path):
        settings = Settings(
            shared_fs_root=str(tmp_path),
            jwt_access_secret="svc-access",
            jwt_refresh_secret="svc-refresh",
            message_rate_limit=2,
        )
        return MessageService(store, settings)

    @pytest.fixture
    def receiver(self, store):
        return store.create_user(
            email="r@example.com", first_name="rae", last_name="lee", age=30, gender="female"
        )

    def test_rate_limit_from_settings(self, service, receiver):
        service.send(receiver.id, "one")
        service.send(receiver.id, "two")
        with pytest.raises(RateLimitedError):
            service.send(receiver.id, "three")

    def test_window_rolls_over(self, service, store, receiver):
        service.send(receiver.id, "one")
        service.send(receiver.id, "two")
        for message in store.messages[receiver.id]:
            message.created_at -= timedelta(hours=1, seconds=1)
        service.send(receiver.id, "three")
        assert store.count_messages(receiver.id) == 3

    def test_unknown_receiver(self, service):
        with pytest.raises(NotFoundError):
            service.send("00000000-0000-4000-8000-000000000000", "hi")

    def test_content_trimmed_and_checked(self, service, receiver):
        assert service.send(receiver.id, "  hi  ").content == "hi"
        with pytest.raises(ValidationError):
            service.send(receiver.id, "   ")

    def test_page_size_clamped(self, service, receiver):
        _, pagination = service.list_inbox(receiver.id, page=1, limit=10_000)
        assert pagination["messages_per_page"] == service.settings.max_page_size

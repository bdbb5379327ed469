"""Tests for the message store HTTP API."""

from __future__ import annotations

from typing import Any

from fastapi.testclient import TestClient

from parlor.models import Profile


def _create_thread(client: TestClient, headers: dict[str, str], peer_id: str) -> dict[str, Any]:
    response = client.post("/api/v1/threads", json={"peer_id": peer_id}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _post(client: TestClient, headers: dict[str, str], thread_id: str, sender: str, text: str) -> dict[str, Any]:
    response = client.post(
        f"/api/v1/threads/{thread_id}/messages",
        json={"thread_id": thread_id, "sender_id": sender, "cipher_content": text},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health_and_root(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/").json()["name"] == "Parlor"


def test_requires_valid_token(client: TestClient, alice: Profile) -> None:
    assert client.get("/api/v1/threads").status_code in (401, 403)

    response = client.get("/api/v1/threads", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401


def test_profile_lookup_and_key_publish(
    client: TestClient, alice_headers: dict[str, str], bob: Profile
) -> None:
    response = client.get("/api/v1/profiles/bob", headers=alice_headers)
    assert response.status_code == 200
    assert response.json()["public_key"] == bob.public_key

    assert client.get("/api/v1/profiles/nobody", headers=alice_headers).status_code == 404

    updated = client.put(
        "/api/v1/profiles/me/public-key",
        json={"public_key": "NEWKEY"},
        headers=alice_headers,
    )
    assert updated.status_code == 200
    assert updated.json() == {"id": "alice", "display_name": "Alice", "public_key": "NEWKEY"}


def test_create_thread_rules(
    client: TestClient, alice_headers: dict[str, str], bob_headers: dict[str, str]
) -> None:
    self_thread = client.post("/api/v1/threads", json={"peer_id": "alice"}, headers=alice_headers)
    assert self_thread.status_code == 400

    unknown = client.post("/api/v1/threads", json={"peer_id": "nobody"}, headers=alice_headers)
    assert unknown.status_code == 404

    first = _create_thread(client, alice_headers, "bob")
    second = _create_thread(client, bob_headers, "alice")
    assert first["id"] == second["id"]
    assert (first["participant_a"], first["participant_b"]) == ("alice", "bob")

    lookup = client.get("/api/v1/threads/lookup", params={"peer_id": "alice"}, headers=bob_headers)
    assert lookup.json()["id"] == first["id"]

    listed = client.get("/api/v1/threads", headers=alice_headers).json()
    assert [thread["id"] for thread in listed] == [first["id"]]


def test_thread_access_control(
    client: TestClient,
    alice_headers: dict[str, str],
    bob: Profile,
    carol_headers: dict[str, str],
) -> None:
    thread = _create_thread(client, alice_headers, "bob")
    message = _post(client, alice_headers, thread["id"], "alice", "sealed")

    assert client.get(f"/api/v1/threads/{thread['id']}", headers=carol_headers).status_code == 403
    assert client.get(f"/api/v1/threads/{thread['id']}/messages", headers=carol_headers).status_code == 403
    assert client.get(f"/api/v1/messages/{message['id']}", headers=carol_headers).status_code == 403
    assert client.get("/api/v1/threads/missing", headers=alice_headers).status_code == 404
    assert client.get("/api/v1/messages/missing", headers=alice_headers).status_code == 404


def test_post_message_validation(
    client: TestClient, alice_headers: dict[str, str], bob: Profile
) -> None:
    thread = _create_thread(client, alice_headers, "bob")
    url = f"/api/v1/threads/{thread['id']}/messages"

    spoofed = client.post(
        url,
        json={"thread_id": thread["id"], "sender_id": "bob", "cipher_content": "x"},
        headers=alice_headers,
    )
    assert spoofed.status_code == 403

    mismatched = client.post(
        url,
        json={"thread_id": "other", "sender_id": "alice", "cipher_content": "x"},
        headers=alice_headers,
    )
    assert mismatched.status_code == 400

    empty = client.post(
        url,
        json={"thread_id": thread["id"], "sender_id": "alice", "cipher_content": ""},
        headers=alice_headers,
    )
    assert empty.status_code == 400

    keyless = client.post(
        url,
        json={
            "thread_id": thread["id"],
            "sender_id": "alice",
            "cipher_content": "abc",
            "is_encrypted": True,
        },
        headers=alice_headers,
    )
    assert keyless.status_code == 400


def test_message_flow_and_read_state(
    client: TestClient, alice_headers: dict[str, str], bob_headers: dict[str, str]
) -> None:
    thread = _create_thread(client, alice_headers, "bob")
    base = f"/api/v1/threads/{thread['id']}"
    first = _post(client, alice_headers, thread["id"], "alice", "one")
    _post(client, alice_headers, thread["id"], "alice", "two")

    messages = client.get(f"{base}/messages", headers=bob_headers).json()
    assert [m["cipher_content"] for m in messages] == ["one", "two"]

    latest = client.get(f"{base}/messages", params={"limit": 1}, headers=bob_headers).json()
    assert [m["cipher_content"] for m in latest] == ["two"]

    assert client.get(f"{base}/messages/last", headers=bob_headers).json()["cipher_content"] == "two"
    assert client.get(f"{base}/unread-count", headers=bob_headers).json() == {"count": 2}
    assert client.get(f"{base}/unread-count", headers=alice_headers).json() == {"count": 0}

    partial = client.post(
        f"{base}/read", json={"up_to": first["created_at"]}, headers=bob_headers
    ).json()
    assert partial == {"message_ids": [first["id"]]}

    rest = client.post(f"{base}/read", json={}, headers=bob_headers).json()
    assert len(rest["message_ids"]) == 1
    assert client.post(f"{base}/read", json={}, headers=bob_headers).json() == {"message_ids": []}
    assert client.get(f"{base}/unread-count", headers=bob_headers).json() == {"count": 0}


def test_last_message_of_empty_thread(
    client: TestClient, alice_headers: dict[str, str], bob: Profile
) -> None:
    thread = _create_thread(client, alice_headers, "bob")
    response = client.get(f"/api/v1/threads/{thread['id']}/messages/last", headers=alice_headers)
    assert response.status_code == 404

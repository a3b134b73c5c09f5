from __future__ import annotations

from models.signaling import (CandidatePayload, MessageKind, PingPayload, SessionDescriptionPayload,
                              SignalingMessage)


def _wire(kind, session_id="482913", payload=None):
    return SignalingMessage.build(kind, session_id, payload, sender_id="tester").to_wire()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ice_config_round_trip(client):
    original = client.get("/ice_config").json()
    assert original["ice_servers"]

    response = client.post("/ice_config", json={"ice_servers": [
        {"urls": ["turn:turn.example.org:3478"], "username": "user", "credential": "secret"},
        {"urls": ["  "]},
    ]})
    assert response.status_code == 200
    assert response.json() == {"ice_servers": [
        {"urls": ["turn:turn.example.org:3478"], "username": "user", "credential": "secret"},
    ]}
    assert client.get("/ice_config").json() == response.json()

    client.post("/ice_config", json=original)


def test_create_and_join_session(client):
    created = client.post("/sessions")
    assert created.status_code == 200
    payload = created.json()
    assert payload["role"] == "initiator"
    assert len(payload["sessionId"]) == 6

    joined = client.post(f"/sessions/{payload['sessionId']}/join")
    assert joined.status_code == 200
    assert joined.json() == {"sessionId": payload["sessionId"], "role": "joiner"}


def test_join_rejects_invalid_session_id(client):
    response = client.post("/sessions/bad%20id!/join")
    assert response.status_code == 400


def test_publish_and_poll_messages(client):
    offer = _wire(MessageKind.OFFER, payload=SessionDescriptionPayload(sdp="v=0", type="offer"))
    candidate = _wire(MessageKind.CANDIDATE, payload=CandidatePayload(
        candidate="candidate:1 1 udp 1 192.0.2.1 9 typ host", sdp_mid="0", sdp_mline_index=0))

    first = client.post("/signaling/482913/messages", json=offer)
    assert first.status_code == 200
    assert first.json()["status"] == "ok"
    client.post("/signaling/482913/messages", json=candidate)

    page = client.get("/signaling/482913/messages").json()
    assert [m["messageId"] for m in page["messages"]] == [offer["messageId"], candidate["messageId"]]
    assert page["messages"][1]["payload"]["sdpMLineIndex"] == 0

    newer = client.get("/signaling/482913/messages", params={"after": page["cursor"]}).json()
    assert newer["messages"] == []
    assert newer["cursor"] == page["cursor"]


def test_publish_rejects_malformed_message(client):
    response = client.post("/signaling/482913/messages",
                           json={"type": "offer", "sessionId": "482913", "payload": {"sdp": "v=0"}})
    assert response.status_code == 422

    response = client.post("/signaling/482913/messages", json=_wire(MessageKind.PING, "111111", PingPayload()))
    assert response.status_code == 400


def test_purge_and_status(client):
    client.post("/signaling/482913/messages", json=_wire(MessageKind.PING, payload=PingPayload()))
    client.post("/signaling/482913/messages", json=_wire(MessageKind.DISCONNECT))

    status = client.get("/signaling/482913/status").json()
    assert status["sessionId"] == "482913"
    assert status["message_count"] == 2
    assert status["kinds"] == {"ping": 1, "disconnect": 1}

    purged = client.delete("/signaling/482913/messages").json()
    assert purged == {"status": "purged", "removed": 2}
    assert client.get("/signaling/482913/messages").json()["messages"] == []


def test_proxy_prefix_serves_same_routes(client):
    client.post("/api/v1/signaling/signaling/482913/messages", json=_wire(MessageKind.PING, payload=PingPayload()))
    page = client.get("/signaling/482913/messages").json()
    assert len(page["messages"]) == 1

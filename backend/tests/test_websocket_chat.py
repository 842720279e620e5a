"""Tests for the WebSocket chat endpoint."""

import json

import pytest
from fastapi import WebSocketDisconnect
from sqlmodel import Session, select

from healthchat.models.conversation import ChatMessage, Conversation
from healthchat.services.functions.base import RemoteFunctionError

WS_URL = "/api/chat/ws?user_id=account-1&subject_id=patient-a"


def _receive_until(ws, predicate, limit=50):
    """Collect events until one matches; returns (matching_event, all_events)."""
    seen = []
    for _ in range(limit):
        event = ws.receive_json()
        seen.append(event)
        if predicate(event):
            return event, seen
    raise AssertionError(f"no matching event in {seen}")


def _assistant_reply(event):
    return event["type"] == "message" and event["message"]["type"] == "assistant"


def test_websocket_requires_user_id(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/chat/ws") as ws:
            ws.receive_json()


def test_websocket_connect_selects_subject(client):
    with client.websocket_connect(WS_URL) as ws:
        event = ws.receive_json()
        assert event == {"type": "reset", "subject_id": "patient-a", "conversation_id": None}


def test_websocket_send_receive_reply(client):
    with client.websocket_connect(WS_URL) as ws:
        ws.send_text(json.dumps({"type": "send", "content": "hello"}))
        reply, seen = _receive_until(ws, _assistant_reply)

    assert reply["message"]["content"] == "Hello from assistant"
    types = [e["type"] for e in seen]
    assert types.index("conversation") < types.index("typing")
    user_messages = [e for e in seen if e["type"] == "message" and e["message"]["type"] == "user"]
    assert user_messages[0]["message"]["content"] == "hello"


def test_websocket_plain_text_is_a_send(client):
    with client.websocket_connect(WS_URL) as ws:
        ws.send_text("hi")
        reply, _ = _receive_until(ws, _assistant_reply)
    assert reply["message"]["content"] == "Hello from assistant"


def test_websocket_messages_persisted(client, db_engine):
    with client.websocket_connect(WS_URL) as ws:
        ws.send_text(json.dumps({"type": "send", "content": "save me"}))
        created, _ = _receive_until(ws, lambda e: e["type"] == "conversation")
        _receive_until(ws, _assistant_reply)
        conv_id = created["conversation_id"]

    with Session(db_engine) as session:
        conv = session.get(Conversation, conv_id)
        assert conv is not None
        assert conv.user_id == "account-1"
        assert conv.patient_id == "patient-a"

        messages = session.exec(
            select(ChatMessage)
            .where(ChatMessage.conversation_id == conv_id)
            .order_by(ChatMessage.created_at)
        ).all()

        assert [(m.type, m.content) for m in messages] == [("user", "save me"), ("assistant", "Hello from assistant")]


def test_websocket_multiple_messages_same_conversation(client, db_engine):
    with client.websocket_connect(WS_URL) as ws:
        for text in ["first", "second", "third"]:
            ws.send_text(json.dumps({"type": "send", "content": text}))
            _receive_until(ws, _assistant_reply)

        ws.send_text(json.dumps({"type": "status"}))
        status, _ = _receive_until(ws, lambda e: e["type"] == "status")

    conv_id = status["conversation_id"]
    assert status["allowed"] is True
    with Session(db_engine) as session:
        messages = session.exec(
            select(ChatMessage).where(ChatMessage.conversation_id == conv_id)
        ).all()
        assert len(messages) == 6


def test_websocket_analysis_events(client):
    with client.websocket_connect(WS_URL) as ws:
        ws.send_text(json.dumps({"type": "send", "content": "my head hurts"}))
        reply, _ = _receive_until(ws, _assistant_reply)
        message_id = reply["message"]["id"]
        done, _ = _receive_until(ws, lambda e: e["type"] == "analysis" and len(e.get("summary", [])) == 3)

    assert done["message_id"] == message_id
    assert {job["type"] for job in done["summary"]} == {"diagnosis", "solution", "memory"}


def test_websocket_send_without_subject_is_ignored(client, fake_functions):
    with client.websocket_connect("/api/chat/ws?user_id=account-1") as ws:
        ws.send_text(json.dumps({"type": "send", "content": "hello"}))
        ws.send_text(json.dumps({"type": "status"}))
        status, seen = _receive_until(ws, lambda e: e["type"] == "status")

    assert status["subject_id"] is None
    assert not [e for e in seen if e["type"] == "message"]
    assert fake_functions.chat_calls == []


def test_websocket_open_existing_conversation(client, db_engine):
    with Session(db_engine) as session:
        conv = Conversation(user_id="account-1", patient_id="patient-a", title="Earlier")
        session.add(conv)
        session.commit()
        session.refresh(conv)
        session.add(ChatMessage(conversation_id=conv.id, type="user", content="initial message"))
        session.commit()
        conv_id = conv.id

    with client.websocket_connect(WS_URL) as ws:
        ws.send_text(json.dumps({"type": "open_conversation", "conversation_id": conv_id}))
        loaded, _ = _receive_until(ws, lambda e: e["type"] == "conversation")
        assert [m["content"] for m in loaded["messages"]] == ["initial message"]

        ws.send_text(json.dumps({"type": "send", "content": "continuing"}))
        _receive_until(ws, _assistant_reply)

    with Session(db_engine) as session:
        messages = session.exec(
            select(ChatMessage).where(ChatMessage.conversation_id == conv_id)
        ).all()
        assert len(messages) == 3


def test_websocket_rate_limit_sends_cooldown(client, fake_functions):
    fake_functions.replies = [RemoteFunctionError("Token limit reached.", status=429)]

    with client.websocket_connect(WS_URL) as ws:
        ws.send_text(json.dumps({"type": "send", "content": "hello"}))
        cooldown, seen = _receive_until(ws, lambda e: e["type"] == "cooldown")

        ws.send_text(json.dumps({"type": "status"}))
        status, _ = _receive_until(ws, lambda e: e["type"] == "status")

    assert cooldown["wait_seconds"] > 0
    assert not [e for e in seen if e["type"] == "error"]
    assert status["allowed"] is False


def test_websocket_unknown_command(client):
    with client.websocket_connect(WS_URL) as ws:
        ws.send_text(json.dumps({"type": "teleport"}))
        error, _ = _receive_until(ws, lambda e: e["type"] == "error")
    assert error["kind"] == "protocol"

"""Tests for the WebSocket chat endpoint."""

import asyncio
import json

from sqlmodel import Session, select

from tests.conftest import sse, test_engine
from language_mate.core.errors import UpstreamError
from language_mate.models.conversation import ChatMessage, Conversation


def _drain(ws, until: str) -> list[dict]:
    """Collect events up to and including the first one of type ``until``."""
    received = []
    while True:
        event = ws.receive_json()
        received.append(event)
        if event["type"] == until:
            return received


def _last_snapshot(events: list[dict]) -> list[dict]:
    snapshots = [e for e in events if e["type"] == "messages"]
    return snapshots[-1]["messages"]


def test_websocket_connect_disconnect(client):
    """Basic connection and clean disconnect."""
    with client.websocket_connect("/api/chat/ws"):
        pass


def test_plain_text_runs_a_full_turn(client):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej, hur mår du?")
        events = _drain(ws, "conversation_updated")

    settled = next(e for e in events if e["type"] == "turn_settled")
    assert settled["outcome"] == "completed"
    assert any(e["type"] == "conversation_created" for e in events)

    messages = _last_snapshot(events)
    assert [m["type"] for m in messages] == ["user", "editor-mate", "chat-mate", "editor-mate"]
    user, editor_on_user, chat_mate, editor_on_chat_mate = messages
    assert editor_on_user["parent_message_id"] == user["id"]
    assert chat_mate["parent_message_id"] is None
    assert editor_on_chat_mate["parent_message_id"] == chat_mate["id"]
    assert all(not m["is_streaming"] and not m["id"].startswith("temp-") for m in messages)

    states = [e["state"] for e in events if e["type"] == "state"]
    assert states[:4] == [
        "awaiting_conversation",
        "editor_user_comment",
        "chat_mate_response",
        "editor_chat_mate_comment",
    ]


def test_messages_persisted(client):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej, hur mår du?")
        events = _drain(ws, "conversation_updated")
        conv_id = events[-1]["conversation_id"]

    with Session(test_engine) as session:
        conv = session.get(Conversation, int(conv_id))
        assert conv is not None
        assert conv.language == "Swedish"

        rows = session.exec(
            select(ChatMessage).where(ChatMessage.conversation_id == int(conv_id)).order_by(ChatMessage.id)
        ).all()
        assert [r.type for r in rows] == ["user", "editor-mate", "chat-mate", "editor-mate"]
        assert rows[0].content == "Hej, hur mår du?"
        assert rows[1].parent_message_id == str(rows[0].id)
        assert rows[3].parent_message_id == str(rows[2].id)
        assert rows[2].generation_metadata["model"] == "anthropic/claude-3-5-sonnet"


def test_first_round_titles_the_conversation(client):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej!")
        events = _drain(ws, "conversation_updated")

    assert events[-1]["title"] == "Swedish Small Talk"
    conversations = client.get("/api/conversations/").json()
    assert conversations[0]["title"] == "Swedish Small Talk"


def test_user_only_mode(client, fake_llm):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(json.dumps({"content": "Jag heter Sam", "mode": "user_only"}))
        events = _drain(ws, "conversation_updated")

    assert [m["type"] for m in _last_snapshot(events)] == ["user", "editor-mate"]
    assert fake_llm.kinds() == ["editor-mate-user-comment"]


def test_chat_mate_only_mode(client, fake_llm):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(json.dumps({"type": "send", "content": "Vad gör du i helgen?", "mode": "chat_mate_only"}))
        events = _drain(ws, "conversation_updated")

    chat_mate, editor = _last_snapshot(events)
    assert chat_mate["type"] == "chat-mate"
    assert editor["parent_message_id"] == chat_mate["id"]
    assert fake_llm.kinds() == ["editor-mate-chatmate-comment"]


def test_streamed_deltas_are_forwarded(client, fake_llm):
    for kind in ("editor-mate-user-comment", "chat-mate-response", "editor-mate-chatmate-comment"):
        fake_llm.streams[kind] = sse('{"type": "content", "content": "Hej"}', '{"type": "content", "content": " där"}', '{"type": "done"}')

    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej")
        events = _drain(ws, "conversation_updated")

    # Deltas of the two concurrent calls may interleave; per message they arrive in order
    deltas: dict[str, list[str]] = {}
    for e in events:
        if e["type"] == "message_updated":
            deltas.setdefault(e["message_id"], []).append(e["delta"])
    assert list(deltas.values()) == [["Hej", " där"]] * 3
    assert all(m["content"] == "Hej där" for m in _last_snapshot(events)[1:])


def test_upstream_failure_sends_one_notification(client, fake_llm):
    fake_llm.failures["chat-mate-response"] = UpstreamError(500, '{"error": "boom"}')

    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej")
        events = _drain(ws, "turn_settled")

    assert events[-1]["outcome"] == "failed"
    errors = [e for e in events if e["type"] == "notification" and e["level"] == "error"]
    assert len(errors) == 1
    assert [m["type"] for m in _last_snapshot(events)] == ["user", "editor-mate"]


def test_cancel_command_stops_the_turn(client, fake_llm):
    fake_llm.gates["chat-mate-response"] = asyncio.Event()

    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej")
        _drain(ws, "state")  # awaiting_conversation
        _drain(ws, "state")  # editor_user_comment
        _drain(ws, "state")  # chat_mate_response
        ws.send_text(json.dumps({"type": "cancel"}))
        events = _drain(ws, "turn_settled")

    assert events[-1]["outcome"] == "cancelled"
    messages = _last_snapshot(events)
    assert all(not m["is_streaming"] for m in messages)
    assert not any(m["id"].startswith("temp-") for m in messages)
    notes = [e for e in events if e["type"] == "notification"]
    assert [n["title"] for n in notes] == ["Generation cancelled"]


def test_regenerate_command(client, fake_llm):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej")
        events = _drain(ws, "conversation_updated")
        chat_mate = _last_snapshot(events)[2]

        fake_llm.replies["chat-mate-response"] = "Hallå där!"
        ws.send_text(json.dumps({"type": "regenerate", "message_id": chat_mate["id"]}))
        events = _drain(ws, "turn_settled")

    regenerated = _last_snapshot(events)[2]
    assert regenerated["id"] == chat_mate["id"]
    assert regenerated["content"] == "Hallå där!"


def test_invalid_command_reports_notification(client):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(json.dumps({"type": "explode"}))
        event = ws.receive_json()

    assert event["type"] == "notification"
    assert event["level"] == "error"


def test_empty_message_is_rejected(client):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("   ")
        event = ws.receive_json()

    assert event["type"] == "notification"
    assert event["title"] == "Invalid message"
    assert client.get("/api/conversations/").json() == []


def test_load_existing_conversation_continues_it(client):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej")
        conv_id = _drain(ws, "conversation_updated")[-1]["conversation_id"]

    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(json.dumps({"content": "Hur är vädret?", "conversation_id": conv_id}))
        events = _drain(ws, "conversation_updated")

    assert not any(e["type"] == "conversation_created" for e in events)
    assert len(_last_snapshot(events)) == 8

    with Session(test_engine) as session:
        rows = session.exec(select(ChatMessage).where(ChatMessage.conversation_id == int(conv_id))).all()
        assert len(rows) == 8


def test_settings_command_applies_to_next_conversation(client):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(json.dumps({"type": "settings", "settings": {"target_language": "German"}}))
        changed = ws.receive_json()
        assert changed["type"] == "settings"
        assert changed["settings"]["target_language"] == "German"

        ws.send_text("Hallo")
        events = _drain(ws, "conversation_updated")

    created = next(e for e in events if e["type"] == "conversation_created")
    assert created["conversation"]["language"] == "German"
    assert created["conversation"]["title"] == "German Chat"


def test_ask_command_answers_outside_the_chat(client, fake_llm):
    fake_llm.replies["editor-mate-response"] = "'Mår' comes from the verb 'må'."

    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej, hur mår du?")
        conv_id = _drain(ws, "conversation_updated")[-1]["conversation_id"]

        ws.send_text(json.dumps({"type": "ask", "question": "Where does 'mår' come from?", "selected_text": "mår"}))
        events = _drain(ws, "editor_answer")
        settled = _drain(ws, "turn_settled")[-1]

    answer = events[-1]
    assert answer["content"] == "'Mår' comes from the verb 'må'."
    assert answer["selected_text"] == "mår"
    assert settled["outcome"] == "completed"
    assert "editor_answer" in [e["state"] for e in events if e["type"] == "state"]
    assert not any(e["type"] == "messages" for e in events)

    (request,) = fake_llm.requests_for("editor-mate-response")
    assert request.message.startswith('The user has selected this text: "mår".')
    with Session(test_engine) as session:
        rows = session.exec(select(ChatMessage).where(ChatMessage.conversation_id == int(conv_id))).all()
        assert len(rows) == 4


def test_commands_wait_for_the_running_turn(client, fake_llm):
    fake_llm.gates["chat-mate-response"] = asyncio.Event()

    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text("Hej")
        _drain(ws, "state")  # awaiting_conversation
        _drain(ws, "state")  # editor_user_comment
        _drain(ws, "state")  # chat_mate_response
        ws.send_text(json.dumps({"type": "new"}))
        warning = _drain(ws, "notification")[-1]
        ws.send_text(json.dumps({"type": "cancel"}))
        events = _drain(ws, "turn_settled")

    assert warning["level"] == "warning"
    assert warning["title"] == "Please wait"
    # The chat was not cleared underneath the turn
    assert [m["type"] for m in _last_snapshot(events)][0] == "user"


def test_non_image_url_attachment_is_rejected(client, fake_llm):
    with client.websocket_connect("/api/chat/ws") as ws:
        ws.send_text(
            json.dumps({"content": "Titta!", "attachments": [{"type": "url", "url": "ftp://example.com/katt.png"}]})
        )
        event = ws.receive_json()

    assert event["type"] == "notification"
    assert event["level"] == "error"
    assert fake_llm.requests == []
    assert client.get("/api/conversations/").json() == []

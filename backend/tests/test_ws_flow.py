"""
WebSocket integration tests for full game flows.
Tests: lifecycle, join errors, host-only actions, disconnects,
malformed input. Uses FastAPI TestClient over the /ws endpoint.
"""
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient
from main import app
from session_manager import session_manager
import config


@pytest.fixture(autouse=True)
def clear_state():
    session_manager.registry.clear()
    saved = (session_manager.question_preroll, session_manager.countdown_seconds,
             session_manager.allowed_origins)
    session_manager.question_preroll = 0
    session_manager.countdown_seconds = 0.05
    session_manager.allowed_origins = []  # disable origin check for tests
    yield
    session_manager.registry.clear()
    (session_manager.question_preroll, session_manager.countdown_seconds,
     session_manager.allowed_origins) = saved


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_questions(num_questions=2):
    return [
        {"text": f"Question {i + 1}?", "options": ["A", "B", "C", "D"], "answer_index": 0}
        for i in range(num_questions)
    ]


def recv_until(ws, msg_type, max_messages=50):
    """Receive messages until we get the expected type. Returns that message."""
    for _ in range(max_messages):
        data = ws.receive_json()
        if data.get("type") == msg_type:
            return data
    raise TimeoutError(f"Never received {msg_type} after {max_messages} messages")


def create_session(host_ws, questions=None):
    recv_until(host_ws, "CONNECTED")
    msg = {"type": "CREATE_SESSION"}
    if questions is not None:
        msg["questions"] = questions
    host_ws.send_json(msg)
    return recv_until(host_ws, "SESSION_CREATED")["pin"]


def join(player_ws, pin, nickname):
    recv_until(player_ws, "CONNECTED")
    player_ws.send_json({"type": "JOIN", "pin": pin, "nickname": nickname})
    return player_ws.receive_json()


# ===========================================================================
# Full Game Lifecycle
# ===========================================================================

class TestFullGameLifecycle:
    def test_complete_game_2_questions(self, client):
        with client.websocket_connect("/ws") as host_ws:
            pin = create_session(host_ws, make_questions(2))

            with client.websocket_connect("/ws") as p1_ws:
                joined = join(p1_ws, pin, "Alice")
                assert joined == {"type": "JOIN_SUCCESS", "pin": pin, "nickname": "Alice"}
                roster = recv_until(host_ws, "ROSTER_UPDATE")
                assert roster["player_count"] == 1

                host_ws.send_json({"type": "START_GAME", "pin": pin, "time_limit": 20})
                shown = recv_until(host_ws, "QUESTION_SHOWN")
                assert shown["question"] == "Question 1?"
                begin = recv_until(p1_ws, "BEGIN_ANSWERING")
                assert "question" not in begin

                for q in range(2):
                    p1_ws.send_json({"type": "ANSWER", "pin": pin, "option_index": 0})
                    assert recv_until(p1_ws, "ANSWER_CONFIRMED")["option_index"] == 0
                    reveal = recv_until(p1_ws, "ANSWER_REVEALED")
                    assert reveal["correct_option"] == 0

                    host_ws.send_json({"type": "SHOW_RESULTS", "pin": pin})
                    results = recv_until(host_ws, "QUESTION_RESULTS")
                    assert results["is_last_question"] is (q == 1)
                    assert 1900 < results["leaderboard"][0]["score"] <= 2000 * (q + 1)
                    recv_until(p1_ws, "QUESTION_RESULTS")

                    host_ws.send_json({"type": "NEXT_QUESTION", "pin": pin})
                    if q == 0:
                        assert recv_until(p1_ws, "COUNTDOWN")["seconds"] == 0.05
                        shown = recv_until(host_ws, "QUESTION_SHOWN")
                        assert shown["question_number"] == 2
                        recv_until(p1_ws, "BEGIN_ANSWERING")

                ended = recv_until(host_ws, "GAME_ENDED")
                assert ended["leaderboard"][0]["nickname"] == "Alice"
                assert recv_until(p1_ws, "GAME_ENDED")["leaderboard"] == ended["leaderboard"]

                # Final leaderboard still readable during the grace period
                res = client.get(f"/session/{pin}")
                assert res.status_code == 200
                assert res.json()["state"] == "ENDED"

    def test_fallback_quiz_used_without_questions(self, client):
        with client.websocket_connect("/ws") as host_ws:
            recv_until(host_ws, "CONNECTED")
            host_ws.send_json({"type": "CREATE_SESSION"})
            created = recv_until(host_ws, "SESSION_CREATED")
            assert created["total_questions"] == 5

    def test_end_session_early(self, client):
        with client.websocket_connect("/ws") as host_ws:
            pin = create_session(host_ws, make_questions(3))
            with client.websocket_connect("/ws") as p1_ws:
                join(p1_ws, pin, "Alice")
                host_ws.send_json({"type": "START_GAME", "pin": pin, "time_limit": 30})
                recv_until(p1_ws, "BEGIN_ANSWERING")
                host_ws.send_json({"type": "END_SESSION", "pin": pin})
                ended = recv_until(p1_ws, "GAME_ENDED")
                assert ended["leaderboard"] == [{"rank": 1, "nickname": "Alice", "score": 0}]


# ===========================================================================
# Errors
# ===========================================================================

class TestJoinErrors:
    def test_bad_pin(self, client):
        with client.websocket_connect("/ws") as p1_ws:
            reply = join(p1_ws, "12ab", "Alice")
            assert reply["type"] == "JOIN_ERROR"
            assert reply["reason"] == "INVALID_PIN"

    def test_unknown_pin(self, client):
        with client.websocket_connect("/ws") as p1_ws:
            reply = join(p1_ws, "123456", "Alice")
            assert reply["reason"] == "NOT_FOUND"

    def test_bad_nickname(self, client):
        with client.websocket_connect("/ws") as host_ws:
            pin = create_session(host_ws)
            with client.websocket_connect("/ws") as p1_ws:
                reply = join(p1_ws, pin, "x" * 25)
                assert reply["reason"] == "INVALID_NICKNAME"

    def test_join_after_start(self, client):
        with client.websocket_connect("/ws") as host_ws:
            pin = create_session(host_ws)
            host_ws.send_json({"type": "START_GAME", "pin": pin, "time_limit": 20})
            recv_until(host_ws, "QUESTION_SHOWN")
            with client.websocket_connect("/ws") as p1_ws:
                reply = join(p1_ws, pin, "Late")
                assert reply["reason"] == "ALREADY_STARTED"


class TestHostOnlyActions:
    def test_player_cannot_start_or_advance(self, client):
        with client.websocket_connect("/ws") as host_ws:
            pin = create_session(host_ws)
            with client.websocket_connect("/ws") as p1_ws:
                join(p1_ws, pin, "Alice")
                for msg_type in ("START_GAME", "SHOW_RESULTS", "NEXT_QUESTION", "END_SESSION"):
                    p1_ws.send_json({"type": msg_type, "pin": pin, "time_limit": 20})
                    err = recv_until(p1_ws, "ERROR")
                    assert err["reason"] == "UNAUTHORIZED"
                assert session_manager.registry.get(pin).state == "LOBBY"

    def test_invalid_time_limit(self, client):
        with client.websocket_connect("/ws") as host_ws:
            pin = create_session(host_ws)
            host_ws.send_json({"type": "START_GAME", "pin": pin, "time_limit": 500})
            assert recv_until(host_ws, "ERROR")["reason"] == "INVALID_TIME_LIMIT"


class TestMalformedInput:
    def test_invalid_json(self, client):
        with client.websocket_connect("/ws") as ws:
            recv_until(ws, "CONNECTED")
            ws.send_text("not json")
            assert recv_until(ws, "ERROR")["reason"] == "INVALID_MESSAGE"

    def test_non_object_json(self, client):
        with client.websocket_connect("/ws") as ws:
            recv_until(ws, "CONNECTED")
            ws.send_text("[1, 2, 3]")
            assert recv_until(ws, "ERROR")["reason"] == "INVALID_MESSAGE"

    def test_message_too_large(self, client):
        with client.websocket_connect("/ws") as ws:
            recv_until(ws, "CONNECTED")
            ws.send_text("x" * (config.MAX_WS_MESSAGE_SIZE + 1))
            assert recv_until(ws, "ERROR")["message"] == "Message too large"

    def test_invalid_question_set(self, client):
        with client.websocket_connect("/ws") as ws:
            recv_until(ws, "CONNECTED")
            ws.send_json({"type": "CREATE_SESSION", "questions": make_questions(51)})
            assert recv_until(ws, "ERROR")["reason"] == "INVALID_QUESTION_SET"
            assert len(session_manager.registry) == 0

    def test_unknown_message_type(self, client):
        with client.websocket_connect("/ws") as ws:
            recv_until(ws, "CONNECTED")
            ws.send_json({"type": "HACK"})
            assert recv_until(ws, "ERROR")["reason"] == "INVALID_MESSAGE"


# ===========================================================================
# Disconnects
# ===========================================================================

class TestDisconnects:
    def test_host_disconnect_ends_session(self, client):
        with client.websocket_connect("/ws") as p1_ws:
            with client.websocket_connect("/ws") as host_ws:
                pin = create_session(host_ws)
                join(p1_ws, pin, "Alice")
                host_ws.send_json({"type": "START_GAME", "pin": pin, "time_limit": 20})
                recv_until(p1_ws, "BEGIN_ANSWERING")
                host_ws.send_json({"type": "SHOW_RESULTS", "pin": pin})
                recv_until(p1_ws, "QUESTION_RESULTS")
            assert recv_until(p1_ws, "HOST_DISCONNECTED") == {"type": "HOST_DISCONNECTED"}
            assert pin not in session_manager.registry
            assert client.get(f"/session/{pin}").status_code == 404

    def test_player_disconnect_updates_roster(self, client):
        with client.websocket_connect("/ws") as host_ws:
            pin = create_session(host_ws)
            with client.websocket_connect("/ws") as p1_ws:
                join(p1_ws, pin, "Alice")
                assert recv_until(host_ws, "ROSTER_UPDATE")["player_count"] == 1
            roster = recv_until(host_ws, "ROSTER_UPDATE")
            assert roster["player_count"] == 0
            assert roster["players"] == []
            assert pin in session_manager.registry

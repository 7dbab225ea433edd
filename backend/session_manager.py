from fastapi import WebSocket, WebSocketDisconnect
from typing import Callable, Dict, List, Optional
import json
import time
import uuid
import asyncio
import logging
import re

import config
import scoring
import timers
from errors import (
    TIME_EXPIRED,
    AlreadyStarted,
    AnswerRejected,
    GameError,
    InvalidMessage,
    InvalidNickname,
    InvalidPin,
    InvalidQuestionState,
    InvalidTimeLimit,
    NotFound,
    SessionFull,
    Unauthorized,
)
from gateway import ConnectionGateway
from quiz_provider import QuizProvider, get_fallback_questions, quiz_provider, validate_question_set
from registry import SessionRegistry, validate_pin
from timers import TimerRegistry

logger = logging.getLogger(__name__)

LOBBY = "LOBBY"
QUESTION = "QUESTION"
RESULT = "RESULT"
ENDED = "ENDED"


class Session:
    def __init__(self, pin: str, host_id: str, questions: List[dict], now: Optional[float] = None):
        self.pin = pin
        self.host_id = host_id  # the only connection allowed to drive the game
        self.questions = questions
        self.state = LOBBY
        self.players: Dict[str, dict] = {}  # connection_id -> {nickname, score}
        self.current_question_index = -1
        self.answers: Dict[str, dict] = {}  # connection_id -> answer for the current question
        self.time_limit = config.DEFAULT_TIME_LIMIT
        self.question_start_time: Optional[float] = None
        self.revealed = False
        self.last_activity = now if now is not None else time.time()

    def touch(self, now: float):
        """Update last activity timestamp."""
        self.last_activity = now

    def is_expired(self, now: float) -> bool:
        return now - self.last_activity > config.SESSION_TTL_SECONDS

    @property
    def current_question(self) -> Optional[dict]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    def is_last_question(self) -> bool:
        return self.current_question_index >= len(self.questions) - 1

    def roster(self) -> List[dict]:
        return [{"nickname": p["nickname"], "score": p["score"]} for p in self.players.values()]

    def member_ids(self) -> List[str]:
        return [self.host_id] + list(self.players)

    def snapshot(self) -> dict:
        """Public view of the session, safe to hand to any client."""
        return {
            "pin": self.pin,
            "state": self.state,
            "question_number": self.current_question_index + 1,
            "total_questions": len(self.questions),
            "player_count": len(self.players),
            "players": self.roster(),
            "leaderboard": scoring.get_leaderboard(self.players),
        }


def _clean_nickname(nickname) -> str:
    if not isinstance(nickname, str):
        raise InvalidNickname()
    # Sanitize: strip HTML tags and control characters
    nickname = re.sub(r'<[^>]+>', '', nickname)
    nickname = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', nickname).strip()
    if not nickname or len(nickname) > config.MAX_NICKNAME_LENGTH:
        raise InvalidNickname(f"Nickname must be 1-{config.MAX_NICKNAME_LENGTH} characters")
    return nickname


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class SessionManager:
    """Owns every live session and drives its state machine.

    Inbound actions arrive through ``handle_message`` (or the public
    operation methods directly); timers call back into the same paths.
    Each handler mutates session state before its first ``await`` so that
    concurrent events never observe a half-applied change.
    """

    def __init__(self, registry: Optional[SessionRegistry] = None,
                 timer_registry: Optional[TimerRegistry] = None,
                 gateway: Optional[ConnectionGateway] = None,
                 provider: Optional[QuizProvider] = None,
                 clock: Callable[[], float] = time.time,
                 question_preroll: float = config.QUESTION_PREROLL_SECONDS,
                 countdown_seconds: float = config.ADVANCE_COUNTDOWN_SECONDS,
                 cleanup_delay: float = config.CLEANUP_DELAY_SECONDS):
        self.registry = registry if registry is not None else SessionRegistry()
        self.timers = timer_registry if timer_registry is not None else TimerRegistry()
        self.gateway = gateway if gateway is not None else ConnectionGateway()
        self.provider = provider if provider is not None else quiz_provider
        self.clock = clock
        self.question_preroll = question_preroll
        self.countdown_seconds = countdown_seconds
        self.cleanup_delay = cleanup_delay
        self.allowed_origins: List[str] = []
        # WS rate limiting: connection_id -> list of timestamps
        self.msg_timestamps: Dict[str, list] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_cleanup_loop(self):
        """Start the background orphaned-session cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_expired_sessions())

    async def _cleanup_expired_sessions(self):
        """Periodically reap sessions left behind by a vanished host."""
        while True:
            try:
                await asyncio.sleep(60)
                await self.expire_idle_sessions()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in session cleanup loop")

    async def expire_idle_sessions(self) -> List[str]:
        """Reap idle sessions whose host socket is already gone.

        A session with a connected host is never reaped, however long it idles.
        """
        now = self.clock()
        expired = [s for s in self.registry
                   if s.is_expired(now) and s.host_id not in self.gateway.connections]
        for session in expired:
            self.registry.remove(session.pin)
            self.timers.cancel_all(session.pin)
            logger.info("Cleaned up orphaned session %s", session.pin)
            await self.gateway.send_many(list(session.players), {"type": "HOST_DISCONNECTED"})
        return [s.pin for s in expired]

    async def shutdown(self):
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self.timers.shutdown()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lookup(self, pin) -> Optional[Session]:
        try:
            return self.registry.get(validate_pin(pin))
        except InvalidPin:
            return None

    def _get_session(self, pin) -> Session:
        session = self.registry.get(validate_pin(pin))
        if not session:
            raise NotFound()
        return session

    def _require_host(self, session: Session, requester_id: str):
        if requester_id != session.host_id:
            logger.warning("Connection %s attempted a host action on session %s",
                           requester_id, session.pin)
            raise Unauthorized()

    async def _broadcast(self, session: Session, message: dict):
        await self.gateway.send_many(session.member_ids(), message)

    async def _send_roster(self, session: Session):
        await self.gateway.send(session.host_id, {
            "type": "ROSTER_UPDATE",
            "players": session.roster(),
            "player_count": len(session.players),
        })

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_session(self, host_id: str, questions: Optional[list] = None,
                             quiz_id: Optional[str] = None) -> Session:
        if questions is not None and quiz_id is not None:
            raise InvalidMessage("Provide either questions or quiz_id, not both")

        if questions is not None:
            question_set = validate_question_set(questions)
            source = "custom"
        elif quiz_id is not None:
            question_set = await self.provider.fetch_quiz_questions(quiz_id)
            source = f"quiz {quiz_id}"
        else:
            question_set = get_fallback_questions()
            source = "fallback"

        # Nothing is registered until the question set is complete
        pin = self.registry.allocate_pin()
        session = Session(pin, host_id, question_set, now=self.clock())
        self.registry.add(session)
        logger.info("Session %s created by %s with %d questions (%s)",
                    pin, host_id, len(question_set), source)

        await self.gateway.send(host_id, {
            "type": "SESSION_CREATED",
            "pin": pin,
            "total_questions": len(question_set),
        })
        return session

    async def join_session(self, pin, connection_id: str, nickname) -> dict:
        pin = validate_pin(pin)
        session = self.registry.get(pin)
        if not session:
            raise NotFound()
        if session.state != LOBBY:
            raise AlreadyStarted()
        nickname = _clean_nickname(nickname)
        if connection_id not in session.players and len(session.players) >= config.MAX_PLAYERS_PER_SESSION:
            raise SessionFull()

        player = {"nickname": nickname, "score": 0}
        session.players[connection_id] = player
        session.touch(self.clock())
        logger.info("Player '%s' joined session %s", nickname, pin)

        await self.gateway.send(connection_id, {"type": "JOIN_SUCCESS", "pin": pin, "nickname": nickname})
        await self._send_roster(session)
        return player

    async def start_session(self, pin, requester_id: str, time_limit) -> Session:
        session = self._get_session(pin)
        self._require_host(session, requester_id)
        if not _is_int(time_limit) or not (config.MIN_TIME_LIMIT <= time_limit <= config.MAX_TIME_LIMIT):
            raise InvalidTimeLimit(
                f"Time limit must be between {config.MIN_TIME_LIMIT} and {config.MAX_TIME_LIMIT} seconds")
        if session.state != LOBBY:
            raise InvalidQuestionState("Game already started")

        session.time_limit = time_limit
        session.touch(self.clock())
        logger.info("Session %s started with %d players, %ds per question",
                    session.pin, len(session.players), time_limit)
        await self._begin_question(session, 0)
        return session

    async def _begin_question(self, session: Session, index: int):
        session.current_question_index = index
        session.answers = {}
        session.revealed = False
        session.question_start_time = self.clock() + self.question_preroll
        session.state = QUESTION
        self.timers.schedule(timers.REVEAL, session.pin,
                             session.time_limit + self.question_preroll, self._on_reveal_timer)

        question = session.current_question
        total = len(session.questions)
        await self.gateway.send(session.host_id, {
            "type": "QUESTION_SHOWN",
            "question": question["text"],
            "options": question["options"],
            "question_number": index + 1,
            "total_questions": total,
            "time_limit": session.time_limit,
            "total_players": len(session.players),
            "preroll": self.question_preroll,
        })
        # Players get no question text and, above all, no answer_index
        await self.gateway.send_many(list(session.players), {
            "type": "BEGIN_ANSWERING",
            "question_number": index + 1,
            "total_questions": total,
            "time_limit": session.time_limit,
            "preroll": self.question_preroll,
        })

    async def submit_answer(self, pin, player_id: str, option_index) -> Optional[dict]:
        """Record a player's answer. Stale or out-of-phase submissions return None."""
        session = self._lookup(pin)
        if not session or player_id not in session.players:
            return None
        if session.state != QUESTION or session.question_start_time is None:
            return None
        if not _is_int(option_index) or not (0 <= option_index < config.OPTIONS_PER_QUESTION):
            return None
        question = session.current_question
        if question is None:
            return None
        # First write wins
        if player_id in session.answers:
            return None

        now = self.clock()
        elapsed = now - session.question_start_time
        if elapsed < 0:
            # Still in the pre-roll countdown
            return None
        if elapsed > session.time_limit:
            raise AnswerRejected(TIME_EXPIRED, "Time is up")

        correct = option_index == question["answer_index"]
        points = scoring.compute_points(correct, elapsed, session.time_limit)
        answer = {
            "option_index": option_index,
            "is_correct": correct,
            "timestamp": now,
            "time_elapsed": elapsed,
            "points": points,
        }
        session.answers[player_id] = answer
        session.players[player_id]["score"] += points
        session.touch(now)
        # Answers from players who already left stay recorded but are not counted
        answered_ids = [cid for cid in session.answers if cid in session.players]
        answered = len(answered_ids)
        total = len(session.players)
        question_index = session.current_question_index
        logger.info("Player '%s' answered question %d in session %s (%.2fs)",
                    session.players[player_id]["nickname"], question_index + 1, session.pin, elapsed)

        await self.gateway.send(player_id, {"type": "ANSWER_CONFIRMED", "option_index": option_index})
        count = {"type": "ANSWER_COUNT", "answered": answered, "total": total}
        await self.gateway.send(session.host_id, count)
        await self.gateway.send_many(answered_ids, count)

        if answered >= total:
            await self._reveal(session.pin, question_index)
        return answer

    async def _on_reveal_timer(self, pin: str):
        logger.info("Answer time elapsed for session %s", pin)
        await self._reveal(pin)

    async def _reveal(self, pin: str, question_index: Optional[int] = None):
        """Show the correct answer without leaving QUESTION state."""
        session = self.registry.get(pin)
        if not session or session.state != QUESTION or session.revealed:
            return
        if question_index is not None and question_index != session.current_question_index:
            return
        session.revealed = True
        self.timers.cancel(timers.REVEAL, pin)

        question = session.current_question
        await self._broadcast(session, {
            "type": "ANSWER_REVEALED",
            "correct_option": question["answer_index"],
            "correct_option_text": question["options"][question["answer_index"]],
            "results": scoring.get_player_results(session.players, session.answers),
        })

    async def request_results(self, pin, requester_id: str):
        session = self._get_session(pin)
        self._require_host(session, requester_id)
        if session.state == RESULT:
            logger.info("Duplicate results request for session %s ignored", session.pin)
            return
        question = session.current_question
        if session.state != QUESTION or question is None:
            raise InvalidQuestionState("No question to show results for")

        self.timers.cancel(timers.REVEAL, session.pin)
        session.state = RESULT
        session.revealed = True
        session.touch(self.clock())
        logger.info("Results shown for question %d in session %s",
                    session.current_question_index + 1, session.pin)

        await self._broadcast(session, {
            "type": "QUESTION_RESULTS",
            "correct_option": question["answer_index"],
            "correct_option_text": question["options"][question["answer_index"]],
            "leaderboard": scoring.get_leaderboard(session.players),
            "results": scoring.get_player_results(session.players, session.answers),
            "is_last_question": session.is_last_question(),
        })

    async def advance_question(self, pin, requester_id: str):
        session = self._get_session(pin)
        self._require_host(session, requester_id)
        if session.state != RESULT:
            raise InvalidQuestionState("Show results before moving on")
        session.touch(self.clock())

        if session.current_question_index + 1 >= len(session.questions):
            self.timers.cancel(timers.COUNTDOWN, session.pin)
            await self._finish(session)
            return

        self.timers.schedule(timers.COUNTDOWN, session.pin, self.countdown_seconds,
                             self._on_countdown_elapsed)
        await self._broadcast(session, {"type": "COUNTDOWN", "seconds": self.countdown_seconds})

    async def _on_countdown_elapsed(self, pin: str):
        # The host may have left or ended the game during the countdown
        session = self.registry.get(pin)
        if not session:
            logger.info("Session %s gone before countdown finished", pin)
            return
        if session.state != RESULT:
            return
        next_index = session.current_question_index + 1
        if next_index >= len(session.questions):
            await self._finish(session)
            return
        logger.info("Session %s moving to question %d", pin, next_index + 1)
        await self._begin_question(session, next_index)

    async def end_session(self, pin, requester_id: str):
        session = self._get_session(pin)
        self._require_host(session, requester_id)
        if session.state == ENDED:
            return
        await self._finish(session)

    async def _finish(self, session: Session):
        self.timers.cancel(timers.REVEAL, session.pin)
        self.timers.cancel(timers.COUNTDOWN, session.pin)
        session.state = ENDED
        self.timers.schedule(timers.CLEANUP, session.pin, self.cleanup_delay, self._on_cleanup)
        logger.info("Session %s ended", session.pin)
        await self._broadcast(session, {
            "type": "GAME_ENDED",
            "leaderboard": scoring.get_leaderboard(session.players),
        })

    async def _on_cleanup(self, pin: str):
        if self.registry.remove(pin):
            self.timers.cancel_all(pin)
            logger.info("Session %s deleted after end-of-game grace period", pin)

    async def disconnect(self, connection_id: str):
        self.gateway.unregister(connection_id)
        self.msg_timestamps.pop(connection_id, None)
        for session in self.registry:
            if session.host_id == connection_id:
                self.timers.cancel_all(session.pin)
                self.registry.remove(session.pin)
                logger.info("Host left, session %s deleted", session.pin)
                await self.gateway.send_many(list(session.players), {"type": "HOST_DISCONNECTED"})
            elif connection_id in session.players:
                player = session.players.pop(connection_id)
                logger.info("Player '%s' left session %s", player["nickname"], session.pin)
                await self._send_roster(session)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.gateway.register(connection_id, websocket)

        try:
            await websocket.send_json({"type": "CONNECTED", "connection_id": connection_id})
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "ERROR", "reason": InvalidMessage.reason,
                                               "message": "Message too large"})
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = self.msg_timestamps.setdefault(connection_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "ERROR", "reason": "RATE_LIMITED",
                                               "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", connection_id, data[:100])
                    await websocket.send_json(InvalidMessage().to_message())
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json(InvalidMessage().to_message())
                    continue

                await self.handle_message(connection_id, message)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", connection_id)
        except Exception:
            logger.exception("WebSocket error for client %s", connection_id)
        finally:
            await self.disconnect(connection_id)

    async def handle_message(self, connection_id: str, message: dict):
        msg_type = message.get("type")
        pin = message.get("pin")

        try:
            if msg_type == "CREATE_SESSION":
                await self.create_session(connection_id, questions=message.get("questions"),
                                          quiz_id=message.get("quiz_id"))
            elif msg_type == "JOIN":
                await self.join_session(pin, connection_id, message.get("nickname"))
            elif msg_type == "START_GAME":
                await self.start_session(pin, connection_id,
                                         message.get("time_limit", config.DEFAULT_TIME_LIMIT))
            elif msg_type == "ANSWER":
                await self.submit_answer(pin, connection_id, message.get("option_index"))
            elif msg_type == "SHOW_RESULTS":
                await self.request_results(pin, connection_id)
            elif msg_type == "NEXT_QUESTION":
                await self.advance_question(pin, connection_id)
            elif msg_type == "END_SESSION":
                await self.end_session(pin, connection_id)
            else:
                raise InvalidMessage(f"Unknown message type: {msg_type}")
        except GameError as e:
            if msg_type == "JOIN":
                reply = e.to_message("JOIN_ERROR")
            elif msg_type == "ANSWER":
                reply = e.to_message("ANSWER_REJECTED")
            else:
                reply = e.to_message()
            logger.warning("%s from %s rejected: %s", msg_type, connection_id, e.reason)
            await self.gateway.send(connection_id, reply)


session_manager = SessionManager()

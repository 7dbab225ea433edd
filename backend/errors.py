"""Errors raised by session operations.

Every error carries a stable ``reason`` code that clients can switch on and a
human-readable message. The WebSocket dispatcher turns them into outbound
``JOIN_ERROR`` / ``ANSWER_REJECTED`` / ``ERROR`` messages.
"""


class GameError(Exception):
    reason = "ERROR"
    default_message = "Request failed"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_message(self, msg_type: str = "ERROR") -> dict:
        return {"type": msg_type, "reason": self.reason, "message": self.message}


class ValidationError(GameError):
    """Malformed input. Nothing about the session changed."""
    reason = "VALIDATION_ERROR"
    default_message = "Invalid request"


class InvalidPin(ValidationError):
    reason = "INVALID_PIN"
    default_message = "PIN must be a 6-digit number"


class InvalidNickname(ValidationError):
    reason = "INVALID_NICKNAME"
    default_message = "Nickname must be 1-20 characters"


class InvalidTimeLimit(ValidationError):
    reason = "INVALID_TIME_LIMIT"
    default_message = "Time limit must be between 5 and 120 seconds"


class InvalidQuestionSet(ValidationError):
    reason = "INVALID_QUESTION_SET"
    default_message = "Question set is invalid"


class InvalidMessage(ValidationError):
    reason = "INVALID_MESSAGE"
    default_message = "Invalid message format"


class Unauthorized(GameError):
    reason = "UNAUTHORIZED"
    default_message = "Only the host can do that"


class NotFound(GameError):
    reason = "NOT_FOUND"
    default_message = "Game not found"


class AlreadyStarted(GameError):
    reason = "ALREADY_STARTED"
    default_message = "Game already started"


class SessionFull(GameError):
    reason = "SESSION_FULL"
    default_message = "Game is full"


class InvalidQuestionState(GameError):
    reason = "INVALID_QUESTION_STATE"
    default_message = "Action not allowed in the current game state"


class AnswerRejected(GameError):
    reason = "ANSWER_REJECTED"
    default_message = "Answer rejected"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message)


TIME_EXPIRED = "TIME_EXPIRED"


class ProviderFailure(GameError):
    """Raised when quiz content could not be fetched from the content store."""
    reason = "PROVIDER_FAILURE"
    default_message = "Could not load quiz"


class CapacityExceeded(GameError):
    reason = "CAPACITY_EXCEEDED"
    default_message = "Too many active games. Please try again later."

import random
import re
import logging
from typing import Dict, Iterator, Optional

import config
from errors import CapacityExceeded, InvalidPin

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"[0-9]{%d}" % config.PIN_LENGTH)


def generate_pin() -> str:
    """Random 6-digit numeral, never starting with 0."""
    low = 10 ** (config.PIN_LENGTH - 1)
    return str(random.randint(low, 10 ** config.PIN_LENGTH - 1))


def validate_pin(pin) -> str:
    """Normalise a client-supplied PIN to its canonical string form.

    JSON clients may send the PIN as a number, so a six-digit int is
    accepted. Strings must be exactly six ASCII digits with no padding.
    """
    if isinstance(pin, int) and not isinstance(pin, bool):
        pin = str(pin)
    if not isinstance(pin, str) or not PIN_PATTERN.fullmatch(pin):
        raise InvalidPin()
    return pin


class SessionRegistry:
    """In-memory mapping of PIN -> live session."""

    def __init__(self, max_sessions: int = config.MAX_SESSIONS):
        self.sessions: Dict[str, object] = {}
        self.max_sessions = max_sessions

    def allocate_pin(self) -> str:
        """Generate a unique PIN, checking for collisions with live sessions."""
        if len(self.sessions) >= self.max_sessions:
            raise CapacityExceeded()
        for _ in range(config.MAX_PIN_ATTEMPTS):
            pin = generate_pin()
            if pin not in self.sessions:
                return pin
        logger.error("Failed to allocate a unique PIN after %d attempts", config.MAX_PIN_ATTEMPTS)
        raise CapacityExceeded("Failed to generate unique game PIN")

    def add(self, session) -> None:
        if session.pin in self.sessions:
            raise ValueError(f"PIN {session.pin} already registered")
        self.sessions[session.pin] = session

    def get(self, pin: str):
        return self.sessions.get(pin)

    def remove(self, pin: str) -> Optional[object]:
        return self.sessions.pop(pin, None)

    def clear(self) -> None:
        self.sessions.clear()

    def __contains__(self, pin: str) -> bool:
        return pin in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    def __iter__(self) -> Iterator:
        # Snapshot so callers can remove while iterating
        return iter(list(self.sessions.values()))

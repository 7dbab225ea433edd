"""Centralized configuration: all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Quiz content store ---
QUIZ_STORE_URL = os.getenv("QUIZ_STORE_URL", "")
QUIZ_STORE_KEY = os.getenv("QUIZ_STORE_KEY", "")
QUIZ_STORE_TABLE = os.getenv("QUIZ_STORE_TABLE", "questions")
QUIZ_STORE_TIMEOUT = int(os.getenv("QUIZ_STORE_TIMEOUT", "10"))

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 64 * 1024  # bytes, custom question sets arrive inline

# --- Storage Limits ---
MAX_SESSIONS = 200
MAX_PLAYERS_PER_SESSION = 100

# --- Session ---
PIN_LENGTH = 6
MAX_PIN_ATTEMPTS = 100
MAX_NICKNAME_LENGTH = 20
MIN_TIME_LIMIT = 5
MAX_TIME_LIMIT = 120
DEFAULT_TIME_LIMIT = 20
MIN_QUESTIONS = 1
MAX_QUESTIONS = 50
OPTIONS_PER_QUESTION = 4
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "3600"))

# --- Timers ---
QUESTION_PREROLL_SECONDS = float(os.getenv("QUESTION_PREROLL_SECONDS", "3"))
ADVANCE_COUNTDOWN_SECONDS = float(os.getenv("ADVANCE_COUNTDOWN_SECONDS", "3"))
CLEANUP_DELAY_SECONDS = float(os.getenv("CLEANUP_DELAY_SECONDS", "60"))

# --- Scoring ---
BASE_POINTS = 1000
TIME_BONUS_POOL = 1000

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )

import re
import copy
import asyncio
import logging
from typing import List

import requests
from pydantic import AliasChoices, BaseModel, Field, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError

import config
from errors import InvalidQuestionSet, ProviderFailure

logger = logging.getLogger(__name__)

MAX_QUESTION_TEXT_LENGTH = 2000
MAX_OPTION_LENGTH = 500

# Used when the host creates a game without supplying questions or a quiz id
FALLBACK_QUESTIONS = [
    {"id": 1, "text": "What is the capital of France?",
     "options": ["London", "Berlin", "Paris", "Madrid"], "answer_index": 2},
    {"id": 2, "text": "Which planet is known as the Red Planet?",
     "options": ["Venus", "Mars", "Jupiter", "Saturn"], "answer_index": 1},
    {"id": 3, "text": "What is 2 + 2?",
     "options": ["3", "4", "5", "6"], "answer_index": 1},
    {"id": 4, "text": "Who painted the Mona Lisa?",
     "options": ["Van Gogh", "Picasso", "Da Vinci", "Rembrandt"], "answer_index": 2},
    {"id": 5, "text": "What is the largest ocean on Earth?",
     "options": ["Atlantic", "Indian", "Arctic", "Pacific"], "answer_index": 3},
]


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from user-supplied text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


class QuestionIn(BaseModel):
    """One question as supplied by a host or by the content store.

    Accepts both our own field names and the store's
    ``question`` / ``answers`` / ``correct_answer`` columns.
    """
    text: str = Field(validation_alias=AliasChoices("text", "question"))
    options: List[str] = Field(validation_alias=AliasChoices("options", "answers"))
    answer_index: StrictInt = Field(
        validation_alias=AliasChoices("answer_index", "correct_answer", "correctAnswer"))

    @field_validator('text')
    @classmethod
    def validate_text(cls, v: str) -> str:
        v = _sanitize_text(v)[:MAX_QUESTION_TEXT_LENGTH]
        if not v:
            raise ValueError('Question text must not be empty')
        return v

    @field_validator('options')
    @classmethod
    def validate_options(cls, v: List[str]) -> List[str]:
        if len(v) != config.OPTIONS_PER_QUESTION:
            raise ValueError(f'Question must have exactly {config.OPTIONS_PER_QUESTION} options')
        v = [_sanitize_text(opt)[:MAX_OPTION_LENGTH] for opt in v]
        if not all(v):
            raise ValueError('Options must not be empty')
        return v

    @field_validator('answer_index')
    @classmethod
    def validate_answer_index(cls, v: int) -> int:
        if not (0 <= v < config.OPTIONS_PER_QUESTION):
            raise ValueError('Invalid answer_index')
        return v


def validate_question_set(raw) -> List[dict]:
    """Validate and sanitize a question list, returning fresh question dicts."""
    if not isinstance(raw, list):
        raise InvalidQuestionSet("Questions must be a list")
    if len(raw) < config.MIN_QUESTIONS or len(raw) > config.MAX_QUESTIONS:
        raise InvalidQuestionSet(
            f"Quiz must have {config.MIN_QUESTIONS}-{config.MAX_QUESTIONS} questions")

    questions = []
    for i, item in enumerate(raw):
        try:
            q = QuestionIn.model_validate(item)
        except PydanticValidationError as e:
            logger.warning("Question %d rejected: %s", i + 1, e.errors()[0].get("msg"))
            raise InvalidQuestionSet(f"Question {i + 1} is invalid") from e
        questions.append({
            "id": i + 1,
            "text": q.text,
            "options": q.options,
            "answer_index": q.answer_index,
        })
    return questions


def get_fallback_questions() -> List[dict]:
    return copy.deepcopy(FALLBACK_QUESTIONS)


class QuizProvider:
    """Read-only client for the hosted quiz content store (PostgREST API)."""

    def __init__(self, base_url: str = config.QUIZ_STORE_URL,
                 api_key: str = config.QUIZ_STORE_KEY,
                 table: str = config.QUIZ_STORE_TABLE,
                 timeout: int = config.QUIZ_STORE_TIMEOUT):
        self.base_url = base_url
        self.api_key = api_key
        self.table = table
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _fetch_rows(self, quiz_id: str):
        url = f"{self.base_url.rstrip('/')}/rest/v1/{self.table}"
        headers = {}
        if self.api_key:
            headers = {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}
        params = {
            "quiz_id": f"eq.{quiz_id}",
            "select": "question,answers,correct_answer",
            "order": "position.asc",
        }
        response = requests.get(url, params=params, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def fetch_quiz_questions(self, quiz_id: str) -> List[dict]:
        if not isinstance(quiz_id, str) or not quiz_id.strip():
            raise InvalidQuestionSet("quiz_id must be a non-empty string")
        if not self.is_configured():
            logger.error("Quiz store URL not configured")
            raise ProviderFailure("Quiz store is not configured")

        quiz_id = quiz_id.strip()
        logger.info("Fetching quiz %s from content store", quiz_id)
        try:
            rows = await asyncio.to_thread(self._fetch_rows, quiz_id)
        except requests.Timeout:
            logger.warning("Quiz store timed out after %ds for quiz %s", self.timeout, quiz_id)
            raise ProviderFailure("Quiz store timed out")
        except requests.RequestException as e:
            logger.error("HTTP error fetching quiz %s: %s", quiz_id, e)
            raise ProviderFailure()
        except ValueError as e:
            logger.error("Quiz store returned malformed JSON for quiz %s: %s", quiz_id, e)
            raise ProviderFailure()

        if not isinstance(rows, list) or not rows:
            logger.warning("Quiz %s not found or has no questions", quiz_id)
            raise ProviderFailure("Quiz not found")
        try:
            questions = validate_question_set(rows)
        except InvalidQuestionSet as e:
            raise ProviderFailure(f"Quiz content is invalid: {e.message}") from e
        logger.info("Loaded quiz %s with %d questions", quiz_id, len(questions))
        return questions


quiz_provider = QuizProvider()

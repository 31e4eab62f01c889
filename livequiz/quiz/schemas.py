import logging
import os
from enum import StrEnum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIME_LIMIT = int(os.getenv("QUIZ_DEFAULT_TIME_LIMIT", "30"))

CHANNEL_PREFIX = "live-quiz:"


def channel_key(session_id: str) -> str:
    """Get the broadcast channel name for a session."""
    return f"{CHANNEL_PREFIX}{session_id}"


class QuizStatus(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    REVEALING = "revealing"
    LEADERBOARD = "leaderboard"
    ENDED = "ended"


class EventName(StrEnum):
    QUESTION_START = "question-start"
    TIMER_SYNC = "timer-sync"
    REVEAL_ANSWERS = "reveal-answers"
    SHOW_LEADERBOARD = "show-leaderboard"
    QUIZ_ENDED = "quiz-ended"
    QUIZ_STATE = "quiz-state"


class QuizState(BaseModel):
    """
    The live state of one quiz session.
    Attribute names are snake_case, the wire form uses the camelCase aliases.
    """

    model_config = ConfigDict(populate_by_name=True)

    current_question_index: int = Field(
        default=0, ge=0, alias="currentQuestionIndex"
    )
    question_started_at: Optional[int] = Field(
        default=None,
        alias="questionStartedAt",
        description="Milliseconds since the epoch, set when a question becomes active",
    )
    time_remaining: int = Field(
        default=DEFAULT_TIME_LIMIT, ge=0, alias="timeRemaining"
    )
    is_revealing: bool = Field(default=False, alias="isRevealing")
    is_paused: bool = Field(default=False, alias="isPaused")
    show_leaderboard: bool = Field(default=False, alias="showLeaderboard")
    status: QuizStatus = QuizStatus.WAITING

    def client_model_dump_json(self) -> dict:
        """
        This function is to send the state to a client, using the wire field names.
        """
        return self.model_dump(by_alias=True, mode="json")


class LiveOption(BaseModel):
    option_id: str
    text: str = ""
    is_correct: bool = False


class LiveQuestion(BaseModel):
    """
    A question as the live quiz sees it. Content is rendered by the clients,
    the state machine only needs the ordering and the time limit. Options
    are kept for grading answers.
    """

    question_id: str
    text: str = ""
    time_limit: Optional[int] = Field(default=None, gt=0)
    options: List[LiveOption] = Field(default_factory=list)

    def get_option(self, option_id: str) -> Optional[LiveOption]:
        return next((o for o in self.options if o.option_id == option_id), None)


class EventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    seq: int = Field(
        ..., ge=0, description="Strictly increasing stamp assigned by the host"
    )

    def client_model_dump_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class QuestionStartEvent(EventBase):
    event: Literal["question-start"] = EventName.QUESTION_START.value
    question_index: int = Field(..., ge=0, alias="questionIndex")
    started_at: int = Field(..., alias="startedAt")
    time_limit: int = Field(..., ge=0, alias="timeLimit")


class TimerSyncEvent(EventBase):
    event: Literal["timer-sync"] = EventName.TIMER_SYNC.value
    time_remaining: int = Field(..., ge=0, alias="timeRemaining")
    is_paused: bool = Field(..., alias="isPaused")


class RevealAnswersEvent(EventBase):
    event: Literal["reveal-answers"] = EventName.REVEAL_ANSWERS.value
    question_index: int = Field(..., ge=0, alias="questionIndex")


class ShowLeaderboardEvent(EventBase):
    event: Literal["show-leaderboard"] = EventName.SHOW_LEADERBOARD.value


class QuizEndedEvent(EventBase):
    event: Literal["quiz-ended"] = EventName.QUIZ_ENDED.value


class QuizStateEvent(QuizState, EventBase):
    """Periodic full-state snapshot for late joiners."""

    event: Literal["quiz-state"] = EventName.QUIZ_STATE.value

    @classmethod
    def from_state(cls, state: QuizState, seq: int) -> "QuizStateEvent":
        return cls(seq=seq, **state.model_dump())

    def to_state(self) -> QuizState:
        return QuizState(**self.model_dump(exclude={"event", "seq"}))


QuizEvent = Annotated[
    Union[
        QuestionStartEvent,
        TimerSyncEvent,
        RevealAnswersEvent,
        ShowLeaderboardEvent,
        QuizEndedEvent,
        QuizStateEvent,
    ],
    Field(discriminator="event"),
]

quiz_event_adapter = TypeAdapter(QuizEvent)


def parse_event(message: dict) -> Optional[QuizEvent]:
    """
    Validates a raw broadcast payload into one of the quiz events.
    Returns None for anything malformed or unknown.
    """
    try:
        return quiz_event_adapter.validate_python(message)
    except ValidationError as e:
        logger.warning(f"Ignoring malformed quiz event: {e.error_count()} errors")
        return None

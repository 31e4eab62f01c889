import logging
from typing import Callable, List, Optional

from livequiz.channel.models import Channel
from livequiz.quiz.schemas import (
    DEFAULT_TIME_LIMIT,
    EventName,
    LiveQuestion,
    QuestionStartEvent,
    QuizEndedEvent,
    QuizEvent,
    QuizState,
    QuizStateEvent,
    QuizStatus,
    RevealAnswersEvent,
    ShowLeaderboardEvent,
    TimerSyncEvent,
    parse_event,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[QuizState], None]


def apply_event(state: QuizState, event: QuizEvent) -> QuizState:
    """
    Merges a broadcast event into a state and returns the new state.
    Only the snapshot replaces the state wholesale, every other event
    touches its own fields and leaves the rest as they were.
    """
    match event:
        case QuizStateEvent():
            return event.to_state()
        case QuestionStartEvent():
            return state.model_copy(
                update={
                    "current_question_index": event.question_index,
                    "question_started_at": event.started_at,
                    "time_remaining": event.time_limit,
                    "is_revealing": False,
                    "is_paused": False,
                    # the host clears it on every start, followers must too
                    "show_leaderboard": False,
                    "status": QuizStatus.ACTIVE,
                }
            )
        case TimerSyncEvent():
            return state.model_copy(
                update={
                    "time_remaining": event.time_remaining,
                    "is_paused": event.is_paused,
                }
            )
        case RevealAnswersEvent():
            return state.model_copy(
                update={
                    "is_revealing": True,
                    "status": QuizStatus.REVEALING,
                    "time_remaining": 0,
                }
            )
        case ShowLeaderboardEvent():
            return state.model_copy(
                update={"show_leaderboard": True, "status": QuizStatus.LEADERBOARD}
            )
        case QuizEndedEvent():
            return state.model_copy(update={"status": QuizStatus.ENDED})
        case _:
            raise TypeError(f"Unsupported quiz event: {type(event).__name__}")


class QuizObserver:
    """Read-only view of a session's quiz state, shared by host and participants."""

    def __init__(
        self,
        state: Optional[QuizState] = None,
        questions: Optional[List[LiveQuestion]] = None,
        default_time_limit: int = DEFAULT_TIME_LIMIT,
    ):
        self.default_time_limit = default_time_limit
        self._state = (
            state if state is not None else QuizState(time_remaining=default_time_limit)
        )
        self.questions: List[LiveQuestion] = list(questions or [])
        self._listeners: List[StateListener] = []
        # (question index, started at, time limit) of the last question start seen
        self._question_start: Optional[tuple] = None

    @property
    def state(self) -> QuizState:
        return self._state.model_copy()

    @property
    def status(self) -> QuizStatus:
        return self._state.status

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def is_active(self) -> bool:
        return self._state.status == QuizStatus.ACTIVE

    @property
    def is_revealing(self) -> bool:
        return self._state.is_revealing

    @property
    def is_ended(self) -> bool:
        return self._state.status == QuizStatus.ENDED

    @property
    def can_go_next(self) -> bool:
        return self._state.current_question_index < self.total_questions - 1

    @property
    def can_go_previous(self) -> bool:
        return self._state.current_question_index > 0

    @property
    def current_question(self) -> Optional[LiveQuestion]:
        index = self._state.current_question_index
        if 0 <= index < self.total_questions:
            return self.questions[index]
        return None

    @property
    def current_time_limit(self) -> int:
        """Full countdown of the current question."""
        state = self._state
        if self._question_start is not None:
            index, started_at, time_limit = self._question_start
            if (index, started_at) == (
                state.current_question_index,
                state.question_started_at,
            ):
                return time_limit
        question = self.current_question
        if question is not None and question.time_limit:
            return question.time_limit
        return self.default_time_limit

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: QuizState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state.model_copy())
            except Exception as e:
                logger.error(f"Error in quiz state listener: {e}")


class QuizFollower(QuizObserver):
    """
    Mirrors the host's state from the broadcast channel. It never sends.
    Events are applied only when their stamp is above everything applied
    so far, so a stale snapshot can't overwrite fresher discrete events.
    """

    def __init__(
        self,
        questions: Optional[List[LiveQuestion]] = None,
        default_time_limit: int = DEFAULT_TIME_LIMIT,
    ):
        super().__init__(questions=questions, default_time_limit=default_time_limit)
        self.high_water_mark = -1

    def attach(self, channel: Channel) -> None:
        for event_name in EventName:
            channel.on(event_name.value, self.handle_message)

    def handle_message(self, message: dict) -> bool:
        event = parse_event(message)
        if event is None:
            return False

        if event.seq <= self.high_water_mark:
            logger.debug(
                f"Dropping stale {event.event} (seq {event.seq} <= {self.high_water_mark})"
            )
            return False

        self.high_water_mark = event.seq
        if isinstance(event, QuestionStartEvent):
            self._question_start = (
                event.question_index, event.started_at, event.time_limit
            )
        self._set_state(apply_event(self._state, event))
        return True

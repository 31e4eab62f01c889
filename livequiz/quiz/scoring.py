from typing import Optional

from pydantic import BaseModel

from livequiz.quiz.schemas import LiveOption, LiveQuestion
from livequiz.quiz.state import QuizObserver

BASE_SCORE = 100
MAX_TIME_BONUS = 100


class GradedAnswer(BaseModel):
    question_id: str
    option_id: str
    is_correct: bool
    points_earned: int
    response_time: Optional[int] = None


def calculate_score(is_correct: bool, time_remaining: int, total_time: int) -> int:
    """
    Points for one answer: a base score for a correct answer plus a bonus
    proportional to the share of the countdown still left.
    """
    if not is_correct:
        return 0
    if total_time <= 0:
        return BASE_SCORE
    share = min(max(time_remaining, 0), total_time) / total_time
    return BASE_SCORE + round(share * MAX_TIME_BONUS)


def grade_answer(
    observer: QuizObserver,
    question: LiveQuestion,
    option: LiveOption,
    now_ms: int,
) -> GradedAnswer:
    """Grades an answer against the observer's live countdown."""
    state = observer.state
    response_time = None
    if state.question_started_at is not None:
        response_time = max(0, now_ms - state.question_started_at)
    return GradedAnswer(
        question_id=question.question_id,
        option_id=option.option_id,
        is_correct=option.is_correct,
        points_earned=calculate_score(
            option.is_correct, state.time_remaining, observer.current_time_limit
        ),
        response_time=response_time,
    )

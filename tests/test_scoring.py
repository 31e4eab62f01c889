"""
Tests for answer grading against the live countdown.
"""
import pytest

from conftest import make_questions
from livequiz.quiz.authority import QuizAuthority
from livequiz.quiz.schemas import QuestionStartEvent
from livequiz.quiz.scoring import calculate_score, grade_answer
from livequiz.quiz.state import QuizFollower


class TestCalculateScore:
    @pytest.mark.parametrize(
        "is_correct, time_remaining, total_time, expected",
        [
            (False, 20, 20, 0),
            (True, 20, 20, 200),
            (True, 10, 20, 150),
            (True, 0, 20, 100),
            (True, 7, 30, 123),
            # a countdown synced above the limit is capped at the full bonus
            (True, 25, 20, 200),
            (True, 5, 0, 100),
        ],
    )
    def test_score(self, is_correct, time_remaining, total_time, expected):
        assert calculate_score(is_correct, time_remaining, total_time) == expected


class TestCurrentTimeLimit:
    def test_authority_uses_the_started_limit(self, channel, clock):
        authority = QuizAuthority(channel, make_questions(2, time_limit=30), clock=clock)
        authority.start_question(1, 15)
        assert authority.current_time_limit == 15

        authority.start_question(0)
        assert authority.current_time_limit == 30

    def test_follower_uses_the_broadcast_limit(self):
        follower = QuizFollower(make_questions(2), default_time_limit=40)
        assert follower.current_time_limit == 40

        follower.handle_message(
            QuestionStartEvent(
                seq=1, question_index=1, started_at=1000, time_limit=12
            ).client_model_dump_json()
        )
        assert follower.current_time_limit == 12


class TestGradeAnswer:
    def test_correct_answer_earns_time_bonus(self, channel, clock):
        authority = QuizAuthority(channel, make_questions(2), clock=clock)
        authority.start_question(0, 20)
        for _ in range(5):
            authority.tick()
        question = authority.current_question

        graded = grade_answer(
            authority,
            question,
            question.get_option("q0-right"),
            now_ms=int(clock() * 1000) + 5000,
        )

        assert graded.is_correct
        assert graded.points_earned == 175
        assert graded.response_time == 5000
        assert graded.question_id == "q0"
        assert graded.option_id == "q0-right"

    def test_wrong_answer_earns_nothing(self, channel, clock):
        authority = QuizAuthority(channel, make_questions(2), clock=clock)
        authority.start_question(0, 20)
        question = authority.current_question

        graded = grade_answer(
            authority, question, question.get_option("q0-wrong"), now_ms=0
        )

        assert not graded.is_correct
        assert graded.points_earned == 0
        # a clock behind the start never gives a negative response time
        assert graded.response_time == 0

from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, Field

from livequiz.quiz.schemas import LiveOption, LiveQuestion


class SessionStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class DbSession(BaseModel):
    id: str
    code: str
    host_id: str
    title: str
    status: SessionStatus = SessionStatus.DRAFT
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @classmethod
    def get_from_db(cls, row) -> "DbSession":
        return cls(
            id=str(row["id"]),
            code=row["code"],
            host_id=str(row["host_id"]),
            title=row["title"],
            status=SessionStatus(row["status"]),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
        )


class DbOption(BaseModel):
    """
    Represents a single answer option for a question.
    """

    id: str = Field(..., description="The unique identifier for the answer option")
    option_text: str = Field(..., description="The text of the answer option")
    order_index: int = 0
    is_correct: bool = Field(
        default=False, description="Whether this option is the correct answer"
    )

    @classmethod
    def get_from_db(cls, row: dict) -> "DbOption":
        return cls(
            id=str(row["id"]),
            option_text=row["option_text"],
            order_index=row.get("order_index") or 0,
            is_correct=bool(row.get("is_correct")),
        )


class DbQuestion(BaseModel):
    id: str
    session_id: str
    question_text: str
    question_type: str
    order_index: int = 0
    time_limit: Optional[int] = None
    options: List[DbOption] = Field(default_factory=list)

    @classmethod
    def get_from_db(cls, row, options: Optional[List[dict]] = None) -> "DbQuestion":
        return cls(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            question_text=row["question_text"],
            question_type=row["question_type"],
            order_index=row["order_index"] or 0,
            time_limit=row["time_limit"],
            options=[DbOption.get_from_db(o) for o in options or []],
        )

    def to_live_question(self) -> LiveQuestion:
        return LiveQuestion(
            question_id=self.id,
            text=self.question_text,
            time_limit=self.time_limit if self.time_limit and self.time_limit > 0 else None,
            options=[
                LiveOption(option_id=o.id, text=o.option_text, is_correct=o.is_correct)
                for o in self.options
            ],
        )


class DbParticipant(BaseModel):
    id: str
    session_id: str
    anonymous_id: str
    nickname: Optional[str] = None
    score: int = 0
    streak: int = 0
    is_blocked: bool = False

    @classmethod
    def get_from_db(cls, row) -> "DbParticipant":
        return cls(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            anonymous_id=row["anonymous_id"],
            nickname=row["nickname"],
            score=row["score"] or 0,
            streak=row["streak"] or 0,
            is_blocked=bool(row["is_blocked"]),
        )


class DbResponse(BaseModel):
    """
    A participant's answer to one question.
    """

    session_id: str
    question_id: str
    participant_id: str
    option_id: Optional[str] = None
    response_time: Optional[int] = Field(
        default=None, description="Milliseconds between question start and answer"
    )
    is_correct: bool = False
    points_earned: int = 0


class LeaderboardEntry(BaseModel):
    participant_id: str
    nickname: str
    score: int = 0
    correct_answers: int = 0
    streak: int = 0
    rank: int

    @classmethod
    def get_from_db(cls, row, rank: int) -> "LeaderboardEntry":
        return cls(
            participant_id=str(row["id"]),
            nickname=row["nickname"] or "Anonymous",
            score=row["score"] or 0,
            correct_answers=row["correct_answers"] or 0,
            streak=row["streak"] or 0,
            rank=rank,
        )

from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, Field


class Difficulty(StrEnum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    MIXED = "mixed"

    @property
    def time_limit(self) -> int:
        return {
            Difficulty.EASY: 30,
            Difficulty.MEDIUM: 25,
            Difficulty.HARD: 20,
            Difficulty.MIXED: 25,
        }[self]


class GeneratedOption(BaseModel):
    option_text: str
    is_correct: bool = False


class GeneratedQuestion(BaseModel):
    question_text: str
    explanation: Optional[str] = ""
    options: List[GeneratedOption]
    time_limit: int


class QuizGenerationResult(BaseModel):
    questions: List[GeneratedQuestion] = Field(default_factory=list)
    title: str
    error: Optional[str] = None


class TopicQuizRequest(BaseModel):
    topic: str = Field(..., min_length=1)
    question_count: int = Field(default=5, ge=1, le=20)
    difficulty: Difficulty = Difficulty.MEDIUM


class TextQuizRequest(BaseModel):
    text: str
    question_count: int = Field(default=5, ge=1, le=20)
    difficulty: Difficulty = Difficulty.MEDIUM

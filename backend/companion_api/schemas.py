"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Quiz payloads keep the camelCase keys the
web client sends.
"""

from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional, Union


class CompanionIn(BaseModel):
    """Form fields for creating a companion."""
    name: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    voice: str = Field(min_length=1)
    style: str = Field(min_length=1)
    language: str = Field(default="en", min_length=1)
    duration: int = 15


class SessionStartIn(BaseModel):
    """Request body for opening a tutoring session."""
    companionId: int


class SessionLinkIn(BaseModel):
    """Call identifier reported by the voice provider."""
    callId: str = Field(min_length=1)


class SubmittedAnswer(BaseModel):
    """One answer from the quiz client.

    `selectedAnswer` may be the option index or the option text. Any
    correctness fields the client sends are only compared against the
    server's grading, never trusted.
    """
    questionIndex: int
    selectedAnswer: Union[int, str, None] = None
    question: Optional[str] = None
    correctAnswer: Union[int, str, None] = None
    isCorrect: Optional[bool] = None
    explanation: Optional[str] = None
    timeSpent: Optional[int] = None


class QuizSubmission(BaseModel):
    """Request model for grading a generated quiz."""
    quizId: int
    answers: List[SubmittedAnswer] = Field(min_length=1)
    totalTimeSpent: int = 0
    startedAt: Optional[datetime] = None
    completedAt: datetime

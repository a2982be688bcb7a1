"""SQLModel data models.

This module defines the application's database tables using SQLModel.
User identities come from the external identity provider, so `author` and
`user_id` columns hold its opaque string ids rather than foreign keys.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from sqlalchemy import Column, JSON, Text
from sqlmodel import SQLModel, Field, Relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Companion(SQLModel, table=True):
    """A user-authored tutor configuration.

    Fields:
    - `author`: identity-provider user id of the owner
    - `duration`: session length in minutes, capped by the author's plan
    - `pdf_*`: optional source document; `pdf_content` is the extracted,
      truncated text fed to the voice assistant
    """
    __tablename__ = "companions"

    id: Optional[int] = Field(default=None, primary_key=True)
    author: str = Field(index=True, nullable=False)
    name: str
    subject: str = Field(index=True)
    topic: str
    voice: str
    style: str
    language: str = "en"
    duration: int
    content_source: str = "general"
    pdf_url: Optional[str] = None
    pdf_name: Optional[str] = None
    pdf_path: Optional[str] = None
    pdf_content: Optional[str] = Field(default=None, sa_column=Column(Text))
    has_pdf: bool = False
    created_at: datetime = Field(default_factory=_utcnow, index=True)


class SessionHistory(SQLModel, table=True):
    """One tutoring conversation.

    The row is written before the voice call starts; `call_id` stays
    `None` until the provider reports one and is set at most once.
    """
    __tablename__ = "session_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    companion_id: int = Field(foreign_key="companions.id", index=True)
    user_id: str = Field(index=True)
    call_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    companion: Optional[Companion] = Relationship()


class Quiz(SQLModel, table=True):
    """Questions generated from one session transcript."""
    __tablename__ = "quizzes"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(index=True)
    call_id: str
    companion_id: int = Field(index=True)
    user_id: str = Field(index=True)
    subject: str = "general"
    quiz_title: str
    questions: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow)


class QuizResult(SQLModel, table=True):
    """A graded quiz submission. Never updated after insert."""
    __tablename__ = "quiz_results"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    quiz_id: int = Field(foreign_key="quizzes.id", index=True)
    session_id: int = Field(index=True)
    companion_id: int = Field(index=True)
    answers: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    score: int
    total_questions: int
    percentage: float
    time_taken: int = 0
    tamper_flags: int = 0
    started_at: Optional[datetime] = None
    completed_at: datetime = Field(default_factory=_utcnow, index=True)

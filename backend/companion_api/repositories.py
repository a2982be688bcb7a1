"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (companions,
sessions, quizzes, quiz results). Repositories return SQLModel objects
and perform commits/refreshes where appropriate. Ownership filters are
applied in the queries themselves so a non-owner simply gets nothing
back; turning that into a 403 or 404 is the service layer's job.
"""

from datetime import datetime
from typing import List, Optional
from sqlmodel import Session, select, col, or_
from sqlalchemy import delete, func
from . import models


class CompanionRepository:
    """CRUD operations for `Companion` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, companion: models.Companion) -> models.Companion:
        """Persist a new companion and return the managed instance."""
        self.session.add(companion)
        self.session.commit()
        self.session.refresh(companion)
        return companion

    def get(self, companion_id: int) -> Optional[models.Companion]:
        """Get a `Companion` by primary key regardless of owner."""
        return self.session.get(models.Companion, companion_id)

    def get_for_author(self, companion_id: int, author: str) -> Optional[models.Companion]:
        """Return the companion only when `author` owns it, else `None`."""
        stmt = select(models.Companion).where(
            models.Companion.id == companion_id,
            models.Companion.author == author,
        )
        return self.session.exec(stmt).first()

    def list(
        self,
        author: str,
        subject: Optional[str] = None,
        topic: Optional[str] = None,
        limit: int = 10,
        page: int = 1,
    ) -> List[models.Companion]:
        """List the author's companions with optional substring filters.

        `subject` matches the subject column; `topic` matches either the
        topic or the name. Both filters are case-insensitive and combine
        with AND when given together.
        """
        stmt = select(models.Companion).where(models.Companion.author == author)
        if subject:
            stmt = stmt.where(col(models.Companion.subject).ilike(f"%{subject}%"))
        if topic:
            stmt = stmt.where(or_(
                col(models.Companion.topic).ilike(f"%{topic}%"),
                col(models.Companion.name).ilike(f"%{topic}%"),
            ))
        stmt = (
            stmt.order_by(col(models.Companion.created_at).desc(), col(models.Companion.id).desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def count_for_author(self, author: str, since: Optional[datetime] = None) -> int:
        """Count companions created by `author`, optionally since a timestamp."""
        stmt = select(func.count()).select_from(models.Companion).where(models.Companion.author == author)
        if since is not None:
            stmt = stmt.where(models.Companion.created_at >= since)
        return self.session.exec(stmt).one()

    def update(self, companion: models.Companion) -> models.Companion:
        """Commit field changes made on a managed companion."""
        self.session.add(companion)
        self.session.commit()
        self.session.refresh(companion)
        return companion

    def delete_with_sessions(self, companion: models.Companion) -> int:
        """Delete the companion's session rows, then the companion.

        Both statements run in the session's transaction and are committed
        together; on failure the transaction is rolled back and the error
        re-raised. Returns the number of session rows removed.
        """
        try:
            removed = self.session.execute(
                delete(models.SessionHistory).where(models.SessionHistory.companion_id == companion.id)
            ).rowcount
            self.session.delete(companion)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return removed or 0


class SessionRepository:
    """Persistence for `SessionHistory` rows."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, row: models.SessionHistory) -> models.SessionHistory:
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def get(self, session_id: int) -> Optional[models.SessionHistory]:
        return self.session.get(models.SessionHistory, session_id)

    def set_call_id(self, row: models.SessionHistory, call_id: str) -> models.SessionHistory:
        """Store the provider call id on a session row."""
        row.call_id = call_id
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def list_for_user(self, user_id: str, limit: int = 10) -> List[models.SessionHistory]:
        """Most recent sessions of `user_id`, newest first."""
        stmt = (
            select(models.SessionHistory)
            .where(models.SessionHistory.user_id == user_id)
            .order_by(col(models.SessionHistory.created_at).desc(), col(models.SessionHistory.id).desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def list_with_call_ids(self, user_id: str) -> List[models.SessionHistory]:
        """Sessions of `user_id` that have a call id and so a transcript."""
        stmt = (
            select(models.SessionHistory)
            .where(
                models.SessionHistory.user_id == user_id,
                col(models.SessionHistory.call_id).is_not(None),
            )
            .order_by(col(models.SessionHistory.created_at).desc(), col(models.SessionHistory.id).desc())
        )
        return self.session.exec(stmt).all()

    def get_by_call_id(self, user_id: str, call_id: str) -> Optional[models.SessionHistory]:
        stmt = select(models.SessionHistory).where(
            models.SessionHistory.user_id == user_id,
            models.SessionHistory.call_id == call_id,
        )
        return self.session.exec(stmt).first()

    def count_for_companion(self, companion_id: int) -> int:
        stmt = select(func.count()).select_from(models.SessionHistory).where(
            models.SessionHistory.companion_id == companion_id
        )
        return self.session.exec(stmt).one()


class QuizRepository:
    """Persist generated quizzes."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, quiz: models.Quiz) -> models.Quiz:
        self.session.add(quiz)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz

    def get(self, quiz_id: int) -> Optional[models.Quiz]:
        return self.session.get(models.Quiz, quiz_id)


class QuizResultRepository:
    """Persist graded quiz results and query a user's history."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, result: models.QuizResult) -> models.QuizResult:
        """Store a `QuizResult`."""
        self.session.add(result)
        self.session.commit()
        self.session.refresh(result)
        return result

    def get(self, result_id: int) -> Optional[models.QuizResult]:
        return self.session.get(models.QuizResult, result_id)

    def list_for_user(self, user_id: str, limit: Optional[int] = None, ascending: bool = False) -> List[models.QuizResult]:
        """Return results for `user_id` ordered by completion time."""
        order = col(models.QuizResult.completed_at)
        order_id = col(models.QuizResult.id)
        stmt = select(models.QuizResult).where(models.QuizResult.user_id == user_id)
        if ascending:
            stmt = stmt.order_by(order.asc(), order_id.asc())
        else:
            stmt = stmt.order_by(order.desc(), order_id.desc())
        if limit:
            stmt = stmt.limit(limit)
        return self.session.exec(stmt).all()

    def list_for_session(self, user_id: str, session_id: int) -> List[models.QuizResult]:
        stmt = (
            select(models.QuizResult)
            .where(models.QuizResult.user_id == user_id, models.QuizResult.session_id == session_id)
            .order_by(col(models.QuizResult.completed_at).desc())
        )
        return self.session.exec(stmt).all()

"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
provider clients and auxiliary logic. Services are intentionally thin:
they perform validation, enforce ownership and plan limits, execute
domain logic and persist aggregates via repositories. They raise the
typed errors from `errors.py` and leave status codes to the app.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlmodel import Session

from . import entitlements, models, repositories
from .auth import CurrentUser
from .errors import AccessDenied, Conflict, NotFound, ProviderError, ValidationFailed
from .schemas import CompanionIn, QuizSubmission
from .storage import object_path_for
from .utils.assistant import build_assistant_config
from .utils.pdf_text import extract_pdf_text, truncate_text, validate_pdf_upload
from .utils.quiz_parser import build_quiz_prompt, parse_quiz_questions
from .utils.retry import poll_until_present

logger = logging.getLogger("companion_api.services")

TREND_MIN_RESULTS = 4
TREND_THRESHOLD = 5.0
RECENT_DAYS = 7


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; treat those as UTC."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def companion_out(c: models.Companion) -> dict:
    return c.model_dump(mode="json", exclude={"pdf_path"})


def session_out(s: models.SessionHistory, companion: Optional[models.Companion] = None) -> dict:
    out = s.model_dump(mode="json")
    if companion is not None:
        out["companion"] = companion_out(companion)
    return out


def quiz_out(q: models.Quiz) -> dict:
    return q.model_dump(mode="json")


def result_out(r: models.QuizResult) -> dict:
    return r.model_dump(mode="json")


class CompanionService:
    """Create, read, list and delete companions; attach source PDFs."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.CompanionRepository(session)

    def permissions(self, user: CurrentUser) -> dict:
        """Return both creation checks plus the resolved tier limits."""
        tier = entitlements.resolve_tier(user)
        return {
            'canCreateCompanion': entitlements.can_create_companion(self.repo, user),
            'canCreateActiveCompanion': entitlements.can_create_active_companion(self.repo, user),
            'plan': tier.name,
            'limits': tier.as_dict(),
        }

    def create(self, user: CurrentUser, data: CompanionIn) -> models.Companion:
        """Create a companion owned by `user` after plan checks."""
        tier = entitlements.resolve_tier(user)
        if not entitlements.can_create_companion(self.repo, user):
            raise AccessDenied("companion limit reached for your plan")
        if not entitlements.can_create_active_companion(self.repo, user):
            raise AccessDenied("monthly companion limit reached for your plan")
        if data.duration < 1:
            raise ValidationFailed("duration must be at least 1 minute")
        if data.duration > tier.max_duration:
            raise ValidationFailed(
                f"duration of {data.duration} minutes exceeds the {tier.name} plan maximum of {tier.max_duration}"
            )
        companion = models.Companion(author=user.id, **data.model_dump())
        created = self.repo.create(companion)
        logger.info("companion created id=%s author=%s", created.id, user.id)
        return created

    def get_owned(self, companion_id: int, user: CurrentUser) -> models.Companion:
        """Return the companion or raise NotFound / AccessDenied."""
        companion = self.repo.get_for_author(companion_id, user.id)
        if companion is not None:
            return companion
        if self.repo.get(companion_id) is None:
            raise NotFound("Companion not found")
        raise AccessDenied("You are not the author of this companion")

    def list(self, user: CurrentUser, subject: Optional[str] = None, topic: Optional[str] = None,
             limit: int = 10, page: int = 1) -> List[models.Companion]:
        if limit < 1 or page < 1:
            raise ValidationFailed("limit and page must be positive")
        return self.repo.list(user.id, subject=subject, topic=topic, limit=limit, page=page)

    def delete(self, companion_id: int, user: CurrentUser) -> dict:
        """Delete an owned companion together with its session history."""
        companion = self.get_owned(companion_id, user)
        removed = self.repo.delete_with_sessions(companion)
        logger.info("companion deleted id=%s sessions_removed=%s", companion_id, removed)
        return {'success': True, 'message': 'Companion deleted successfully', 'deletedSessions': removed}

    def attach_pdf(self, companion_id: int, user: CurrentUser, data: bytes, filename: str,
                   content_type: str, storage, max_bytes: int, text_limit: int) -> models.Companion:
        """Validate, extract, store and link a source PDF to a companion.

        The uploaded object is removed again when the companion update
        fails, so storage never keeps a file no row points to.
        """
        companion = self.get_owned(companion_id, user)
        validate_pdf_upload(content_type, len(data), max_bytes)
        text = truncate_text(extract_pdf_text(data), text_limit)
        path = storage.upload(object_path_for(user.id, filename), data, content_type)
        previous_path = companion.pdf_path
        try:
            companion.pdf_url = storage.public_url(path)
            companion.pdf_name = filename
            companion.pdf_path = path
            companion.pdf_content = text
            companion.has_pdf = True
            companion.content_source = 'pdf'
            updated = self.repo.update(companion)
        except Exception:
            self.session.rollback()
            logger.warning("companion update failed, removing uploaded object %s", path)
            storage.remove(path)
            raise
        if previous_path and previous_path != path:
            try:
                storage.remove(previous_path)
            except (ProviderError, OSError) as e:
                logger.warning("could not remove replaced object %s: %s", previous_path, e)
        return updated

    def assistant(self, companion_id: int, user: CurrentUser) -> dict:
        return build_assistant_config(self.get_owned(companion_id, user))


class SessionService:
    """Track tutoring sessions and their provider call ids."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.SessionRepository(session)
        self.companions = CompanionService(session)

    def start(self, user: CurrentUser, companion_id: int) -> dict:
        """Record a new session before the voice call begins."""
        companion = self.companions.get_owned(companion_id, user)
        row = self.repo.create(models.SessionHistory(companion_id=companion.id, user_id=user.id))
        return {
            'session': session_out(row),
            'assistant': build_assistant_config(companion, session_id=row.id),
        }

    def get_owned(self, session_id: int, user: CurrentUser) -> models.SessionHistory:
        row = self.repo.get(session_id)
        if row is None:
            raise NotFound("Session not found")
        if row.user_id != user.id:
            raise AccessDenied("This session belongs to another user")
        return row

    def link(self, session_id: int, user: CurrentUser, call_id: str) -> models.SessionHistory:
        """Attach the provider call id; repeating the same id is a no-op."""
        row = self.get_owned(session_id, user)
        return self.link_row(row, call_id)

    def link_row(self, row: models.SessionHistory, call_id: str) -> models.SessionHistory:
        if row.call_id == call_id:
            return row
        if row.call_id is not None:
            raise Conflict(f"Session {row.id} is already linked to call {row.call_id}")
        logger.info("session linked id=%s call_id=%s", row.id, call_id)
        return self.repo.set_call_id(row, call_id)

    def list_for_user(self, user: CurrentUser, limit: int = 10) -> List[dict]:
        return [session_out(s, s.companion) for s in self.repo.list_for_user(user.id, limit=limit)]

    def list_with_call_ids(self, user: CurrentUser) -> List[dict]:
        return [session_out(s, s.companion) for s in self.repo.list_with_call_ids(user.id)]

    def transcript(self, user: CurrentUser, call_id: str, voice) -> dict:
        """Fetch the transcript of a call belonging to one of `user`'s sessions."""
        if not entitlements.resolve_tier(user).transcripts:
            raise AccessDenied("Your plan does not include transcripts")
        row = self.repo.get_by_call_id(user.id, call_id)
        if row is None:
            raise NotFound("Call not found")
        return {'callId': call_id, 'sessionId': row.id, 'transcript': voice.fetch_transcript(call_id)}


def reconcile_call_id(engine, session_id: int, user: CurrentUser, voice, *, max_attempts: int,
                      base_delay: float, sleep: Optional[Callable[[float], None]] = None) -> dict:
    """Poll the voice provider until it reports a call for the session.

    Runs outside the request, so it opens its own database session.
    A session that never gets a call id stays unlinked.
    """
    kwargs = {'sleep': sleep} if sleep is not None else {}
    with Session(engine) as db:
        svc = SessionService(db)
        row = svc.get_owned(session_id, user)
        if row.call_id:
            return {'sessionId': session_id, 'callId': row.call_id, 'linked': True, 'attempts': 0}
        call_id, attempts = poll_until_present(
            lambda: voice.find_call_id(session_id),
            max_attempts=max_attempts,
            base_delay=base_delay,
            **kwargs,
        )
        if call_id is None:
            logger.warning("no call id found for session %s after %s attempts", session_id, attempts)
            return {'sessionId': session_id, 'callId': None, 'linked': False, 'attempts': attempts}
        # re-read in case the client linked it while we were polling
        db.refresh(row)
        row = svc.link_row(row, call_id)
        return {'sessionId': session_id, 'callId': row.call_id, 'linked': True, 'attempts': attempts}


class QuizService:
    """Generate quizzes from session transcripts."""
    def __init__(self, session: Session, llm=None, voice=None):
        self.session = session
        self.llm = llm
        self.voice = voice
        self.repo = repositories.QuizRepository(session)
        self.sessions = SessionService(session)

    def generate_from_session(self, session_id: int, user: CurrentUser) -> dict:
        """Fetch the transcript, ask the model for questions, store the quiz.

        One generation attempt only; repeated calls create new quizzes.
        """
        row = self.sessions.get_owned(session_id, user)
        if not row.call_id:
            raise ValidationFailed("Session has no call id yet; no transcript available")
        transcript = self.voice.fetch_transcript(row.call_id)
        if not transcript:
            raise NotFound("No transcript available")
        raw = self.llm.generate(build_quiz_prompt(transcript))
        try:
            questions = parse_quiz_questions(raw)
        except ProviderError as e:
            logger.error("quiz generation returned unusable output for session %s: %s; raw=%r",
                         session_id, e.message, raw[:2000])
            raise
        companion = row.companion
        quiz = self.repo.create(models.Quiz(
            session_id=row.id,
            call_id=row.call_id,
            companion_id=row.companion_id,
            user_id=user.id,
            subject=(companion.subject if companion else None) or 'general',
            quiz_title=f"Quiz on {companion.name if companion else 'Session'}",
            questions=questions,
        ))
        logger.info("quiz generated id=%s session=%s questions=%s", quiz.id, row.id, len(questions))
        out = quiz_out(quiz)
        out['companionName'] = companion.name if companion else None
        return out

    def get_owned(self, quiz_id: int, user: CurrentUser) -> models.Quiz:
        quiz = self.repo.get(quiz_id)
        if quiz is None:
            raise NotFound("Quiz not found")
        if quiz.user_id != user.id:
            raise AccessDenied("This quiz belongs to another user")
        return quiz


def _resolve_selected_index(selected, options: List[str]) -> Optional[int]:
    """Map a submitted answer (index or option text) to an option index."""
    if selected is None or isinstance(selected, bool):
        return None
    if isinstance(selected, int):
        return selected if 0 <= selected < len(options) else None
    wanted = selected.strip().casefold()
    for i, opt in enumerate(options):
        if str(opt).strip().casefold() == wanted:
            return i
    return None


class GradingService:
    """Grade submitted quizzes against the stored answer key."""
    def __init__(self, session: Session):
        self.session = session
        self.quizzes = QuizService(session)
        self.result_repo = repositories.QuizResultRepository(session)

    def submit(self, user: CurrentUser, submission: QuizSubmission) -> models.QuizResult:
        """Grade and persist a submission.

        Correctness comes from each question's stored `correctAnswer`.
        Client-sent `isCorrect` flags are only compared with it; a
        disagreement is logged and counted in `tamper_flags`.
        """
        quiz = self.quizzes.get_owned(submission.quizId, user)
        questions = quiz.questions or []
        seen = set()
        graded = []
        score = 0
        tamper = 0
        for a in submission.answers:
            if not 0 <= a.questionIndex < len(questions):
                raise ValidationFailed(f"questionIndex {a.questionIndex} is out of range")
            if a.questionIndex in seen:
                raise ValidationFailed(f"duplicate answer for questionIndex {a.questionIndex}")
            seen.add(a.questionIndex)
            q = questions[a.questionIndex]
            options = q.get('options') or []
            correct_index = q.get('correctAnswer')
            selected_index = _resolve_selected_index(a.selectedAnswer, options)
            is_correct = selected_index is not None and selected_index == correct_index
            if is_correct:
                score += 1
            if a.isCorrect is not None and a.isCorrect != is_correct:
                tamper += 1
            graded.append({
                'questionIndex': a.questionIndex,
                'question': q.get('question'),
                'selectedAnswer': options[selected_index] if selected_index is not None else a.selectedAnswer,
                'selectedIndex': selected_index,
                'correctAnswer': options[correct_index] if isinstance(correct_index, int) and 0 <= correct_index < len(options) else None,
                'correctIndex': correct_index,
                'isCorrect': is_correct,
                'explanation': q.get('explanation'),
                'timeSpent': a.timeSpent or 0,
            })
        if tamper:
            logger.warning("quiz %s submission by %s: %s client correctness flags disagree with grading",
                           quiz.id, user.id, tamper)
        total = len(graded)
        result = models.QuizResult(
            user_id=user.id,
            quiz_id=quiz.id,
            session_id=quiz.session_id,
            companion_id=quiz.companion_id,
            answers=graded,
            score=score,
            total_questions=total,
            percentage=round(100.0 * score / total, 2),
            time_taken=max(0, submission.totalTimeSpent or 0),
            tamper_flags=tamper,
            started_at=submission.startedAt,
            completed_at=submission.completedAt,
        )
        return self.result_repo.create(result)


def compute_trend(percentages: List[float]) -> str:
    """Classify chronologically ordered scores as improving/declining/stable."""
    if len(percentages) < TREND_MIN_RESULTS:
        return 'stable'
    mid = len(percentages) // 2
    first, second = percentages[:mid], percentages[mid:]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    if second_avg > first_avg + TREND_THRESHOLD:
        return 'improving'
    if second_avg < first_avg - TREND_THRESHOLD:
        return 'declining'
    return 'stable'


class ProgressService:
    """Quiz history and aggregate learning progress."""
    def __init__(self, session: Session):
        self.session = session
        self.result_repo = repositories.QuizResultRepository(session)

    def _with_relations(self, results: List[models.QuizResult]) -> List[dict]:
        quizzes: Dict[int, Optional[models.Quiz]] = {}
        companions: Dict[int, Optional[models.Companion]] = {}
        out = []
        for r in results:
            if r.quiz_id not in quizzes:
                quizzes[r.quiz_id] = self.session.get(models.Quiz, r.quiz_id)
            if r.companion_id not in companions:
                companions[r.companion_id] = self.session.get(models.Companion, r.companion_id)
            quiz, companion = quizzes[r.quiz_id], companions[r.companion_id]
            item = result_out(r)
            item['quiz'] = {'quiz_title': quiz.quiz_title, 'subject': quiz.subject} if quiz else None
            item['companion'] = {'name': companion.name, 'subject': companion.subject} if companion else None
            out.append(item)
        return out

    def list_results(self, user: CurrentUser, limit: Optional[int] = None) -> List[dict]:
        return self._with_relations(self.result_repo.list_for_user(user.id, limit=limit))

    def results_for_session(self, user: CurrentUser, session_id: int) -> List[dict]:
        SessionService(self.session).get_owned(session_id, user)
        return self._with_relations(self.result_repo.list_for_session(user.id, session_id))

    def get_result(self, result_id: int, user: CurrentUser) -> dict:
        r = self.result_repo.get(result_id)
        if r is None:
            raise NotFound("Quiz result not found")
        if r.user_id != user.id:
            raise AccessDenied("This quiz result belongs to another user")
        return self._with_relations([r])[0]

    def get_progress(self, user: CurrentUser, now: Optional[datetime] = None) -> dict:
        """Aggregate a user's quiz history into progress statistics."""
        now = now or datetime.now(timezone.utc)
        results = self.result_repo.list_for_user(user.id, ascending=True)
        if not results:
            return {
                'totalQuizzes': 0,
                'averageScore': 0,
                'totalTimeSpent': 0,
                'subjectBreakdown': {},
                'progressTrend': 'stable',
                'recentActivity': {'quizzesThisWeek': 0, 'averageScoreThisWeek': 0},
            }
        percentages = [r.percentage for r in results]
        rows = self._with_relations(results)
        breakdown: Dict[str, dict] = {}
        for row in rows:
            subject = ((row['companion'] or {}).get('subject')
                       or (row['quiz'] or {}).get('subject')
                       or 'General')
            entry = breakdown.setdefault(subject, {'count': 0, 'totalScore': 0.0, 'averageScore': 0.0})
            entry['count'] += 1
            entry['totalScore'] += row['percentage']
            entry['averageScore'] = round(entry['totalScore'] / entry['count'], 2)
        cutoff = now - timedelta(days=RECENT_DAYS)
        recent = [r.percentage for r in results if _aware(r.completed_at) > cutoff]
        return {
            'totalQuizzes': len(results),
            'averageScore': round(sum(percentages) / len(percentages), 2),
            'totalTimeSpent': sum(r.time_taken or 0 for r in results),
            'subjectBreakdown': breakdown,
            'progressTrend': compute_trend(percentages),
            'recentActivity': {
                'quizzesThisWeek': len(recent),
                'averageScoreThisWeek': round(sum(recent) / len(recent), 2) if recent else 0,
            },
        }

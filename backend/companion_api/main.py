"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the companion tutor backend.
Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses. Domain errors raised by services
are rendered by the exception handlers registered below.

Endpoints implemented:
- GET/POST /api/companions, GET/DELETE /api/companions/{id}
- GET /api/companions/permissions
- POST /api/companions/{id}/pdf, GET /api/companions/{id}/assistant
- POST /api/extract-pdf-text
- POST /api/sessions, PATCH /api/sessions/{id}
- POST /api/sessions/{id}/reconcile, GET /api/jobs/{job_id}
- GET /api/sessions, GET /api/sessions/transcripts, GET /api/history/{call_id}
- GET /api/generate-quiz, GET /api/quizzes/{id}
- POST /api/submit-quiz
- GET /api/quiz-results, GET /api/quiz-results/{id}, GET /api/sessions/{id}/quiz-results
- GET /api/progress, GET /api/my-journey
"""

from fastapi import FastAPI, Depends, UploadFile, File, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from typing import Optional
import os
import json
import logging
import time
import uuid
from pathlib import Path
from .database import engine, create_db_and_tables, get_session
from . import services
from .auth import CurrentUser, get_current_user
from .config import settings
from .errors import AppError
from .providers import get_quiz_llm, get_voice_client
from .schemas import CompanionIn, QuizSubmission, SessionLinkIn, SessionStartIn
from .storage import get_storage
from .utils.jobs import JobStore
from .utils.pdf_text import extract_pdf_text, validate_pdf_upload
from .utils.rate_limit import InMemoryRateLimiter, RateRule

app = FastAPI(title="Companion Tutor API")
logger = logging.getLogger("companion_api.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_rate_limiter = InMemoryRateLimiter()
_jobs = JobStore(
    max_jobs=int(os.getenv("JOB_MAX_JOBS", "500")),
    ttl_seconds=int(os.getenv("JOB_TTL_SECONDS", "86400")),
)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Local storage backend: serve uploaded PDFs so `pdf_url` resolves.
if settings.STORAGE_BACKEND == "local":
    storage_dir = Path(settings.STORAGE_DIR)
    storage_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/storage", StaticFiles(directory=storage_dir), name="storage")

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
    return response


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("datastore failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": f"Database error: {exc.__class__.__name__}"})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Invalid request data", "details": details})


def _enforce_rate_limit(bucket: str, user: CurrentUser) -> None:
    max_per_window = int(os.getenv(f"{bucket.upper()}_RATE_LIMIT_PER_MIN", "10"))
    window = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    allowed, retry_after = _rate_limiter.allow(bucket, user.id, RateRule(max_per_window, window))
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


def _read_upload(file: UploadFile) -> bytes:
    # read one byte past the cap so oversize files are detected without loading them whole
    return file.file.read(settings.MAX_PDF_BYTES + 1)


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


@app.get('/api/companions/permissions')
def companion_permissions(db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Report whether the user may create another companion right now."""
    return services.CompanionService(db).permissions(user)


@app.post('/api/companions', status_code=201)
def create_companion(payload: CompanionIn, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Create a companion for the authenticated user.

    Returns 403 when the plan's lifetime or monthly cap is reached and
    400 when the duration is outside the plan's range.
    """
    companion = services.CompanionService(db).create(user, payload)
    return services.companion_out(companion)


@app.get('/api/companions')
def list_companions(
    subject: Optional[str] = None,
    topic: Optional[str] = None,
    limit: int = 10,
    page: int = 1,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(get_current_user),
):
    """List the user's companions filtered by subject and/or topic."""
    rows = services.CompanionService(db).list(user, subject=subject, topic=topic, limit=limit, page=page)
    return [services.companion_out(c) for c in rows]


@app.get('/api/companions/{companion_id}')
def get_companion(companion_id: int, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    return services.companion_out(services.CompanionService(db).get_owned(companion_id, user))


@app.delete('/api/companions/{companion_id}')
def delete_companion(companion_id: int, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Delete a companion and its session history.

    401 without a token, 404 for an unknown id, 403 for someone else's
    companion, 500 when the datastore fails.
    """
    return services.CompanionService(db).delete(companion_id, user)


@app.post('/api/companions/{companion_id}/pdf')
def upload_companion_pdf(
    companion_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(get_current_user),
    storage=Depends(get_storage),
):
    """Attach a source PDF to a companion.

    The file is validated, its text extracted and truncated, the original
    stored in object storage and the companion row updated.
    """
    _enforce_rate_limit("pdf", user)
    payload = _read_upload(file)
    companion = services.CompanionService(db).attach_pdf(
        companion_id,
        user,
        payload,
        file.filename or "document.pdf",
        file.content_type or "",
        storage,
        max_bytes=settings.MAX_PDF_BYTES,
        text_limit=settings.PDF_TEXT_LIMIT,
    )
    return services.companion_out(companion)


@app.get('/api/companions/{companion_id}/assistant')
def companion_assistant(companion_id: int, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Voice assistant configuration for starting a call with this companion."""
    return services.CompanionService(db).assistant(companion_id, user)


@app.post('/api/extract-pdf-text')
def extract_pdf(file: UploadFile = File(...), user: CurrentUser = Depends(get_current_user)):
    """Extract the plain text of an uploaded PDF without storing anything."""
    _enforce_rate_limit("pdf", user)
    payload = _read_upload(file)
    validate_pdf_upload(file.content_type or "", len(payload), settings.MAX_PDF_BYTES)
    text = extract_pdf_text(payload)
    return {"text": text, "length": len(text)}


@app.post('/api/sessions', status_code=201)
def start_session(payload: SessionStartIn, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Record a session before the voice call starts.

    The response carries the assistant configuration whose metadata ties
    the upcoming call to this session.
    """
    return services.SessionService(db).start(user, payload.companionId)


@app.get('/api/sessions')
def list_sessions(limit: int = 10, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """The user's most recent sessions with their companions."""
    return services.SessionService(db).list_for_user(user, limit=limit)


@app.get('/api/sessions/transcripts')
def list_transcript_sessions(db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Sessions that have a call id, i.e. a transcript to fetch."""
    return services.SessionService(db).list_with_call_ids(user)


@app.patch('/api/sessions/{session_id}')
def link_session(session_id: int, payload: SessionLinkIn, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Store the call id reported by the voice client.

    Clients may call this from several call events; sending the same id
    again is harmless, a different id is a 409.
    """
    row = services.SessionService(db).link(session_id, user, payload.callId)
    return services.session_out(row)


@app.post('/api/sessions/{session_id}/reconcile', status_code=202)
def reconcile_session(
    session_id: int,
    request: Request,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(get_current_user),
    voice=Depends(get_voice_client),
):
    """Queue a background poll of the voice provider for the session's call id."""
    services.SessionService(db).get_owned(session_id, user)
    created = _jobs.submit(
        kind="reconcile_call_id",
        owner=user.id,
        request_id=getattr(request.state, "request_id", ""),
        worker=lambda: services.reconcile_call_id(
            engine,
            session_id,
            user,
            voice,
            max_attempts=settings.RECONCILE_MAX_ATTEMPTS,
            base_delay=settings.RECONCILE_BASE_DELAY_SECONDS,
        ),
    )
    return {**created, "status_url": f"/api/jobs/{created['job_id']}"}


@app.get('/api/jobs/{job_id}')
def get_job(job_id: str, user: CurrentUser = Depends(get_current_user)):
    """Poll background job status."""
    job = _jobs.get(job_id, owner=user.id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return job


@app.get('/api/history/{call_id}')
def call_transcript(call_id: str, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user), voice=Depends(get_voice_client)):
    """Transcript of one of the user's calls, fetched from the voice provider."""
    return services.SessionService(db).transcript(user, call_id, voice)


@app.get('/api/generate-quiz')
def generate_quiz(
    sessionId: Optional[int] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(get_current_user),
    llm=Depends(get_quiz_llm),
    voice=Depends(get_voice_client),
):
    """Generate and store a quiz from a session's transcript."""
    if sessionId is None:
        return JSONResponse(status_code=400, content={"error": "Missing sessionId"})
    _enforce_rate_limit("quiz", user)
    return services.QuizService(db, llm=llm, voice=voice).generate_from_session(sessionId, user)


@app.get('/api/quizzes/{quiz_id}')
def get_quiz(quiz_id: int, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    return services.quiz_out(services.QuizService(db).get_owned(quiz_id, user))


@app.post('/api/submit-quiz')
def submit_quiz(submission: QuizSubmission, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Grade a quiz submission on the server and store the result."""
    result = services.GradingService(db).submit(user, submission)
    return {"success": True, "result": services.result_out(result), "message": "Quiz submitted successfully"}


@app.get('/api/quiz-results')
def list_quiz_results(limit: Optional[int] = None, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    return services.ProgressService(db).list_results(user, limit=limit)


@app.get('/api/quiz-results/{result_id}')
def get_quiz_result(result_id: int, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    return services.ProgressService(db).get_result(result_id, user)


@app.get('/api/sessions/{session_id}/quiz-results')
def session_quiz_results(session_id: int, db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    return services.ProgressService(db).results_for_session(user, session_id)


@app.get('/api/progress')
def learning_progress(db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Aggregate quiz statistics and trend for the user."""
    return services.ProgressService(db).get_progress(user)


@app.get('/api/my-journey')
def my_journey(db: Session = Depends(get_session), user: CurrentUser = Depends(get_current_user)):
    """Dashboard payload: companions, recent sessions and progress."""
    companions = services.CompanionService(db).list(user, limit=100)
    return {
        "companions": [services.companion_out(c) for c in companions],
        "sessions": services.SessionService(db).list_for_user(user, limit=10),
        "progress": services.ProgressService(db).get_progress(user),
    }

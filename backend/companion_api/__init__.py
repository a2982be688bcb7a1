"""Application package for the companion tutor backend.

Companions, tutoring sessions, generated quizzes and progress tracking
behind a FastAPI app (`companion_api.main`). Voice calls, quiz generation
and file storage are delegated to external providers; see `providers.py`
and `storage.py`.
"""

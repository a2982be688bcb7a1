import os
import tempfile
import uuid
from pathlib import Path

# Point the app at throwaway storage before `companion_api` is imported.
_TMP = Path(tempfile.mkdtemp(prefix="companion-tests-"))
os.environ["ENV"] = "dev"
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["STORAGE_DIR"] = str(_TMP / "storage")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["JWT_AUDIENCE"] = ""

import jwt
import pytest

from companion_api.main import app


def make_token(user_id: str, plan="pro", features=(), secret="test-secret") -> str:
    payload = {"sub": user_id, "plan": plan, "features": list(features)}
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    """Factory returning bearer headers for a fresh (or given) user."""
    def _headers(user_id=None, plan="pro", features=()):
        user_id = user_id or f"user_{uuid.uuid4().hex[:10]}"
        return {"Authorization": f"Bearer {make_token(user_id, plan, features)}"}
    return _headers


@pytest.fixture
def overrides():
    """Register dependency overrides for one test and clear them afterwards."""
    yield app.dependency_overrides
    app.dependency_overrides.clear()


@pytest.fixture
def storage_root():
    return _TMP / "storage"

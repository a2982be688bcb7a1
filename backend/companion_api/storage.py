"""Object storage for uploaded companion PDFs.

Two backends share the same small interface (`upload`, `remove`,
`public_url`): a local directory, used in development and tests, and a
Supabase Storage bucket for deployments. The backend is chosen once via
`STORAGE_BACKEND` and handed to routes through `get_storage`.
"""

import logging
import re
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Optional

from .config import settings
from .errors import ProviderError

logger = logging.getLogger("companion_api.storage")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def object_path_for(user_id: str, filename: str, now: Optional[datetime] = None) -> str:
    """Per-user, timestamp-qualified object key for an upload."""
    now = now or datetime.now(timezone.utc)
    safe = _UNSAFE_CHARS.sub("_", Path(filename or "document.pdf").name).strip("._") or "document.pdf"
    user = _UNSAFE_CHARS.sub("_", user_id)
    return f"{user}/{int(now.timestamp() * 1000)}_{safe}"


class LocalObjectStorage:
    """Stores objects as files below `root/<bucket>/`."""

    def __init__(self, root: str, bucket: str, url_prefix: str = "/storage"):
        self.root = Path(root).expanduser().resolve() / bucket
        self.bucket = bucket
        self.url_prefix = url_prefix.rstrip("/")

    def _file(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise ValueError(f"invalid object path: {path}")
        return target

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        target = self._file(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path

    def remove(self, path: str) -> None:
        self._file(path).unlink(missing_ok=True)

    def exists(self, path: str) -> bool:
        return self._file(path).exists()

    def public_url(self, path: str) -> str:
        return f"{self.url_prefix}/{self.bucket}/{path}"


class SupabaseObjectStorage:
    """Stores objects in a Supabase Storage bucket using the service-role key."""

    def __init__(self, url: str, key: str, bucket: str):
        from supabase import create_client

        self.bucket = bucket
        self._client = create_client(url, key)

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        try:
            self._client.storage.from_(self.bucket).upload(path, data, {"content-type": content_type})
        except Exception as e:
            raise ProviderError(f"Storage upload failed: {e}")
        return path

    def remove(self, path: str) -> None:
        try:
            self._client.storage.from_(self.bucket).remove([path])
        except Exception as e:
            raise ProviderError(f"Storage delete failed: {e}")

    def public_url(self, path: str) -> str:
        return self._client.storage.from_(self.bucket).get_public_url(path)


@lru_cache(maxsize=1)
def get_storage():
    """Process-wide storage backend (FastAPI dependency)."""
    if settings.STORAGE_BACKEND == "supabase":
        logger.info("using supabase storage bucket %s", settings.STORAGE_BUCKET)
        return SupabaseObjectStorage(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY, settings.STORAGE_BUCKET)
    return LocalObjectStorage(settings.STORAGE_DIR, settings.STORAGE_BUCKET)

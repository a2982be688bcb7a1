"""Clients for the voice-call and language-generation providers.

Both clients are built lazily once per process (`get_voice_client`,
`get_quiz_llm`) and injected into routes as FastAPI dependencies, so
tests can swap them through `app.dependency_overrides`.
"""

import logging
from functools import lru_cache
from typing import Optional

import requests
from google import genai

from .config import settings
from .errors import ProviderError

logger = logging.getLogger("companion_api.providers")


class VoiceClient:
    """Minimal Vapi REST client (call lookup and listing)."""

    def __init__(self, api_key: str, base_url: str, timeout: float = 60.0, http=None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http or requests.Session()

    def _get(self, path: str, params: Optional[dict] = None):
        if not self.api_key:
            raise ProviderError("VAPI_API_KEY is not configured")
        try:
            res = self._http.get(
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self.api_key}"},
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Voice provider request failed: {e}")
        if not 200 <= res.status_code < 300:
            logger.warning("voice provider returned %s for %s", res.status_code, path)
            raise ProviderError(
                f"Failed to fetch call data: {res.status_code} - {res.text}",
                status=res.status_code,
                body=res.text,
            )
        return res.json()

    def fetch_call(self, call_id: str) -> dict:
        """Return the provider's call record for `call_id`."""
        return self._get(f"/call/{call_id}")

    def fetch_transcript(self, call_id: str) -> Optional[str]:
        """Return the call transcript text, or `None` if there is none yet."""
        data = self.fetch_call(call_id)
        transcript = data.get("transcript") if isinstance(data, dict) else None
        if not transcript and isinstance(data, dict):
            transcript = (data.get("artifact") or {}).get("transcript")
        return transcript or None

    def find_call_id(self, session_id: int, limit: int = 100) -> Optional[str]:
        """Look for a recent call started with `metadata.sessionId == session_id`."""
        calls = self._get("/call", params={"limit": limit})
        for call in calls or []:
            metadata = call.get("metadata") or {}
            if str(metadata.get("sessionId")) == str(session_id) and call.get("id"):
                return call["id"]
        return None


class QuizLLM:
    """Single-shot text generation with Gemini."""

    def __init__(self, api_key: str, model: str):
        self.model = model
        self._client = genai.Client(api_key=api_key) if api_key else None

    def generate(self, prompt: str) -> str:
        if self._client is None:
            raise ProviderError("GOOGLE_API_KEY is not configured")
        try:
            response = self._client.models.generate_content(model=self.model, contents=prompt)
        except Exception as e:
            raise ProviderError(f"Quiz generation request failed: {e}")
        return response.text or ""


@lru_cache(maxsize=1)
def get_voice_client() -> VoiceClient:
    return VoiceClient(settings.VAPI_API_KEY, settings.VAPI_BASE_URL, timeout=settings.PROVIDER_TIMEOUT_SECONDS)


@lru_cache(maxsize=1)
def get_quiz_llm() -> QuizLLM:
    return QuizLLM(settings.GOOGLE_API_KEY, settings.GEMINI_MODEL)

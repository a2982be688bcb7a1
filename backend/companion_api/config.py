"""Application settings and validation."""

import os

from dotenv import load_dotenv

load_dotenv()


class Settings:
    ENV: str
    LOG_LEVEL: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_AUDIENCE: str
    MAX_PDF_BYTES: int
    PDF_TEXT_LIMIT: int
    STORAGE_BACKEND: str
    STORAGE_DIR: str
    STORAGE_BUCKET: str
    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str
    VAPI_API_KEY: str
    VAPI_BASE_URL: str
    GOOGLE_API_KEY: str
    GEMINI_MODEL: str
    PROVIDER_TIMEOUT_SECONDS: float
    RECONCILE_MAX_ATTEMPTS: int
    RECONCILE_BASE_DELAY_SECONDS: float
    ALLOW_DEV_CORS: bool
    ALLOW_INSECURE_JWT: bool

    def __init__(self):
        base = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
        self.ENV = os.getenv("ENV", "dev").lower()
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(base, 'app.db')}")
        # shared signing key of the identity provider's session tokens
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "")
        self.MAX_PDF_BYTES = int(os.getenv("MAX_PDF_BYTES", str(1 * 1024 * 1024)))  # 1 MiB
        self.PDF_TEXT_LIMIT = int(os.getenv("PDF_TEXT_LIMIT", "20000"))
        self.STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
        self.STORAGE_DIR = os.getenv("STORAGE_DIR", os.path.join(base, "data", "storage"))
        self.STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "companion-pdfs")
        self.SUPABASE_URL = os.getenv("SUPABASE_URL", "")
        self.SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        self.VAPI_API_KEY = os.getenv("VAPI_API_KEY", "")
        self.VAPI_BASE_URL = os.getenv("VAPI_BASE_URL", "https://api.vapi.ai").rstrip("/")
        self.GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
        self.GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
        self.PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))
        self.RECONCILE_MAX_ATTEMPTS = int(os.getenv("RECONCILE_MAX_ATTEMPTS", "5"))
        self.RECONCILE_BASE_DELAY_SECONDS = float(os.getenv("RECONCILE_BASE_DELAY_SECONDS", "2"))
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.STORAGE_BACKEND not in ("local", "supabase"):
            raise RuntimeError(f"unknown STORAGE_BACKEND: {self.STORAGE_BACKEND}")
        if self.STORAGE_BACKEND == "supabase" and not (self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY):
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for supabase storage")


settings = Settings()

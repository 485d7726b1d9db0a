from typing import List, Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Supabase API
    supabase_url: str = Field(..., validation_alias="SUPABASE_URL")
    # Service role key, bypasses row level security
    supabase_key: str = Field(..., validation_alias="SUPABASE_KEY")
    # Used for sign up / sign in calls; falls back to the service key
    supabase_anon_key: Optional[str] = Field(default=None, validation_alias="SUPABASE_ANON_KEY")

    # Security
    supabase_jwt_secret: str = Field(..., validation_alias="SUPABASE_JWT_SECRET")
    algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
    jwt_audience: str = Field(default="authenticated", validation_alias="JWT_AUDIENCE")

    # Signup gate: exactly one mechanism is applied to every signup
    signup_gate: Literal["allowlist", "access_code"] = Field(default="allowlist", validation_alias="SIGNUP_GATE")
    signup_access_code_hash: Optional[str] = Field(default=None, validation_alias="SIGNUP_ACCESS_CODE_HASH")
    email_redirect_url: Optional[str] = Field(default=None, validation_alias="EMAIL_REDIRECT_URL")
    password_reset_redirect_url: Optional[str] = Field(default=None, validation_alias="PASSWORD_RESET_REDIRECT_URL")

    # Storage
    storage_bucket: str = Field(default="documents", validation_alias="STORAGE_BUCKET")
    signed_url_ttl_seconds: int = Field(default=3600, validation_alias="SIGNED_URL_TTL_SECONDS")
    http_timeout_seconds: float = Field(default=30.0, validation_alias="HTTP_TIMEOUT_SECONDS")

    # Upload validation
    upload_min_bytes: int = Field(default=1024, validation_alias="UPLOAD_MIN_BYTES")
    upload_max_bytes: int = Field(default=50 * 1024 * 1024, validation_alias="UPLOAD_MAX_BYTES")
    upload_rate_limit_attempts: int = Field(default=10, validation_alias="UPLOAD_RATE_LIMIT_ATTEMPTS")
    upload_rate_limit_window_minutes: int = Field(default=15, validation_alias="UPLOAD_RATE_LIMIT_WINDOW_MINUTES")
    rate_limit_fail_open: bool = Field(default=True, validation_alias="RATE_LIMIT_FAIL_OPEN")

    # Search
    search_default_limit: int = Field(default=10, validation_alias="SEARCH_DEFAULT_LIMIT")
    search_max_limit: int = Field(default=100, validation_alias="SEARCH_MAX_LIMIT")
    # PostgREST caps a single response at 1000 rows by default
    fetch_batch_size: int = Field(default=1000, validation_alias="FETCH_BATCH_SIZE")

    cors_origins: List[str] = Field(default=["*"], validation_alias="CORS_ORIGINS")

    @property
    def auth_key(self) -> str:
        return self.supabase_anon_key or self.supabase_key


# Letting it fail here is the "validates presence of required env vars" check.
try:
    settings = Settings()
except Exception as e:
    print(f"Configuration Error: {e}")
    raise

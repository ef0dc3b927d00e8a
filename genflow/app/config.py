from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def first_non_empty(*values: Optional[str]) -> str:
    """Return the first value that is non-empty after trimming, else ""."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_URL: Optional[str] = None

    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    STORE_BACKEND: str = "memory"  # memory | supabase
    RATE_LIMIT_BACKEND: str = "memory"  # memory | supabase
    RECONCILIATION_BACKGROUND: bool = True

    # Replicate
    REPLICATE_API_TOKEN: Optional[str] = None
    REPLICATE_LOOP_ADS_API_TOKEN: Optional[str] = None
    REPLICATE_MERSE_API_TOKEN: Optional[str] = None
    REPLICATE_VEO_API_TOKEN: Optional[str] = None
    REPLICATE_WEBHOOK_SECRET: Optional[str] = None
    REPLICATE_TIMEOUT_SECONDS: float = 30.0

    REPLICATE_VEO_MODEL: str = "google/veo-3"
    REPLICATE_VEO_MODEL_VERSION: Optional[str] = None
    REPLICATE_SORA_MODEL: str = "openai/sora"
    REPLICATE_SORA_MODEL_VERSION: Optional[str] = None
    REPLICATE_MERSE_MODEL: str = "mersee/merse-ai-1-0"
    REPLICATE_MERSE_MODEL_VERSION: Optional[str] = None
    REPLICATE_MERSE_VIDEO_MODEL: Optional[str] = None
    REPLICATE_MERSE_VIDEO_MODEL_VERSION: Optional[str] = None
    REPLICATE_FLUX_MODEL: str = "black-forest-labs/flux-schnell"
    REPLICATE_FLUX_MODEL_VERSION: Optional[str] = None
    REPLICATE_SITE_MODEL: Optional[str] = None
    REPLICATE_SITE_MODEL_VERSION: Optional[str] = None
    REPLICATE_LOOP_ADS_MODEL: Optional[str] = None
    REPLICATE_LOOP_ADS_MODEL_VERSION: Optional[str] = None

    # Gemini
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash"

    # Cloudflare R2
    R2_ACCOUNT_ID: Optional[str] = None
    R2_ACCESS_KEY_ID: Optional[str] = None
    R2_SECRET_ACCESS_KEY: Optional[str] = None
    R2_BUCKET_NAME: Optional[str] = None
    R2_PUBLIC_URL: Optional[str] = None

    # Refinement loop
    REFINEMENT_SCORE_THRESHOLD: float = 8.0
    REFINEMENT_DEFAULT_ITERATIONS: int = 3
    REFINEMENT_MAX_ITERATIONS: int = 5
    REFINEMENT_ALLOW_FALLBACK: bool = True

    FRONTEND_CORS_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"],
    )

    @property
    def replicate_token(self) -> str:
        return first_non_empty(self.REPLICATE_API_TOKEN)

    @property
    def loop_ads_token(self) -> str:
        return first_non_empty(
            self.REPLICATE_LOOP_ADS_API_TOKEN,
            self.REPLICATE_MERSE_API_TOKEN,
            self.REPLICATE_VEO_API_TOKEN,
            self.REPLICATE_API_TOKEN,
        )

    @property
    def webhook_enabled(self) -> bool:
        return bool(first_non_empty(self.APP_URL) and first_non_empty(self.REPLICATE_WEBHOOK_SECRET))

    @property
    def r2_configured(self) -> bool:
        return all([self.R2_ACCOUNT_ID, self.R2_ACCESS_KEY_ID, self.R2_SECRET_ACCESS_KEY, self.R2_BUCKET_NAME])


settings = Settings()

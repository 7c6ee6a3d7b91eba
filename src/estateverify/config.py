from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_CHECK_WEIGHTS: dict[str, float] = {
    "text": 0.20,
    "image": 0.20,
    "document": 0.20,
    "format": 0.10,
    "fraud": 0.15,
    "consistency": 0.10,
    "media_authenticity": 0.10,
    "conflict": 0.15,
}


class Settings(BaseSettings):
    """Configuration sourced from environment variables."""

    service_title: str = "EstateVerify Verification Service"
    version: str = "1.0.0"
    debug: bool = False
    cors_origins: str = "*"

    # External analysis provider
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    provider_timeout: float = 20.0
    provider_max_attempts: int = Field(default=3, ge=1)
    provider_retry_min_wait: float = 0.5
    provider_retry_max_wait: float = 8.0
    provider_max_concurrency: int = Field(default=8, ge=1)
    provider_max_media: int = Field(default=6, ge=1)
    media_max_bytes: int = 5 * 1024 * 1024

    # Orchestration
    request_timeout: float = 45.0
    cap_degraded_approvals: bool = False

    # Rule checker
    min_description_length: int = 80
    max_uppercase_ratio: float = 0.3
    sale_price_floor: float = 10_000.0
    rent_price_floor: float = 100.0

    check_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_CHECK_WEIGHTS))

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def get_cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def weight_for(self, check: str) -> float:
        return self.check_weights.get(check, DEFAULT_CHECK_WEIGHTS.get(check, 0.0))


@lru_cache(1)
def get_settings() -> Settings:
    return Settings()

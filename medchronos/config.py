"""
Runtime configuration for the MedChronos AI service.

Values are read from the environment (optionally populated from a .env
file). Every setting has a default so the service can start with only the
API keys configured.
"""
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return max(minimum, int(value))


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return max(minimum, float(value))


def _env_list(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    # General model (Gemini)
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-pro"
    gemini_flash_model: str = "gemini-2.5-flash"

    # Specialized model (MedGemma)
    medgemma_base_url: Optional[str] = None
    medgemma_model_id: str = "google/medgemma-4b-it"
    medgemma_request_format: str = "openai"  # "openai" (vLLM) or "vertex"
    medgemma_access_token: Optional[str] = None

    # Retry policy: one retry with a fixed 2s delay
    retry_max_attempts: int = 2
    retry_backoff_seconds: float = 2.0

    # Timeouts
    processing_timeout_seconds: float = 300.0
    report_timeout_seconds: float = 300.0
    chat_chunk_timeout_seconds: float = 60.0
    chat_total_timeout_seconds: float = 600.0

    # Caption pipeline
    caption_max_concurrency: int = 0  # 0 = one task per image, no cap
    enhance_captions: bool = True
    image_target_size: int = 896
    image_jpeg_quality: int = 90

    # Storage
    object_store_dir: str = "./object-store"

    # Rate limits as "UNITS/SECONDS"; study uploads cost one unit per image
    rate_limit_studies: str = "40/60"
    rate_limit_refresh: str = "5/60"
    rate_limit_reports: str = "10/60"
    rate_limit_chat: str = "20/60"

    # Logging / HTTP
    log_level: str = "INFO"
    log_json: bool = True
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from environment variables."""
        if dotenv:
            load_dotenv()
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
            gemini_flash_model=os.getenv("GEMINI_FLASH_MODEL", cls.gemini_flash_model),
            medgemma_base_url=os.getenv("MEDGEMMA_BASE_URL"),
            medgemma_model_id=os.getenv("MEDGEMMA_MODEL_ID", cls.medgemma_model_id),
            medgemma_request_format=os.getenv("MEDGEMMA_REQUEST_FORMAT", cls.medgemma_request_format).strip().lower(),
            medgemma_access_token=os.getenv("MEDGEMMA_ACCESS_TOKEN"),
            retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", cls.retry_max_attempts, minimum=1),
            retry_backoff_seconds=_env_float("RETRY_BACKOFF_SECONDS", cls.retry_backoff_seconds),
            processing_timeout_seconds=_env_float("PROCESSING_TIMEOUT_SECONDS", cls.processing_timeout_seconds, minimum=1.0),
            report_timeout_seconds=_env_float("REPORT_TIMEOUT_SECONDS", cls.report_timeout_seconds, minimum=1.0),
            chat_chunk_timeout_seconds=_env_float("CHAT_CHUNK_TIMEOUT_SECONDS", cls.chat_chunk_timeout_seconds, minimum=1.0),
            chat_total_timeout_seconds=_env_float("CHAT_TOTAL_TIMEOUT_SECONDS", cls.chat_total_timeout_seconds, minimum=1.0),
            caption_max_concurrency=_env_int("CAPTION_MAX_CONCURRENCY", cls.caption_max_concurrency),
            enhance_captions=_env_bool("ENHANCE_CAPTIONS", cls.enhance_captions),
            image_target_size=_env_int("IMAGE_TARGET_SIZE", cls.image_target_size, minimum=64),
            image_jpeg_quality=_env_int("IMAGE_JPEG_QUALITY", cls.image_jpeg_quality, minimum=1),
            object_store_dir=os.getenv("OBJECT_STORE_DIR", cls.object_store_dir),
            rate_limit_studies=os.getenv("RATE_LIMIT_STUDIES", cls.rate_limit_studies),
            rate_limit_refresh=os.getenv("RATE_LIMIT_REFRESH", cls.rate_limit_refresh),
            rate_limit_reports=os.getenv("RATE_LIMIT_REPORTS", cls.rate_limit_reports),
            rate_limit_chat=os.getenv("RATE_LIMIT_CHAT", cls.rate_limit_chat),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            log_json=_env_bool("LOG_JSON", cls.log_json),
            cors_origins=_env_list("CORS_ORIGINS", ["http://localhost:3000"]),
        )

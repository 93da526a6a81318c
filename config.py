from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Remote extraction (Gemini)
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_PRIMARY_MODEL: str = "gemini-2.0-flash"
    GEMINI_LITE_MODEL: str = "gemini-2.0-flash-lite"
    GEMINI_TEMPERATURE: float = 0.0
    MAX_REQUEST_KB: int = 20000

    # OCR
    OCR_LANG: str = "en"
    OCR_LOW_DPI: int = 72
    OCR_HIGH_DPI: int = 300
    OCR_MIN_CONFIDENCE: float = 0.5
    OCR_MIN_TEXT_HEIGHT: int = 8

    # Page selection and layout
    NATIVE_TEXT_MIN_CHARS: int = 20
    TRANSACTION_PAGE_THRESHOLD: int = 3
    ROW_TOLERANCE_RATIO: float = 0.02

    # Concurrency
    PAGE_WORKERS: int = 4
    PAGE_BATCH_SIZE: int = 5

    DEFAULT_CURRENCY: str = "INR"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "statement_extractor.log"


settings = Settings()

"""
Configuration settings for the Anonymous Voting Client
Handles environment variables and protocol settings
"""

import logging
import sys
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings loaded from environment variables"""

    # Election authority
    API_BASE_URL: str = "http://127.0.0.1:3000/api/v1"
    TERMINAL_ID: str = "WEB_TERMINAL_001"
    REQUEST_TIMEOUT: float = 10.0
    TESTING_REQUEST_TIMEOUT: float = 30.0

    # Per-role API keys (never mixed on one client)
    VOTER_API_KEY: str = "voter-secret-key-456"
    ADMIN_API_KEY: str = "admin-secret-key-123"
    TESTING_API_KEY: str = "admin-secret-key-123"

    # OTP
    DEFAULT_OTP_EXPIRY_MINUTES: int = 10
    OTP_RESEND_WINDOW_SECONDS: int = 60

    # Verification token
    VERIFICATION_TOKEN_TTL_SECONDS: int = 120

    # Receipt polling
    RECEIPT_POLL_INTERVAL_MS: int = 2000
    RECEIPT_POLL_MAX_ATTEMPTS: int = 15

    # Live results
    RESULTS_REFRESH_SECONDS: float = 5.0

    # Countdown timers
    TIMER_TICK_SECONDS: float = 1.0

    # Session persistence
    REDIS_URL: Optional[str] = None
    SESSION_KEY_PREFIX: str = "evote:session"

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging for the client process"""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

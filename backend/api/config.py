"""
Application Configuration
Loads settings from environment variables with sensible defaults.
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings
from typing import List, Optional
from pathlib import Path


FINGERPRINT_STRATEGIES = ('off', 'conservative', 'moderate', 'aggressive')
PROXY_SERVICES = ('smartproxy', 'brightdata', 'none')


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./data/listing_tracker.db"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_debug: bool = False

    # CORS Configuration
    cors_origins: List[str] = ["*"]

    # Scraper Configuration
    scraper_timeout: int = 30
    scraper_headless: bool = True
    enable_realtor_scraping: bool = True
    enable_centris_scraping: bool = True

    # Stealth features (each can be switched on independently)
    enable_realtor_stealth: bool = True
    enable_session_warmup: bool = False
    fingerprint_rotation: str = "off"
    enable_advanced_human_behavior: bool = True
    enable_session_persistence: bool = True
    enable_intelligent_timing: bool = True
    session_dir: str = ""

    # Proxy Configuration
    proxy_enabled: bool = False
    proxy_service: str = "none"
    proxy_host: str = ""
    proxy_port: int = 0
    proxy_username: str = ""
    proxy_password: str = ""
    proxy_country: str = "CA"

    # Retry Configuration (milliseconds)
    max_retry_attempts: int = 3
    retry_base_delay: int = 2000
    retry_max_delay: int = 30000
    retry_backoff_multiplier: float = 2.0
    retry_enable_jitter: bool = True

    # Proxy bandwidth budget
    proxy_budget_enabled: bool = True
    proxy_budget_monthly_gb: float = 5.0
    proxy_budget_alert_percent: float = 80.0
    proxy_budget_stop_percent: float = 95.0

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_success_threshold: int = 3
    circuit_half_open_after_minutes: int = 30
    circuit_reset_after_minutes: int = 60

    # Liveness ping (Healthchecks.io style)
    healthchecks_ping_url: Optional[str] = None

    # Logging Configuration
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @field_validator('fingerprint_rotation')
    @classmethod
    def validate_fingerprint_rotation(cls, value: str) -> str:
        value = value.lower().strip()
        if value not in FINGERPRINT_STRATEGIES:
            raise ValueError(f"FINGERPRINT_ROTATION must be one of {', '.join(FINGERPRINT_STRATEGIES)}")
        return value

    @field_validator('proxy_service')
    @classmethod
    def validate_proxy_service(cls, value: str) -> str:
        value = value.lower().strip()
        if value not in PROXY_SERVICES:
            raise ValueError(f"PROXY_SERVICE must be one of {', '.join(PROXY_SERVICES)}")
        return value

    @field_validator('proxy_country')
    @classmethod
    def validate_proxy_country(cls, value: str) -> str:
        value = value.upper().strip()
        if value not in ('CA', 'US'):
            raise ValueError("PROXY_COUNTRY must be CA or US")
        return value

    @field_validator('max_retry_attempts')
    @classmethod
    def validate_max_retry_attempts(cls, value: int) -> int:
        if not 1 <= value <= 10:
            raise ValueError("MAX_RETRY_ATTEMPTS must be between 1 and 10")
        return value

    @field_validator('retry_base_delay')
    @classmethod
    def validate_retry_base_delay(cls, value: int) -> int:
        if not 100 <= value <= 60000:
            raise ValueError("RETRY_BASE_DELAY must be between 100 and 60000 ms")
        return value

    @field_validator('retry_backoff_multiplier')
    @classmethod
    def validate_backoff_multiplier(cls, value: float) -> float:
        if value < 1:
            raise ValueError("RETRY_BACKOFF_MULTIPLIER must be at least 1")
        return value

    @field_validator('proxy_budget_monthly_gb')
    @classmethod
    def validate_monthly_gb(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("PROXY_BUDGET_MONTHLY_GB must be positive")
        return value

    @model_validator(mode='after')
    def validate_thresholds(self) -> 'Settings':
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("RETRY_MAX_DELAY must be greater than or equal to RETRY_BASE_DELAY")
        if self.proxy_budget_stop_percent > 100:
            raise ValueError("PROXY_BUDGET_STOP_PERCENT cannot exceed 100")
        if self.proxy_budget_alert_percent >= self.proxy_budget_stop_percent:
            raise ValueError("PROXY_BUDGET_ALERT_PERCENT must be below PROXY_BUDGET_STOP_PERCENT")
        if self.proxy_enabled and self.proxy_service != 'none' and not self.proxy_host:
            raise ValueError("PROXY_HOST is required when PROXY_ENABLED is true")
        return self

    def is_source_enabled(self, source: str) -> bool:
        """Check whether scraping is switched on for a source family."""
        return {
            'realtor': self.enable_realtor_scraping,
            'centris': self.enable_centris_scraping,
        }.get(source, False)

    # Paths
    @property
    def log_dir(self) -> Path:
        """Get the log directory path."""
        return Path(__file__).parent.parent.parent / "logs"

    @property
    def log_file(self) -> Path:
        """Get the log file path."""
        return self.log_dir / "backend.log"

    @property
    def data_dir(self) -> Path:
        """Get the data directory path."""
        return Path(__file__).parent.parent / "data"

    @property
    def sessions_dir(self) -> Path:
        """Directory holding persisted browser sessions."""
        root = Path(self.session_dir) if self.session_dir else Path.cwd()
        return root / ".sessions"

    class Config:
        # Only load .env if it exists to avoid permission errors
        env_file = ".env" if __import__("pathlib").Path(".env").exists() else None
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


# Global settings instance
settings = Settings()

"""Application configuration."""
from collections import Counter
from functools import lru_cache
import math

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Tessera"
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "dev"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Database
    database_url: str = "sqlite:///./data/tessera.db"

    # Credentials
    secret_key: str
    algorithm: str = "HS256"
    fingerprint_salt: str = ""
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    session_expire_days: int = 7
    max_sessions_per_user: int = 5

    # Cleanup
    cleanup_enabled: bool = True
    cleanup_interval_seconds: int = 3600
    inactive_retention_days: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str) -> str:
        """Fail closed if SECRET_KEY is weak or placeholder quality."""
        if not value:
            raise ValueError("SECRET_KEY must be set.")

        if len(value) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        weak_values = {"changeme", "changeme-in-production", "secret", "password", "test"}
        lowered = value.lower()
        if lowered in weak_values or "changeme" in lowered:
            raise ValueError("SECRET_KEY must not be a placeholder value.")

        counts = Counter(value)
        entropy_per_char = -sum((count / len(value)) * math.log2(count / len(value)) for count in counts.values())
        estimated_entropy_bits = entropy_per_char * len(value)
        if estimated_entropy_bits < 100:
            raise ValueError("SECRET_KEY entropy is too low; use a cryptographically random value.")

        return value

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        if value not in ("dev", "structured"):
            raise ValueError("LOG_FORMAT must be 'dev' or 'structured'.")
        return value

    @property
    def effective_fingerprint_salt(self) -> str:
        """Salt used when fingerprinting secrets; defaults to the signing key."""
        return self.fingerprint_salt or self.secret_key


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

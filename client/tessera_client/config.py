"""Client configuration."""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    """Coordinator settings loaded from ``TESSERA_CLIENT_*`` environment variables."""

    base_url: str = "http://localhost:8000"
    max_renew_attempts: int = 5
    renew_base_delay: float = 1.0  # seconds, doubled each attempt
    renew_max_delay: float = 30.0
    renew_timeout: float = 10.0  # per attempt
    inactivity_window_seconds: float = 30 * 60

    class Config:
        env_prefix = "TESSERA_CLIENT_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @field_validator("max_renew_attempts")
    @classmethod
    def validate_max_renew_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_renew_attempts must be at least 1.")
        return value


@lru_cache
def get_client_settings() -> ClientSettings:
    """Get cached client settings instance."""
    return ClientSettings()

"""Exponential backoff policy for renewal attempts."""
from dataclasses import dataclass
import random

from tessera_client.config import ClientSettings


@dataclass
class RetryPolicy:
    """Configuration for renewal retry behavior."""

    max_attempts: int = 5
    base_delay: float = 1.0  # Delay after the first failed attempt
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_renew_attempts,
            base_delay=settings.renew_base_delay,
            max_delay=settings.renew_max_delay,
        )


def calculate_backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay to wait after failed attempt number ``attempt`` (1-based)."""
    delay = policy.base_delay * (policy.exponential_base ** (attempt - 1))
    delay = min(delay, policy.max_delay)

    if policy.jitter:
        delay = delay * (0.5 + random.random())

    return delay

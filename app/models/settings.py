from typing import Optional

from pydantic import BaseModel, Field

from config import (
    BATCH_PAUSE_SECONDS,
    BATCH_SIZE,
    COOLDOWN_BASE_SECONDS,
    COOLDOWN_MAX_SECONDS,
    CREDENTIAL_ACQUIRE_TIMEOUT_SECONDS,
    CREDENTIAL_MAX_IN_FLIGHT,
    FAILURE_THRESHOLD,
    MAX_DURATION_MINUTES,
    MIN_DURATION_MINUTES,
    PROVIDER_MAX_CONCURRENT,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    SEGMENT_DURATION_SECONDS,
    SEGMENT_MAX_ATTEMPTS,
)


class OrchestratorSettings(BaseModel):
    """Tunables for scheduling, retries and credential rotation.

    Defaults come from config.py so production reads the environment while
    tests can construct their own instance with tiny delays.
    """

    segment_duration_seconds: int = Field(SEGMENT_DURATION_SECONDS, gt=0)
    batch_size: int = Field(BATCH_SIZE, gt=0)
    concurrency: int = Field(BATCH_SIZE, gt=0, description="Workers per batch")
    min_duration_minutes: int = MIN_DURATION_MINUTES
    max_duration_minutes: int = MAX_DURATION_MINUTES

    max_attempts: int = Field(SEGMENT_MAX_ATTEMPTS, ge=1)
    retry_base_delay: float = Field(RETRY_BASE_DELAY_SECONDS, ge=0.0)
    retry_max_delay: float = Field(RETRY_MAX_DELAY_SECONDS, ge=0.0)
    cooldown_base: float = Field(COOLDOWN_BASE_SECONDS, ge=0.0)
    cooldown_max: float = Field(COOLDOWN_MAX_SECONDS, ge=0.0)
    acquire_timeout: float = Field(CREDENTIAL_ACQUIRE_TIMEOUT_SECONDS, gt=0.0)
    max_in_flight_per_credential: int = Field(CREDENTIAL_MAX_IN_FLIGHT, ge=1)
    max_concurrent_per_provider: int = Field(PROVIDER_MAX_CONCURRENT, ge=1)
    # Distinct credentials that must fail transiently before a provider is considered down
    unavailable_after_credentials: int = Field(2, ge=2)

    batch_pause_seconds: float = Field(BATCH_PAUSE_SECONDS, ge=0.0)
    failure_threshold: Optional[float] = Field(FAILURE_THRESHOLD, ge=0.0, le=1.0)
    auto_merge: bool = True
    local_merge_attempts: int = Field(2, ge=1, description="First try plus one retry")

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RetryConfig(BaseModel):
    """Retry policy with exponential backoff and full jitter.

    Used by callers that want repeated discovery passes while a cluster is
    mid-promotion (no node reports itself as primary yet).
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Maximum attempts, including the first")
    wait_min: float = Field(default=1.0, ge=0, description="Minimum wait time in seconds")
    wait_max: float = Field(default=30.0, ge=0, description="Maximum wait time in seconds")
    multiplier: float = Field(default=1.0, ge=0, description="Wait multiplier")
    exp_base: float = Field(default=2.0, ge=1, description="Exponential base")

    retry_on_exceptions: tuple[type[Exception], ...] | None = Field(
        default=None,
        description="Exception types that trigger retry (None = all exceptions)",
    )
    never_retry_on: tuple[type[Exception], ...] | None = Field(
        default=None,
        description="Exception types that are never retried (takes precedence)",
    )

    reraise: bool = Field(default=True, description="Reraise the last exception after all attempts fail")

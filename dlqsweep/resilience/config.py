from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RetryConfig(BaseModel):
    """Bounded exponential backoff with full jitter for broker calls."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=10, description="Maximum attempts, first call included")
    max_delay_seconds: float | None = Field(default=None, ge=0, description="Give up once this much time has passed")

    use_jitter: bool = Field(default=True, description="Full jitter (False = deterministic exponential)")
    wait_min: float = Field(default=0.5, ge=0, description="Shortest sleep between attempts in seconds")
    wait_max: float = Field(default=10.0, ge=0, description="Longest sleep between attempts in seconds")
    wait_multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor without jitter")

    retry_on_exceptions: tuple[type[Exception], ...] | None = Field(
        default=None, description="Exception types worth another attempt (None = any exception)"
    )

    reraise: bool = Field(default=True, description="Raise the last error instead of tenacity.RetryError")

    @model_validator(mode="after")
    def _check_wait_bounds(self) -> Self:
        if self.wait_min > self.wait_max:
            raise ValueError(f"wait_min ({self.wait_min}) must not exceed wait_max ({self.wait_max})")
        return self

"""Idempotency and rate limit models."""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class IdempotencyStatus(str, Enum):
    """Outcome of checking an idempotency key."""
    MISSING = "missing"
    REPLAY = "replay"
    ACCEPTED = "accepted"


class IdempotencyRecord(BaseModel):
    """Row of the idempotency_keys table."""
    key: str
    expires_at: float = Field(..., description="Epoch seconds")
    response: Optional[dict[str, Any]] = Field(None, description="Outcome recorded once the request completed")


class IdempotencyResult(BaseModel):
    status: IdempotencyStatus
    record: Optional[IdempotencyRecord] = None


class RateLimitCounter(BaseModel):
    """Fixed window counter for one caller identity."""
    key: str
    count: int = Field(..., ge=0)
    window_reset_at: float = Field(..., description="Epoch seconds when the window closes")


class RateLimitResult(BaseModel):
    success: bool
    limit: int
    remaining: int
    reset_time: float = Field(..., description="Epoch seconds")
    retry_after: Optional[int] = Field(None, description="Seconds to wait, set when rejected")

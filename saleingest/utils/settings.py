"""Environment-driven settings for ingestion, guards and fetching."""

import os
from typing import Optional
from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str) -> list[str]:
    return [s.strip() for s in os.environ.get(name, "").split(",") if s.strip()]


class IngestSettings(BaseModel):
    """Settings consumed by the ingest handlers, pipeline and guards."""
    ingest_token: Optional[str] = Field(None, description="Shared secret expected in X-Ingest-Token")
    source: str = Field(default="craigslist", description="Default source identifier")
    allowed_domain: str = Field(default="craigslist.org", description="Allow-listed listing domain")
    default_base_url: str = Field(
        default="https://sfbay.craigslist.org",
        description="Base URL used to absolutize links in HTML result pages"
    )
    sites: list[str] = Field(default_factory=list, description="Feed URLs fetched when no markup is supplied")
    parse_limit: int = Field(default=20, ge=1, le=1000)
    write_chunk_size: int = Field(default=50, ge=1)
    deadline_seconds: float = Field(default=25.0, gt=0)
    fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    fetch_max_attempts: int = Field(default=3, ge=1)
    rate_limit_window_ms: int = Field(default=15 * 60 * 1000, gt=0)
    rate_limit_max_requests: int = Field(default=100, gt=0)
    rate_limit_backend: str = Field(default="memory", description="memory or supabase")
    idempotency_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    idempotency_backend: str = Field(default="memory", description="memory or supabase")

    @classmethod
    def from_env(cls) -> "IngestSettings":
        """Build settings from environment variables."""
        token = os.environ.get("INGEST_TOKEN", "").strip() or None
        return cls(
            ingest_token=token,
            source=os.environ.get("INGEST_SOURCE", "craigslist"),
            allowed_domain=os.environ.get("INGEST_ALLOWED_DOMAIN", "craigslist.org").lower(),
            default_base_url=os.environ.get("INGEST_DEFAULT_BASE_URL", "https://sfbay.craigslist.org"),
            sites=_env_list("INGEST_SITES"),
            parse_limit=max(1, min(1000, _env_int("INGEST_PARSE_LIMIT", 20))),
            write_chunk_size=max(1, _env_int("INGEST_WRITE_CHUNK_SIZE", 50)),
            deadline_seconds=max(1, _env_int("INGEST_DEADLINE_SECONDS", 25)),
            fetch_timeout_seconds=max(1, _env_int("INGEST_FETCH_TIMEOUT_SECONDS", 10)),
            rate_limit_window_ms=max(1, _env_int("RATE_LIMIT_WINDOW_MS", 15 * 60 * 1000)),
            rate_limit_max_requests=max(1, _env_int("RATE_LIMIT_MAX_REQUESTS", 100)),
            rate_limit_backend=os.environ.get("RATE_LIMIT_BACKEND", "memory").lower(),
            idempotency_ttl_seconds=max(1, _env_int("IDEMPOTENCY_TTL_SECONDS", 24 * 60 * 60)),
            idempotency_backend=os.environ.get("IDEMPOTENCY_BACKEND", "memory").lower(),
        )


def get_settings() -> IngestSettings:
    """Read settings fresh from the environment."""
    return IngestSettings.from_env()

"""Ingest run models."""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, model_validator


class RunStatus(str, Enum):
    """Run lifecycle: running, then exactly one of ok or error."""
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"


class IngestRun(BaseModel):
    """Row of the ingest_runs table."""
    id: str = Field(..., description="Run ID (ULID)")
    source: str
    dry_run: bool = False
    status: RunStatus = RunStatus.RUNNING
    started_at: str
    finished_at: Optional[str] = None
    fetched_count: int = Field(default=0, ge=0)
    new_count: int = Field(default=0, ge=0)
    updated_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict, description="Structured diagnostics")


class FetchOutcome(BaseModel):
    """Result of fetching one site."""
    url: str
    status: int = 0
    content_type: str = "unknown"
    bytes: int = 0
    elapsed_ms: int = 0
    success: bool = False
    error: Optional[str] = None
    body: Optional[str] = Field(None, exclude=True)


class IngestRequest(BaseModel):
    """Body accepted by the ingest trigger endpoint."""
    source: str = "craigslist"
    site: Optional[str] = Field(None, description="Feed or search page URL the input came from")
    sites: Optional[list[str]] = Field(None, description="Sites to fetch when no input is supplied")
    xml: Optional[str] = Field(None, description="Pre-fetched RSS snapshot")
    markup: Optional[str] = Field(None, description="Pre-fetched HTML result page")
    limit: Optional[int] = Field(None, ge=1, le=1000)
    dry_run: bool = False

    @model_validator(mode="after")
    def _check_input(self) -> "IngestRequest":
        if (self.xml or self.markup) and not self.site:
            raise ValueError("site is required when xml or markup is supplied")
        if self.xml and self.markup:
            raise ValueError("supply either xml or markup, not both")
        return self


class IngestOutcome(BaseModel):
    """Summary returned to the caller once a run has finalized."""
    run_id: str
    status: RunStatus
    fetched_count: int = 0
    new_count: int = 0
    updated_count: int = 0
    last_error: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)

"""
Pydantic schemas for pricing job queue, runs, breakers and the retry ledger.
"""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict, field_validator

from pricing_sync.models.db.enums import JobRunStatus


class EnqueueRequest(BaseModel):
    """Request a pricing sync for one game."""
    game: str = Field(description="Game slug, e.g. 'pokemon' or 'magic-the-gathering'")
    priority: Optional[int] = Field(None, description="Higher runs first; defaults to the queue default")

    @field_validator("game")
    @classmethod
    def normalize_game(cls, v: str) -> str:
        return v.strip().lower()

    model_config = ConfigDict(json_schema_extra={
        "example": {"game": "pokemon", "priority": 5}
    })


class EnqueueResponse(BaseModel):
    job_id: Optional[int] = Field(None, description="New entry id, or the existing active entry id")
    game: str
    already_active: bool = Field(False, description="True when an active entry already existed (no-op)")


class RunNextRequest(BaseModel):
    game: Optional[str] = Field(None, description="Restrict the invocation to one game")


class QueueEntryRead(BaseModel):
    id: int
    game: str
    status: str
    priority: int
    retry_count: int
    max_retries: int
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class JobRunRead(BaseModel):
    id: int
    game: str
    queue_job_id: Optional[int] = None
    status: str
    expected_batches: int
    actual_batches: int
    items_processed: int
    items_updated: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RunOutcome(BaseModel):
    """Result of one processor invocation."""
    queue_job_id: Optional[int] = None
    run_id: Optional[int] = None
    status: Optional[str] = Field(None, description="Run terminal status, None when nothing was due")
    expected_batches: int = 0
    actual_batches: int = 0
    items_processed: int = 0
    items_updated: int = 0
    error: Optional[str] = None
    requeued_job_id: Optional[int] = None
    already_active: bool = False


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ForceFinishRequest(BaseModel):
    status: str = Field(description="cancelled | error | completed | preflight_ceiling")
    error: Optional[str] = Field(None, max_length=500)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in JobRunStatus.terminal():
            raise ValueError(f"status must be one of {', '.join(JobRunStatus.terminal())}")
        return v


class StuckRunRead(BaseModel):
    run_id: int
    game: str
    started_at: datetime
    minutes_running: int
    actual_batches: int
    expected_batches: int

    model_config = ConfigDict(from_attributes=True)


class SweepRequest(BaseModel):
    max_runtime_minutes: Optional[int] = Field(None, ge=1, description="Defaults to STUCK_JOB_MAX_MINUTES")


class SweepSummary(BaseModel):
    runs_terminated: int
    queue_entries_failed: int


class CircuitBreakerRead(BaseModel):
    game: str
    state: str
    failure_count: int
    failure_threshold: int
    recovery_timeout_seconds: int
    last_failure_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None


class RetryEntryRead(BaseModel):
    item_id: str
    game: str
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    last_retry_at: datetime
    next_retry_at: Optional[datetime] = None
    dead: bool = False

    model_config = ConfigDict(from_attributes=True)


class RetryLedgerRead(BaseModel):
    game: str
    due: List[str]
    entries: List[RetryEntryRead]


class ReviveRequest(BaseModel):
    item_id: Optional[str] = Field(None, description="Revive one variant; all dead variants when omitted")

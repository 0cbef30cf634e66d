'''
Job Models
'''
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .enums import JobEventType, JobPriority, JobStatus, JobType
from .schedule import utcnow


class JobRecord(BaseModel):
    """In-memory state of one background job."""
    id: UUID = Field(default_factory=uuid4)
    job_type: JobType
    priority: JobPriority = JobPriority.MEDIUM
    status: JobStatus = JobStatus.QUEUED
    entity_id: Optional[str] = Field(None, description="Jobs sharing an entity id never run concurrently.")
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_retries: int = 3
    progress: int = 0
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.FATAL, JobStatus.CANCELLED)


class JobEvent(BaseModel):
    job_id: UUID
    event_type: JobEventType
    job_type: JobType
    entity_id: Optional[str] = None
    percentage: Optional[int] = None
    detail: Optional[str] = None
    summary: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class QueueStatus(BaseModel):
    counts: dict[JobStatus, int]
    running_entities: list[str]
    circuit_state: str
    workers: int
    metrics: dict[str, float]

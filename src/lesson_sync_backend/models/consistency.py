'''
Consistency Models

Contracts of the validator / repairer: the repair policy, classified issues,
the per-record corrections of a plan and the reports returned to callers.
'''
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..common.config import settings
from .enums import Authority, EntityType, IssueCategory

# Legacy lesson length assumed when an assignment lost its duration.
DEFAULT_BACKFILL_DURATION_MINUTES = 45


class RepairPolicy(BaseModel):
    """
    Which projection wins a disagreement.
    membership_authority: who holds which slot (teacher slots vs student assignments).
    schedule_authority: day / start / duration of a lesson both sides agree exists.
    """
    membership_authority: Authority = Authority.TEACHER
    schedule_authority: Authority = Authority.TEACHER
    default_duration_minutes: int = Field(DEFAULT_BACKFILL_DURATION_MINUTES, gt=0)

    @classmethod
    def from_settings(cls) -> "RepairPolicy":
        return cls(
            membership_authority=Authority(settings.REPAIR_MEMBERSHIP_AUTHORITY),
            schedule_authority=Authority(settings.REPAIR_SCHEDULE_AUTHORITY),
            default_duration_minutes=settings.REPAIR_DEFAULT_DURATION_MINUTES
        )


class Issue(BaseModel):
    category: IssueCategory
    entity_type: EntityType
    entity_id: UUID
    referenced_id: Optional[str] = None
    slot_id: Optional[UUID] = None
    locations: list[str] = Field(default_factory=list)
    description: str
    resolution: Optional[str] = Field(None, description="None when the planner could not resolve the issue.")
    needs_review: bool = False

    @property
    def resolved(self) -> bool:
        return self.resolution is not None


class PlannedCorrection(BaseModel):
    """The corrected column values for one record."""
    entity_type: EntityType
    entity_id: UUID
    expected_version: Optional[int] = None
    counterpart_ids: list[UUID] = Field(default_factory=list)
    changes: list[str] = Field(default_factory=list)
    values: dict[str, Any] = Field(default_factory=dict)


class RecordError(BaseModel):
    entity_type: EntityType
    entity_id: UUID
    error: str


class InconsistencyReport(BaseModel):
    scanned_at: datetime
    total_teachers: int
    total_students: int
    total_issues: int
    counts_by_category: dict[IssueCategory, int]
    examples: dict[IssueCategory, list[Issue]]
    unresolved_count: int
    records_needing_correction: int


class RepairResult(BaseModel):
    dry_run: bool
    issues_found: int
    records_planned: int
    records_updated: int = 0
    skipped_already_fixed: int = 0
    corrections: list[PlannedCorrection] = Field(default_factory=list)
    unresolved: list[Issue] = Field(default_factory=list)
    errors: list[RecordError] = Field(default_factory=list)


class RepairRequest(BaseModel):
    dry_run: bool = True
    policy: Optional[RepairPolicy] = None

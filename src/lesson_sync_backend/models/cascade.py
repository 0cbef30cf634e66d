'''
Cascade Models
'''
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .enums import JobPriority


class CascadeOptions(BaseModel):
    actor_id: Optional[UUID] = None
    reason: Optional[str] = None
    hard_delete: bool = False
    preserve_academic: bool = Field(True, description="Archive bagrut records instead of deleting them.")


class RelatedRecordCounts(BaseModel):
    teacher_slots: int = 0
    teacher_references: int = 0
    orchestras: int = 0
    rehearsals: int = 0
    theory_lessons: int = 0
    bagrut: int = 0
    activity_attendance: int = 0

    @property
    def total(self) -> int:
        return sum(self.model_dump().values())


class DeletionImpact(BaseModel):
    student_id: UUID
    student_exists: bool
    student_active: bool = False
    deletion_status: Optional[str] = None
    related_records: RelatedRecordCounts = Field(default_factory=RelatedRecordCounts)
    total_references: int = 0
    warnings: list[str] = Field(default_factory=list)


class CascadeOperation(BaseModel):
    collection: str
    operation: str
    affected_documents: int


class CascadeResult(BaseModel):
    student_id: UUID
    audit_log_id: UUID
    deletion_type: str
    operations: list[CascadeOperation]
    attempts: int = 1
    execution_ms: float = 0.0
    completed_at: datetime

    @property
    def affected_collections(self) -> list[str]:
        return sorted({op.collection for op in self.operations if op.affected_documents})


class RollbackResult(BaseModel):
    audit_log_id: UUID
    student_id: UUID
    restored: dict[str, int]
    skipped_slot_ids: list[UUID] = Field(default_factory=list, description="Slots taken by someone else since the deletion.")
    restored_at: datetime


class OrphanFinding(BaseModel):
    collection: str
    record_id: UUID
    orphaned_ids: list[str]


class OrphanCleanupResult(BaseModel):
    dry_run: bool
    total_orphaned_references: int
    findings: list[OrphanFinding] = Field(default_factory=list)
    cleaned: dict[str, int] = Field(default_factory=dict)


class CascadeJobRequest(BaseModel):
    student_id: UUID
    actor_id: Optional[UUID] = None
    reason: Optional[str] = None
    priority: JobPriority = JobPriority.HIGH
    hard_delete: bool = False
    preserve_academic: bool = True

    def options(self) -> CascadeOptions:
        return CascadeOptions(
            actor_id=self.actor_id,
            reason=self.reason,
            hard_delete=self.hard_delete,
            preserve_academic=self.preserve_academic
        )


class BatchCascadeRequest(BaseModel):
    student_ids: list[UUID] = Field(..., min_length=1)
    actor_id: Optional[UUID] = None
    reason: Optional[str] = None
    priority: JobPriority = JobPriority.MEDIUM
    hard_delete: bool = False
    preserve_academic: bool = True

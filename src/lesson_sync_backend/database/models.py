'''
ORM models.

Teachers and Students are the two denormalised "documents" of the teaching
relationship: their embedded lists (slots, assignments, id caches) live in
JSON columns and every row carries a version column, so each UPDATE is
conditional on the version that was read.
'''
from typing import Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, Index, Integer, PrimaryKeyConstraint, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import datetime
import uuid

class Base(DeclarativeBase):
    pass


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Teachers(Base):
    __tablename__ = 'teachers'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='teachers_pkey'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name: Mapped[Optional[str]] = mapped_column(Text)
    last_name: Mapped[Optional[str]] = mapped_column(Text)
    instrument: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Denormalised membership cache (list of student id strings, set semantics)
    student_ids: Mapped[list] = mapped_column(JSONDocument, default=list)
    # Embedded lesson slots, see models.schedule.Slot
    slots: Mapped[list] = mapped_column(JSONDocument, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"Teachers(id={self.id!r}, slots={len(self.slots or [])}, version={self.version!r})"


class Students(Base):
    __tablename__ = 'students'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='students_pkey'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name: Mapped[Optional[str]] = mapped_column(Text)
    last_name: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    deletion_status: Mapped[str] = mapped_column(
        Enum('active', 'pending_deletion', 'deleted', name='deletion_status_enum'),
        default='active'
    )
    deleted_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(True))
    # Legacy cache: ids of teachers with an active assignment
    teacher_ids: Mapped[list] = mapped_column(JSONDocument, default=list)
    # Embedded assignments, see models.schedule.Assignment
    teacher_assignments: Mapped[list] = mapped_column(JSONDocument, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def __repr__(self) -> str:
        return f"Students(id={self.id!r}, status={self.deletion_status!r}, version={self.version!r})"


class Orchestras(Base):
    __tablename__ = 'orchestras'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='orchestras_pkey'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    member_ids: Mapped[list] = mapped_column(JSONDocument, default=list)


class Rehearsals(Base):
    __tablename__ = 'rehearsals'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='rehearsals_pkey'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    orchestra_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    date: Mapped[Optional[datetime.date]] = mapped_column(Date)
    # [{student_id, status, archived?, archived_reason?, archived_at?}]
    attendance: Mapped[list] = mapped_column(JSONDocument, default=list)


class TheoryLessons(Base):
    __tablename__ = 'theory_lessons'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='theory_lessons_pkey'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    category: Mapped[Optional[str]] = mapped_column(Text)
    teacher_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    student_ids: Mapped[list] = mapped_column(JSONDocument, default=list)


class BagrutRecords(Base):
    __tablename__ = 'bagrut_records'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='bagrut_records_pkey'),
        Index('idx_bagrut_student_id', 'student_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    teacher_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    final_grade: Mapped[Optional[int]] = mapped_column(Integer)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(100))
    archived_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(True))


class ActivityAttendance(Base):
    __tablename__ = 'activity_attendance'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='activity_attendance_pkey'),
        Index('idx_activity_attendance_student_id', 'student_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    teacher_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    activity_type: Mapped[str] = mapped_column(String(50))
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    status: Mapped[Optional[str]] = mapped_column(String(30))
    session_date: Mapped[Optional[datetime.date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    marked_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(True))
    marked_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(100))
    archived_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(True))


class DeletionAuditLogs(Base):
    __tablename__ = 'deletion_audit_logs'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='deletion_audit_logs_pkey'),
        Index('idx_deletion_audit_entity', 'entity_type', 'entity_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(50))
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    deletion_type: Mapped[str] = mapped_column(Enum('soft', 'hard', name='deletion_type_enum'))
    # [{collection, operation, affected_documents}]
    cascade_operations: Mapped[list] = mapped_column(JSONDocument, default=list)
    snapshot: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(True))
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    rolled_back_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(True))

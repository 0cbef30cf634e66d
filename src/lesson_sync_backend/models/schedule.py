'''
Schedule Models

Slot and Assignment are the embedded documents stored in the JSON columns of
the teacher and student rows; the remaining models are the API contracts of
the booking surface.
'''
from datetime import date, datetime, timezone
from typing import Annotated, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..common.time_utils import calculate_end_time
from .enums import AttendanceStatus, DayOfWeek

ALLOWED_DURATIONS = (30, 45, 60)

TimeString = Annotated[str, Field(pattern=r"^([01]?\d|2[0-3]):[0-5]\d$", examples=["14:00"])]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Embedded Documents ---

class Recurrence(BaseModel):
    is_recurring: bool = True
    exclude_dates: list[date] = Field(default_factory=list)


class LessonAttendance(BaseModel):
    """Attendance of the latest lesson held in a slot."""
    status: str = "pending"
    marked_at: Optional[datetime] = None
    marked_by: Optional[UUID] = None
    lesson_completed: Optional[bool] = None
    notes: Optional[str] = None


class Slot(BaseModel):
    """
    A bookable weekly lesson interval on a teacher record.
    Invariant: is_available == (student_id is None).
    """
    id: UUID = Field(default_factory=uuid4)
    day: DayOfWeek
    start_time: TimeString
    end_time: TimeString
    duration_minutes: int = Field(..., gt=0)
    student_id: Optional[UUID] = None
    is_available: bool = True
    location: Optional[str] = None
    notes: Optional[str] = None
    recurrence: Recurrence = Field(default_factory=Recurrence)
    attendance: Optional[LessonAttendance] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


class ScheduleInfo(BaseModel):
    """Scheduling fields copied from the slot onto the student's assignment."""
    day: Optional[DayOfWeek] = None
    start_time: Optional[TimeString] = None
    end_time: Optional[TimeString] = None
    duration_minutes: Optional[int] = None

    @classmethod
    def from_slot(cls, slot: Slot) -> "ScheduleInfo":
        return cls(
            day=slot.day,
            start_time=slot.start_time,
            end_time=slot.end_time,
            duration_minutes=slot.duration_minutes
        )

    @property
    def missing_fields(self) -> list[str]:
        missing = []
        if self.day is None:
            missing.append("day")
        if self.start_time is None:
            missing.append("start_time")
        if self.duration_minutes is None:
            missing.append("duration_minutes")
        return missing

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields

    def matches_slot(self, slot: Slot) -> bool:
        return (
            self.day == slot.day
            and self.start_time == slot.start_time
            and self.end_time == slot.end_time
            and self.duration_minutes == slot.duration_minutes
        )


class Assignment(BaseModel):
    """The student-side record of a binding to a teacher slot (active or historical)."""
    teacher_id: UUID
    slot_id: Optional[UUID] = None
    start_date: datetime = Field(default_factory=utcnow)
    end_date: Optional[datetime] = None
    is_active: bool = True
    schedule_info: ScheduleInfo = Field(default_factory=ScheduleInfo)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


def parse_slots(documents: Optional[list]) -> list[Slot]:
    return [Slot.model_validate(doc) for doc in (documents or [])]


def dump_slots(slots: list[Slot]) -> list[dict]:
    return [slot.to_document() for slot in slots]


def parse_assignments(documents: Optional[list]) -> list[Assignment]:
    return [Assignment.model_validate(doc) for doc in (documents or [])]


def dump_assignments(assignments: list[Assignment]) -> list[dict]:
    return [assignment.to_document() for assignment in assignments]


def empty_week() -> dict[DayOfWeek, list]:
    return {day: [] for day in DayOfWeek}


# --- API Input Models ---

class SlotCreate(BaseModel):
    day: DayOfWeek
    start_time: TimeString
    duration_minutes: int
    location: Optional[str] = None
    notes: Optional[str] = None
    recurrence: Optional[Recurrence] = None

    @field_validator("duration_minutes")
    @classmethod
    def _check_duration(cls, value: int) -> int:
        if value not in ALLOWED_DURATIONS:
            raise ValueError(f"duration_minutes must be one of {ALLOWED_DURATIONS}")
        return value

    def build_slot(self) -> Slot:
        return Slot(
            day=self.day,
            start_time=self.start_time,
            end_time=calculate_end_time(self.start_time, self.duration_minutes),
            duration_minutes=self.duration_minutes,
            location=self.location,
            notes=self.notes,
            recurrence=self.recurrence or Recurrence(),
        )


class SlotUpdate(BaseModel):
    """Partial update. Only fields that were explicitly set are applied."""
    day: Optional[DayOfWeek] = None
    start_time: Optional[TimeString] = None
    duration_minutes: Optional[int] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    recurrence: Optional[Recurrence] = None

    @field_validator("duration_minutes")
    @classmethod
    def _check_duration(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value not in ALLOWED_DURATIONS:
            raise ValueError(f"duration_minutes must be one of {ALLOWED_DURATIONS}")
        return value


class AssignStudentRequest(BaseModel):
    teacher_id: UUID
    student_id: UUID
    slot_id: UUID
    start_date: Optional[datetime] = None
    notes: Optional[str] = None


class AttendanceRequest(BaseModel):
    status: AttendanceStatus
    marked_by: Optional[UUID] = None
    notes: Optional[str] = None
    lesson_date: Optional[date] = Field(None, description="Date the lesson was held; defaults to today (UTC).")


class AvailableSlotsFilter(BaseModel):
    day: Optional[DayOfWeek] = None
    min_duration: Optional[int] = None
    start_time_after: Optional[TimeString] = None
    start_time_before: Optional[TimeString] = None
    location: Optional[str] = None


# --- API Read Models ---

class SlotRead(Slot):
    """A slot together with the teacher that owns it."""
    teacher_id: UUID
    student_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AssignmentResult(BaseModel):
    teacher_id: UUID
    student_id: UUID
    slot: SlotRead
    assignment: Assignment


class ReleaseResult(BaseModel):
    teacher_id: UUID
    student_id: UUID
    slot_id: UUID
    relationship_removed: bool = Field(..., description="True when this was the pair's last active assignment.")


class AttendanceResult(BaseModel):
    teacher_id: UUID
    student_id: UUID
    slot_id: UUID
    lesson_date: date
    attendance: LessonAttendance
    activity_attendance_id: UUID


class TeacherWeeklyView(BaseModel):
    teacher_id: UUID
    schedule: dict[DayOfWeek, list[SlotRead]]


class StudentView(BaseModel):
    student_id: UUID
    student_name: Optional[str] = None
    schedule: dict[DayOfWeek, list[SlotRead]]
    teacher_ids: list[UUID]
    assignments: list[Assignment]

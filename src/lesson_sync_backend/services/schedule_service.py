'''
Schedule Service
'''
from typing import Annotated, Optional
from uuid import UUID, uuid4

from fastapi import Depends
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..common.exceptions import ConflictError, LessonSyncError, NotFoundError, StateError
from ..common.logger import log
from ..common.time_utils import calculate_end_time, lessons_overlap, time_to_minutes
from ..database import models as db_models
from ..database.engine import get_db_session
from ..models.enums import AttendanceStatus, DayOfWeek, DeletionStatus
from ..models.schedule import (
    AssignmentResult,
    AssignStudentRequest,
    AttendanceRequest,
    AttendanceResult,
    AvailableSlotsFilter,
    LessonAttendance,
    ReleaseResult,
    Slot,
    SlotCreate,
    SlotRead,
    SlotUpdate,
    StudentView,
    TeacherWeeklyView,
    dump_slots,
    empty_week,
    parse_assignments,
    parse_slots,
    utcnow,
)
from .relationship_service import RelationshipMirrorService

PRIVATE_LESSON_ACTIVITY = "private_lesson"


def _slot_sort_key(slot: Slot) -> tuple[int, int]:
    return slot.day.order, time_to_minutes(slot.start_time)


class ScheduleService:
    """
    Slot/Booking engine: creates, updates, assigns and releases lesson slots
    on teacher records and runs conflict detection. Every successful booking
    change is mirrored onto the student record through RelationshipMirrorService
    in the same session, and every write is guarded by the row version.
    """
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        relationships: Annotated[RelationshipMirrorService, Depends(RelationshipMirrorService)]
    ):
        self.db = db
        self.relationships = relationships

    # --- 1. Internal Fetchers ---

    async def _get_teacher_internal(self, teacher_id: UUID) -> db_models.Teachers:
        teacher = await self.db.get(db_models.Teachers, teacher_id)
        if teacher is None or not teacher.is_active:
            raise NotFoundError(f"Teacher {teacher_id} not found.")
        return teacher

    async def _get_student_internal(self, student_id: UUID, active_only: bool = True) -> db_models.Students:
        student = await self.db.get(db_models.Students, student_id)
        if student is None:
            raise NotFoundError(f"Student {student_id} not found.")
        if active_only and (not student.is_active or student.deletion_status != DeletionStatus.ACTIVE.value):
            raise NotFoundError(f"Student {student_id} is not active.")
        return student

    async def _get_active_teachers(self) -> list[db_models.Teachers]:
        result = await self.db.execute(
            select(db_models.Teachers).filter(db_models.Teachers.is_active.is_(True))
        )
        return list(result.scalars().all())

    async def _find_slot_internal(self, slot_id: UUID) -> tuple[db_models.Teachers, list[Slot], int]:
        """
        Locates the teacher that owns slot_id.
        Returns the teacher, its parsed slots and the index of the slot.
        """
        slot_key = str(slot_id)
        for teacher in await self._get_active_teachers():
            if not any(str(doc.get("id")) == slot_key for doc in (teacher.slots or [])):
                continue
            slots = parse_slots(teacher.slots)
            for index, slot in enumerate(slots):
                if slot.id == slot_id:
                    return teacher, slots, index
        raise NotFoundError(f"Schedule slot {slot_id} not found.")

    async def _iter_student_slots(self, student_id: UUID) -> list[tuple[db_models.Teachers, Slot]]:
        """Every slot, on any active teacher, currently assigned to student_id."""
        student_key = str(student_id)
        found = []
        for teacher in await self._get_active_teachers():
            for doc in teacher.slots or []:
                if str(doc.get("student_id")) != student_key:
                    continue
                try:
                    found.append((teacher, Slot.model_validate(doc)))
                except ValidationError as e:
                    log.warning(f"Skipping malformed slot {doc.get('id')} on teacher {teacher.id}: {e}")
        return found

    # --- 2. Conflict Detection ---

    @staticmethod
    def _find_teacher_conflict(
        slots: list[Slot],
        day: DayOfWeek,
        start_time: str,
        duration_minutes: int,
        exclude_slot_id: Optional[UUID] = None
    ) -> Optional[Slot]:
        """First slot of the same teacher on the same day that overlaps the interval."""
        for existing in slots:
            if exclude_slot_id is not None and existing.id == exclude_slot_id:
                continue
            if existing.day != day:
                continue
            if lessons_overlap(start_time, duration_minutes, existing.start_time, existing.duration_minutes):
                return existing
        return None

    async def _find_student_conflict(
        self,
        student_id: UUID,
        day: DayOfWeek,
        start_time: str,
        duration_minutes: int,
        exclude_slot_id: Optional[UUID] = None
    ) -> Optional[tuple[db_models.Teachers, Slot]]:
        """First lesson of the student, with any teacher, that overlaps the interval."""
        for teacher, slot in await self._iter_student_slots(student_id):
            if exclude_slot_id is not None and slot.id == exclude_slot_id:
                continue
            if slot.day != day:
                continue
            if lessons_overlap(start_time, duration_minutes, slot.start_time, slot.duration_minutes):
                return teacher, slot
        return None

    async def _flush_guarded(self, context: str):
        """Flushes pending writes; a lost version guard means another writer got there first."""
        try:
            await self.db.flush()
        except StaleDataError as e:
            log.warning(f"Concurrent modification detected during {context}: {e}")
            raise StateError(f"Record changed concurrently during {context}; nothing was written.") from e

    # --- 3. Write Methods ---

    async def create_slot(self, teacher_id: UUID, data: SlotCreate) -> SlotRead:
        """
        Creates a new, available slot on the teacher.
        Raises ConflictError when it overlaps any slot of the same teacher on the same day.
        """
        log.info(f"Creating slot for teacher {teacher_id}: {data.day.value} {data.start_time} ({data.duration_minutes} min).")
        try:
            teacher = await self._get_teacher_internal(teacher_id)
            slots = parse_slots(teacher.slots)

            conflict = self._find_teacher_conflict(slots, data.day, data.start_time, data.duration_minutes)
            if conflict:
                raise ConflictError(
                    f"Time slot conflicts with existing slot {conflict.id} "
                    f"({conflict.day.value} {conflict.start_time}-{conflict.end_time})."
                )

            new_slot = data.build_slot()
            slots.append(new_slot)
            teacher.slots = dump_slots(slots)
            await self._flush_guarded("create_slot")

            return SlotRead(**new_slot.model_dump(), teacher_id=teacher.id)

        except LessonSyncError:
            raise
        except Exception as e:
            log.error(f"Error in create_slot for teacher {teacher_id}: {e}", exc_info=True)
            raise

    async def assign_student(self, data: AssignStudentRequest) -> AssignmentResult:
        """
        Assigns a student to an available slot and mirrors the edge onto the student.
        NotFoundError: teacher, slot or student missing.
        StateError: slot already assigned.
        ConflictError: the student has an overlapping lesson with any teacher.
        """
        log.info(f"Assigning student {data.student_id} to slot {data.slot_id} of teacher {data.teacher_id}.")
        try:
            # 1. Fetch teacher and slot
            teacher = await self._get_teacher_internal(data.teacher_id)
            slots = parse_slots(teacher.slots)
            index = next((i for i, s in enumerate(slots) if s.id == data.slot_id), None)
            if index is None:
                raise NotFoundError(f"Schedule slot {data.slot_id} not found on teacher {data.teacher_id}.")
            slot = slots[index]

            # 2. Fetch student
            student = await self._get_student_internal(data.student_id)

            # 3. Availability
            if slot.student_id is not None or not slot.is_available:
                raise StateError(f"Schedule slot {slot.id} is not available for assignment.")

            # 4. Student double booking across all teachers
            clash = await self._find_student_conflict(
                student.id, slot.day, slot.start_time, slot.duration_minutes, exclude_slot_id=slot.id
            )
            if clash:
                clash_teacher, clash_slot = clash
                raise ConflictError(
                    f"Student already has a lesson with teacher {clash_teacher.id} on "
                    f"{clash_slot.day.value} {clash_slot.start_time}-{clash_slot.end_time}."
                )

            # 5. Teacher side
            slot.student_id = student.id
            slot.is_available = False
            slot.updated_at = utcnow()
            slots[index] = slot
            teacher.slots = dump_slots(slots)

            # 6. Student side
            assignment = await self.relationships.mirror_assign(
                teacher.id, student.id, slot, start_date=data.start_date, notes=data.notes
            )
            await self._flush_guarded("assign_student")

            return AssignmentResult(
                teacher_id=teacher.id,
                student_id=student.id,
                slot=SlotRead(**slot.model_dump(), teacher_id=teacher.id, student_name=student.full_name or None),
                assignment=assignment
            )

        except LessonSyncError:
            raise
        except Exception as e:
            log.error(f"Error in assign_student for slot {data.slot_id}: {e}", exc_info=True)
            raise

    async def remove_student(self, slot_id: UUID) -> ReleaseResult:
        """
        Releases the student from a slot and deactivates the mirrored assignment.
        Raises NotFoundError when the slot is missing or not assigned.
        """
        log.info(f"Removing student from slot {slot_id}.")
        try:
            teacher, slots, index = await self._find_slot_internal(slot_id)
            slot = slots[index]
            if slot.student_id is None:
                raise NotFoundError(f"No student assigned to schedule slot {slot_id}.")

            student_id = slot.student_id
            slot.student_id = None
            slot.is_available = True
            slot.updated_at = utcnow()
            slots[index] = slot
            teacher.slots = dump_slots(slots)

            relationship_removed = await self.relationships.mirror_release(teacher.id, student_id, slot.id)
            await self._flush_guarded("remove_student")

            return ReleaseResult(
                teacher_id=teacher.id,
                student_id=student_id,
                slot_id=slot.id,
                relationship_removed=relationship_removed
            )

        except LessonSyncError:
            raise
        except Exception as e:
            log.error(f"Error in remove_student for slot {slot_id}: {e}", exc_info=True)
            raise

    async def mark_lesson_attendance(self, slot_id: UUID, data: AttendanceRequest) -> AttendanceResult:
        """
        Records attendance of the lesson held in a booked slot.
        The slot keeps the latest mark; the activity attendance log keeps one row
        per slot, student and lesson date, updated in place when marked again.
        Raises NotFoundError when the slot is missing or not assigned.
        """
        log.info(f"Marking {data.status.value} for slot {slot_id}.")
        try:
            teacher, slots, index = await self._find_slot_internal(slot_id)
            slot = slots[index]
            if slot.student_id is None:
                raise NotFoundError(f"No student assigned to schedule slot {slot_id}.")

            marked_at = utcnow()
            lesson_date = data.lesson_date or marked_at.date()
            if data.status == AttendanceStatus.ATTENDED:
                lesson_completed = True
            elif data.status == AttendanceStatus.CANCELLED:
                lesson_completed = False
            else:
                lesson_completed = None
            attendance = LessonAttendance(
                status=data.status.value,
                marked_at=marked_at,
                marked_by=data.marked_by,
                lesson_completed=lesson_completed,
                notes=data.notes
            )
            slot.attendance = attendance
            slot.updated_at = marked_at
            slots[index] = slot
            teacher.slots = dump_slots(slots)

            stmt = select(db_models.ActivityAttendance).filter(
                db_models.ActivityAttendance.activity_type == PRIVATE_LESSON_ACTIVITY,
                db_models.ActivityAttendance.session_id == slot.id,
                db_models.ActivityAttendance.student_id == slot.student_id,
                db_models.ActivityAttendance.session_date == lesson_date
            )
            record = (await self.db.execute(stmt)).scalars().first()
            if record is None:
                record = db_models.ActivityAttendance(
                    id=uuid4(),
                    student_id=slot.student_id,
                    activity_type=PRIVATE_LESSON_ACTIVITY,
                    session_id=slot.id,
                    session_date=lesson_date,
                    archived=False
                )
                self.db.add(record)
            record.teacher_id = teacher.id
            record.status = data.status.value
            record.notes = data.notes
            record.marked_at = marked_at
            record.marked_by = data.marked_by

            await self._flush_guarded("mark_lesson_attendance")

            return AttendanceResult(
                teacher_id=teacher.id,
                student_id=slot.student_id,
                slot_id=slot.id,
                lesson_date=lesson_date,
                attendance=attendance,
                activity_attendance_id=record.id
            )

        except LessonSyncError:
            raise
        except Exception as e:
            log.error(f"Error in mark_lesson_attendance for slot {slot_id}: {e}", exc_info=True)
            raise

    async def update_slot(self, slot_id: UUID, data: SlotUpdate) -> SlotRead:
        """
        Applies a partial update. Timing changes are re-checked against the
        teacher's other slots and, when assigned, against the student's other
        lessons; nothing is mutated when a check fails.
        """
        log.info(f"Updating slot {slot_id}.")
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            raise StateError("No fields provided to update.")

        try:
            teacher, slots, index = await self._find_slot_internal(slot_id)
            original = slots[index]

            new_day = changes.get("day") or original.day
            new_start = changes.get("start_time") or original.start_time
            new_duration = changes.get("duration_minutes") or original.duration_minutes
            timing_changed = (
                new_day != original.day
                or new_start != original.start_time
                or new_duration != original.duration_minutes
            )

            if timing_changed:
                conflict = self._find_teacher_conflict(
                    slots, new_day, new_start, new_duration, exclude_slot_id=original.id
                )
                if conflict:
                    raise ConflictError(
                        f"Updated time slot conflicts with existing slot {conflict.id} "
                        f"({conflict.day.value} {conflict.start_time}-{conflict.end_time})."
                    )
                if original.student_id is not None:
                    clash = await self._find_student_conflict(
                        original.student_id, new_day, new_start, new_duration, exclude_slot_id=original.id
                    )
                    if clash:
                        raise ConflictError("Student already has another lesson at this updated time.")

            # Apply the validated patch
            update = {key: value for key, value in changes.items() if key not in ("day", "start_time", "duration_minutes")}
            if "recurrence" in update and update["recurrence"] is not None:
                update["recurrence"] = data.recurrence
            update.update(
                day=new_day,
                start_time=new_start,
                duration_minutes=new_duration,
                end_time=calculate_end_time(new_start, new_duration),
                updated_at=utcnow()
            )
            updated = original.model_copy(update=update)
            slots[index] = updated
            teacher.slots = dump_slots(slots)

            if timing_changed and updated.student_id is not None:
                await self.relationships.mirror_reschedule(teacher.id, updated.student_id, updated)

            await self._flush_guarded("update_slot")
            return SlotRead(**updated.model_dump(), teacher_id=teacher.id)

        except LessonSyncError:
            raise
        except Exception as e:
            log.error(f"Error in update_slot for slot {slot_id}: {e}", exc_info=True)
            raise

    # --- 4. Read Methods ---

    async def get_slot(self, slot_id: UUID) -> SlotRead:
        teacher, slots, index = await self._find_slot_internal(slot_id)
        return SlotRead(**slots[index].model_dump(), teacher_id=teacher.id)

    async def get_teacher_weekly_view(self, teacher_id: UUID, include_student_info: bool = False) -> TeacherWeeklyView:
        """The teacher's slots grouped by day and sorted by start time."""
        teacher = await self._get_teacher_internal(teacher_id)
        slots = sorted(parse_slots(teacher.slots), key=_slot_sort_key)

        names: dict[UUID, str] = {}
        if include_student_info:
            student_ids = {slot.student_id for slot in slots if slot.student_id}
            if student_ids:
                result = await self.db.execute(
                    select(db_models.Students).filter(db_models.Students.id.in_(student_ids))
                )
                names = {student.id: student.full_name for student in result.scalars().all()}

        schedule = empty_week()
        for slot in slots:
            schedule[slot.day].append(SlotRead(
                **slot.model_dump(),
                teacher_id=teacher.id,
                student_name=names.get(slot.student_id) if slot.student_id else None
            ))
        return TeacherWeeklyView(teacher_id=teacher.id, schedule=schedule)

    async def get_available_slots(self, teacher_id: UUID, filters: Optional[AvailableSlotsFilter] = None) -> list[SlotRead]:
        """Available slots of a teacher, optionally filtered, sorted by day then start time."""
        teacher = await self._get_teacher_internal(teacher_id)
        filters = filters or AvailableSlotsFilter()
        available = [slot for slot in parse_slots(teacher.slots) if slot.is_available and slot.student_id is None]

        if filters.day:
            available = [s for s in available if s.day == filters.day]
        if filters.min_duration:
            available = [s for s in available if s.duration_minutes >= filters.min_duration]
        if filters.start_time_after:
            after = time_to_minutes(filters.start_time_after)
            available = [s for s in available if time_to_minutes(s.start_time) >= after]
        if filters.start_time_before:
            before = time_to_minutes(filters.start_time_before)
            available = [s for s in available if time_to_minutes(s.start_time) <= before]
        if filters.location:
            available = [s for s in available if s.location and filters.location in s.location]

        available.sort(key=_slot_sort_key)
        return [SlotRead(**slot.model_dump(), teacher_id=teacher.id) for slot in available]

    async def get_student_view(self, student_id: UUID) -> StudentView:
        """The student's lessons across all teachers, grouped by day."""
        student = await self._get_student_internal(student_id, active_only=False)

        schedule = empty_week()
        teacher_ids: list[UUID] = []
        for teacher, slot in sorted(await self._iter_student_slots(student.id), key=lambda pair: _slot_sort_key(pair[1])):
            schedule[slot.day].append(SlotRead(**slot.model_dump(), teacher_id=teacher.id, student_name=student.full_name or None))
            if teacher.id not in teacher_ids:
                teacher_ids.append(teacher.id)

        active_assignments = [a for a in parse_assignments(student.teacher_assignments) if a.is_active]
        return StudentView(
            student_id=student.id,
            student_name=student.full_name or None,
            schedule=schedule,
            teacher_ids=teacher_ids,
            assignments=active_assignments
        )

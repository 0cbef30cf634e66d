'''
Relationship Mirror Service

Writes the counterpart projection of every booking change: the assignment
and teacher_ids cache on the student record, and the student_ids cache on the
teacher record. Runs in the caller's session so both sides are flushed and
committed together with the slot change.
'''
from datetime import datetime
from typing import Annotated, Iterable, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.logger import log
from ..database import models as db_models
from ..database.engine import get_db_session
from ..models.schedule import (
    Assignment,
    ScheduleInfo,
    Slot,
    dump_assignments,
    parse_assignments,
    utcnow,
)


# --- Id-set helpers for the JSON cache columns ---

def add_to_id_set(ids: Optional[Iterable], new_id: UUID) -> list[str]:
    """Returns a new list with new_id added once (set semantics, order preserved)."""
    result = [str(i) for i in (ids or [])]
    if str(new_id) not in result:
        result.append(str(new_id))
    return result


def remove_from_id_set(ids: Optional[Iterable], old_id: UUID) -> list[str]:
    return [str(i) for i in (ids or []) if str(i) != str(old_id)]


class RelationshipMirrorService:
    """
    Keeps both sides' redundant id lists and assignment records in sync on the
    happy path. A missing counterpart record is logged and treated as a no-op:
    the consistency repair pass heals real divergence.
    """
    def __init__(self, db: Annotated[AsyncSession, Depends(get_db_session)]):
        self.db = db

    async def _get_teacher(self, teacher_id: UUID) -> Optional[db_models.Teachers]:
        return await self.db.get(db_models.Teachers, teacher_id)

    async def _get_student(self, student_id: UUID) -> Optional[db_models.Students]:
        return await self.db.get(db_models.Students, student_id)

    async def mirror_assign(
        self,
        teacher_id: UUID,
        student_id: UUID,
        slot: Slot,
        start_date: Optional[datetime] = None,
        notes: Optional[str] = None
    ) -> Optional[Assignment]:
        """
        Appends (or replaces the active one for the same slot) an active
        assignment on the student with schedule_info copied from the slot,
        and adds each id to the other side's cache.
        """
        student = await self._get_student(student_id)
        if student is None:
            log.warning(f"mirror_assign: student {student_id} not found, skipping student side of slot {slot.id}.")
            return None

        now = utcnow()
        assignments = parse_assignments(student.teacher_assignments)
        new_assignment = Assignment(
            teacher_id=teacher_id,
            slot_id=slot.id,
            start_date=start_date or now,
            end_date=None,
            is_active=True,
            schedule_info=ScheduleInfo.from_slot(slot),
            notes=notes,
            created_at=now,
            updated_at=now
        )

        replaced = False
        for index, existing in enumerate(assignments):
            if existing.is_active and existing.teacher_id == teacher_id and existing.slot_id == slot.id:
                if not replaced:
                    new_assignment.created_at = existing.created_at
                    assignments[index] = new_assignment
                    replaced = True
                else:
                    # a second active copy for the same slot would break the one-to-one mirror
                    existing.is_active = False
                    existing.end_date = now
                    existing.updated_at = now
        if not replaced:
            assignments.append(new_assignment)

        student.teacher_assignments = dump_assignments(assignments)
        student.teacher_ids = add_to_id_set(student.teacher_ids, teacher_id)

        teacher = await self._get_teacher(teacher_id)
        if teacher is None:
            log.warning(f"mirror_assign: teacher {teacher_id} not found, student_ids cache not updated.")
        else:
            teacher.student_ids = add_to_id_set(teacher.student_ids, student_id)

        log.info(f"Mirrored assignment of student {student_id} to slot {slot.id} (teacher {teacher_id}).")
        return new_assignment

    async def mirror_release(self, teacher_id: UUID, student_id: UUID, slot_id: UUID) -> bool:
        """
        Deactivates the assignment for slot_id. When no active assignment is
        left between the pair, both cache ids are pulled.
        Returns True when the pair's relationship was removed.
        """
        student = await self._get_student(student_id)
        if student is None:
            log.warning(f"mirror_release: student {student_id} not found, nothing to deactivate for slot {slot_id}.")
            return False

        now = utcnow()
        assignments = parse_assignments(student.teacher_assignments)
        deactivated = 0
        for assignment in assignments:
            if assignment.is_active and assignment.teacher_id == teacher_id and assignment.slot_id == slot_id:
                assignment.is_active = False
                assignment.end_date = now
                assignment.updated_at = now
                deactivated += 1

        if deactivated == 0:
            log.warning(f"mirror_release: no active assignment for slot {slot_id} on student {student_id}.")
        student.teacher_assignments = dump_assignments(assignments)

        still_active = any(a.is_active and a.teacher_id == teacher_id for a in assignments)
        if still_active:
            return False

        student.teacher_ids = remove_from_id_set(student.teacher_ids, teacher_id)
        teacher = await self._get_teacher(teacher_id)
        if teacher is not None:
            teacher.student_ids = remove_from_id_set(teacher.student_ids, student_id)
        log.info(f"Last active assignment between teacher {teacher_id} and student {student_id} released.")
        return True

    async def mirror_reschedule(self, teacher_id: UUID, student_id: UUID, slot: Slot) -> bool:
        """Copies the slot's new scheduling fields into the matching active assignment."""
        student = await self._get_student(student_id)
        if student is None:
            log.warning(f"mirror_reschedule: student {student_id} not found.")
            return False

        assignments = parse_assignments(student.teacher_assignments)
        updated = False
        for assignment in assignments:
            if assignment.is_active and assignment.teacher_id == teacher_id and assignment.slot_id == slot.id:
                assignment.schedule_info = ScheduleInfo.from_slot(slot)
                assignment.updated_at = utcnow()
                updated = True

        if updated:
            student.teacher_assignments = dump_assignments(assignments)
        else:
            log.warning(f"mirror_reschedule: no active assignment for slot {slot.id} on student {student_id}.")
        return updated

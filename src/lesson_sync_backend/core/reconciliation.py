'''
Reconciliation planner.

Pure computation over snapshots of the teacher and student records: it
classifies every divergence between the two projections of the teaching
relationship and computes, per active record, the corrected documents.
Nothing here touches the database; ConsistencyService scans, re-checks and
writes.

Running the planner on its own output yields an empty plan. Issues it can
not resolve are reported with resolution=None and produce no correction.
'''
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import ValidationError

from ..common.time_utils import calculate_end_time, lessons_overlap
from ..models.consistency import Issue, PlannedCorrection, RepairPolicy
from ..models.enums import Authority, DeletionStatus, EntityType, IssueCategory
from ..models.schedule import Assignment, ScheduleInfo, Slot, utcnow


# --- Snapshots ---

@dataclass
class TeacherSnapshot:
    id: UUID
    is_active: bool
    student_ids: list = field(default_factory=list)
    slots: list = field(default_factory=list)
    version: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "TeacherSnapshot":
        return cls(
            id=row.id,
            is_active=bool(row.is_active),
            student_ids=list(row.student_ids or []),
            slots=list(row.slots or []),
            version=row.version
        )


@dataclass
class StudentSnapshot:
    id: UUID
    is_active: bool
    teacher_ids: list = field(default_factory=list)
    teacher_assignments: list = field(default_factory=list)
    version: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "StudentSnapshot":
        return cls(
            id=row.id,
            is_active=bool(row.is_active) and row.deletion_status != DeletionStatus.DELETED.value,
            teacher_ids=list(row.teacher_ids or []),
            teacher_assignments=list(row.teacher_assignments or []),
            version=row.version
        )


@dataclass
class ReconciliationPlan:
    issues: list[Issue] = field(default_factory=list)
    corrections: list[PlannedCorrection] = field(default_factory=list)

    @property
    def unresolved(self) -> list[Issue]:
        return [issue for issue in self.issues if not issue.resolved]

    @property
    def is_empty(self) -> bool:
        return not self.corrections

    def correction_for(self, entity_type: EntityType, entity_id: UUID) -> Optional[PlannedCorrection]:
        for correction in self.corrections:
            if correction.entity_type == entity_type and correction.entity_id == entity_id:
                return correction
        return None


def _to_uuid(value: Any) -> Optional[UUID]:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        return None


def _merge_ids(current: list[str], desired: set[str]) -> list[str]:
    """Keeps the existing order of ids that stay, appends new ones sorted."""
    kept = [i for i in dict.fromkeys(current) if i in desired]
    return kept + sorted(desired - set(kept))


# --- Working copies ---

class _TeacherState:
    def __init__(self, snapshot: TeacherSnapshot):
        self.id = snapshot.id
        self.version = snapshot.version
        self.student_ids = [str(i) for i in snapshot.student_ids]
        self.slots: list[Slot] = []
        self.malformed: list[tuple[int, Any]] = []
        for index, doc in enumerate(snapshot.slots):
            try:
                self.slots.append(Slot.model_validate(doc))
            except (ValidationError, TypeError):
                self.malformed.append((index, doc))
        self.referenced = set(self.student_ids) | {str(s.student_id) for s in self.slots if s.student_id}
        self.changes: list[str] = []
        self.dirty_fields: set[str] = set()

    def slot(self, slot_id: Optional[UUID]) -> Optional[Slot]:
        if slot_id is None:
            return None
        return next((s for s in self.slots if s.id == slot_id), None)

    def touch(self, column: str, change: str):
        self.dirty_fields.add(column)
        self.changes.append(change)

    def values(self) -> dict[str, Any]:
        values = {}
        if "slots" in self.dirty_fields:
            values["slots"] = [s.to_document() for s in self.slots] + [doc for _, doc in self.malformed]
        if "student_ids" in self.dirty_fields:
            values["student_ids"] = list(self.student_ids)
        return values


class _StudentState:
    def __init__(self, snapshot: StudentSnapshot):
        self.id = snapshot.id
        self.version = snapshot.version
        self.teacher_ids = [str(i) for i in snapshot.teacher_ids]
        self.assignments: list[Assignment] = []
        self.malformed: list[tuple[int, Any]] = []
        for index, doc in enumerate(snapshot.teacher_assignments):
            try:
                self.assignments.append(Assignment.model_validate(doc))
            except (ValidationError, TypeError):
                self.malformed.append((index, doc))
        self.referenced = set(self.teacher_ids) | {str(a.teacher_id) for a in self.assignments if a.is_active}
        self.changes: list[str] = []
        self.dirty_fields: set[str] = set()

    def active(self) -> list[Assignment]:
        return [a for a in self.assignments if a.is_active]

    def active_for(self, teacher_id: UUID, slot_id: UUID) -> Optional[Assignment]:
        return next(
            (a for a in self.assignments if a.is_active and a.teacher_id == teacher_id and a.slot_id == slot_id),
            None
        )

    def touch(self, column: str, change: str):
        self.dirty_fields.add(column)
        self.changes.append(change)

    def values(self) -> dict[str, Any]:
        values = {}
        if "teacher_assignments" in self.dirty_fields:
            values["teacher_assignments"] = (
                [a.to_document() for a in self.assignments] + [doc for _, doc in self.malformed]
            )
        if "teacher_ids" in self.dirty_fields:
            values["teacher_ids"] = list(self.teacher_ids)
        return values


# --- Planner ---

class _Planner:
    def __init__(
        self,
        teachers: list[TeacherSnapshot],
        students: list[StudentSnapshot],
        policy: RepairPolicy,
        now: datetime
    ):
        self.policy = policy
        self.now = now
        self.issues: list[Issue] = []
        self.teachers = {t.id: _TeacherState(t) for t in teachers if t.is_active}
        self.students = {s.id: _StudentState(s) for s in students if s.is_active}
        self.teacher_keys = {str(i) for i in self.teachers}
        self.student_keys = {str(i) for i in self.students}

    def _issue(self, category: IssueCategory, entity_type: EntityType, entity_id: UUID, description: str, **kwargs) -> Issue:
        issue = Issue(category=category, entity_type=entity_type, entity_id=entity_id, description=description, **kwargs)
        self.issues.append(issue)
        return issue

    def run(self) -> "ReconciliationPlan":
        self._report_malformed()
        self._clear_orphans()
        self._normalise_availability()
        self._dedupe_assignments()
        self._link_legacy_assignments()
        self._complete_assignments()
        self._reconcile_membership()
        self._reconcile_schedule_fields()
        self._rebuild_caches()
        return self._build_plan()

    # 1. Documents that cannot be parsed are left untouched
    def _report_malformed(self):
        for teacher in self.teachers.values():
            for index, _ in teacher.malformed:
                self._issue(
                    IssueCategory.INCOMPLETE_RECORD, EntityType.TEACHER, teacher.id,
                    "Slot document is malformed and cannot be repaired automatically.",
                    locations=[f"slots[{index}]"], needs_review=True
                )
        for student in self.students.values():
            for index, _ in student.malformed:
                self._issue(
                    IssueCategory.INCOMPLETE_RECORD, EntityType.STUDENT, student.id,
                    "Assignment document is malformed and cannot be repaired automatically.",
                    locations=[f"teacher_assignments[{index}]"], needs_review=True
                )

    # 2. References to missing or inactive counterparts
    def _clear_orphans(self):
        for teacher in self.teachers.values():
            references: dict[str, list[str]] = {}
            for sid in teacher.student_ids:
                references.setdefault(sid, []).append("student_ids")
            for slot in teacher.slots:
                if slot.student_id is not None:
                    references.setdefault(str(slot.student_id), []).append(f"slots[{slot.id}]")

            for key, locations in references.items():
                if key in self.student_keys:
                    continue
                if key in teacher.student_ids:
                    teacher.student_ids = [i for i in teacher.student_ids if i != key]
                    teacher.touch("student_ids", f"removed orphan student {key} from student_ids")
                for slot in teacher.slots:
                    if str(slot.student_id) == key:
                        slot.student_id = None
                        slot.is_available = True
                        slot.updated_at = self.now
                        teacher.touch("slots", f"released slot {slot.id} held by orphan student {key}")
                self._issue(
                    IssueCategory.ORPHAN_REFERENCE, EntityType.TEACHER, teacher.id,
                    f"References student {key}, which does not exist or is not active.",
                    referenced_id=key, locations=locations, resolution="references cleared"
                )

        for student in self.students.values():
            references = {}
            for tid in student.teacher_ids:
                references.setdefault(tid, []).append("teacher_ids")
            for assignment in student.active():
                references.setdefault(str(assignment.teacher_id), []).append(
                    f"teacher_assignments[{assignment.slot_id}]"
                )

            for key, locations in references.items():
                if key in self.teacher_keys:
                    continue
                if key in student.teacher_ids:
                    student.teacher_ids = [i for i in student.teacher_ids if i != key]
                    student.touch("teacher_ids", f"removed orphan teacher {key} from teacher_ids")
                for assignment in student.active():
                    if str(assignment.teacher_id) == key:
                        self._deactivate(student, assignment, f"teacher {key} is gone")
                self._issue(
                    IssueCategory.ORPHAN_REFERENCE, EntityType.STUDENT, student.id,
                    f"References teacher {key}, which does not exist or is not active.",
                    referenced_id=key, locations=locations, resolution="references cleared"
                )

    def _deactivate(self, student: _StudentState, assignment: Assignment, why: str):
        assignment.is_active = False
        assignment.end_date = self.now
        assignment.updated_at = self.now
        student.touch("teacher_assignments", f"deactivated assignment for slot {assignment.slot_id} ({why})")

    # 3. is_available must mirror student_id
    def _normalise_availability(self):
        for teacher in self.teachers.values():
            for slot in teacher.slots:
                expected = slot.student_id is None
                if slot.is_available == expected:
                    continue
                slot.is_available = expected
                slot.updated_at = self.now
                teacher.touch("slots", f"set is_available={expected} on slot {slot.id}")
                self._issue(
                    IssueCategory.FIELD_MISMATCH, EntityType.TEACHER, teacher.id,
                    "Slot availability flag disagrees with its student_id.",
                    slot_id=slot.id, locations=[f"slots[{slot.id}].is_available"],
                    resolution=f"is_available set to {expected}"
                )

    # 4. At most one active assignment per slot
    def _dedupe_assignments(self):
        for student in self.students.values():
            seen: set[tuple[UUID, UUID]] = set()
            for assignment in student.active():
                if assignment.slot_id is None:
                    continue
                key = (assignment.teacher_id, assignment.slot_id)
                if key not in seen:
                    seen.add(key)
                    continue
                self._deactivate(student, assignment, "duplicate")
                self._issue(
                    IssueCategory.MISSING_MIRROR, EntityType.STUDENT, student.id,
                    "Slot is mirrored by more than one active assignment.",
                    referenced_id=str(assignment.teacher_id), slot_id=assignment.slot_id,
                    locations=[f"teacher_assignments[{assignment.slot_id}]"],
                    resolution="duplicate assignment deactivated"
                )

    # 5. Assignments written before slot ids existed
    def _link_legacy_assignments(self):
        for student in self.students.values():
            for assignment in student.active():
                if assignment.slot_id is not None:
                    continue
                teacher = self.teachers.get(assignment.teacher_id)
                if teacher is None:
                    continue
                claimed = {a.slot_id for a in student.active() if a.teacher_id == teacher.id}
                candidates = [s for s in teacher.slots if s.student_id == student.id and s.id not in claimed]
                info = assignment.schedule_info
                if info.day is not None and info.start_time is not None:
                    candidates = [s for s in candidates if s.day == info.day and s.start_time == info.start_time]
                if len(candidates) != 1:
                    continue
                assignment.slot_id = candidates[0].id
                assignment.updated_at = self.now
                student.touch("teacher_assignments", f"linked legacy assignment to slot {candidates[0].id}")
                self._issue(
                    IssueCategory.INCOMPLETE_RECORD, EntityType.STUDENT, student.id,
                    "Active assignment has no slot id.",
                    referenced_id=str(teacher.id), slot_id=candidates[0].id,
                    locations=["teacher_assignments[].slot_id"],
                    resolution="linked to the matching slot"
                )

    # 6. Missing schedule fields
    def _complete_assignments(self):
        for student in self.students.values():
            for assignment in student.active():
                info = assignment.schedule_info
                if info.is_complete and info.end_time is not None:
                    continue
                teacher = self.teachers.get(assignment.teacher_id)
                if teacher is None:
                    continue
                slot = teacher.slot(assignment.slot_id)
                location = [f"teacher_assignments[{assignment.slot_id}].schedule_info"]

                if slot is not None:
                    assignment.schedule_info = ScheduleInfo.from_slot(slot)
                    resolution = "backfilled from slot"
                    needs_review = False
                elif self.policy.membership_authority == Authority.TEACHER:
                    # deactivated by the membership pass
                    continue
                elif info.missing_fields == ["duration_minutes"]:
                    duration = self.policy.default_duration_minutes
                    assignment.schedule_info = info.model_copy(update={
                        "duration_minutes": duration,
                        "end_time": calculate_end_time(info.start_time, duration)
                    })
                    resolution = f"duration defaulted to {duration} minutes"
                    needs_review = True
                elif info.is_complete:
                    assignment.schedule_info = info.model_copy(update={
                        "end_time": calculate_end_time(info.start_time, info.duration_minutes)
                    })
                    resolution = "end time derived from start and duration"
                    needs_review = False
                else:
                    self._issue(
                        IssueCategory.INCOMPLETE_RECORD, EntityType.STUDENT, student.id,
                        f"Assignment is missing {', '.join(info.missing_fields)} and has no slot to copy from.",
                        referenced_id=str(teacher.id), slot_id=assignment.slot_id,
                        locations=location, needs_review=True
                    )
                    continue

                assignment.updated_at = self.now
                student.touch("teacher_assignments", f"completed schedule_info of slot {assignment.slot_id}")
                self._issue(
                    IssueCategory.INCOMPLETE_RECORD, EntityType.STUDENT, student.id,
                    f"Assignment is missing {', '.join(info.missing_fields) or 'end_time'}.",
                    referenced_id=str(teacher.id), slot_id=assignment.slot_id,
                    locations=location, resolution=resolution, needs_review=needs_review
                )

    # 7. Who holds which slot
    def _reconcile_membership(self):
        teacher_wins = self.policy.membership_authority == Authority.TEACHER

        for teacher in self.teachers.values():
            for slot in teacher.slots:
                if slot.student_id is None:
                    continue
                student = self.students.get(slot.student_id)
                if student is None or student.active_for(teacher.id, slot.id) is not None:
                    continue

                if teacher_wins:
                    student.assignments.append(Assignment(
                        teacher_id=teacher.id,
                        slot_id=slot.id,
                        start_date=self.now,
                        is_active=True,
                        schedule_info=ScheduleInfo.from_slot(slot),
                        created_at=self.now,
                        updated_at=self.now
                    ))
                    student.touch("teacher_assignments", f"created assignment for slot {slot.id}")
                    self._issue(
                        IssueCategory.MISSING_MIRROR, EntityType.STUDENT, student.id,
                        f"Slot {slot.id} of teacher {teacher.id} has no active assignment.",
                        referenced_id=str(teacher.id), slot_id=slot.id,
                        locations=["teacher_assignments"], resolution="assignment created from slot"
                    )
                else:
                    holder = slot.student_id
                    slot.student_id = None
                    slot.is_available = True
                    slot.updated_at = self.now
                    teacher.touch("slots", f"released slot {slot.id} not claimed by student {holder}")
                    self._issue(
                        IssueCategory.MISSING_MIRROR, EntityType.TEACHER, teacher.id,
                        f"Slot is assigned to student {holder}, who has no active assignment for it.",
                        referenced_id=str(holder), slot_id=slot.id,
                        locations=[f"slots[{slot.id}]"], resolution="slot released"
                    )

        for student in self.students.values():
            for assignment in student.active():
                teacher = self.teachers.get(assignment.teacher_id)
                if teacher is None:
                    continue
                slot = teacher.slot(assignment.slot_id)
                if slot is not None and slot.student_id == student.id:
                    continue

                issue = dict(
                    referenced_id=str(teacher.id), slot_id=assignment.slot_id,
                    locations=[f"teacher_assignments[{assignment.slot_id}]"]
                )
                if teacher_wins:
                    self._deactivate(student, assignment, "no matching slot")
                    self._issue(
                        IssueCategory.MISSING_MIRROR, EntityType.STUDENT, student.id,
                        "Active assignment has no matching assigned slot on the teacher.",
                        resolution="assignment deactivated", **issue
                    )
                elif slot is not None and slot.student_id is None:
                    slot.student_id = student.id
                    slot.is_available = False
                    slot.updated_at = self.now
                    teacher.touch("slots", f"assigned slot {slot.id} to student {student.id}")
                    self._issue(
                        IssueCategory.MISSING_MIRROR, EntityType.TEACHER, teacher.id,
                        f"Student {student.id} holds an assignment for this free slot.",
                        resolution="slot assigned", **issue
                    )
                elif slot is not None:
                    self._issue(
                        IssueCategory.MISSING_MIRROR, EntityType.STUDENT, student.id,
                        f"Slot is held by another student ({slot.student_id}).",
                        needs_review=True, **issue
                    )
                elif self._can_recreate(teacher, assignment):
                    info = assignment.schedule_info
                    recreated = Slot(
                        id=assignment.slot_id,
                        day=info.day,
                        start_time=info.start_time,
                        end_time=calculate_end_time(info.start_time, info.duration_minutes),
                        duration_minutes=info.duration_minutes,
                        student_id=student.id,
                        is_available=False,
                        created_at=self.now,
                        updated_at=self.now
                    )
                    teacher.slots.append(recreated)
                    teacher.touch("slots", f"recreated slot {recreated.id} for student {student.id}")
                    self._issue(
                        IssueCategory.MISSING_MIRROR, EntityType.TEACHER, teacher.id,
                        f"Slot claimed by student {student.id} does not exist.",
                        resolution="slot recreated from assignment", **issue
                    )
                else:
                    self._issue(
                        IssueCategory.MISSING_MIRROR, EntityType.STUDENT, student.id,
                        "Assigned slot does not exist and cannot be recreated safely.",
                        needs_review=True, **issue
                    )

    def _can_recreate(self, teacher: _TeacherState, assignment: Assignment) -> bool:
        info = assignment.schedule_info
        if assignment.slot_id is None or not info.is_complete:
            return False
        return not any(
            s.day == info.day and lessons_overlap(s.start_time, s.duration_minutes, info.start_time, info.duration_minutes)
            for s in teacher.slots
        )

    # 8. Day / time disagreements between matched sides
    def _reconcile_schedule_fields(self):
        teacher_wins = self.policy.schedule_authority == Authority.TEACHER

        for student in self.students.values():
            for assignment in student.active():
                teacher = self.teachers.get(assignment.teacher_id)
                slot = teacher.slot(assignment.slot_id) if teacher else None
                if slot is None or slot.student_id != student.id:
                    continue
                info = assignment.schedule_info
                if not info.is_complete or info.matches_slot(slot):
                    continue

                issue = dict(
                    referenced_id=str(teacher.id), slot_id=slot.id,
                    locations=[f"teacher_assignments[{slot.id}].schedule_info", f"slots[{slot.id}]"]
                )
                same_timing = (
                    info.day == slot.day
                    and info.start_time == slot.start_time
                    and info.duration_minutes == slot.duration_minutes
                )
                if teacher_wins or same_timing:
                    assignment.schedule_info = ScheduleInfo.from_slot(slot)
                    assignment.updated_at = self.now
                    student.touch("teacher_assignments", f"copied schedule of slot {slot.id}")
                    self._issue(
                        IssueCategory.FIELD_MISMATCH, EntityType.STUDENT, student.id,
                        "Assignment schedule differs from the slot.",
                        resolution="assignment updated from slot", **issue
                    )
                    continue

                clash = any(
                    other.id != slot.id and other.day == info.day
                    and lessons_overlap(other.start_time, other.duration_minutes, info.start_time, info.duration_minutes)
                    for other in teacher.slots
                )
                if clash:
                    self._issue(
                        IssueCategory.FIELD_MISMATCH, EntityType.TEACHER, teacher.id,
                        "Assignment schedule differs from the slot and would overlap another slot.",
                        needs_review=True, **issue
                    )
                    continue

                slot.day = info.day
                slot.start_time = info.start_time
                slot.duration_minutes = info.duration_minutes
                slot.end_time = calculate_end_time(info.start_time, info.duration_minutes)
                slot.updated_at = self.now
                teacher.touch("slots", f"rescheduled slot {slot.id} from assignment")
                if not info.matches_slot(slot):
                    assignment.schedule_info = ScheduleInfo.from_slot(slot)
                    assignment.updated_at = self.now
                    student.touch("teacher_assignments", f"derived end time of slot {slot.id}")
                self._issue(
                    IssueCategory.FIELD_MISMATCH, EntityType.TEACHER, teacher.id,
                    "Slot schedule differs from the student's assignment.",
                    resolution="slot updated from assignment", **issue
                )

    # 9. Redundant id caches follow the edges
    def _rebuild_caches(self):
        holders: dict[UUID, set[str]] = {teacher_id: set() for teacher_id in self.teachers}
        for teacher in self.teachers.values():
            holders[teacher.id].update(str(s.student_id) for s in teacher.slots if s.student_id)
        for student in self.students.values():
            desired = {str(a.teacher_id) for a in student.active() if str(a.teacher_id) in self.teacher_keys}
            for tid in desired:
                holders[UUID(tid)].add(str(student.id))
            self._sync_cache(student, "teacher_ids", desired, EntityType.STUDENT)

        for teacher in self.teachers.values():
            self._sync_cache(teacher, "student_ids", holders[teacher.id], EntityType.TEACHER)

    def _sync_cache(self, state, column: str, desired: set[str], entity_type: EntityType):
        current = getattr(state, column)
        if set(current) == desired and len(current) == len(desired):
            return
        missing = sorted(desired - set(current))
        extra = sorted(set(current) - desired)
        setattr(state, column, _merge_ids(current, desired))
        state.touch(column, f"rebuilt {column} (+{len(missing)} / -{len(extra)})")
        self._issue(
            IssueCategory.MISSING_MIRROR, entity_type, state.id,
            f"{column} cache drifted from active relationships: missing {missing}, extra {extra}.",
            locations=[column], resolution="cache rebuilt"
        )

    def _build_plan(self) -> ReconciliationPlan:
        corrections = []
        for teacher in self.teachers.values():
            if not teacher.dirty_fields:
                continue
            counterparts = teacher.referenced | set(teacher.student_ids) | {str(s.student_id) for s in teacher.slots if s.student_id}
            corrections.append(PlannedCorrection(
                entity_type=EntityType.TEACHER,
                entity_id=teacher.id,
                expected_version=teacher.version,
                counterpart_ids=sorted(filter(None, (_to_uuid(i) for i in counterparts)), key=str),
                changes=teacher.changes,
                values=teacher.values()
            ))
        for student in self.students.values():
            if not student.dirty_fields:
                continue
            counterparts = student.referenced | set(student.teacher_ids) | {str(a.teacher_id) for a in student.active()}
            corrections.append(PlannedCorrection(
                entity_type=EntityType.STUDENT,
                entity_id=student.id,
                expected_version=student.version,
                counterpart_ids=sorted(filter(None, (_to_uuid(i) for i in counterparts)), key=str),
                changes=student.changes,
                values=student.values()
            ))
        return ReconciliationPlan(issues=self.issues, corrections=corrections)


def reconcile(
    teachers: list[TeacherSnapshot],
    students: list[StudentSnapshot],
    policy: Optional[RepairPolicy] = None,
    now: Optional[datetime] = None
) -> ReconciliationPlan:
    """
    Plans the minimal correction of every active teacher and student record.
    Inactive records are never corrected; references to them are orphans.
    """
    return _Planner(teachers, students, policy or RepairPolicy(), now or utcnow()).run()

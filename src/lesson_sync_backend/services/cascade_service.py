'''
Cascade Deletion Service

Removes a student and every reference to it in one transaction per attempt:
teacher slots and caches, orchestra and theory-lesson membership, rehearsal
attendance, bagrut and activity-attendance records, then the student itself,
and finally one audit row holding a snapshot that rollback_deletion restores.
'''
import asyncio
import time
from typing import Annotated, Any, Awaitable, Callable, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.config import settings
from ..common.exceptions import FatalError, LessonSyncError, NotFoundError, StateError, TransientStorageError
from ..common.logger import log
from ..database import models as db_models
from ..database.engine import get_session_factory, is_transient_storage_error
from ..models.cascade import (
    BatchCascadeRequest,
    CascadeJobRequest,
    CascadeOperation,
    CascadeOptions,
    CascadeResult,
    DeletionImpact,
    OrphanCleanupResult,
    OrphanFinding,
    RelatedRecordCounts,
    RollbackResult,
)
from ..models.enums import DeletionStatus, EntityType, JobType
from ..models.jobs import JobRecord
from ..models.schedule import dump_assignments, dump_slots, parse_assignments, parse_slots, utcnow
from .job_events import Subscription
from .job_processor import BackgroundJobProcessor, get_optional_job_processor
from .relationship_service import add_to_id_set, remove_from_id_set

ProgressCallback = Callable[[int, str], Awaitable[None]]

ARCHIVE_REASON_DELETED = "student_deleted"
ARCHIVE_REASON_ORPHANED = "orphaned_reference"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _student_document(student: db_models.Students) -> dict[str, Any]:
    return {
        "id": str(student.id),
        "first_name": student.first_name,
        "last_name": student.last_name,
        "is_active": student.is_active,
        "deletion_status": student.deletion_status,
        "deleted_at": _iso(student.deleted_at),
        "teacher_ids": list(student.teacher_ids or []),
        "teacher_assignments": list(student.teacher_assignments or []),
    }


def _bagrut_document(record: db_models.BagrutRecords) -> dict[str, Any]:
    return {
        "id": str(record.id),
        "student_id": str(record.student_id),
        "teacher_id": str(record.teacher_id) if record.teacher_id else None,
        "is_active": record.is_active,
        "final_grade": record.final_grade,
    }


class CascadeDeletionService:
    """
    Student removal across every collection that references it.
    Deterministic errors are raised at once; transient storage errors are
    retried with exponential backoff and end in FatalError.
    """
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_processor: Optional[BackgroundJobProcessor] = None,
        max_retries: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.session_factory = session_factory
        self.job_processor = job_processor
        self.max_retries = settings.CASCADE_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base_seconds = (
            settings.CASCADE_BACKOFF_BASE_SECONDS if backoff_base_seconds is None else backoff_base_seconds
        )
        self._sleep = sleep

    # --- 1. Impact ---

    @staticmethod
    async def _all(session: AsyncSession, model) -> list:
        return list((await session.execute(select(model))).scalars().all())

    async def _compute_impact(self, session: AsyncSession, student_id: UUID) -> DeletionImpact:
        student = await session.get(db_models.Students, student_id)
        if student is None:
            return DeletionImpact(student_id=student_id, student_exists=False, warnings=["Student not found."])

        key = str(student_id)
        counts = RelatedRecordCounts()
        for teacher in await self._all(session, db_models.Teachers):
            counts.teacher_slots += sum(1 for doc in (teacher.slots or []) if str(doc.get("student_id")) == key)
            if key in [str(i) for i in (teacher.student_ids or [])]:
                counts.teacher_references += 1
        counts.orchestras = sum(
            1 for o in await self._all(session, db_models.Orchestras) if key in [str(i) for i in (o.member_ids or [])]
        )
        counts.theory_lessons = sum(
            1 for t in await self._all(session, db_models.TheoryLessons) if key in [str(i) for i in (t.student_ids or [])]
        )
        counts.rehearsals = sum(
            1 for r in await self._all(session, db_models.Rehearsals)
            if any(str(entry.get("student_id")) == key and not entry.get("archived") for entry in (r.attendance or []))
        )
        bagrut = (await session.execute(
            select(db_models.BagrutRecords).where(
                db_models.BagrutRecords.student_id == student_id,
                db_models.BagrutRecords.is_active.is_(True)
            )
        )).scalars().all()
        counts.bagrut = len(bagrut)
        attendance = (await session.execute(
            select(db_models.ActivityAttendance).where(
                db_models.ActivityAttendance.student_id == student_id,
                db_models.ActivityAttendance.archived.is_(False)
            )
        )).scalars().all()
        counts.activity_attendance = len(attendance)

        warnings = []
        if student.deletion_status == DeletionStatus.DELETED.value:
            warnings.append("Student is already deleted.")
        elif student.deletion_status == DeletionStatus.PENDING_DELETION.value:
            warnings.append("Student is pending deletion.")
        if counts.bagrut:
            warnings.append(f"Student has {counts.bagrut} active bagrut record(s).")
        if counts.teacher_slots:
            warnings.append(f"{counts.teacher_slots} lesson slot(s) will be released.")

        return DeletionImpact(
            student_id=student_id,
            student_exists=True,
            student_active=bool(student.is_active) and student.deletion_status == DeletionStatus.ACTIVE.value,
            deletion_status=student.deletion_status,
            related_records=counts,
            total_references=counts.total,
            warnings=warnings
        )

    async def compute_impact(self, student_id: UUID) -> DeletionImpact:
        async with self.session_factory() as session:
            return await self._compute_impact(session, student_id)

    # --- 2. Cascade Steps ---
    # Each step mutates rows in the attempt's session, records what it needs
    # for rollback in `snapshot` and returns the operations it performed.

    async def _release_teacher_slots(self, session, student, options, snapshot, now) -> list[CascadeOperation]:
        key = str(student.id)
        released_slots = 0
        pulled = 0
        for teacher in await self._all(session, db_models.Teachers):
            in_cache = key in [str(i) for i in (teacher.student_ids or [])]
            if not in_cache and not any(str(doc.get("student_id")) == key for doc in (teacher.slots or [])):
                continue
            slots = parse_slots(teacher.slots)
            slot_ids = []
            for slot in slots:
                if slot.student_id == student.id:
                    slot.student_id = None
                    slot.is_available = True
                    slot.updated_at = now
                    slot_ids.append(str(slot.id))
            if slot_ids:
                teacher.slots = dump_slots(slots)
                released_slots += len(slot_ids)
            if in_cache:
                teacher.student_ids = remove_from_id_set(teacher.student_ids, student.id)
                pulled += 1
            snapshot["teachers"].append({"id": str(teacher.id), "slot_ids": slot_ids, "in_cache": in_cache})
        return [
            CascadeOperation(collection="teachers", operation="release_slots", affected_documents=released_slots),
            CascadeOperation(collection="teachers", operation="pull_student_ids", affected_documents=pulled),
        ]

    async def _remove_from_orchestras(self, session, student, options, snapshot, now) -> list[CascadeOperation]:
        key = str(student.id)
        for orchestra in await self._all(session, db_models.Orchestras):
            if key in [str(i) for i in (orchestra.member_ids or [])]:
                orchestra.member_ids = remove_from_id_set(orchestra.member_ids, student.id)
                snapshot["orchestras"].append(str(orchestra.id))
        return [CascadeOperation(collection="orchestras", operation="pull_member_ids", affected_documents=len(snapshot["orchestras"]))]

    async def _remove_from_theory_lessons(self, session, student, options, snapshot, now) -> list[CascadeOperation]:
        key = str(student.id)
        for lesson in await self._all(session, db_models.TheoryLessons):
            if key in [str(i) for i in (lesson.student_ids or [])]:
                lesson.student_ids = remove_from_id_set(lesson.student_ids, student.id)
                snapshot["theory_lessons"].append(str(lesson.id))
        return [CascadeOperation(collection="theory_lessons", operation="pull_student_ids", affected_documents=len(snapshot["theory_lessons"]))]

    async def _archive_rehearsal_attendance(self, session, student, options, snapshot, now) -> list[CascadeOperation]:
        key = str(student.id)
        for rehearsal in await self._all(session, db_models.Rehearsals):
            entries = [dict(entry) for entry in (rehearsal.attendance or [])]
            touched = False
            for entry in entries:
                if str(entry.get("student_id")) == key and not entry.get("archived"):
                    entry.update(archived=True, archived_reason=ARCHIVE_REASON_DELETED, archived_at=now.isoformat())
                    touched = True
            if touched:
                rehearsal.attendance = entries
                snapshot["rehearsals"].append(str(rehearsal.id))
        return [CascadeOperation(collection="rehearsals", operation="archive_attendance", affected_documents=len(snapshot["rehearsals"]))]

    async def _archive_bagrut(self, session, student, options, snapshot, now) -> list[CascadeOperation]:
        records = (await session.execute(
            select(db_models.BagrutRecords).where(
                db_models.BagrutRecords.student_id == student.id,
                db_models.BagrutRecords.is_active.is_(True)
            )
        )).scalars().all()
        for record in records:
            if options.preserve_academic:
                record.is_active = False
                record.archived_reason = ARCHIVE_REASON_DELETED
                record.archived_at = now
                snapshot["bagrut_archived"].append(str(record.id))
            else:
                snapshot["bagrut_deleted"].append(_bagrut_document(record))
                await session.delete(record)
        operation = "archive" if options.preserve_academic else "delete"
        return [CascadeOperation(collection="bagrut_records", operation=operation, affected_documents=len(records))]

    async def _archive_activity_attendance(self, session, student, options, snapshot, now) -> list[CascadeOperation]:
        records = (await session.execute(
            select(db_models.ActivityAttendance).where(
                db_models.ActivityAttendance.student_id == student.id,
                db_models.ActivityAttendance.archived.is_(False)
            )
        )).scalars().all()
        for record in records:
            record.archived = True
            record.archived_reason = ARCHIVE_REASON_DELETED
            record.archived_at = now
            snapshot["activity_attendance"].append(str(record.id))
        return [CascadeOperation(collection="activity_attendance", operation="archive", affected_documents=len(records))]

    async def _finalise_student(self, session, student, options, snapshot, now) -> list[CascadeOperation]:
        if options.hard_delete:
            await session.delete(student)
            return [CascadeOperation(collection="students", operation="delete", affected_documents=1)]

        assignments = parse_assignments(student.teacher_assignments)
        for assignment in assignments:
            if assignment.is_active:
                assignment.is_active = False
                assignment.end_date = now
                assignment.updated_at = now
        student.teacher_assignments = dump_assignments(assignments)
        student.teacher_ids = []
        student.is_active = False
        student.deletion_status = DeletionStatus.DELETED.value
        student.deleted_at = now
        return [CascadeOperation(collection="students", operation="soft_delete", affected_documents=1)]

    def _steps(self) -> list[tuple[str, Callable]]:
        return [
            ("teachers", self._release_teacher_slots),
            ("orchestras", self._remove_from_orchestras),
            ("theory_lessons", self._remove_from_theory_lessons),
            ("rehearsals", self._archive_rehearsal_attendance),
            ("bagrut_records", self._archive_bagrut),
            ("activity_attendance", self._archive_activity_attendance),
            ("students", self._finalise_student),
        ]

    # --- 3. Execution ---

    @staticmethod
    async def _report(progress: Optional[ProgressCallback], percentage: int, detail: str):
        if progress is not None:
            await progress(percentage, detail)

    async def _execute_once(
        self,
        student_id: UUID,
        options: CascadeOptions,
        progress: Optional[ProgressCallback]
    ) -> CascadeResult:
        now = utcnow()
        async with self.session_factory() as session, session.begin():
            student = await session.get(db_models.Students, student_id)
            if student is None:
                raise NotFoundError(f"Student {student_id} not found.")
            if student.deletion_status == DeletionStatus.DELETED.value:
                raise StateError(f"Student {student_id} is already deleted.")

            impact = await self._compute_impact(session, student_id)
            snapshot: dict[str, Any] = {
                "impact": impact.model_dump(mode="json"),
                "student": _student_document(student),
                "teachers": [],
                "orchestras": [],
                "theory_lessons": [],
                "rehearsals": [],
                "bagrut_archived": [],
                "bagrut_deleted": [],
                "activity_attendance": [],
            }
            await self._report(progress, 5, "impact computed")

            operations: list[CascadeOperation] = []
            steps = self._steps()
            for index, (name, step) in enumerate(steps, start=1):
                operations.extend(await step(session, student, options, snapshot, now))
                await self._report(progress, 5 + int(index * 85 / len(steps)), f"{name} updated")

            audit = db_models.DeletionAuditLogs(
                entity_type=EntityType.STUDENT.value,
                entity_id=student_id,
                deletion_type="hard" if options.hard_delete else "soft",
                cascade_operations=[op.model_dump() for op in operations],
                snapshot=snapshot,
                timestamp=now,
                actor_id=options.actor_id,
                reason=options.reason
            )
            session.add(audit)
            await session.flush()
            audit_id = audit.id

        return CascadeResult(
            student_id=student_id,
            audit_log_id=audit_id,
            deletion_type="hard" if options.hard_delete else "soft",
            operations=operations,
            completed_at=now
        )

    async def execute(
        self,
        student_id: UUID,
        options: Optional[CascadeOptions] = None,
        progress: Optional[ProgressCallback] = None
    ) -> CascadeResult:
        """
        Runs the cascade for one student, all or nothing.
        Raises NotFoundError / StateError at once, FatalError once retries are exhausted.
        """
        options = options or CascadeOptions()
        log.info(f"Cascade deletion of student {student_id} (hard={options.hard_delete}, preserve_academic={options.preserve_academic}).")
        started = time.perf_counter()
        attempt = 0
        while True:
            try:
                result = await self._execute_once(student_id, options, progress)
                break
            except TransientStorageError as e:
                error = e
            except LessonSyncError:
                raise
            except Exception as e:
                if not is_transient_storage_error(e):
                    log.error(f"Cascade deletion of student {student_id} failed: {e}", exc_info=True)
                    await self._revert_pending(student_id)
                    raise
                error = e

            if attempt >= self.max_retries:
                log.error(f"Cascade deletion of student {student_id} gave up after {attempt + 1} attempts: {error}")
                await self._revert_pending(student_id)
                raise FatalError(f"Cascade deletion of student {student_id} failed after {attempt + 1} attempts: {error}") from error
            delay = self.backoff_base_seconds * (2 ** attempt)
            log.warning(f"Transient failure deleting student {student_id} (attempt {attempt + 1}), retrying in {delay:.2f}s: {error}")
            await self._sleep(delay)
            attempt += 1

        result.attempts = attempt + 1
        result.execution_ms = (time.perf_counter() - started) * 1000
        await self._report(progress, 100, "completed")
        log.info(f"Student {student_id} deleted in {result.attempts} attempt(s); audit {result.audit_log_id}.")
        return result

    async def cascade_delete(
        self,
        entity_type: EntityType,
        entity_id: UUID,
        options: Optional[CascadeOptions] = None,
        progress: Optional[ProgressCallback] = None
    ) -> CascadeResult:
        if EntityType(entity_type) != EntityType.STUDENT:
            raise StateError(f"Cascade deletion is not supported for entity type '{entity_type}'.")
        return await self.execute(entity_id, options, progress)

    async def _revert_pending(self, student_id: UUID):
        """Puts a student marked pending_deletion back to active."""
        try:
            async with self.session_factory() as session, session.begin():
                student = await session.get(db_models.Students, student_id)
                if student is not None and student.deletion_status == DeletionStatus.PENDING_DELETION.value:
                    student.deletion_status = DeletionStatus.ACTIVE.value
                    log.info(f"Reverted pending deletion of student {student_id}.")
        except Exception as e:
            log.error(f"Could not revert pending deletion of student {student_id}: {e}", exc_info=True)

    # --- 4. Rollback ---

    async def rollback_deletion(self, audit_log_id: UUID, actor_id: Optional[UUID] = None) -> RollbackResult:
        """
        Restores a deleted student from the audit snapshot. Slots taken by
        another student since the deletion are not reclaimed; their
        assignments stay inactive.
        """
        log.info(f"Rolling back deletion {audit_log_id} (actor {actor_id}).")
        now = utcnow()
        restored = {
            "students": 0, "teacher_slots": 0, "teacher_references": 0, "orchestras": 0,
            "theory_lessons": 0, "rehearsals": 0, "bagrut_records": 0, "activity_attendance": 0,
        }
        skipped: list[UUID] = []

        try:
            async with self.session_factory() as session, session.begin():
                audit = await session.get(db_models.DeletionAuditLogs, audit_log_id)
                if audit is None:
                    raise NotFoundError(f"Deletion audit log {audit_log_id} not found.")
                if audit.rolled_back_at is not None:
                    raise StateError(f"Deletion {audit_log_id} was already rolled back.")
                snapshot = audit.snapshot or {}
                document = snapshot.get("student")
                if not document:
                    raise StateError(f"Deletion {audit_log_id} has no snapshot to restore from.")

                student_id = audit.entity_id
                key = str(student_id)
                student = await session.get(db_models.Students, student_id)
                if student is None:
                    student = db_models.Students(id=student_id, first_name=document.get("first_name"), last_name=document.get("last_name"))
                    session.add(student)
                student.is_active = True
                student.deletion_status = DeletionStatus.ACTIVE.value
                student.deleted_at = None
                assignments = parse_assignments(document.get("teacher_assignments"))
                restored["students"] = 1

                # Slots and teacher caches
                reclaimed: set[tuple[str, str]] = set()
                for entry in snapshot.get("teachers", []):
                    teacher = await session.get(db_models.Teachers, UUID(entry["id"]))
                    if teacher is None:
                        skipped.extend(UUID(slot_id) for slot_id in entry.get("slot_ids", []))
                        continue
                    slots = parse_slots(teacher.slots)
                    by_id = {str(slot.id): slot for slot in slots}
                    for slot_id in entry.get("slot_ids", []):
                        slot = by_id.get(slot_id)
                        if slot is None or slot.student_id is not None:
                            skipped.append(UUID(slot_id))
                            continue
                        slot.student_id = student_id
                        slot.is_available = False
                        slot.updated_at = now
                        reclaimed.add((entry["id"], slot_id))
                        restored["teacher_slots"] += 1
                    teacher.slots = dump_slots(slots)
                    if entry.get("in_cache") or any(t == entry["id"] for t, _ in reclaimed):
                        teacher.student_ids = add_to_id_set(teacher.student_ids, student_id)
                        restored["teacher_references"] += 1

                for assignment in assignments:
                    if assignment.is_active and (str(assignment.teacher_id), str(assignment.slot_id)) not in reclaimed:
                        assignment.is_active = False
                        assignment.end_date = now
                        assignment.updated_at = now
                student.teacher_assignments = dump_assignments(assignments)
                student.teacher_ids = sorted({str(a.teacher_id) for a in assignments if a.is_active})

                for orchestra_id in snapshot.get("orchestras", []):
                    orchestra = await session.get(db_models.Orchestras, UUID(orchestra_id))
                    if orchestra is not None:
                        orchestra.member_ids = add_to_id_set(orchestra.member_ids, student_id)
                        restored["orchestras"] += 1

                for lesson_id in snapshot.get("theory_lessons", []):
                    lesson = await session.get(db_models.TheoryLessons, UUID(lesson_id))
                    if lesson is not None:
                        lesson.student_ids = add_to_id_set(lesson.student_ids, student_id)
                        restored["theory_lessons"] += 1

                for rehearsal_id in snapshot.get("rehearsals", []):
                    rehearsal = await session.get(db_models.Rehearsals, UUID(rehearsal_id))
                    if rehearsal is None:
                        continue
                    entries = [dict(entry) for entry in (rehearsal.attendance or [])]
                    for entry in entries:
                        if str(entry.get("student_id")) == key and entry.get("archived_reason") == ARCHIVE_REASON_DELETED:
                            for field in ("archived", "archived_reason", "archived_at"):
                                entry.pop(field, None)
                    rehearsal.attendance = entries
                    restored["rehearsals"] += 1

                for record_id in snapshot.get("bagrut_archived", []):
                    record = await session.get(db_models.BagrutRecords, UUID(record_id))
                    if record is not None:
                        record.is_active = True
                        record.archived_reason = None
                        record.archived_at = None
                        restored["bagrut_records"] += 1
                for doc in snapshot.get("bagrut_deleted", []):
                    session.add(db_models.BagrutRecords(
                        id=UUID(doc["id"]),
                        student_id=student_id,
                        teacher_id=UUID(doc["teacher_id"]) if doc.get("teacher_id") else None,
                        is_active=True,
                        final_grade=doc.get("final_grade")
                    ))
                    restored["bagrut_records"] += 1

                for record_id in snapshot.get("activity_attendance", []):
                    record = await session.get(db_models.ActivityAttendance, UUID(record_id))
                    if record is not None:
                        record.archived = False
                        record.archived_reason = None
                        record.archived_at = None
                        restored["activity_attendance"] += 1

                audit.rolled_back_at = now

        except LessonSyncError:
            raise
        except Exception as e:
            log.error(f"Error rolling back deletion {audit_log_id}: {e}", exc_info=True)
            raise

        log.info(f"Deletion {audit_log_id} rolled back: {restored}, {len(skipped)} slot(s) not reclaimed.")
        return RollbackResult(
            audit_log_id=audit_log_id,
            student_id=student_id,
            restored=restored,
            skipped_slot_ids=skipped,
            restored_at=now
        )

    # --- 5. Orphan Cleanup ---

    async def cleanup_orphaned_references(self, dry_run: bool = True) -> OrphanCleanupResult:
        """
        Removes references to students that no longer exist or are deleted.
        With dry_run the findings are returned and nothing is written.
        """
        log.info(f"Orphaned reference cleanup (dry_run={dry_run}).")
        now = utcnow()
        findings: list[OrphanFinding] = []
        cleaned: dict[str, int] = {}

        def _found(collection: str, record_id: UUID, orphaned: list[str]):
            findings.append(OrphanFinding(collection=collection, record_id=record_id, orphaned_ids=orphaned))
            cleaned[collection] = cleaned.get(collection, 0) + (0 if dry_run else len(orphaned))

        try:
            async with self.session_factory() as session, session.begin():
                rows = (await session.execute(
                    select(db_models.Students.id).where(
                        db_models.Students.is_active.is_(True),
                        db_models.Students.deletion_status != DeletionStatus.DELETED.value
                    )
                )).scalars().all()
                valid = {str(student_id) for student_id in rows}

                for teacher in await self._all(session, db_models.Teachers):
                    cache_orphans = [i for i in dict.fromkeys(str(i) for i in (teacher.student_ids or [])) if i not in valid]
                    slot_orphans = sorted({
                        str(doc.get("student_id")) for doc in (teacher.slots or [])
                        if doc.get("student_id") and str(doc.get("student_id")) not in valid
                    })
                    orphaned = list(dict.fromkeys(cache_orphans + slot_orphans))
                    if not orphaned:
                        continue
                    _found("teachers", teacher.id, orphaned)
                    if dry_run:
                        continue
                    teacher.student_ids = [i for i in (str(x) for x in (teacher.student_ids or [])) if i in valid]
                    if slot_orphans:
                        slots = parse_slots(teacher.slots)
                        for slot in slots:
                            if slot.student_id is not None and str(slot.student_id) not in valid:
                                slot.student_id = None
                                slot.is_available = True
                                slot.updated_at = now
                        teacher.slots = dump_slots(slots)

                for model, column, collection in (
                    (db_models.Orchestras, "member_ids", "orchestras"),
                    (db_models.TheoryLessons, "student_ids", "theory_lessons"),
                ):
                    for row in await self._all(session, model):
                        ids = [str(i) for i in (getattr(row, column) or [])]
                        orphaned = [i for i in dict.fromkeys(ids) if i not in valid]
                        if not orphaned:
                            continue
                        _found(collection, row.id, orphaned)
                        if not dry_run:
                            setattr(row, column, [i for i in ids if i in valid])

                for rehearsal in await self._all(session, db_models.Rehearsals):
                    entries = [dict(entry) for entry in (rehearsal.attendance or [])]
                    orphaned = [
                        entry for entry in entries
                        if not entry.get("archived") and str(entry.get("student_id")) not in valid
                    ]
                    if not orphaned:
                        continue
                    _found("rehearsals", rehearsal.id, list(dict.fromkeys(str(e.get("student_id")) for e in orphaned)))
                    if not dry_run:
                        for entry in orphaned:
                            entry.update(archived=True, archived_reason=ARCHIVE_REASON_ORPHANED, archived_at=now.isoformat())
                        rehearsal.attendance = entries

                bagrut = (await session.execute(
                    select(db_models.BagrutRecords).where(db_models.BagrutRecords.is_active.is_(True))
                )).scalars().all()
                for record in bagrut:
                    if str(record.student_id) in valid:
                        continue
                    _found("bagrut_records", record.id, [str(record.student_id)])
                    if not dry_run:
                        record.is_active = False
                        record.archived_reason = ARCHIVE_REASON_ORPHANED
                        record.archived_at = now

                attendance = (await session.execute(
                    select(db_models.ActivityAttendance).where(db_models.ActivityAttendance.archived.is_(False))
                )).scalars().all()
                for record in attendance:
                    if str(record.student_id) in valid:
                        continue
                    _found("activity_attendance", record.id, [str(record.student_id)])
                    if not dry_run:
                        record.archived = True
                        record.archived_reason = ARCHIVE_REASON_ORPHANED
                        record.archived_at = now

        except Exception as e:
            log.error(f"Error during orphaned reference cleanup: {e}", exc_info=True)
            raise

        total = sum(len(f.orphaned_ids) for f in findings)
        log.info(f"Orphaned reference cleanup found {total} reference(s) in {len(findings)} record(s).")
        return OrphanCleanupResult(dry_run=dry_run, total_orphaned_references=total, findings=findings, cleaned=cleaned)

    # --- 6. Asynchronous Path ---

    def _require_processor(self) -> BackgroundJobProcessor:
        if self.job_processor is None:
            raise StateError("Background job processor is not running.")
        return self.job_processor

    async def _mark_pending(self, student_id: UUID):
        async with self.session_factory() as session, session.begin():
            student = await session.get(db_models.Students, student_id)
            if student is None:
                raise NotFoundError(f"Student {student_id} not found.")
            if student.deletion_status == DeletionStatus.DELETED.value:
                raise StateError(f"Student {student_id} is already deleted.")
            if student.deletion_status == DeletionStatus.PENDING_DELETION.value:
                raise StateError(f"Student {student_id} is already pending deletion.")
            student.deletion_status = DeletionStatus.PENDING_DELETION.value

    async def enqueue_cascade_delete(self, request: CascadeJobRequest) -> JobRecord:
        """Marks the student pending_deletion and queues a cascade job for it."""
        processor = self._require_processor()
        log.info(f"Queueing cascade deletion of student {request.student_id} ({request.priority.value}).")
        await self._mark_pending(request.student_id)
        try:
            return await processor.enqueue(
                JobType.CASCADE_DELETION,
                payload=request.model_dump(mode="json"),
                priority=request.priority,
                entity_id=str(request.student_id)
            )
        except Exception:
            await self._revert_pending(request.student_id)
            raise

    async def enqueue_batch_cascade_delete(self, request: BatchCascadeRequest) -> JobRecord:
        """Queues one job that deletes several students one after another."""
        processor = self._require_processor()
        log.info(f"Queueing batch cascade deletion of {len(request.student_ids)} students.")
        return await processor.enqueue(
            JobType.BATCH_CASCADE_DELETION,
            payload=request.model_dump(mode="json"),
            priority=request.priority
        )

    def get_job_status(self, job_id: UUID) -> JobRecord:
        return self._require_processor().get_job_status(job_id)

    def subscribe_to_job_events(self, job_id: Optional[UUID] = None, entity_id: Optional[UUID] = None) -> Subscription:
        """Subscribes to a job's or a student's progress / completion events."""
        return self._require_processor().subscribe(
            job_id=job_id,
            entity_id=str(entity_id) if entity_id is not None else None
        )

    async def cancel_cascade_job(self, job_id: UUID) -> JobRecord:
        """Cancels a queued cascade job and reverts the pending_deletion mark."""
        processor = self._require_processor()
        job = await processor.cancel(job_id)
        if job.job_type == JobType.CASCADE_DELETION and job.entity_id:
            await self._revert_pending(UUID(job.entity_id))
        return job


def get_cascade_service(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    job_processor: Annotated[Optional[BackgroundJobProcessor], Depends(get_optional_job_processor)]
) -> CascadeDeletionService:
    """FastAPI dependency: the cascade service bound to the app's session factory and processor."""
    return CascadeDeletionService(session_factory, job_processor=job_processor)

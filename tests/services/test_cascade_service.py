import pytest
import uuid
from datetime import date
from pprint import pprint
from sqlalchemy import event, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_sync_backend.common.exceptions import FatalError, NotFoundError, StateError
from lesson_sync_backend.database import models as db_models
from lesson_sync_backend.models.cascade import CascadeOptions
from lesson_sync_backend.models.enums import DayOfWeek, DeletionStatus, EntityType
from lesson_sync_backend.models.schedule import parse_assignments, parse_slots
from lesson_sync_backend.services.cascade_service import (
    ARCHIVE_REASON_DELETED,
    ARCHIVE_REASON_ORPHANED,
    CascadeDeletionService,
)

from tests.database import factories


@pytest.fixture(scope="function")
async def enrolled_student(db_session: AsyncSession) -> dict:
    """
    A student referenced from every collection the cascade touches,
    next to a classmate that must come through untouched.
    """
    student = factories.StudentFactory.create()
    classmate = factories.StudentFactory.create()
    teacher = factories.TeacherFactory.create()
    other_teacher = factories.TeacherFactory.create()

    slot = factories.make_slot(DayOfWeek.MONDAY, "14:00", 45, student_id=student.id)
    classmate_slot = factories.make_slot(DayOfWeek.MONDAY, "15:00", 45, student_id=classmate.id)
    factories.link(teacher, student, slot)
    factories.link(teacher, classmate, classmate_slot)
    # only the cache still points at the student here
    other_teacher.student_ids = [str(student.id)]

    orchestra = factories.OrchestraFactory.create(member_ids=[str(student.id), str(classmate.id)])
    lesson = factories.TheoryLessonFactory.create(student_ids=[str(student.id)])
    rehearsal = factories.RehearsalFactory.create(
        orchestra_id=orchestra.id,
        date=date(2024, 3, 1),
        attendance=[
            {"student_id": str(student.id), "status": "present"},
            {"student_id": str(classmate.id), "status": "absent"},
        ]
    )
    bagrut = factories.BagrutFactory.create(student_id=student.id, teacher_id=teacher.id)
    attendance = factories.ActivityAttendanceFactory.create(student_id=student.id, teacher_id=teacher.id)
    await db_session.commit()
    return {
        "student": student, "classmate": classmate, "teacher": teacher, "other_teacher": other_teacher,
        "slot": slot, "orchestra": orchestra, "lesson": lesson, "rehearsal": rehearsal,
        "bagrut": bagrut, "attendance": attendance,
    }


async def _stored_state(fresh_session, enrolled: dict) -> dict:
    """Every column the cascade may write, read back from the store."""
    async with fresh_session() as session:
        student = await session.get(db_models.Students, enrolled["student"].id)
        classmate = await session.get(db_models.Students, enrolled["classmate"].id)
        teacher = await session.get(db_models.Teachers, enrolled["teacher"].id)
        other_teacher = await session.get(db_models.Teachers, enrolled["other_teacher"].id)
        orchestra = await session.get(db_models.Orchestras, enrolled["orchestra"].id)
        lesson = await session.get(db_models.TheoryLessons, enrolled["lesson"].id)
        rehearsal = await session.get(db_models.Rehearsals, enrolled["rehearsal"].id)
        bagrut = await session.get(db_models.BagrutRecords, enrolled["bagrut"].id)
        attendance = await session.get(db_models.ActivityAttendance, enrolled["attendance"].id)
        return {
            "students": [
                (row.version, row.is_active, row.deletion_status, row.deleted_at, row.teacher_ids, row.teacher_assignments)
                for row in (student, classmate)
            ],
            "teachers": [(row.version, row.slots, row.student_ids) for row in (teacher, other_teacher)],
            "orchestra": orchestra.member_ids,
            "theory_lesson": lesson.student_ids,
            "rehearsal": rehearsal.attendance,
            "bagrut": (bagrut.is_active, bagrut.archived_reason, bagrut.archived_at),
            "activity_attendance": (attendance.archived, attendance.archived_reason, attendance.archived_at),
        }


@pytest.mark.anyio
class TestCascadeImpact:

    async def test_compute_impact_counts_every_collection(
        self,
        cascade_service: CascadeDeletionService,
        enrolled_student: dict
    ):
        impact = await cascade_service.compute_impact(enrolled_student["student"].id)
        pprint(impact.model_dump(mode="json"))

        counts = impact.related_records
        assert impact.student_exists is True
        assert impact.student_active is True
        assert counts.teacher_slots == 1
        assert counts.teacher_references == 2
        assert counts.orchestras == 1
        assert counts.theory_lessons == 1
        assert counts.rehearsals == 1
        assert counts.bagrut == 1
        assert counts.activity_attendance == 1
        assert impact.total_references == 8

    async def test_compute_impact_unknown_student(self, cascade_service: CascadeDeletionService, db_engine):
        impact = await cascade_service.compute_impact(uuid.uuid4())
        assert impact.student_exists is False
        assert impact.total_references == 0


@pytest.mark.anyio
class TestCascadeExecute:

    async def test_soft_delete_cleans_every_reference(
        self,
        cascade_service: CascadeDeletionService,
        fresh_session,
        enrolled_student: dict
    ):
        student = enrolled_student["student"]
        classmate = enrolled_student["classmate"]
        progress: list[int] = []

        async def on_progress(percentage: int, detail: str):
            progress.append(percentage)

        result = await cascade_service.execute(student.id, CascadeOptions(reason="left the school"), progress=on_progress)

        assert result.deletion_type == "soft"
        assert result.attempts == 1
        assert progress[0] == 5 and progress[-1] == 100
        assert progress == sorted(progress)
        assert "orchestras" in result.affected_collections

        async with fresh_session() as session:
            row = await session.get(db_models.Students, student.id)
            assert row.deletion_status == DeletionStatus.DELETED.value
            assert row.is_active is False
            assert row.deleted_at is not None
            assert row.teacher_ids == []
            assert all(not a.is_active for a in parse_assignments(row.teacher_assignments))

            teacher = await session.get(db_models.Teachers, enrolled_student["teacher"].id)
            slots = {s.id: s for s in parse_slots(teacher.slots)}
            assert slots[enrolled_student["slot"].id].student_id is None
            assert slots[enrolled_student["slot"].id].is_available is True
            assert teacher.student_ids == [str(classmate.id)]
            other_teacher = await session.get(db_models.Teachers, enrolled_student["other_teacher"].id)
            assert other_teacher.student_ids == []

            orchestra = await session.get(db_models.Orchestras, enrolled_student["orchestra"].id)
            assert orchestra.member_ids == [str(classmate.id)]
            lesson = await session.get(db_models.TheoryLessons, enrolled_student["lesson"].id)
            assert lesson.student_ids == []

            rehearsal = await session.get(db_models.Rehearsals, enrolled_student["rehearsal"].id)
            entries = {e["student_id"]: e for e in rehearsal.attendance}
            assert entries[str(student.id)]["archived"] is True
            assert entries[str(student.id)]["archived_reason"] == ARCHIVE_REASON_DELETED
            assert "archived" not in entries[str(classmate.id)]

            bagrut = await session.get(db_models.BagrutRecords, enrolled_student["bagrut"].id)
            assert bagrut.is_active is False
            assert bagrut.archived_reason == ARCHIVE_REASON_DELETED
            attendance = await session.get(db_models.ActivityAttendance, enrolled_student["attendance"].id)
            assert attendance.archived is True

            audit = await session.get(db_models.DeletionAuditLogs, result.audit_log_id)
            assert audit.entity_id == student.id
            assert audit.deletion_type == "soft"
            assert audit.reason == "left the school"
            assert audit.snapshot["student"]["id"] == str(student.id)
            assert len(audit.cascade_operations) == len(result.operations)

    async def test_hard_delete_without_preserving_academic_records(
        self,
        cascade_service: CascadeDeletionService,
        fresh_session,
        enrolled_student: dict
    ):
        student = enrolled_student["student"]

        result = await cascade_service.execute(
            student.id, CascadeOptions(hard_delete=True, preserve_academic=False)
        )

        assert result.deletion_type == "hard"
        async with fresh_session() as session:
            assert await session.get(db_models.Students, student.id) is None
            assert await session.get(db_models.BagrutRecords, enrolled_student["bagrut"].id) is None

    @pytest.mark.parametrize("failing_step", [
        "_release_teacher_slots",
        "_remove_from_orchestras",
        "_remove_from_theory_lessons",
        "_archive_rehearsal_attendance",
        "_archive_bagrut",
        "_archive_activity_attendance",
        "_finalise_student",
        "audit_log",
    ])
    async def test_failing_step_leaves_nothing_behind(
        self,
        cascade_service: CascadeDeletionService,
        fresh_session,
        enrolled_student: dict,
        monkeypatch,
        failing_step: str
    ):
        """A deterministic failure at any point, the audit insert included, rolls back every earlier step."""
        student = enrolled_student["student"]
        before = await _stored_state(fresh_session, enrolled_student)

        def explode(*args):
            raise ValueError(f"{failing_step} exploded")

        async def broken_step(session, student, options, snapshot, now):
            explode()

        if failing_step == "audit_log":
            event.listen(db_models.DeletionAuditLogs, "before_insert", explode)
        else:
            monkeypatch.setattr(cascade_service, failing_step, broken_step)
        try:
            with pytest.raises(ValueError):
                await cascade_service.execute(student.id)
        finally:
            if failing_step == "audit_log":
                event.remove(db_models.DeletionAuditLogs, "before_insert", explode)

        assert await _stored_state(fresh_session, enrolled_student) == before
        async with fresh_session() as session:
            audits = (await session.execute(select(db_models.DeletionAuditLogs))).scalars().all()
            assert audits == []

    async def test_transient_failure_is_retried(
        self,
        cascade_service: CascadeDeletionService,
        recorded_sleeps: list[float],
        enrolled_student: dict,
        monkeypatch
    ):
        student = enrolled_student["student"]
        real_step = cascade_service._remove_from_orchestras
        calls = {"count": 0}

        async def flaky_step(*args):
            calls["count"] += 1
            if calls["count"] == 1:
                raise OperationalError("UPDATE orchestras", {}, Exception("database is locked"))
            return await real_step(*args)

        monkeypatch.setattr(cascade_service, "_remove_from_orchestras", flaky_step)

        result = await cascade_service.execute(student.id)

        assert result.attempts == 2
        assert recorded_sleeps == [0.5]

    async def test_retries_exhausted_is_fatal(
        self,
        cascade_service: CascadeDeletionService,
        recorded_sleeps: list[float],
        fresh_session,
        enrolled_student: dict,
        monkeypatch
    ):
        student = enrolled_student["student"]

        async def always_locked(*args):
            raise OperationalError("UPDATE theory_lessons", {}, Exception("database is locked"))

        monkeypatch.setattr(cascade_service, "_remove_from_theory_lessons", always_locked)

        with pytest.raises(FatalError):
            await cascade_service.execute(student.id)

        assert recorded_sleeps == [0.5, 1.0, 2.0]
        async with fresh_session() as session:
            row = await session.get(db_models.Students, student.id)
            assert row.deletion_status == DeletionStatus.ACTIVE.value

    async def test_unknown_student(self, cascade_service: CascadeDeletionService, db_engine):
        with pytest.raises(NotFoundError):
            await cascade_service.execute(uuid.uuid4())

    async def test_already_deleted_student(
        self,
        cascade_service: CascadeDeletionService,
        enrolled_student: dict
    ):
        await cascade_service.execute(enrolled_student["student"].id)
        with pytest.raises(StateError):
            await cascade_service.execute(enrolled_student["student"].id)

    async def test_cascade_delete_only_supports_students(
        self,
        cascade_service: CascadeDeletionService,
        enrolled_student: dict
    ):
        with pytest.raises(StateError):
            await cascade_service.cascade_delete(EntityType.TEACHER, enrolled_student["teacher"].id)

        result = await cascade_service.cascade_delete(EntityType.STUDENT, enrolled_student["student"].id)
        assert result.student_id == enrolled_student["student"].id


@pytest.mark.anyio
class TestCascadeRollback:

    async def test_rollback_restores_the_student(
        self,
        cascade_service: CascadeDeletionService,
        fresh_session,
        enrolled_student: dict
    ):
        student = enrolled_student["student"]
        deletion = await cascade_service.execute(student.id)

        result = await cascade_service.rollback_deletion(deletion.audit_log_id)
        pprint(result.model_dump(mode="json"))

        assert result.restored["teacher_slots"] == 1
        assert result.skipped_slot_ids == []
        async with fresh_session() as session:
            row = await session.get(db_models.Students, student.id)
            assert row.deletion_status == DeletionStatus.ACTIVE.value
            assert row.is_active is True
            assert row.teacher_ids == [str(enrolled_student["teacher"].id)]
            assert [a.is_active for a in parse_assignments(row.teacher_assignments)] == [True]

            teacher = await session.get(db_models.Teachers, enrolled_student["teacher"].id)
            slot = next(s for s in parse_slots(teacher.slots) if s.id == enrolled_student["slot"].id)
            assert slot.student_id == student.id
            assert str(student.id) in teacher.student_ids

            orchestra = await session.get(db_models.Orchestras, enrolled_student["orchestra"].id)
            assert str(student.id) in orchestra.member_ids
            rehearsal = await session.get(db_models.Rehearsals, enrolled_student["rehearsal"].id)
            assert all("archived" not in e for e in rehearsal.attendance)
            bagrut = await session.get(db_models.BagrutRecords, enrolled_student["bagrut"].id)
            assert bagrut.is_active is True

            audit = await session.get(db_models.DeletionAuditLogs, deletion.audit_log_id)
            assert audit.rolled_back_at is not None

    async def test_rollback_skips_slot_taken_since(
        self,
        cascade_service: CascadeDeletionService,
        fresh_session,
        enrolled_student: dict
    ):
        student = enrolled_student["student"]
        slot_id = enrolled_student["slot"].id
        deletion = await cascade_service.execute(student.id)

        newcomer_id = uuid.uuid4()
        async with fresh_session() as session, session.begin():
            teacher = await session.get(db_models.Teachers, enrolled_student["teacher"].id)
            slots = parse_slots(teacher.slots)
            for slot in slots:
                if slot.id == slot_id:
                    slot.student_id = newcomer_id
                    slot.is_available = False
            teacher.slots = [s.to_document() for s in slots]

        result = await cascade_service.rollback_deletion(deletion.audit_log_id)

        assert result.skipped_slot_ids == [slot_id]
        async with fresh_session() as session:
            row = await session.get(db_models.Students, student.id)
            assert row.deletion_status == DeletionStatus.ACTIVE.value
            assert row.teacher_ids == []
            assert all(not a.is_active for a in parse_assignments(row.teacher_assignments))
            teacher = await session.get(db_models.Teachers, enrolled_student["teacher"].id)
            slot = next(s for s in parse_slots(teacher.slots) if s.id == slot_id)
            assert slot.student_id == newcomer_id

    async def test_rollback_after_hard_delete_recreates_records(
        self,
        cascade_service: CascadeDeletionService,
        fresh_session,
        enrolled_student: dict
    ):
        student = enrolled_student["student"]
        deletion = await cascade_service.execute(student.id, CascadeOptions(hard_delete=True, preserve_academic=False))

        await cascade_service.rollback_deletion(deletion.audit_log_id)

        async with fresh_session() as session:
            row = await session.get(db_models.Students, student.id)
            assert row is not None
            assert row.first_name == student.first_name
            bagrut = await session.get(db_models.BagrutRecords, enrolled_student["bagrut"].id)
            assert bagrut is not None and bagrut.final_grade == 95

    async def test_rollback_twice_is_rejected(
        self,
        cascade_service: CascadeDeletionService,
        enrolled_student: dict
    ):
        deletion = await cascade_service.execute(enrolled_student["student"].id)
        await cascade_service.rollback_deletion(deletion.audit_log_id)
        with pytest.raises(StateError):
            await cascade_service.rollback_deletion(deletion.audit_log_id)

    async def test_rollback_unknown_audit(self, cascade_service: CascadeDeletionService, db_engine):
        with pytest.raises(NotFoundError):
            await cascade_service.rollback_deletion(uuid.uuid4())


@pytest.mark.anyio
class TestOrphanCleanup:

    async def test_cleanup_finds_and_removes_orphans(
        self,
        cascade_service: CascadeDeletionService,
        fresh_session,
        db_session: AsyncSession,
        test_student_orm: db_models.Students
    ):
        ghost = str(uuid.uuid4())
        teacher = factories.TeacherFactory.create(
            student_ids=[str(test_student_orm.id), ghost],
            slots=[factories.make_slot(student_id=uuid.UUID(ghost)).to_document()]
        )
        orchestra = factories.OrchestraFactory.create(member_ids=[ghost, str(test_student_orm.id)])
        bagrut = factories.BagrutFactory.create(student_id=uuid.UUID(ghost))
        await db_session.commit()

        preview = await cascade_service.cleanup_orphaned_references(dry_run=True)
        assert preview.dry_run is True
        assert preview.total_orphaned_references == 3
        assert {f.collection for f in preview.findings} == {"teachers", "orchestras", "bagrut_records"}

        result = await cascade_service.cleanup_orphaned_references(dry_run=False)
        assert result.cleaned["teachers"] == 1

        async with fresh_session() as session:
            row = await session.get(db_models.Teachers, teacher.id)
            assert row.student_ids == [str(test_student_orm.id)]
            assert parse_slots(row.slots)[0].student_id is None
            row = await session.get(db_models.Orchestras, orchestra.id)
            assert row.member_ids == [str(test_student_orm.id)]
            row = await session.get(db_models.BagrutRecords, bagrut.id)
            assert row.is_active is False
            assert row.archived_reason == ARCHIVE_REASON_ORPHANED

        again = await cascade_service.cleanup_orphaned_references(dry_run=True)
        assert again.total_orphaned_references == 0

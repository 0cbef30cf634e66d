import pytest
import uuid
from pprint import pprint
from sqlalchemy.ext.asyncio import AsyncSession

from lesson_sync_backend.database import models as db_models
from lesson_sync_backend.models.consistency import RepairPolicy
from lesson_sync_backend.models.enums import Authority, DayOfWeek, EntityType, IssueCategory
from lesson_sync_backend.models.schedule import parse_assignments, parse_slots
from lesson_sync_backend.services.consistency_service import ConsistencyService

from tests.database import factories


@pytest.fixture(scope="function")
async def orphaned_teacher(db_session: AsyncSession) -> tuple[db_models.Teachers, uuid.UUID, dict]:
    """A teacher whose Monday slot and cache still reference a deleted student."""
    deleted = factories.StudentFactory.create(is_active=False, deletion_status="deleted")
    held = factories.make_slot(DayOfWeek.MONDAY, "14:00", 45, student_id=deleted.id)
    untouched = factories.make_slot(DayOfWeek.WEDNESDAY, "10:00", 30)
    teacher = factories.TeacherFactory.create(
        slots=[held.to_document(), untouched.to_document()],
        student_ids=[str(deleted.id)]
    )
    await db_session.commit()
    return teacher, deleted.id, untouched.to_document()


@pytest.mark.anyio
class TestConsistencyServiceDetect:

    async def test_clean_data_reports_nothing(
        self,
        consistency_service: ConsistencyService,
        db_session: AsyncSession
    ):
        teacher = factories.TeacherFactory.create()
        student = factories.StudentFactory.create()
        factories.link(teacher, student, factories.make_slot(student_id=student.id))
        await db_session.commit()

        report = await consistency_service.detect_inconsistencies()

        assert report.total_teachers == 1
        assert report.total_students == 1
        assert report.total_issues == 0
        assert report.records_needing_correction == 0

    async def test_orphan_in_slot_is_reported_once(
        self,
        consistency_service: ConsistencyService,
        orphaned_teacher
    ):
        teacher, deleted_id, _ = orphaned_teacher
        print("\n--- Testing detect_inconsistencies on an orphaned slot ---")

        report = await consistency_service.detect_inconsistencies()
        pprint(report.model_dump(mode="json"))

        assert report.counts_by_category[IssueCategory.ORPHAN_REFERENCE] == 1
        assert report.total_issues == 1
        issue = report.examples[IssueCategory.ORPHAN_REFERENCE][0]
        assert issue.entity_id == teacher.id
        assert issue.referenced_id == str(deleted_id)

    async def test_detect_writes_nothing(
        self,
        consistency_service: ConsistencyService,
        fresh_session,
        orphaned_teacher
    ):
        teacher, _, _ = orphaned_teacher
        await consistency_service.detect_inconsistencies()

        async with fresh_session() as session:
            row = await session.get(db_models.Teachers, teacher.id)
            assert row.version == teacher.version
            assert row.student_ids == teacher.student_ids

    async def test_max_examples_caps_examples_not_counts(
        self,
        consistency_service: ConsistencyService,
        db_session: AsyncSession
    ):
        for _ in range(3):
            factories.TeacherFactory.create(student_ids=[str(uuid.uuid4())])
        await db_session.commit()

        report = await consistency_service.detect_inconsistencies(max_examples=1)

        assert report.counts_by_category[IssueCategory.ORPHAN_REFERENCE] == 3
        assert len(report.examples[IssueCategory.ORPHAN_REFERENCE]) == 1


@pytest.mark.anyio
class TestConsistencyServiceRepair:

    async def test_repair_clears_orphan_without_touching_other_slots(
        self,
        consistency_service: ConsistencyService,
        fresh_session,
        orphaned_teacher
    ):
        teacher, _, untouched = orphaned_teacher

        result = await consistency_service.repair(dry_run=False)

        assert result.records_updated == 1
        assert result.errors == []
        async with fresh_session() as session:
            row = await session.get(db_models.Teachers, teacher.id)
            assert row.student_ids == []
            slots = parse_slots(row.slots)
            assert slots[0].student_id is None
            assert slots[0].is_available is True
            assert row.slots[1] == untouched
            assert row.version == teacher.version + 1

    async def test_dry_run_returns_the_plan_only(
        self,
        consistency_service: ConsistencyService,
        fresh_session,
        orphaned_teacher
    ):
        teacher, _, _ = orphaned_teacher

        result = await consistency_service.repair(dry_run=True)

        assert result.dry_run is True
        assert result.records_planned == 1
        assert result.records_updated == 0
        assert result.corrections[0].entity_id == teacher.id
        async with fresh_session() as session:
            row = await session.get(db_models.Teachers, teacher.id)
            assert row.version == teacher.version

    async def test_repair_is_idempotent(
        self,
        consistency_service: ConsistencyService,
        db_session: AsyncSession
    ):
        teacher = factories.TeacherFactory.create()
        other_teacher = factories.TeacherFactory.create()
        student = factories.StudentFactory.create()
        slot = factories.make_slot(student_id=student.id)
        factories.link(teacher, student, slot)
        # damage: lost cache entries, an orphan id and a slot with no assignment
        teacher.student_ids = [str(uuid.uuid4())]
        student.teacher_ids = []
        other_slot = factories.make_slot(DayOfWeek.FRIDAY, "12:00", 30, student_id=student.id)
        other_teacher.slots = [other_slot.to_document()]
        await db_session.commit()

        first = await consistency_service.repair(dry_run=False)
        second = await consistency_service.repair(dry_run=False)

        assert first.records_updated >= 2
        assert second.records_planned == 0
        assert second.records_updated == 0
        assert second.issues_found == 0

    async def test_repair_with_student_authority_recreates_slot(
        self,
        consistency_service: ConsistencyService,
        fresh_session,
        db_session: AsyncSession
    ):
        teacher = factories.TeacherFactory.create()
        student = factories.StudentFactory.create()
        slot = factories.make_slot(DayOfWeek.TUESDAY, "15:00", 60, student_id=student.id)
        factories.link(teacher, student, slot)
        teacher.slots = []
        await db_session.commit()

        policy = RepairPolicy(membership_authority=Authority.STUDENT, schedule_authority=Authority.STUDENT)
        result = await consistency_service.repair(dry_run=False, policy=policy)

        assert result.records_updated == 1
        async with fresh_session() as session:
            row = await session.get(db_models.Teachers, teacher.id)
            recreated = parse_slots(row.slots)
            assert [s.id for s in recreated] == [slot.id]
            assert recreated[0].student_id == student.id

    async def test_concurrent_fix_is_skipped(
        self,
        consistency_service: ConsistencyService,
        fresh_session,
        orphaned_teacher,
        monkeypatch
    ):
        """A record fixed by someone else between scan and write is re-planned and skipped."""
        teacher, _, _ = orphaned_teacher
        original_scan = consistency_service._scan

        async def scan_then_fix(policy):
            plan, versions, teachers, students = await original_scan(policy)
            async with fresh_session() as session, session.begin():
                row = await session.get(db_models.Teachers, teacher.id)
                slots = parse_slots(row.slots)
                slots[0].student_id = None
                slots[0].is_available = True
                row.slots = [s.to_document() for s in slots]
                row.student_ids = []
            return plan, versions, teachers, students

        monkeypatch.setattr(consistency_service, "_scan", scan_then_fix)

        result = await consistency_service.repair(dry_run=False)

        assert result.records_planned == 1
        assert result.records_updated == 0
        assert result.skipped_already_fixed == 1

    async def test_concurrent_unrelated_change_is_preserved(
        self,
        consistency_service: ConsistencyService,
        fresh_session,
        orphaned_teacher,
        monkeypatch
    ):
        """A slot added after the scan survives the repair of the same teacher."""
        teacher, _, _ = orphaned_teacher
        original_scan = consistency_service._scan
        added = factories.make_slot(DayOfWeek.FRIDAY, "08:00", 30)

        async def scan_then_add(policy):
            scanned = await original_scan(policy)
            async with fresh_session() as session, session.begin():
                row = await session.get(db_models.Teachers, teacher.id)
                row.slots = list(row.slots) + [added.to_document()]
            return scanned

        monkeypatch.setattr(consistency_service, "_scan", scan_then_add)

        result = await consistency_service.repair(dry_run=False)

        assert result.records_updated == 1
        async with fresh_session() as session:
            row = await session.get(db_models.Teachers, teacher.id)
            slot_ids = [s.id for s in parse_slots(row.slots)]
            assert added.id in slot_ids
            assert row.student_ids == []

    async def test_two_records_changed_after_scan_are_both_replanned(
        self,
        consistency_service: ConsistencyService,
        fresh_session,
        db_session: AsyncSession,
        monkeypatch
    ):
        """A re-plan of one record must not mark the other changed record as current."""
        first = factories.TeacherFactory.create(student_ids=[str(uuid.uuid4())])
        second = factories.TeacherFactory.create(student_ids=[str(uuid.uuid4())])
        live = factories.StudentFactory.create()
        await db_session.commit()
        original_scan = consistency_service._scan
        added = factories.make_slot(DayOfWeek.FRIDAY, "08:00", 30)
        booked = factories.make_slot(DayOfWeek.MONDAY, "16:00", 45, student_id=live.id)

        async def scan_then_book(policy):
            scanned = await original_scan(policy)
            async with fresh_session() as session, session.begin():
                first_row = await session.get(db_models.Teachers, first.id)
                first_row.slots = list(first_row.slots) + [added.to_document()]
                second_row = await session.get(db_models.Teachers, second.id)
                student_row = await session.get(db_models.Students, live.id)
                factories.link(second_row, student_row, booked)
            return scanned

        monkeypatch.setattr(consistency_service, "_scan", scan_then_book)

        result = await consistency_service.repair(dry_run=False)

        assert result.errors == []
        async with fresh_session() as session:
            first_row = await session.get(db_models.Teachers, first.id)
            second_row = await session.get(db_models.Teachers, second.id)
            assert first_row.student_ids == []
            assert added.id in [s.id for s in parse_slots(first_row.slots)]
            assert second_row.student_ids == [str(live.id)]
            assert parse_slots(second_row.slots)[0].student_id == live.id

        assert (await consistency_service.detect_inconsistencies()).total_issues == 0

    async def test_failing_record_is_collected_not_raised(
        self,
        consistency_service: ConsistencyService,
        orphaned_teacher,
        monkeypatch
    ):
        teacher, _, _ = orphaned_teacher

        async def broken(correction, policy, versions):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(consistency_service, "_apply_correction", broken)

        result = await consistency_service.repair(dry_run=False)

        assert result.records_updated == 0
        assert len(result.errors) == 1
        assert result.errors[0].entity_type == EntityType.TEACHER
        assert result.errors[0].entity_id == teacher.id
        assert "disk on fire" in result.errors[0].error

    async def test_repaired_assignment_is_active_after_teacher_authority_repair(
        self,
        consistency_service: ConsistencyService,
        fresh_session,
        db_session: AsyncSession
    ):
        teacher = factories.TeacherFactory.create()
        student = factories.StudentFactory.create()
        slot = factories.make_slot(student_id=student.id)
        teacher.slots = [slot.to_document()]
        teacher.student_ids = [str(student.id)]
        await db_session.commit()

        await consistency_service.repair(dry_run=False, policy=RepairPolicy())

        async with fresh_session() as session:
            row = await session.get(db_models.Students, student.id)
            assignments = parse_assignments(row.teacher_assignments)
            assert len(assignments) == 1
            assert assignments[0].is_active and assignments[0].slot_id == slot.id
            assert row.teacher_ids == [str(teacher.id)]

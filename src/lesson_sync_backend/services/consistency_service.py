'''
Consistency Service

Scans every teacher and student record, asks the reconciliation planner for
the minimal corrections, and writes them one record per transaction. Each
write is preceded by a re-check of the record and its counterparts; a
neighbourhood that changed since the scan is re-planned from fresh state.
'''
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.logger import log
from ..core.reconciliation import ReconciliationPlan, StudentSnapshot, TeacherSnapshot, reconcile
from ..database import models as db_models
from ..database.engine import get_session_factory
from ..models.consistency import (
    InconsistencyReport,
    PlannedCorrection,
    RecordError,
    RepairPolicy,
    RepairResult,
)
from ..models.enums import EntityType, IssueCategory
from ..models.schedule import utcnow

_MODELS = {
    EntityType.TEACHER: db_models.Teachers,
    EntityType.STUDENT: db_models.Students,
}
_COUNTERPART = {
    EntityType.TEACHER: EntityType.STUDENT,
    EntityType.STUDENT: EntityType.TEACHER,
}

VersionMap = dict[tuple[EntityType, UUID], int]


class ConsistencyService:
    """
    Validator and repairer of the teacher/student relationship.
    Never raises per record: failures are collected into RepairResult.errors.
    """
    def __init__(self, session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]):
        self.session_factory = session_factory

    # --- 1. Scanning ---

    @staticmethod
    async def _load_snapshots(session: AsyncSession) -> tuple[list[TeacherSnapshot], list[StudentSnapshot]]:
        teacher_rows = (await session.execute(select(db_models.Teachers))).scalars().all()
        student_rows = (await session.execute(select(db_models.Students))).scalars().all()
        return (
            [TeacherSnapshot.from_row(row) for row in teacher_rows],
            [StudentSnapshot.from_row(row) for row in student_rows],
        )

    @staticmethod
    def _versions(teachers: list[TeacherSnapshot], students: list[StudentSnapshot]) -> VersionMap:
        versions = {(EntityType.TEACHER, t.id): t.version for t in teachers}
        versions.update({(EntityType.STUDENT, s.id): s.version for s in students})
        return versions

    async def _scan(self, policy: RepairPolicy) -> tuple[ReconciliationPlan, VersionMap, int, int]:
        async with self.session_factory() as session:
            teachers, students = await self._load_snapshots(session)
        plan = reconcile(teachers, students, policy, utcnow())
        return plan, self._versions(teachers, students), len(teachers), len(students)

    # --- 2. Public Operations ---

    async def detect_inconsistencies(
        self,
        policy: Optional[RepairPolicy] = None,
        max_examples: int = 20
    ) -> InconsistencyReport:
        """Classifies every divergence without writing anything."""
        policy = policy or RepairPolicy.from_settings()
        log.info(f"Detecting inconsistencies (membership={policy.membership_authority.value}, schedule={policy.schedule_authority.value}).")

        plan, _, teacher_count, student_count = await self._scan(policy)

        counts = {category: 0 for category in IssueCategory}
        examples = {category: [] for category in IssueCategory}
        for issue in plan.issues:
            counts[issue.category] += 1
            if len(examples[issue.category]) < max_examples:
                examples[issue.category].append(issue)

        report = InconsistencyReport(
            scanned_at=utcnow(),
            total_teachers=teacher_count,
            total_students=student_count,
            total_issues=len(plan.issues),
            counts_by_category=counts,
            examples=examples,
            unresolved_count=len(plan.unresolved),
            records_needing_correction=len(plan.corrections)
        )
        log.info(f"Inconsistency scan finished: {report.total_issues} issues, {report.unresolved_count} unresolved.")
        return report

    async def repair(self, dry_run: bool = False, policy: Optional[RepairPolicy] = None) -> RepairResult:
        """
        Applies the planned corrections. Idempotent: a second run finds an empty plan.
        With dry_run the plan is returned and nothing is written.
        """
        policy = policy or RepairPolicy.from_settings()
        log.info(f"Starting consistency repair (dry_run={dry_run}).")

        plan, versions, _, _ = await self._scan(policy)
        result = RepairResult(
            dry_run=dry_run,
            issues_found=len(plan.issues),
            records_planned=len(plan.corrections),
            corrections=plan.corrections,
            unresolved=plan.unresolved
        )
        if dry_run or plan.is_empty:
            log.info(f"Repair plan has {result.records_planned} corrections; nothing written.")
            return result

        for correction in plan.corrections:
            try:
                applied = await self._apply_correction(correction, policy, versions)
            except Exception as e:
                log.error(
                    f"Repair of {correction.entity_type.value} {correction.entity_id} failed: {e}",
                    exc_info=True
                )
                result.errors.append(RecordError(
                    entity_type=correction.entity_type,
                    entity_id=correction.entity_id,
                    error=str(e) or e.__class__.__name__
                ))
                continue
            if applied:
                result.records_updated += 1
            else:
                result.skipped_already_fixed += 1

        log.info(
            f"Repair finished: {result.records_updated} updated, {result.skipped_already_fixed} already fixed, "
            f"{len(result.errors)} errors."
        )
        return result

    # --- 3. Per-record Write ---

    async def _neighbourhood_changed(
        self,
        session: AsyncSession,
        row,
        correction: PlannedCorrection,
        versions: VersionMap
    ) -> bool:
        if row.version != versions.get((correction.entity_type, correction.entity_id)):
            return True
        if not correction.counterpart_ids:
            return False

        counterpart_type = _COUNTERPART[correction.entity_type]
        model = _MODELS[counterpart_type]
        result = await session.execute(select(model.id, model.version).where(model.id.in_(correction.counterpart_ids)))
        current = {row_id: version for row_id, version in result.all()}
        for counterpart_id in correction.counterpart_ids:
            if current.get(counterpart_id) != versions.get((counterpart_type, counterpart_id)):
                return True
        return False

    async def _apply_correction(
        self,
        correction: PlannedCorrection,
        policy: RepairPolicy,
        versions: VersionMap
    ) -> bool:
        """
        Writes one record in its own transaction.
        Returns False when a fresh re-plan shows the record no longer needs a change.
        """
        key = (correction.entity_type, correction.entity_id)
        model = _MODELS[correction.entity_type]

        async with self.session_factory() as session, session.begin():
            row = await session.get(model, correction.entity_id)
            if row is None:
                log.warning(f"{correction.entity_type.value} {correction.entity_id} vanished before repair, skipping.")
                return False

            if await self._neighbourhood_changed(session, row, correction, versions):
                log.info(f"{correction.entity_type.value} {correction.entity_id} changed since the scan, re-planning.")
                teachers, students = await self._load_snapshots(session)
                fresh = reconcile(teachers, students, policy, utcnow()).correction_for(*key)
                if fresh is None:
                    return False
                correction = fresh

            for column, value in correction.values.items():
                setattr(row, column, value)
            await session.flush()
            new_version = row.version

        # other rows keep their scanned version, so a concurrent change still forces a re-plan
        versions[key] = new_version
        log.info(f"Repaired {correction.entity_type.value} {correction.entity_id}: {'; '.join(correction.changes)}")
        return True

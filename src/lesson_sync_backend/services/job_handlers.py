'''
Job handlers: the bridge between queued jobs and the services doing the work.
'''
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.exceptions import FatalError, LessonSyncError
from ..common.logger import log
from ..models.cascade import BatchCascadeRequest, CascadeJobRequest, CascadeOptions
from ..models.consistency import RepairPolicy
from ..models.enums import JobType
from .cascade_service import CascadeDeletionService
from .consistency_service import ConsistencyService
from .job_processor import Handler, JobContext


def build_job_handlers(
    session_factory: async_sessionmaker[AsyncSession],
    cascade_service: Optional[CascadeDeletionService] = None,
    consistency_service: Optional[ConsistencyService] = None
) -> dict[JobType, Handler]:
    """Creates one handler per job type, sharing the given services."""
    cascade = cascade_service or CascadeDeletionService(session_factory)
    consistency = consistency_service or ConsistencyService(session_factory)

    async def cascade_deletion(context: JobContext) -> dict:
        request = CascadeJobRequest.model_validate(context.payload)
        result = await cascade.execute(request.student_id, request.options(), progress=context.report_progress)
        return result.model_dump(mode="json")

    async def batch_cascade_deletion(context: JobContext) -> dict:
        request = BatchCascadeRequest.model_validate(context.payload)
        options = CascadeOptions(
            actor_id=request.actor_id,
            reason=request.reason,
            hard_delete=request.hard_delete,
            preserve_academic=request.preserve_academic
        )
        succeeded: list[str] = []
        failed: dict[str, str] = {}
        fatal = 0
        total = len(request.student_ids)
        for index, student_id in enumerate(request.student_ids):
            try:
                await cascade.execute(student_id, options)
                succeeded.append(str(student_id))
            except FatalError as e:
                fatal += 1
                failed[str(student_id)] = str(e)
            except LessonSyncError as e:
                failed[str(student_id)] = str(e)
            await context.report_progress(int((index + 1) * 100 / total), f"{index + 1}/{total} students processed")

        if total and fatal == total:
            raise FatalError(f"Every deletion in the batch failed: {failed}")
        log.info(f"Batch cascade deletion: {len(succeeded)} succeeded, {len(failed)} failed.")
        return {"succeeded": succeeded, "failed": failed}

    async def orphan_cleanup(context: JobContext) -> dict:
        result = await cascade.cleanup_orphaned_references(dry_run=bool(context.payload.get("dry_run", False)))
        return result.model_dump(mode="json")

    async def reconciliation(context: JobContext) -> dict:
        policy_data = context.payload.get("policy")
        policy = RepairPolicy.model_validate(policy_data) if policy_data else None
        result = await consistency.repair(dry_run=bool(context.payload.get("dry_run", False)), policy=policy)
        await context.report_progress(100, f"{result.records_updated} record(s) repaired")
        return {
            "issues_found": result.issues_found,
            "records_updated": result.records_updated,
            "skipped_already_fixed": result.skipped_already_fixed,
            "unresolved": len(result.unresolved),
            "errors": [error.model_dump(mode="json") for error in result.errors],
        }

    return {
        JobType.CASCADE_DELETION: cascade_deletion,
        JobType.BATCH_CASCADE_DELETION: batch_cascade_deletion,
        JobType.ORPHAN_CLEANUP: orphan_cleanup,
        JobType.RECONCILIATION: reconciliation,
    }

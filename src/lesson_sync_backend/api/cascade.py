'''
API endpoints for student cascade deletion and its background jobs.
'''
import asyncio
from typing import Annotated, Any, AsyncGenerator, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Request, status
from sse_starlette.sse import EventSourceResponse

from ..common.logger import log
from ..models import cascade as cascade_models
from ..models.jobs import JobRecord, QueueStatus
from ..services.cascade_service import CascadeDeletionService, get_cascade_service
from ..services.job_processor import BackgroundJobProcessor, get_job_processor


class CascadeAPI:
    """
    A class to encapsulate the cascade deletion endpoints.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/cascade",
            tags=["Cascade Deletion"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/students/{student_id}/impact",
                self.compute_impact,
                methods=["GET"],
                response_model=cascade_models.DeletionImpact)

        self.router.add_api_route(
                "/students/{student_id}",
                self.execute,
                methods=["DELETE"],
                response_model=cascade_models.CascadeResult)

        self.router.add_api_route(
                "/jobs",
                self.enqueue_cascade_delete,
                methods=["POST"],
                status_code=status.HTTP_202_ACCEPTED,
                response_model=JobRecord)

        self.router.add_api_route(
                "/jobs/batch",
                self.enqueue_batch_cascade_delete,
                methods=["POST"],
                status_code=status.HTTP_202_ACCEPTED,
                response_model=JobRecord)

        self.router.add_api_route(
                "/jobs/queue",
                self.get_queue_status,
                methods=["GET"],
                response_model=QueueStatus)

        self.router.add_api_route(
                "/jobs/{job_id}",
                self.get_job_status,
                methods=["GET"],
                response_model=JobRecord)

        self.router.add_api_route(
                "/jobs/{job_id}",
                self.cancel_cascade_job,
                methods=["DELETE"],
                response_model=JobRecord)

        self.router.add_api_route(
                "/jobs/{job_id}/events",
                self.stream_job_events,
                methods=["GET"])

        self.router.add_api_route(
                "/audit/{audit_log_id}/rollback",
                self.rollback_deletion,
                methods=["POST"],
                response_model=cascade_models.RollbackResult)

        self.router.add_api_route(
                "/orphans/cleanup",
                self.cleanup_orphaned_references,
                methods=["POST"],
                response_model=cascade_models.OrphanCleanupResult)

    async def compute_impact(
        self,
        student_id: UUID,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)]
    ) -> Any:
        """
        Counts every record a deletion of this student would touch.
        """
        return await cascade_service.compute_impact(student_id)

    async def execute(
        self,
        student_id: UUID,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)],
        options: Optional[cascade_models.CascadeOptions] = None
    ) -> Any:
        """
        Deletes the student synchronously, all or nothing.
        """
        return await cascade_service.execute(student_id, options)

    async def enqueue_cascade_delete(
        self,
        job_request: cascade_models.CascadeJobRequest,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)]
    ) -> Any:
        """
        Marks the student pending_deletion and queues the deletion as a background job.
        """
        return await cascade_service.enqueue_cascade_delete(job_request)

    async def enqueue_batch_cascade_delete(
        self,
        batch_request: cascade_models.BatchCascadeRequest,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)]
    ) -> Any:
        return await cascade_service.enqueue_batch_cascade_delete(batch_request)

    async def get_queue_status(
        self,
        job_processor: Annotated[BackgroundJobProcessor, Depends(get_job_processor)]
    ) -> Any:
        return job_processor.get_queue_status()

    async def get_job_status(
        self,
        job_id: UUID,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)]
    ) -> Any:
        return cascade_service.get_job_status(job_id)

    async def cancel_cascade_job(
        self,
        job_id: UUID,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)]
    ) -> Any:
        """
        Cancels a job that has not started and puts the student back to active.
        """
        return await cascade_service.cancel_cascade_job(job_id)

    async def stream_job_events(
        self,
        job_id: UUID,
        request: Request,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)]
    ) -> EventSourceResponse:
        """
        Server-sent events for one job until it finishes or the client disconnects.
        """
        job = cascade_service.get_job_status(job_id)
        subscription = cascade_service.subscribe_to_job_events(job_id=job.id)
        log.info(f"[SSE] Streaming events of job {job_id}.")

        async def event_generator() -> AsyncGenerator[dict[str, str], None]:
            try:
                if job.is_finished:
                    yield {"event": "status", "data": job.model_dump_json()}
                    return
                while not await request.is_disconnected():
                    try:
                        event = await subscription.get(timeout=10)
                    except asyncio.TimeoutError:
                        yield {"event": "heartbeat", "data": "{}"}
                        continue
                    yield {"event": event.event_type.value, "data": event.model_dump_json()}
                    if job.is_finished:
                        return
            finally:
                cascade_service.job_processor.event_bus.unsubscribe(subscription)

        return EventSourceResponse(
            event_generator(),
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        )

    async def rollback_deletion(
        self,
        audit_log_id: UUID,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)],
        actor_id: Optional[UUID] = None
    ) -> Any:
        """
        Restores a deleted student from its audit snapshot.
        """
        return await cascade_service.rollback_deletion(audit_log_id, actor_id=actor_id)

    async def cleanup_orphaned_references(
        self,
        cascade_service: Annotated[CascadeDeletionService, Depends(get_cascade_service)],
        dry_run: bool = True
    ) -> Any:
        return await cascade_service.cleanup_orphaned_references(dry_run=dry_run)

# Instantiate the class and export its router
cascade_api = CascadeAPI()
router = cascade_api.router

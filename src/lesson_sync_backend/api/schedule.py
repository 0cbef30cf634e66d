'''
API endpoints for lesson slots and bookings.
'''
from typing import Annotated, Any, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status

from ..models import schedule as schedule_models
from ..models.enums import DayOfWeek
from ..services.schedule_service import ScheduleService


class ScheduleAPI:
    """
    A class to encapsulate endpoints for slots, bookings and schedule views.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/schedule",
            tags=["Schedule"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/teachers/{teacher_id}/slots",
                self.create_slot,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=schedule_models.SlotRead)

        self.router.add_api_route(
                "/teachers/{teacher_id}/weekly",
                self.get_teacher_weekly_view,
                methods=["GET"],
                response_model=schedule_models.TeacherWeeklyView)

        self.router.add_api_route(
                "/teachers/{teacher_id}/available-slots",
                self.get_available_slots,
                methods=["GET"],
                response_model=list[schedule_models.SlotRead])

        self.router.add_api_route(
                "/slots/{slot_id}",
                self.get_slot,
                methods=["GET"],
                response_model=schedule_models.SlotRead)

        self.router.add_api_route(
                "/slots/{slot_id}",
                self.update_slot,
                methods=["PATCH"],
                response_model=schedule_models.SlotRead)

        self.router.add_api_route(
                "/assignments",
                self.assign_student,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=schedule_models.AssignmentResult)

        self.router.add_api_route(
                "/slots/{slot_id}/student",
                self.remove_student,
                methods=["DELETE"],
                response_model=schedule_models.ReleaseResult)

        self.router.add_api_route(
                "/slots/{slot_id}/attendance",
                self.mark_lesson_attendance,
                methods=["POST"],
                response_model=schedule_models.AttendanceResult)

        self.router.add_api_route(
                "/students/{student_id}",
                self.get_student_view,
                methods=["GET"],
                response_model=schedule_models.StudentView)

    async def create_slot(
        self,
        teacher_id: UUID,
        slot_data: schedule_models.SlotCreate,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)]
    ) -> Any:
        """
        Creates an available slot. 409 when it overlaps another slot of the teacher.
        """
        return await schedule_service.create_slot(teacher_id, slot_data)

    async def get_teacher_weekly_view(
        self,
        teacher_id: UUID,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)],
        include_student_info: Annotated[bool, Query(description="Attach student names to assigned slots")] = False
    ) -> Any:
        return await schedule_service.get_teacher_weekly_view(teacher_id, include_student_info=include_student_info)

    async def get_available_slots(
        self,
        teacher_id: UUID,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)],
        day: Optional[DayOfWeek] = None,
        min_duration: Optional[int] = None,
        start_time_after: Optional[str] = None,
        start_time_before: Optional[str] = None,
        location: Optional[str] = None
    ) -> list[Any]:
        """
        Lists the teacher's free slots, optionally filtered.
        """
        filters = schedule_models.AvailableSlotsFilter(
            day=day,
            min_duration=min_duration,
            start_time_after=start_time_after,
            start_time_before=start_time_before,
            location=location
        )
        return await schedule_service.get_available_slots(teacher_id, filters)

    async def get_slot(
        self,
        slot_id: UUID,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)]
    ) -> Any:
        return await schedule_service.get_slot(slot_id)

    async def update_slot(
        self,
        slot_id: UUID,
        slot_data: schedule_models.SlotUpdate,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)]
    ) -> Any:
        """
        Partially updates a slot. Timing changes are conflict-checked before anything is written.
        """
        return await schedule_service.update_slot(slot_id, slot_data)

    async def assign_student(
        self,
        assignment_data: schedule_models.AssignStudentRequest,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)]
    ) -> Any:
        """
        Books a student into a slot and mirrors the assignment onto the student.
        """
        return await schedule_service.assign_student(assignment_data)

    async def remove_student(
        self,
        slot_id: UUID,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)]
    ) -> Any:
        return await schedule_service.remove_student(slot_id)

    async def mark_lesson_attendance(
        self,
        slot_id: UUID,
        attendance_data: schedule_models.AttendanceRequest,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)]
    ) -> Any:
        return await schedule_service.mark_lesson_attendance(slot_id, attendance_data)

    async def get_student_view(
        self,
        student_id: UUID,
        schedule_service: Annotated[ScheduleService, Depends(ScheduleService)]
    ) -> Any:
        return await schedule_service.get_student_view(student_id)

# Instantiate the class and export its router
schedule_api = ScheduleAPI()
router = schedule_api.router

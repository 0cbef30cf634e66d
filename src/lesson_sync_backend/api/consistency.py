'''
API endpoints for relationship consistency checks and repair.
'''
from typing import Annotated, Any, Optional
from fastapi import APIRouter, Depends, Query

from ..models import consistency as consistency_models
from ..models.enums import Authority
from ..services.consistency_service import ConsistencyService


class ConsistencyAPI:
    """
    A class to encapsulate the validator / repairer endpoints.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/consistency",
            tags=["Consistency"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/report",
                self.detect_inconsistencies,
                methods=["GET"],
                response_model=consistency_models.InconsistencyReport)

        self.router.add_api_route(
                "/repair",
                self.repair,
                methods=["POST"],
                response_model=consistency_models.RepairResult)

    async def detect_inconsistencies(
        self,
        consistency_service: Annotated[ConsistencyService, Depends(ConsistencyService)],
        membership_authority: Optional[Authority] = None,
        schedule_authority: Optional[Authority] = None,
        max_examples: Annotated[int, Query(ge=0, le=500)] = 20
    ) -> Any:
        """
        Scans every teacher and student and classifies the divergences. Writes nothing.
        """
        policy = consistency_models.RepairPolicy.from_settings()
        if membership_authority:
            policy.membership_authority = membership_authority
        if schedule_authority:
            policy.schedule_authority = schedule_authority
        return await consistency_service.detect_inconsistencies(policy=policy, max_examples=max_examples)

    async def repair(
        self,
        repair_request: consistency_models.RepairRequest,
        consistency_service: Annotated[ConsistencyService, Depends(ConsistencyService)]
    ) -> Any:
        """
        Applies the minimal corrections (or only plans them when dry_run is set).
        """
        return await consistency_service.repair(dry_run=repair_request.dry_run, policy=repair_request.policy)

# Instantiate the class and export its router
consistency_api = ConsistencyAPI()
router = consistency_api.router

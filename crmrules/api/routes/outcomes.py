"""Workflow outcome API routes."""

from fastapi import APIRouter

from crmrules.api.deps import OutcomeExecutorDep
from crmrules.models.entity import EntityType
from crmrules.models.workflow import (
    OutcomeExecutionRequest,
    OutcomeExecutionResult,
    OutcomeOption,
)
from crmrules.schemas.common import APIResponse

router = APIRouter(prefix="/outcomes", tags=["outcomes"])


@router.post("/execute", response_model=APIResponse[OutcomeExecutionResult])
async def execute_outcome(
    data: OutcomeExecutionRequest,
    executor: OutcomeExecutorDep,
) -> APIResponse[OutcomeExecutionResult]:
    """Mark an entity as won, lost or converted.

    A rejected outcome is returned with ``success=false`` and the reason in
    ``errors``; the envelope message repeats the first error.
    """
    result = await executor.execute(data)
    message = "success" if result.success else result.errors[0]
    return APIResponse(message=message, data=result)


@router.get("/{entity_type}/{entity_id}", response_model=APIResponse[list[OutcomeOption]])
async def list_available_outcomes(
    entity_type: EntityType,
    entity_id: str,
    executor: OutcomeExecutorDep,
) -> APIResponse[list[OutcomeOption]]:
    """List outcomes with their availability for an entity."""
    return APIResponse(data=await executor.get_available_outcomes(entity_id, entity_type))

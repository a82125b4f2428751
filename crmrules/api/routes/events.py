"""Entity event API routes."""

from fastapi import APIRouter

from crmrules.api.deps import EventHandlerDep
from crmrules.schemas.common import APIResponse
from crmrules.schemas.event import EventProcessRequest, EventProcessResponse

router = APIRouter(prefix="/events", tags=["events"])


@router.post("/process", response_model=APIResponse[EventProcessResponse])
async def process_event(
    data: EventProcessRequest,
    handler: EventHandlerDep,
) -> APIResponse[EventProcessResponse]:
    """Run business rules for an entity mutation.

    Rule failures are reported in ``errors``; they never fail the request.
    """
    result = await handler.handle_event(data.to_event())

    return APIResponse(
        data=EventProcessResponse(
            rules_evaluated=result.rules_evaluated,
            notifications_created=result.notifications_created,
            errors=result.errors,
            execution_ids=[record.id for record in result.executions],
        )
    )

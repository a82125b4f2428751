"""Rule dry-run and validation API routes."""

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from crmrules.api.deps import ProcessorDep, RuleStoreDep
from crmrules.models.entity import EntityEvent
from crmrules.models.execution import RuleDryRun
from crmrules.models.rule import BusinessRule
from crmrules.schemas.common import APIResponse
from crmrules.schemas.test import RuleTestRequest, ValidateRequest, ValidateResponse

router = APIRouter(prefix="/rules", tags=["rules"])


@router.post("/validate", response_model=APIResponse[ValidateResponse])
async def validate_rule(data: ValidateRequest) -> APIResponse[ValidateResponse]:
    """Validate a rule definition without storing it.

    Returns validation errors if the definition is invalid.
    """
    definition = {"id": "validation", "name": "validation", **data.rule}
    errors: list[str] = []
    try:
        BusinessRule.model_validate(definition)
    except ValidationError as e:
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"])
            errors.append(f"{location}: {err['msg']}" if location else err["msg"])

    return APIResponse(data=ValidateResponse(valid=not errors, errors=errors))


@router.post("/{rule_id}/test", response_model=APIResponse[RuleDryRun])
async def test_rule(
    rule_id: str,
    data: RuleTestRequest,
    store: RuleStoreDep,
    processor: ProcessorDep,
) -> APIResponse[RuleDryRun]:
    """Dry-run a stored rule against an entity snapshot.

    Conditions are evaluated and notifications rendered, but no action runs
    and no execution record is written.
    """
    rule = await store.get(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")

    trigger_event = data.trigger_event or (rule.index_events[0] if rule.index_events else "")
    if not trigger_event:
        raise HTTPException(status_code=400, detail="trigger_event is required")

    event = EntityEvent(
        entity_type=rule.entity_type,
        entity_id=data.entity_id,
        trigger_event=trigger_event,
        snapshot=dict(data.snapshot),
        change_delta=data.change_delta,
    )
    return APIResponse(data=await processor.dry_run(rule, event))

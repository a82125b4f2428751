"""Rule management API routes."""

import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import ValidationError

from crmrules.api.deps import PaginationDep, RuleStoreDep
from crmrules.models.entity import EntityType
from crmrules.models.execution import RuleStats
from crmrules.models.rule import BusinessRule, RuleMetadata, RuleStatus
from crmrules.schemas.common import APIResponse, PaginatedResponse
from crmrules.schemas.rule import (
    RuleCreate,
    RuleCreateResponse,
    RuleResponse,
    RuleStatusUpdate,
    RuleUpdate,
)

router = APIRouter(prefix="/rules", tags=["rules"])


def build_rule(data: dict[str, Any]) -> BusinessRule:
    """Validate a rule definition, mapping failures to a 422 response."""
    try:
        return BusinessRule.model_validate(data)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=[
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ],
        ) from e


def _to_response(rule: BusinessRule) -> RuleResponse:
    return RuleResponse.model_validate(rule.model_dump())


@router.post("", response_model=APIResponse[RuleCreateResponse])
async def create_rule(
    data: RuleCreate,
    store: RuleStoreDep,
) -> APIResponse[RuleCreateResponse]:
    """Create a new rule."""
    rule_id = data.id or (
        f"rule_{datetime.now(timezone.utc).strftime('%Y%m%d')}_{uuid.uuid4().hex[:8]}"
    )
    if await store.get(rule_id):
        raise HTTPException(status_code=409, detail=f"Rule {rule_id} already exists")

    fields = data.model_dump(exclude={"id", "created_by"})
    rule = build_rule({
        **fields,
        "id": rule_id,
        "metadata": RuleMetadata(created_by=data.created_by).model_dump(),
    })

    created = await store.create(rule)

    return APIResponse(
        data=RuleCreateResponse(
            id=created.id,
            created_at=created.metadata.created_at,
        )
    )


@router.get("", response_model=PaginatedResponse[RuleResponse])
async def list_rules(
    store: RuleStoreDep,
    pagination: PaginationDep,
    entity_type: EntityType | None = Query(default=None, description="Filter by entity type"),
    trigger_event: str | None = Query(default=None, description="Filter by trigger event"),
    status: RuleStatus | None = Query(default=None, description="Filter by status"),
    name_contains: str | None = Query(default=None, description="Filter by name substring"),
) -> PaginatedResponse[RuleResponse]:
    """List rules in evaluation order with optional filtering."""
    if entity_type and trigger_event:
        rules = await store.list_by_event(entity_type, trigger_event, include_inactive=True)
    else:
        rules = await store.list_all()

    if entity_type is not None:
        rules = [r for r in rules if r.entity_type == entity_type]
    if trigger_event:
        rules = [r for r in rules if trigger_event in r.index_events]
    if status is not None:
        rules = [r for r in rules if r.status == status]
    if name_contains:
        needle = name_contains.lower()
        rules = [r for r in rules if needle in r.name.lower()]

    return PaginatedResponse(
        data=[_to_response(r) for r in pagination.paginate(rules)],
        total=len(rules),
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get("/{rule_id}", response_model=APIResponse[RuleResponse])
async def get_rule(
    rule_id: str,
    store: RuleStoreDep,
) -> APIResponse[RuleResponse]:
    """Get a single rule by ID."""
    rule = await store.get(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")

    return APIResponse(data=_to_response(rule))


@router.get("/{rule_id}/stats", response_model=APIResponse[RuleStats])
async def get_rule_stats(
    rule_id: str,
    store: RuleStoreDep,
) -> APIResponse[RuleStats]:
    """Get how often a rule ran, when it last ran and its latest error."""
    stats = await store.get_stats(rule_id)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")

    return APIResponse(data=stats)


@router.put("/{rule_id}", response_model=APIResponse[RuleResponse])
async def replace_rule(
    rule_id: str,
    data: RuleCreate,
    store: RuleStoreDep,
) -> APIResponse[RuleResponse]:
    """Replace an existing rule."""
    existing = await store.get(rule_id)
    if not existing:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")

    updated_rule = build_rule({
        **data.model_dump(exclude={"id", "created_by"}),
        "id": rule_id,
        "metadata": existing.metadata.model_dump(),
    })
    result = await store.update(rule_id, updated_rule)

    if not result:
        raise HTTPException(status_code=500, detail="Failed to update rule")

    return APIResponse(data=_to_response(result))


@router.patch("/{rule_id}", response_model=APIResponse[RuleResponse])
async def update_rule(
    rule_id: str,
    data: RuleUpdate,
    store: RuleStoreDep,
) -> APIResponse[RuleResponse]:
    """Partially update an existing rule."""
    existing = await store.get(rule_id)
    if not existing:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")

    updated_dict = existing.model_dump()
    updated_dict.update(data.model_dump(exclude_unset=True))

    result = await store.update(rule_id, build_rule(updated_dict))

    if not result:
        raise HTTPException(status_code=500, detail="Failed to update rule")

    return APIResponse(data=_to_response(result))


@router.delete("/{rule_id}", response_model=APIResponse)
async def delete_rule(
    rule_id: str,
    store: RuleStoreDep,
) -> APIResponse:
    """Delete a rule. Its execution history is kept."""
    deleted = await store.delete(rule_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")

    return APIResponse(message=f"Rule {rule_id} deleted")


@router.patch("/{rule_id}/status", response_model=APIResponse[RuleResponse])
async def update_rule_status(
    rule_id: str,
    data: RuleStatusUpdate,
    store: RuleStoreDep,
) -> APIResponse[RuleResponse]:
    """Activate or deactivate a rule."""
    updated = await store.set_status(rule_id, data.status)
    if not updated:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")

    return APIResponse(data=_to_response(updated))

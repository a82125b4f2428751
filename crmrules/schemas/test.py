"""Rule dry-run and validation schemas."""

from typing import Any

from pydantic import BaseModel, Field

from crmrules.models.entity import FieldChange


class RuleTestRequest(BaseModel):
    """Entity state to evaluate a stored rule against."""

    entity_id: str = Field(default="test-entity", min_length=1)
    trigger_event: str | None = Field(
        default=None,
        description="Event name (defaults to the rule's first trigger event)",
    )
    snapshot: dict[str, Any] = Field(default_factory=dict, description="Entity field values")
    change_delta: dict[str, FieldChange] = Field(default_factory=dict)


class ValidateRequest(BaseModel):
    """Rule definition to validate without storing it."""

    rule: dict[str, Any] = Field(..., description="Rule definition")


class ValidateResponse(BaseModel):
    """Response schema for rule validation."""

    valid: bool = Field(..., description="Whether the definition is valid")
    errors: list[str] = Field(default_factory=list, description="Validation errors")

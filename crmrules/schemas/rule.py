"""Rule API schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from crmrules.models.entity import EntityType
from crmrules.models.rule import (
    Action,
    Condition,
    RuleMetadata,
    RuleStatus,
    TriggerType,
    normalize_conditions,
)


class RuleCreate(BaseModel):
    """Schema for creating a new rule."""

    id: str | None = Field(default=None, description="Rule ID (generated if omitted)")
    name: str = Field(..., min_length=1, max_length=100, description="Rule name")
    description: str = Field(default="", max_length=500, description="Rule description")
    entity_type: EntityType = Field(..., description="Entity type the rule targets")
    trigger_type: TriggerType = Field(default=TriggerType.EVENT)
    trigger_events: list[str] = Field(default_factory=list, description="Matched event names")
    conditions: list[Condition] = Field(default_factory=list, description="ANDed clauses")
    actions: list[Action] = Field(default_factory=list, description="Ordered actions")
    status: RuleStatus = Field(default=RuleStatus.ACTIVE)
    priority: int = Field(default=100, ge=0, le=10000, description="Lower executes first")
    created_by: str = Field(default="system")

    @field_validator("conditions", mode="before")
    @classmethod
    def default_condition_kind(cls, value: Any) -> Any:
        return normalize_conditions(value)


class RuleUpdate(BaseModel):
    """Schema for partially updating a rule."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    trigger_type: TriggerType | None = None
    trigger_events: list[str] | None = None
    conditions: list[Condition] | None = None
    actions: list[Action] | None = None
    status: RuleStatus | None = None
    priority: int | None = Field(default=None, ge=0, le=10000)

    @field_validator("conditions", mode="before")
    @classmethod
    def default_condition_kind(cls, value: Any) -> Any:
        return normalize_conditions(value)


class RuleStatusUpdate(BaseModel):
    """Schema for activating or deactivating a rule."""

    status: RuleStatus = Field(..., description="New rule status")


class RuleResponse(BaseModel):
    """Schema for rule response."""

    id: str
    name: str
    description: str
    entity_type: EntityType
    trigger_type: TriggerType
    trigger_events: list[str]
    conditions: list[Condition]
    actions: list[Action]
    status: RuleStatus
    priority: int
    metadata: RuleMetadata


class RuleCreateResponse(BaseModel):
    """Schema for rule creation response."""

    id: str = Field(..., description="Created rule ID")
    created_at: datetime = Field(..., description="Creation timestamp")

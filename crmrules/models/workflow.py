"""Workflow (WFM) domain models: steps, outcome mappings and results."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from crmrules.models.entity import EntityType


class OutcomeType(str, Enum):
    """Terminal business outcomes a user can request."""

    WON = "WON"
    LOST = "LOST"
    CONVERTED = "CONVERTED"

    @property
    def display_name(self) -> str:
        return {
            OutcomeType.WON: "Mark as Won",
            OutcomeType.LOST: "Mark as Lost",
            OutcomeType.CONVERTED: "Convert",
        }[self]


class WorkflowStep(BaseModel):
    """A step of a workflow (reference data)."""

    id: str
    workflow_id: str
    status_id: str
    step_order: int = Field(default=0, ge=0)
    is_initial_step: bool = False
    is_final_step: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class StepMapping(BaseModel):
    """Maps an outcome of a workflow to the step it lands on."""

    id: str
    workflow_id: str
    outcome_type: OutcomeType
    target_step_id: str
    from_step_ids: list[str] = Field(
        default_factory=list,
        description="Steps the mapping applies from (empty = any step)",
    )
    priority: int = Field(default=0, description="Higher wins when several mappings apply")
    is_active: bool = True
    side_effects: dict[str, Any] = Field(default_factory=dict)

    def applies_from(self, step_id: str) -> bool:
        return not self.from_step_ids or step_id in self.from_step_ids


class OutcomeRuleType(str, Enum):
    ALLOW_FROM_ANY = "ALLOW_FROM_ANY"
    STEP_SPECIFIC = "STEP_SPECIFIC"
    PROBABILITY_THRESHOLD = "PROBABILITY_THRESHOLD"


class OutcomeRule(BaseModel):
    """Configurable side effects attached to an outcome."""

    id: str
    rule_name: str = ""
    entity_type: EntityType | None = Field(
        default=None,
        description="Entity type the rule applies to (None = any)",
    )
    outcome_type: OutcomeType
    rule_type: OutcomeRuleType = OutcomeRuleType.ALLOW_FROM_ANY
    conditions: dict[str, Any] = Field(default_factory=dict)
    side_effects: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    priority: int = 0


class EntityWorkflowState(BaseModel):
    """Where an entity currently sits in its workflow."""

    entity_type: EntityType
    entity_id: str
    workflow_id: str
    current_step_id: str
    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OutcomeExecutionRequest(BaseModel):
    """User request to mark an entity as won, lost or converted."""

    entity_id: str = Field(..., min_length=1)
    entity_type: EntityType
    outcome: OutcomeType
    user_id: str | None = Field(default=None, description="User performing the action")


class ConversionResult(BaseModel):
    """Outcome of converting one entity into another."""

    success: bool
    source_entity_type: EntityType
    source_entity_id: str
    target_entity_type: EntityType
    target_entity_id: str | None = None
    errors: list[str] = Field(default_factory=list)


class OutcomeExecutionResult(BaseModel):
    """Result of an outcome execution.

    ``success`` reflects the step transition. Side effects report their own
    status under ``side_effects_applied``.
    """

    success: bool
    outcome_executed: bool = False
    outcome: OutcomeType
    target_step_id: str | None = None
    side_effects_applied: dict[str, Any] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class OutcomeOption(BaseModel):
    """Availability of one outcome for an entity (drives UI buttons)."""

    outcome_type: OutcomeType
    display_name: str
    available: bool
    reason: str | None = None
    target_step_id: str | None = None

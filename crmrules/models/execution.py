"""Rule execution audit record models."""

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from crmrules.models.entity import EntityType


class RuleExecution(BaseModel):
    """Append-only record of one rule evaluated for one triggering event."""

    id: str = Field(..., description="Execution unique identifier")
    rule_id: str = Field(..., description="Rule that was evaluated")
    entity_id: str = Field(..., description="Entity that triggered evaluation")
    entity_type: EntityType = Field(..., description="Type of the triggering entity")
    execution_trigger: str = Field(..., description="Triggering event name")
    conditions_met: bool = Field(..., description="Whether all conditions held")
    execution_time_ms: int = Field(default=0, ge=0, description="Action execution time")
    notifications_created: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list, description="Action-level failures")
    timed_out: bool = Field(default=False, description="Whether the rule hit its timeout")
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RuleStats(BaseModel):
    """Running execution statistics kept on each rule."""

    rule_id: str
    execution_count: int = Field(default=0, ge=0, description="Times the rule was evaluated")
    last_execution: datetime | None = None
    last_error: str | None = Field(default=None, description="Most recent action failure")


class ProcessingResult(BaseModel):
    """Summary of processing one entity event."""

    rules_evaluated: int = Field(default=0, ge=0)
    notifications_created: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)
    executions: list[RuleExecution] = Field(default_factory=list)

    def merge(self, other: "ProcessingResult") -> None:
        """Fold another result into this one."""
        self.rules_evaluated += other.rules_evaluated
        self.notifications_created += other.notifications_created
        self.errors.extend(other.errors)
        self.executions.extend(other.executions)


class NotificationPreview(BaseModel):
    """Rendered notification a rule would create."""

    user_id: str | None
    title: str
    message: str
    priority: int


class RuleDryRun(BaseModel):
    """Result of evaluating a rule without executing its actions."""

    rule_id: str
    conditions_met: bool
    clause_results: list[bool] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list, description="Action kinds that would run")
    notifications: list[NotificationPreview] = Field(default_factory=list)

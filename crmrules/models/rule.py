"""Business rule domain models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from crmrules.models.entity import EntityType, is_known_field

# Synthetic trigger event used by the scheduled rule runner
SCHEDULED_EVENT = "SCHEDULED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType(str, Enum):
    """How a rule gets evaluated."""

    EVENT = "EVENT"
    SCHEDULE = "SCHEDULE"


class RuleStatus(str, Enum):
    """Rule lifecycle status."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class ComparisonOperator(str, Enum):
    EQ = "=="
    NE = "!="
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="


class TextOperator(str, Enum):
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


class AgeOperator(str, Enum):
    OLDER_THAN = "older_than"
    NEWER_THAN = "newer_than"


class ThresholdCondition(BaseModel):
    """``field <op> value`` comparison against the snapshot."""

    kind: Literal["field_threshold"] = "field_threshold"
    field: str = Field(..., min_length=1)
    op: ComparisonOperator
    value: Any


class ChangedCondition(BaseModel):
    """True iff the change delta contains the field."""

    kind: Literal["field_changed"] = "field_changed"
    field: str = Field(..., min_length=1)


class ChangedToCondition(BaseModel):
    """True iff the field changed and its new value equals ``value``."""

    kind: Literal["field_changed_to"] = "field_changed_to"
    field: str = Field(..., min_length=1)
    value: Any


class ChangedFromCondition(BaseModel):
    """True iff the field changed and its old value equals ``value``."""

    kind: Literal["field_changed_from"] = "field_changed_from"
    field: str = Field(..., min_length=1)
    value: Any


class TextCondition(BaseModel):
    """Case-insensitive substring/prefix/suffix match."""

    kind: Literal["field_text"] = "field_text"
    field: str = Field(..., min_length=1)
    op: TextOperator
    value: str


class MembershipCondition(BaseModel):
    """Field value is (or with ``negate``, is not) one of ``values``."""

    kind: Literal["field_in"] = "field_in"
    field: str = Field(..., min_length=1)
    values: list[Any] = Field(..., min_length=1)
    negate: bool = False


class AgeCondition(BaseModel):
    """Date field compared to now, e.g. ``created_at older_than '2 days'``."""

    kind: Literal["field_age"] = "field_age"
    field: str = Field(..., min_length=1)
    op: AgeOperator
    interval: str = Field(..., description="Interval such as '30 minutes', '2 days', '1 week'")


Condition = Annotated[
    Union[
        ThresholdCondition,
        ChangedCondition,
        ChangedToCondition,
        ChangedFromCondition,
        TextCondition,
        MembershipCondition,
        AgeCondition,
    ],
    Field(discriminator="kind"),
]


def normalize_conditions(value: Any) -> Any:
    """Treat ``{field, op, value}`` clauses without a kind as thresholds."""
    if not isinstance(value, list):
        return value
    normalized = []
    for clause in value:
        if isinstance(clause, dict) and "kind" not in clause and "op" in clause:
            clause = {"kind": "field_threshold", **clause}
        normalized.append(clause)
    return normalized


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class RecipientKind(str, Enum):
    OWNER = "owner"
    USER = "user"
    ROLE = "role"


class RecipientSelector(BaseModel):
    """Who receives a notification."""

    kind: RecipientKind = RecipientKind.OWNER
    user_id: str | None = Field(default=None, description="Explicit user for kind=user")
    role: str | None = Field(default=None, description="Role name for kind=role")

    @model_validator(mode="after")
    def validate_selector(self) -> "RecipientSelector":
        if self.kind == RecipientKind.USER and not self.user_id:
            raise ValueError("user_id is required for user recipients")
        if self.kind == RecipientKind.ROLE and not self.role:
            raise ValueError("role is required for role recipients")
        return self


class NotifyAction(BaseModel):
    """Create an in-app notification."""

    kind: Literal["notify"] = "notify"
    recipient: RecipientSelector = Field(default_factory=RecipientSelector)
    title_template: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("title_template", "title"),
    )
    message_template: str = Field(
        default="",
        validation_alias=AliasChoices("message_template", "message"),
    )
    priority: int = Field(default=1, ge=1, le=5)
    notification_type: str = Field(default="business_rule")
    expires_in_hours: int | None = Field(default=None, ge=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TransitionStepAction(BaseModel):
    """Move the entity to another step of its workflow."""

    kind: Literal["transition_step"] = "transition_step"
    target_step_id: str = Field(..., min_length=1)


class TriggerConversionAction(BaseModel):
    """Convert the entity into an entity of another type."""

    kind: Literal["trigger_conversion"] = "trigger_conversion"
    target_entity_type: EntityType
    field_mappings: dict[str, str] = Field(
        default_factory=dict,
        description="Overrides of target_field -> source_field",
    )
    reason: str = Field(default="Business rule triggered conversion")


Action = Annotated[
    Union[NotifyAction, TransitionStepAction, TriggerConversionAction],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------


class RuleMetadata(BaseModel):
    """Rule metadata."""

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    created_by: str = Field(default="system")
    version: int = Field(default=1)


class BusinessRule(BaseModel):
    """Declarative business rule."""

    id: str = Field(..., description="Rule unique identifier")
    name: str = Field(..., description="Rule name")
    description: str = Field(default="", description="Rule description")
    entity_type: EntityType = Field(..., description="Entity type the rule targets")
    trigger_type: TriggerType = Field(default=TriggerType.EVENT)
    trigger_events: list[str] = Field(default_factory=list, description="Matched event names")
    conditions: list[Condition] = Field(default_factory=list, description="ANDed clauses")
    actions: list[Action] = Field(default_factory=list, description="Ordered actions")
    status: RuleStatus = Field(default=RuleStatus.ACTIVE)
    priority: int = Field(default=100, description="Lower executes first")
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)

    @field_validator("conditions", mode="before")
    @classmethod
    def default_condition_kind(cls, value: Any) -> Any:
        return normalize_conditions(value)

    @model_validator(mode="after")
    def validate_rule(self) -> "BusinessRule":
        """Enforce trigger and field-schema invariants."""
        if self.trigger_type == TriggerType.EVENT and not self.trigger_events:
            raise ValueError("trigger_events must not be empty for EVENT rules")
        unknown = [
            clause.field
            for clause in self.conditions
            if not is_known_field(self.entity_type, clause.field)
        ]
        if unknown:
            raise ValueError(
                f"Unknown fields for {self.entity_type.value}: {', '.join(sorted(set(unknown)))}"
            )
        return self

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    @property
    def index_events(self) -> list[str]:
        """Event names this rule is indexed under."""
        if self.trigger_type == TriggerType.SCHEDULE:
            return [SCHEDULED_EVENT]
        return list(dict.fromkeys(self.trigger_events))

    def matches_event(self, entity_type: EntityType, trigger_event: str) -> bool:
        """Check if the rule applies to an entity type and event."""
        return self.entity_type == entity_type and trigger_event in self.index_events

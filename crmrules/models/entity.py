"""Entity snapshot and mutation event models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EntityType(str, Enum):
    """CRM entity types that rules can target."""

    DEAL = "DEAL"
    LEAD = "LEAD"
    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    ACTIVITY = "ACTIVITY"


# Snapshot schema per entity type. Rule conditions may only reference these
# fields (or custom fields prefixed with ``custom_``).
ENTITY_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.DEAL: frozenset({
        "id", "name", "amount", "currency", "probability", "expected_close_date",
        "assigned_to_user_id", "assigned_to_user_name", "user_id", "created_by_user_id",
        "person_id", "organization_id", "organization_name", "stage_name",
        "current_step_id", "workflow_id", "status", "created_at", "updated_at",
    }),
    EntityType.LEAD: frozenset({
        "id", "name", "contact_name", "contact_email", "contact_phone", "company_name",
        "estimated_value", "currency", "estimated_close_date", "source", "lead_score",
        "description", "assigned_to_user_id", "assigned_to_user_name", "user_id",
        "created_by_user_id", "person_id", "organization_id", "current_step_id",
        "workflow_id", "status", "created_at", "updated_at",
    }),
    EntityType.PERSON: frozenset({
        "id", "first_name", "last_name", "email", "phone", "organization_id",
        "user_id", "created_by_user_id", "assigned_to_user_id", "created_at", "updated_at",
    }),
    EntityType.ORGANIZATION: frozenset({
        "id", "name", "website", "industry", "address", "account_manager_id",
        "user_id", "created_by_user_id", "assigned_to_user_id", "created_at", "updated_at",
    }),
    EntityType.ACTIVITY: frozenset({
        "id", "subject", "type", "due_date", "is_done", "notes", "deal_id", "lead_id",
        "person_id", "organization_id", "assigned_to_user_id", "user_id",
        "created_by_user_id", "created_at", "updated_at",
    }),
}

CUSTOM_FIELD_PREFIX = "custom_"

# Fields tried in order when looking for the user that owns an entity
OWNER_FIELDS = ("assigned_to_user_id", "user_id", "created_by_user_id")


def is_known_field(entity_type: EntityType, field: str) -> bool:
    """Check whether a field belongs to the entity type's snapshot schema."""
    return field.startswith(CUSTOM_FIELD_PREFIX) or field in ENTITY_FIELDS[entity_type]


def resolve_owner(snapshot: dict[str, Any]) -> str | None:
    """Return the owning user id of an entity snapshot, if any."""
    for field in OWNER_FIELDS:
        value = snapshot.get(field)
        if value:
            return str(value)
    return None


class FieldChange(BaseModel):
    """Old and new value of a single changed field."""

    old: Any = None
    new: Any = None


def build_change_delta(
    old_snapshot: dict[str, Any] | None,
    new_snapshot: dict[str, Any],
) -> dict[str, FieldChange]:
    """Build a change delta from two snapshots.

    Creation events (no old snapshot) produce an empty delta.
    """
    if old_snapshot is None:
        return {}

    delta: dict[str, FieldChange] = {}
    for field in old_snapshot.keys() | new_snapshot.keys():
        old_value = old_snapshot.get(field)
        new_value = new_snapshot.get(field)
        if old_value != new_value:
            delta[field] = FieldChange(old=old_value, new=new_value)
    return delta


class EntityEvent(BaseModel):
    """A mutation of a CRM entity that triggers rule evaluation."""

    entity_type: EntityType = Field(..., description="Type of the mutated entity")
    entity_id: str = Field(..., min_length=1, description="Stable entity identifier")
    trigger_event: str = Field(..., min_length=1, description="Event name, e.g. 'DEAL_UPDATED'")
    snapshot: dict[str, Any] = Field(
        default_factory=dict,
        description="Current field values of the entity",
    )
    change_delta: dict[str, FieldChange] = Field(
        default_factory=dict,
        description="Changed fields with old/new values (empty on creation)",
    )
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def model_post_init(self, __context: Any) -> None:
        """Make sure the snapshot carries the entity id."""
        self.snapshot.setdefault("id", self.entity_id)

    @classmethod
    def from_snapshots(
        cls,
        entity_type: EntityType,
        entity_id: str,
        trigger_event: str,
        new_snapshot: dict[str, Any],
        old_snapshot: dict[str, Any] | None = None,
    ) -> "EntityEvent":
        """Create an event from the before/after state of a mutation."""
        return cls(
            entity_type=entity_type,
            entity_id=entity_id,
            trigger_event=trigger_event,
            snapshot=dict(new_snapshot),
            change_delta=build_change_delta(old_snapshot, new_snapshot),
        )

"""Entity event API schemas."""

from typing import Any

from pydantic import BaseModel, Field

from crmrules.models.entity import EntityEvent, EntityType, FieldChange, build_change_delta


class EventProcessRequest(BaseModel):
    """Inbound entity mutation.

    Send either ``change_delta`` or the ``previous_snapshot`` it is built from.
    """

    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    trigger_event: str = Field(..., min_length=1, description="e.g. 'DEAL_UPDATED'")
    snapshot: dict[str, Any] = Field(default_factory=dict)
    change_delta: dict[str, FieldChange] | None = None
    previous_snapshot: dict[str, Any] | None = None

    def to_event(self) -> EntityEvent:
        if self.change_delta is not None:
            delta = self.change_delta
        else:
            delta = build_change_delta(self.previous_snapshot, self.snapshot)
        return EntityEvent(
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            trigger_event=self.trigger_event,
            snapshot=dict(self.snapshot),
            change_delta=delta,
        )


class EventProcessResponse(BaseModel):
    """Summary returned after processing an entity event."""

    rules_evaluated: int
    notifications_created: int
    errors: list[str] = Field(default_factory=list)
    execution_ids: list[str] = Field(default_factory=list)

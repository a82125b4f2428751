"""Notification domain models."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from crmrules.models.entity import EntityType


class Notification(BaseModel):
    """In-app notification created by a business rule."""

    id: str = Field(..., description="Notification unique identifier")
    rule_id: str | None = Field(default=None, description="Rule that produced it")
    type: str = Field(default="business_rule", description="Notification type")
    title: str = Field(..., description="Rendered title")
    message: str = Field(default="", description="Rendered message")
    priority: int = Field(default=1, ge=1, le=5)
    user_id: str = Field(..., description="Recipient user")
    entity_type: EntityType
    entity_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_read: bool = Field(default=False)
    expires_at: datetime | None = Field(default=None)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the notification has passed its expiry time."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

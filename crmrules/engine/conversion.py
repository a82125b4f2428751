"""Deal <-> lead conversion."""

import uuid
from datetime import datetime, timezone
from typing import Any

from redis.exceptions import RedisError

from crmrules.core.logging import get_logger
from crmrules.models.entity import EntityType
from crmrules.models.workflow import ConversionResult
from crmrules.observability.metrics import CONVERSIONS
from crmrules.storage.entity_store import ENGINE_FIELDS, EntityStore
from crmrules.storage.workflow_store import WorkflowStore

logger = get_logger(__name__)

# target field -> source field
DEFAULT_FIELD_MAPPINGS: dict[tuple[EntityType, EntityType], dict[str, str]] = {
    (EntityType.DEAL, EntityType.LEAD): {
        "name": "name",
        "estimated_value": "amount",
        "currency": "currency",
        "estimated_close_date": "expected_close_date",
        "assigned_to_user_id": "assigned_to_user_id",
        "assigned_to_user_name": "assigned_to_user_name",
        "person_id": "person_id",
        "organization_id": "organization_id",
    },
    (EntityType.LEAD, EntityType.DEAL): {
        "name": "name",
        "amount": "estimated_value",
        "currency": "currency",
        "expected_close_date": "estimated_close_date",
        "assigned_to_user_id": "assigned_to_user_id",
        "assigned_to_user_name": "assigned_to_user_name",
        "person_id": "person_id",
        "organization_id": "organization_id",
    },
}

DEFAULT_TARGETS = {
    EntityType.DEAL: EntityType.LEAD,
    EntityType.LEAD: EntityType.DEAL,
}


def default_target(source_type: EntityType) -> EntityType | None:
    """Entity type an entity converts into when nothing else is configured."""
    return DEFAULT_TARGETS.get(source_type)


class EntityConverter:
    """Creates a linked entity of another type from an existing one."""

    def __init__(
        self,
        entity_store: EntityStore | None = None,
        workflow_store: WorkflowStore | None = None,
    ):
        self._entities = entity_store or EntityStore()
        self._workflows = workflow_store or WorkflowStore()

    async def convert(
        self,
        source_type: EntityType,
        source_id: str,
        target_type: EntityType,
        field_mappings: dict[str, str] | None = None,
        reason: str = "Entity conversion",
        source_snapshot: dict[str, Any] | None = None,
        workflow_id: str | None = None,
        user_id: str | None = None,
    ) -> ConversionResult:
        """Convert an entity into a new entity of ``target_type``.

        Converting an entity that already carries a link to a target of the
        same type returns that target instead of creating another one.

        Args:
            source_type: Type of the entity being converted
            source_id: ID of the entity being converted
            target_type: Type of the entity to create
            field_mappings: Overrides of target_field -> source_field
            reason: Why the conversion happened, stored on the new entity
            source_snapshot: Current source values (loaded from the store if omitted)
            workflow_id: Workflow to place the new entity on, at its initial step
            user_id: User performing the conversion

        Returns:
            Conversion result; failures are reported, never raised
        """
        result = ConversionResult(
            success=False,
            source_entity_type=source_type,
            source_entity_id=source_id,
            target_entity_type=target_type,
        )

        mapping = DEFAULT_FIELD_MAPPINGS.get((source_type, target_type))
        if mapping is None:
            result.errors.append(
                f"conversion from {source_type.value} to {target_type.value} is not supported"
            )
            return self._finish(result)

        try:
            stored = await self._entities.get(source_type, source_id)
            stored = stored or {}
            source = {**stored, **(source_snapshot or {})}
            source.update({field: stored[field] for field in ENGINE_FIELDS if field in stored})
            if not source:
                result.errors.append("source entity not found")
                return self._finish(result)

            if (
                source.get("converted_to_entity_type") == target_type.value
                and source.get("converted_to_entity_id")
            ):
                result.success = True
                result.target_entity_id = source["converted_to_entity_id"]
                logger.info(
                    "Entity already converted",
                    source_entity_id=source_id,
                    target_entity_id=result.target_entity_id,
                )
                return self._finish(result)

            target_id = f"{target_type.value.lower()}_{uuid.uuid4().hex[:12]}"
            target = self._build_target(
                source_type,
                source_id,
                source,
                {**mapping, **(field_mappings or {})},
                reason,
                user_id,
            )
            await self._entities.save(target_type, target_id, target)
            links = {
                "converted_to_entity_type": target_type.value,
                "converted_to_entity_id": target_id,
            }
            if await self._entities.update_fields(source_type, source_id, links) is None:
                await self._entities.save(source_type, source_id, {**source, **links})
            result.success = True
            result.target_entity_id = target_id

            if workflow_id:
                try:
                    await self._workflows.place_entity(target_type, target_id, workflow_id)
                except ValueError as e:
                    result.errors.append(str(e))

            await self._entities.record_conversion(result)
        except RedisError as e:
            logger.error("Conversion storage error", source_entity_id=source_id, error=str(e))
            result.errors.append(f"storage error: {e}")

        return self._finish(result)

    def _build_target(
        self,
        source_type: EntityType,
        source_id: str,
        source: dict[str, Any],
        mapping: dict[str, str],
        reason: str,
        user_id: str | None,
    ) -> dict[str, Any]:
        target = {
            target_field: source[source_field]
            for target_field, source_field in mapping.items()
            if source.get(source_field) is not None
        }
        if source_type == EntityType.DEAL:
            target.setdefault("source", "deal_conversion")
            target.setdefault("description", f"Converted from deal: {source.get('name', '')}")

        now = datetime.now(timezone.utc).isoformat()
        target.update({
            "converted_from_entity_type": source_type.value,
            "converted_from_entity_id": source_id,
            "conversion_reason": reason,
            "created_at": now,
            "updated_at": now,
        })
        owner = user_id or source.get("assigned_to_user_id") or source.get("user_id")
        if owner:
            target.setdefault("created_by_user_id", owner)
        return target

    @staticmethod
    def _finish(result: ConversionResult) -> ConversionResult:
        CONVERSIONS.labels(
            source_entity_type=result.source_entity_type.value,
            target_entity_type=result.target_entity_type.value,
            status="success" if result.success else "failed",
        ).inc()
        if result.success:
            logger.info(
                "Entity converted",
                source_entity_id=result.source_entity_id,
                target_entity_id=result.target_entity_id,
            )
        else:
            logger.warning(
                "Entity conversion failed",
                source_entity_id=result.source_entity_id,
                errors=result.errors,
            )
        return result

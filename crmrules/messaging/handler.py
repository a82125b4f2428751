"""Entity event handling shared by the queue consumer and the HTTP API."""

from typing import Any

from redis.exceptions import RedisError

from crmrules.core.logging import get_logger
from crmrules.engine.processor import RulesProcessor, get_rules_processor
from crmrules.models.entity import EntityEvent
from crmrules.models.execution import ProcessingResult
from crmrules.observability.tracing import TraceContext
from crmrules.storage.entity_store import ENGINE_FIELDS, EntityStore

logger = get_logger(__name__)


class EventHandler:
    """Records the latest entity snapshot, then runs business rules on it."""

    def __init__(
        self,
        entity_store: EntityStore | None = None,
        processor: RulesProcessor | None = None,
    ):
        self._entities = entity_store or EntityStore()
        self._processor = processor

    @property
    def processor(self) -> RulesProcessor:
        return self._processor or get_rules_processor()

    async def handle_event(
        self,
        event: EntityEvent,
        trace_id: str | None = None,
    ) -> ProcessingResult:
        """Process one entity mutation.

        Pipeline steps:
        1. Merge the snapshot into the stored entity (links written by
           conversions survive partial snapshots)
        2. Evaluate rules against the event's own snapshot, plus the
           engine-owned fields of the stored entity

        Fields missing from the event snapshot stay missing for rule
        evaluation. A storage failure is reported in the result errors and
        the rules still run.

        Args:
            event: Entity event
            trace_id: Correlation id to bind to log lines

        Returns:
            Processing result
        """
        with TraceContext(trace_id):
            engine_fields: dict[str, Any] = {}
            storage_error = None
            try:
                stored = await self._entities.get(event.entity_type, event.entity_id) or {}
                engine_fields = {field: stored[field] for field in ENGINE_FIELDS if field in stored}
                await self._entities.save(
                    event.entity_type,
                    event.entity_id,
                    {**stored, **event.snapshot, **engine_fields},
                )
            except RedisError as e:
                logger.error(
                    "Failed to store entity snapshot",
                    entity_id=event.entity_id,
                    error=str(e),
                )
                storage_error = f"failed to store entity snapshot: {e}"

            snapshot = {**event.snapshot, "id": event.entity_id, **engine_fields}
            event = event.model_copy(update={"snapshot": snapshot})
            result = await self.processor.process(event)
            if storage_error:
                result.errors.append(storage_error)
            return result


# Singleton handler instance
_handler: EventHandler | None = None


def get_event_handler() -> EventHandler:
    """Get or create event handler singleton."""
    global _handler
    if _handler is None:
        _handler = EventHandler()
    return _handler


async def handle_event(event: EntityEvent, trace_id: str | None = None) -> ProcessingResult:
    """Handle an event using the singleton handler.

    Args:
        event: Entity event
        trace_id: Optional correlation id

    Returns:
        Processing result
    """
    return await get_event_handler().handle_event(event, trace_id)

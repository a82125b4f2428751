"""RabbitMQ consumer for entity mutation events."""

import json
from typing import Any, Callable, Coroutine

import aio_pika
from aio_pika import IncomingMessage
from aio_pika.abc import AbstractRobustConnection
from pydantic import ValidationError

from crmrules.core.config import get_settings
from crmrules.core.logging import get_logger
from crmrules.models.entity import EntityEvent, build_change_delta

logger = get_logger(__name__)

# Type alias for message handler
MessageHandler = Callable[[EntityEvent, str | None], Coroutine[Any, Any, Any]]


def parse_message(body: dict[str, Any]) -> EntityEvent:
    """Build an entity event from a queue message body.

    The body carries ``entity_type``, ``entity_id``, ``trigger_event`` and
    ``snapshot``, plus either ``change_delta`` or ``previous_snapshot``.

    Raises:
        ValidationError: If the body does not describe a valid event
    """
    snapshot = body.get("snapshot") or {}
    change_delta = body.get("change_delta")
    if change_delta is None:
        change_delta = build_change_delta(body.get("previous_snapshot"), snapshot)

    return EntityEvent.model_validate({
        "entity_type": body.get("entity_type"),
        "entity_id": body.get("entity_id"),
        "trigger_event": body.get("trigger_event"),
        "snapshot": snapshot,
        "change_delta": change_delta,
    })


class RabbitMQConsumer:
    """Consumes entity mutations and hands them to the event handler."""

    def __init__(self, handler: MessageHandler):
        """Initialize consumer.

        Args:
            handler: Async function called with each event and its correlation id
        """
        self._settings = get_settings()
        self._handler = handler
        self._connection: AbstractRobustConnection | None = None
        self._should_stop = False

    async def connect(self) -> None:
        """Connect to RabbitMQ."""
        self._connection = await aio_pika.connect_robust(
            self._settings.rabbitmq_url,
            reconnect_interval=5,
        )
        logger.info("Connected to RabbitMQ")

    async def disconnect(self) -> None:
        """Disconnect from RabbitMQ."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Disconnected from RabbitMQ")

    async def start_consuming(self) -> None:
        """Start consuming messages from queue."""
        if not self._connection:
            await self.connect()

        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=10)

        queue = await channel.declare_queue(
            self._settings.rabbitmq_queue,
            durable=True,
        )

        logger.info("Starting message consumption", queue=self._settings.rabbitmq_queue)

        async with queue.iterator() as queue_iter:
            async for message in queue_iter:
                if self._should_stop:
                    break
                await self.process_message(message)

    async def process_message(self, message: IncomingMessage) -> None:
        """Process a single message.

        Malformed messages are acknowledged and dropped; rule failures never
        requeue the mutation.

        Args:
            message: Incoming RabbitMQ message
        """
        async with message.process():
            try:
                body = json.loads(message.body.decode())
                if not isinstance(body, dict):
                    logger.warning("Message body is not an object", message_id=message.message_id)
                    return
                event = parse_message(body)
            except json.JSONDecodeError as e:
                logger.error("Invalid JSON message", message_id=message.message_id, error=str(e))
                return
            except ValidationError as e:
                logger.warning(
                    "Invalid entity event",
                    message_id=message.message_id,
                    errors=e.error_count(),
                )
                return

            try:
                await self._handler(event, message.correlation_id)
            except Exception as e:
                logger.error(
                    "Error processing message",
                    entity_id=event.entity_id,
                    error=str(e),
                    exc_info=True,
                )

    def stop(self) -> None:
        """Signal consumer to stop."""
        self._should_stop = True
        logger.info("Consumer stop requested")

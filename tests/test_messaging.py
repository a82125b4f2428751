"""Tests for queue message parsing and event handling."""

import json
from contextlib import asynccontextmanager

import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from crmrules.messaging.consumer import RabbitMQConsumer, parse_message
from crmrules.messaging.handler import EventHandler
from crmrules.models.entity import EntityEvent, EntityType
from crmrules.models.execution import ProcessingResult
from crmrules.models.rule import BusinessRule
from crmrules.observability.tracing import current_trace_id
from crmrules.storage.entity_store import EntityStore
from tests.conftest import Engine


class RecordingProcessor:
    """Captures processed events and the trace id active at the time."""

    def __init__(self):
        self.events: list[EntityEvent] = []
        self.trace_ids: list[str] = []

    async def process(self, event: EntityEvent) -> ProcessingResult:
        self.events.append(event)
        self.trace_ids.append(current_trace_id())
        return ProcessingResult(rules_evaluated=1)


class FakeMessage:
    """Enough of an aio_pika IncomingMessage for the consumer."""

    def __init__(self, body: bytes, correlation_id: str | None = None):
        self.body = body
        self.message_id = "msg-1"
        self.correlation_id = correlation_id
        self.processed = False

    @asynccontextmanager
    async def process(self):
        yield
        self.processed = True


def test_parse_message_builds_delta_from_previous_snapshot() -> None:
    event = parse_message({
        "entity_type": "DEAL",
        "entity_id": "d1",
        "trigger_event": "DEAL_UPDATED",
        "snapshot": {"amount": 50000, "name": "Acme Deal"},
        "previous_snapshot": {"amount": 95000, "name": "Acme Deal"},
    })

    assert event.entity_type == EntityType.DEAL
    assert list(event.change_delta) == ["amount"]
    assert event.change_delta["amount"].old == 95000
    assert event.change_delta["amount"].new == 50000
    assert event.snapshot["id"] == "d1"


def test_parse_message_prefers_explicit_delta() -> None:
    event = parse_message({
        "entity_type": "LEAD",
        "entity_id": "l1",
        "trigger_event": "LEAD_UPDATED",
        "snapshot": {"status": "qualified"},
        "change_delta": {"status": {"old": "new", "new": "qualified"}},
        "previous_snapshot": {"status": "ignored"},
    })

    assert event.change_delta["status"].old == "new"


def test_parse_message_creation_has_empty_delta() -> None:
    event = parse_message({
        "entity_type": "DEAL",
        "entity_id": "d1",
        "trigger_event": "DEAL_CREATED",
        "snapshot": {"amount": 1},
    })

    assert event.change_delta == {}


def test_parse_message_rejects_unknown_entity_type() -> None:
    with pytest.raises(ValidationError):
        parse_message({"entity_type": "INVOICE", "entity_id": "i1", "trigger_event": "X"})


@pytest.mark.asyncio
async def test_handler_merges_snapshot_into_stored_entity(redis) -> None:
    entities = EntityStore(redis)
    await entities.save(EntityType.DEAL, "d1", {
        "name": "Acme Deal",
        "amount": 95000,
        "current_step_id": "s-negotiation",
        "converted_to_entity_id": "lead_1",
    })
    processor = RecordingProcessor()
    handler = EventHandler(entity_store=entities, processor=processor)

    await handler.handle_event(
        EntityEvent(
            entity_type=EntityType.DEAL,
            entity_id="d1",
            trigger_event="DEAL_UPDATED",
            snapshot={"amount": 50000, "current_step_id": "s-open"},
        ),
        trace_id="trace-abc",
    )

    processed = processor.events[0]
    assert processed.snapshot["amount"] == 50000
    assert "name" not in processed.snapshot
    assert processed.snapshot["converted_to_entity_id"] == "lead_1"
    assert processed.snapshot["current_step_id"] == "s-negotiation"
    assert processor.trace_ids == ["trace-abc"]
    stored = await entities.get(EntityType.DEAL, "d1")
    assert stored["amount"] == 50000
    assert stored["name"] == "Acme Deal"
    assert stored["current_step_id"] == "s-negotiation"
    assert current_trace_id() == ""


@pytest.mark.asyncio
async def test_handler_ignores_stale_values_of_omitted_fields(engine: Engine,
                                                             high_value_rule: BusinessRule,
                                                             deal_snapshot: dict) -> None:
    await engine.rules.create(high_value_rule)
    handler = EventHandler(entity_store=engine.entities, processor=engine.processor)
    await handler.handle_event(EntityEvent(
        entity_type=EntityType.DEAL,
        entity_id="d1",
        trigger_event="DEAL_UPDATED",
        snapshot=deal_snapshot,
    ))

    without_amount = {k: v for k, v in deal_snapshot.items() if k != "amount"}
    result = await handler.handle_event(EntityEvent(
        entity_type=EntityType.DEAL,
        entity_id="d1",
        trigger_event="DEAL_UPDATED",
        snapshot=without_amount,
    ))

    assert result.executions[0].conditions_met is False
    assert result.notifications_created == 0
    assert (await engine.entities.get(EntityType.DEAL, "d1"))["amount"] == 95000


class UnavailableEntityStore(EntityStore):
    """Entity store whose Redis connection is down."""

    async def get(self, entity_type, entity_id):
        raise RedisConnectionError("connection refused")

    async def save(self, entity_type, entity_id, snapshot):
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_handler_reports_snapshot_storage_failure() -> None:
    processor = RecordingProcessor()
    handler = EventHandler(entity_store=UnavailableEntityStore(), processor=processor)

    result = await handler.handle_event(EntityEvent(
        entity_type=EntityType.DEAL,
        entity_id="d1",
        trigger_event="DEAL_UPDATED",
        snapshot={"amount": 95000},
    ))

    assert processor.events[0].snapshot == {"amount": 95000, "id": "d1"}
    assert result.rules_evaluated == 1
    assert result.errors == ["failed to store entity snapshot: connection refused"]


@pytest.mark.asyncio
async def test_consumer_passes_events_with_correlation_id() -> None:
    received = []

    async def handler(event: EntityEvent, trace_id: str | None) -> None:
        received.append((event, trace_id))

    consumer = RabbitMQConsumer(handler)
    message = FakeMessage(
        json.dumps({
            "entity_type": "DEAL",
            "entity_id": "d1",
            "trigger_event": "DEAL_CREATED",
            "snapshot": {"amount": 10},
        }).encode(),
        correlation_id="corr-1",
    )

    await consumer.process_message(message)

    assert message.processed is True
    assert received[0][0].entity_id == "d1"
    assert received[0][1] == "corr-1"


@pytest.mark.asyncio
async def test_consumer_drops_malformed_messages() -> None:
    received = []

    async def handler(event: EntityEvent, trace_id: str | None) -> None:
        received.append(event)

    consumer = RabbitMQConsumer(handler)

    for body in [b"not json", b"[1, 2]", json.dumps({"entity_type": "DEAL"}).encode()]:
        message = FakeMessage(body)
        await consumer.process_message(message)
        assert message.processed is True

    assert received == []


@pytest.mark.asyncio
async def test_consumer_survives_handler_failure() -> None:
    async def handler(event: EntityEvent, trace_id: str | None) -> None:
        raise RuntimeError("boom")

    consumer = RabbitMQConsumer(handler)
    message = FakeMessage(json.dumps({
        "entity_type": "DEAL",
        "entity_id": "d1",
        "trigger_event": "DEAL_UPDATED",
    }).encode())

    await consumer.process_message(message)

    assert message.processed is True

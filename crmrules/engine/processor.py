"""Business rule processing pipeline.

For one entity event:

1. Load ACTIVE rules for the entity type and trigger event
2. Evaluate each rule's conditions, in priority order
3. Run the actions of matched rules under a per-rule timeout
4. Append one RuleExecution per evaluated rule
5. Fold each execution into its rule's running stats
"""

import asyncio
import time
import uuid
from datetime import datetime

from redis.exceptions import RedisError

from crmrules.core.config import get_settings
from crmrules.core.logging import entity_log_context, get_logger
from crmrules.engine.conditions import ConditionEvaluator, get_condition_evaluator
from crmrules.engine.dispatcher import ActionDispatcher, DispatchResult
from crmrules.models.entity import EntityEvent, EntityType
from crmrules.models.execution import ProcessingResult, RuleDryRun, RuleExecution
from crmrules.models.rule import SCHEDULED_EVENT, BusinessRule
from crmrules.observability.metrics import (
    EVENTS_PROCESSED,
    EVENTS_RECEIVED,
    RULE_LATENCY,
    RULE_TIMEOUTS,
    RULES_EVALUATED,
    RULES_MATCHED,
    SCHEDULED_ENTITIES,
)
from crmrules.storage.auxiliary import ExecutionStore
from crmrules.storage.entity_store import EntityStore
from crmrules.storage.rule_store import RuleStore, RuleStoreError

logger = get_logger(__name__)


class RulesProcessor:
    """Evaluates business rules for entity events and records the audit trail."""

    def __init__(
        self,
        rule_store: RuleStore | None = None,
        execution_store: ExecutionStore | None = None,
        entity_store: EntityStore | None = None,
        dispatcher: ActionDispatcher | None = None,
        evaluator: ConditionEvaluator | None = None,
        rule_timeout: float | None = None,
    ):
        """Initialize processor.

        Args:
            rule_store: Source of rule definitions
            execution_store: RuleExecution audit log
            entity_store: Entity snapshots, swept by scheduled runs
            dispatcher: Executes matched rules' actions
            evaluator: Condition evaluator
            rule_timeout: Seconds a single rule's actions may take
        """
        self._rules = rule_store or RuleStore()
        self._executions = execution_store or ExecutionStore()
        self._entities = entity_store or EntityStore()
        self._dispatcher = dispatcher or ActionDispatcher(entity_store=self._entities)
        self._evaluator = evaluator or get_condition_evaluator()
        self._timeout = rule_timeout or get_settings().rule_timeout_seconds

    async def process(self, event: EntityEvent) -> ProcessingResult:
        """Process an entity event against all applicable rules.

        Rule store outages fail closed: no rule runs and the error is
        returned. The mutation that produced the event is never affected.

        Args:
            event: Entity event

        Returns:
            Counts of evaluated rules and created notifications, plus errors
        """
        entity_type = event.entity_type.value
        EVENTS_RECEIVED.labels(entity_type=entity_type, trigger_event=event.trigger_event).inc()
        result = ProcessingResult()

        with entity_log_context(entity_type, event.entity_id, trigger_event=event.trigger_event):
            try:
                rules = await self._rules.get_applicable_rules(
                    event.entity_type, event.trigger_event
                )
            except RuleStoreError as e:
                logger.error("Rules unavailable, skipping evaluation", error=str(e))
                EVENTS_PROCESSED.labels(entity_type=entity_type, status="failed").inc()
                result.errors.append(str(e))
                return result

            if not rules:
                logger.debug("No applicable rules")
                EVENTS_PROCESSED.labels(entity_type=entity_type, status="no_rules").inc()
                return result

            logger.info("Evaluating rules", rule_count=len(rules))
            last_executed_at = await self._last_executed_at(event.entity_type, event.entity_id)

            for rule in rules:
                record = await self._evaluate_rule(rule, event)

                # executed_at never goes backwards for an entity
                if last_executed_at and record.executed_at < last_executed_at:
                    record.executed_at = last_executed_at
                last_executed_at = record.executed_at

                try:
                    await self._executions.append(record)
                except RedisError as e:
                    logger.error("Failed to record execution", rule_id=rule.id, error=str(e))
                    result.errors.append(f"{rule.id}: failed to record execution: {e}")

                try:
                    await self._rules.record_execution(record)
                except RedisError as e:
                    logger.warning("Failed to update rule stats", rule_id=rule.id, error=str(e))
                    result.errors.append(f"{rule.id}: failed to update rule stats: {e}")

                result.rules_evaluated += 1
                result.notifications_created += record.notifications_created
                result.errors.extend(f"{rule.id}: {error}" for error in record.errors)
                result.executions.append(record)

            EVENTS_PROCESSED.labels(
                entity_type=entity_type,
                status="failed" if result.errors else "success",
            ).inc()
            logger.info(
                "Event processing complete",
                rules_evaluated=result.rules_evaluated,
                notifications_created=result.notifications_created,
                error_count=len(result.errors),
            )

        return result

    async def run_scheduled(self, entity_type: EntityType) -> ProcessingResult:
        """Evaluate SCHEDULE rules of an entity type against every stored entity."""
        result = ProcessingResult()
        try:
            rules = await self._rules.list_scheduled(entity_type)
        except RuleStoreError as e:
            logger.error("Scheduled rules unavailable", entity_type=entity_type.value, error=str(e))
            result.errors.append(str(e))
            return result
        if not rules:
            return result

        entity_ids = await self._entities.list_ids(entity_type)
        SCHEDULED_ENTITIES.labels(entity_type=entity_type.value).set(len(entity_ids))

        for entity_id in entity_ids:
            snapshot = await self._entities.get(entity_type, entity_id)
            if snapshot is None:
                continue
            event = EntityEvent(
                entity_type=entity_type,
                entity_id=entity_id,
                trigger_event=SCHEDULED_EVENT,
                snapshot=snapshot,
            )
            result.merge(await self.process(event))

        logger.info(
            "Scheduled run complete",
            entity_type=entity_type.value,
            entities=len(entity_ids),
            rules_evaluated=result.rules_evaluated,
        )
        return result

    async def dry_run(self, rule: BusinessRule, event: EntityEvent) -> RuleDryRun:
        """Evaluate a rule against an event without running actions or writing records."""
        clause_results = [
            self._evaluator.evaluate_clause(clause, event.snapshot, event.change_delta)
            for clause in rule.conditions
        ]
        conditions_met = all(clause_results)
        preview = RuleDryRun(
            rule_id=rule.id,
            conditions_met=conditions_met,
            clause_results=clause_results,
        )
        if conditions_met:
            preview.actions = [action.kind for action in rule.actions]
            preview.notifications = await self._dispatcher.preview(rule, event)
        return preview

    async def _evaluate_rule(self, rule: BusinessRule, event: EntityEvent) -> RuleExecution:
        RULES_EVALUATED.labels(rule_id=rule.id).inc()
        conditions_met = self._evaluator.evaluate(rule.conditions, event.snapshot, event.change_delta)

        dispatch = DispatchResult()
        timed_out = False
        elapsed_ms = 0

        if conditions_met:
            RULES_MATCHED.labels(rule_id=rule.id).inc()
            start = time.perf_counter()
            try:
                await asyncio.wait_for(
                    self._dispatcher.execute(rule, event, dispatch),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                timed_out = True
                dispatch.errors.append(f"rule timed out after {self._timeout:g}s")
                RULE_TIMEOUTS.labels(rule_id=rule.id).inc()
                logger.warning("Rule timed out", rule_id=rule.id, timeout=self._timeout)
            elapsed = time.perf_counter() - start
            elapsed_ms = int(elapsed * 1000)
            RULE_LATENCY.labels(rule_id=rule.id).observe(elapsed)

        logger.debug(
            "Rule evaluated",
            rule_id=rule.id,
            conditions_met=conditions_met,
            notifications_created=dispatch.notifications_created,
        )

        return RuleExecution(
            id=f"exec_{uuid.uuid4().hex[:12]}",
            rule_id=rule.id,
            entity_id=event.entity_id,
            entity_type=event.entity_type,
            execution_trigger=event.trigger_event,
            conditions_met=conditions_met,
            execution_time_ms=elapsed_ms,
            notifications_created=dispatch.notifications_created,
            errors=dispatch.errors,
            timed_out=timed_out,
        )

    async def _last_executed_at(self, entity_type: EntityType, entity_id: str) -> datetime | None:
        try:
            return await self._executions.last_executed_at(entity_type, entity_id)
        except RedisError as e:
            logger.warning("Could not read execution history", error=str(e))
            return None


# Singleton instance
_processor: RulesProcessor | None = None


def get_rules_processor() -> RulesProcessor:
    """Get rules processor singleton."""
    global _processor
    if _processor is None:
        _processor = RulesProcessor()
    return _processor


async def process_business_rules(event: EntityEvent) -> ProcessingResult:
    """Process an entity event using the singleton processor.

    This is the main entry point for rule evaluation.

    Args:
        event: Entity event

    Returns:
        Processing result
    """
    return await get_rules_processor().process(event)

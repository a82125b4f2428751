"""Workflow outcome execution (WON / LOST / CONVERTED).

Validation happens before any write: an entity without workflow state, an
entity already on a final step, or an outcome without an active step mapping
is rejected untouched. Once the step transition is committed the outcome
counts as executed; side effects run afterwards and report their own status.
"""

from typing import Any

from redis.exceptions import RedisError

from crmrules.core.logging import entity_log_context, get_logger
from crmrules.engine.conditions import coerce_number
from crmrules.engine.conversion import EntityConverter, default_target
from crmrules.engine.processor import RulesProcessor, get_rules_processor
from crmrules.models.entity import EntityEvent, EntityType, FieldChange
from crmrules.models.workflow import (
    OutcomeExecutionRequest,
    OutcomeExecutionResult,
    OutcomeOption,
    OutcomeRule,
    OutcomeRuleType,
    OutcomeType,
    WorkflowStep,
)
from crmrules.observability.metrics import OUTCOMES_EXECUTED
from crmrules.storage.entity_store import EntityStore
from crmrules.storage.workflow_store import WorkflowStateConflict, WorkflowStore

logger = get_logger(__name__)

ERROR_NO_STATE = "entity has no workflow state"
ERROR_STEP_NOT_FOUND = "current workflow step not found"
ERROR_TERMINAL = "entity already in terminal state"
ERROR_NOT_AVAILABLE = "outcome not available for this workflow"


class OutcomeExecutor:
    """Executes explicit outcome requests against an entity's workflow."""

    def __init__(
        self,
        workflow_store: WorkflowStore | None = None,
        entity_store: EntityStore | None = None,
        converter: EntityConverter | None = None,
        processor: RulesProcessor | None = None,
    ):
        """Initialize executor.

        Args:
            workflow_store: Steps, mappings, outcome rules and entity state
            entity_store: Entity snapshots
            converter: Used by the entity_conversion side effect
            processor: Rules processor notified after the outcome (singleton if omitted)
        """
        self._workflows = workflow_store or WorkflowStore()
        self._entities = entity_store or EntityStore()
        self._converter = converter or EntityConverter(self._entities, self._workflows)
        self._processor = processor

    async def execute(self, request: OutcomeExecutionRequest) -> OutcomeExecutionResult:
        """Execute an outcome for an entity.

        Args:
            request: Entity and requested outcome

        Returns:
            Result; ``success`` reflects the step transition only
        """
        entity_type = request.entity_type
        with entity_log_context(entity_type.value, request.entity_id, outcome=request.outcome.value):
            result = await self._execute(request)
            OUTCOMES_EXECUTED.labels(
                entity_type=entity_type.value,
                outcome=request.outcome.value,
                status="success" if result.success else "rejected",
            ).inc()
            return result

    async def _execute(self, request: OutcomeExecutionRequest) -> OutcomeExecutionResult:
        outcome = request.outcome

        def rejected(error: str) -> OutcomeExecutionResult:
            logger.info("Outcome rejected", reason=error)
            return OutcomeExecutionResult(success=False, outcome=outcome, errors=[error])

        state = await self._workflows.get_entity_state(request.entity_type, request.entity_id)
        if state is None:
            return rejected(ERROR_NO_STATE)

        current = await self._workflows.get_step(state.current_step_id)
        if current is None:
            return rejected(ERROR_STEP_NOT_FOUND)
        if current.is_final_step:
            return rejected(ERROR_TERMINAL)

        mapping = await self._workflows.find_step_mapping(state.workflow_id, outcome, current.id)
        if mapping is None:
            return rejected(ERROR_NOT_AVAILABLE)

        snapshot = await self._entities.get(request.entity_type, request.entity_id)
        outcome_rules = [
            rule
            for rule in await self._workflows.list_outcome_rules(request.entity_type, outcome)
            if self._rule_applies(rule, current, snapshot or {})
        ]

        try:
            await self._workflows.transition(
                request.entity_type,
                request.entity_id,
                expected_step_id=current.id,
                target_step_id=mapping.target_step_id,
            )
        except WorkflowStateConflict as e:
            return rejected(str(e))

        logger.info(
            "Outcome executed",
            from_step_id=current.id,
            to_step_id=mapping.target_step_id,
            mapping_id=mapping.id,
        )

        side_effects: dict[str, Any] = {}
        for source in [mapping.side_effects, *(rule.side_effects for rule in outcome_rules)]:
            for name, config in source.items():
                side_effects.setdefault(name, config)

        applied: dict[str, Any] = {}
        if snapshot is not None:
            try:
                snapshot = await self._entities.update_fields(
                    request.entity_type,
                    request.entity_id,
                    {"current_step_id": mapping.target_step_id},
                )
            except RedisError as e:
                logger.error("Failed to sync entity step", error=str(e))
                snapshot = {**snapshot, "current_step_id": mapping.target_step_id}
                applied["step_synced"] = {"success": False, "errors": [str(e)]}

        applied.update(
            await self._apply_side_effects(side_effects, request, state.workflow_id, snapshot)
        )

        await self._notify_processor(request, current.id, mapping.target_step_id)

        return OutcomeExecutionResult(
            success=True,
            outcome_executed=True,
            outcome=outcome,
            target_step_id=mapping.target_step_id,
            side_effects_applied=applied,
        )

    async def get_available_outcomes(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> list[OutcomeOption]:
        """List each outcome with whether it can currently be executed."""
        state = await self._workflows.get_entity_state(entity_type, entity_id)
        current = await self._workflows.get_step(state.current_step_id) if state else None

        options = []
        for outcome in OutcomeType:
            option = OutcomeOption(
                outcome_type=outcome,
                display_name=outcome.display_name,
                available=False,
            )
            if state is None:
                option.reason = ERROR_NO_STATE
            elif current is None:
                option.reason = ERROR_STEP_NOT_FOUND
            elif current.is_final_step:
                option.reason = ERROR_TERMINAL
            else:
                mapping = await self._workflows.find_step_mapping(
                    state.workflow_id, outcome, current.id
                )
                if mapping is None:
                    option.reason = ERROR_NOT_AVAILABLE
                else:
                    option.available = True
                    option.target_step_id = mapping.target_step_id
            options.append(option)
        return options

    @staticmethod
    def _rule_applies(rule: OutcomeRule, current: WorkflowStep, snapshot: dict[str, Any]) -> bool:
        if rule.rule_type == OutcomeRuleType.STEP_SPECIFIC:
            from_steps = rule.conditions.get("from_step_ids") or []
            return not from_steps or current.id in from_steps

        if rule.rule_type == OutcomeRuleType.PROBABILITY_THRESHOLD:
            probability = coerce_number(snapshot.get("probability"))
            if probability is None:
                return False
            minimum = coerce_number(rule.conditions.get("min_probability"))
            maximum = coerce_number(rule.conditions.get("max_probability"))
            if minimum is not None and probability < minimum:
                return False
            if maximum is not None and probability > maximum:
                return False
            return True

        return True

    async def _apply_side_effects(
        self,
        side_effects: dict[str, Any],
        request: OutcomeExecutionRequest,
        workflow_id: str,
        snapshot: dict[str, Any] | None,
    ) -> dict[str, Any]:
        applied: dict[str, Any] = {}

        conversion = side_effects.get("entity_conversion")
        if conversion:
            applied["entity_conversion"] = await self._apply_conversion(
                conversion, request, snapshot
            )

        if "update_probability" in side_effects:
            probability = side_effects["update_probability"]
            updated = await self._update_entity(request, {"probability": probability}, snapshot)
            applied["probability_updated"] = {**updated, "value": probability}

        metadata = side_effects.get("update_metadata")
        if isinstance(metadata, dict) and metadata:
            merged = {**((snapshot or {}).get("metadata") or {}), **metadata}
            updated = await self._update_entity(request, {"metadata": merged}, snapshot)
            applied["metadata_updated"] = {**updated, "fields": sorted(metadata)}

        return applied

    async def _apply_conversion(
        self,
        config: Any,
        request: OutcomeExecutionRequest,
        snapshot: dict[str, Any] | None,
    ) -> dict[str, Any]:
        options = config if isinstance(config, dict) else {}
        target_value = options.get("target_entity_type")
        try:
            target_type = EntityType(target_value) if target_value else default_target(request.entity_type)
        except ValueError:
            target_type = None
        if target_type is None:
            return {
                "success": False,
                "target_entity_id": None,
                "target_entity_type": target_value,
                "errors": [f"{request.entity_type.value} entities cannot be converted"],
            }

        conversion = await self._converter.convert(
            request.entity_type,
            request.entity_id,
            target_type,
            field_mappings=options.get("field_mappings"),
            reason=options.get("reason", f"Outcome {request.outcome.value}"),
            source_snapshot=snapshot,
            workflow_id=options.get("workflow_id"),
            user_id=request.user_id,
        )
        return {
            "success": conversion.success,
            "target_entity_id": conversion.target_entity_id,
            "target_entity_type": conversion.target_entity_type.value,
            "errors": conversion.errors,
        }

    async def _update_entity(
        self,
        request: OutcomeExecutionRequest,
        fields: dict[str, Any],
        snapshot: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if snapshot is None:
            logger.warning("Entity snapshot not found, side effect skipped", fields=sorted(fields))
            return {"success": False}
        try:
            updated = await self._entities.update_fields(request.entity_type, request.entity_id, fields)
        except RedisError as e:
            logger.error("Side effect write failed", fields=sorted(fields), error=str(e))
            return {"success": False, "errors": [str(e)]}
        if updated is not None:
            snapshot.update(fields)
        return {"success": updated is not None}

    async def _notify_processor(
        self,
        request: OutcomeExecutionRequest,
        from_step_id: str,
        to_step_id: str,
    ) -> None:
        """Run business rules on the post-transition entity; failures are only logged."""
        processor = self._processor or get_rules_processor()
        try:
            snapshot = await self._entities.get(request.entity_type, request.entity_id) or {}
            event = EntityEvent(
                entity_type=request.entity_type,
                entity_id=request.entity_id,
                trigger_event=f"{request.entity_type.value}_UPDATED",
                snapshot={**snapshot, "current_step_id": to_step_id},
                change_delta={"current_step_id": FieldChange(old=from_step_id, new=to_step_id)},
            )
            await processor.process(event)
        except Exception as e:
            logger.error("Post-outcome rule processing failed", error=str(e), exc_info=True)


# Singleton instance
_executor: OutcomeExecutor | None = None


def get_outcome_executor() -> OutcomeExecutor:
    """Get outcome executor singleton."""
    global _executor
    if _executor is None:
        _executor = OutcomeExecutor()
    return _executor

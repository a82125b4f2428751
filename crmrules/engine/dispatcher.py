"""Action dispatcher for matched business rules."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from crmrules.core.config import get_settings
from crmrules.core.logging import get_logger
from crmrules.engine.conversion import EntityConverter
from crmrules.engine.template import TemplateEngine, get_template_engine
from crmrules.models.entity import EntityEvent, resolve_owner
from crmrules.models.execution import NotificationPreview
from crmrules.models.notification import Notification
from crmrules.models.rule import (
    BusinessRule,
    NotifyAction,
    RecipientKind,
    RecipientSelector,
    TransitionStepAction,
    TriggerConversionAction,
)
from crmrules.observability.metrics import NOTIFICATIONS_CREATED
from crmrules.storage.auxiliary import NotificationStore, UserDirectory
from crmrules.storage.entity_store import EntityStore
from crmrules.storage.workflow_store import WorkflowStateConflict, WorkflowStore

logger = get_logger(__name__)


class ActionError(Exception):
    """Raised by an action that could not be carried out."""


@dataclass
class DispatchResult:
    """Counts and failures collected while running a rule's actions.

    Filled in place so that whatever completed before a timeout is kept.
    """

    notifications_created: int = 0
    notifications_skipped: int = 0
    actions_completed: int = 0
    errors: list[str] = field(default_factory=list)


class ActionDispatcher:
    """Executes the actions of a matched rule in declared order."""

    def __init__(
        self,
        notification_store: NotificationStore | None = None,
        workflow_store: WorkflowStore | None = None,
        entity_store: EntityStore | None = None,
        converter: EntityConverter | None = None,
        directory: UserDirectory | None = None,
        template_engine: TemplateEngine | None = None,
    ):
        """Initialize dispatcher.

        Args:
            notification_store: Where notifications are written
            workflow_store: Workflow steps and entity state
            entity_store: Entity snapshots, kept in sync on step transitions
            converter: Entity converter for trigger_conversion
            directory: Role membership for role recipients
            template_engine: Renderer for titles and messages
        """
        self._notifications = notification_store or NotificationStore()
        self._workflows = workflow_store or WorkflowStore()
        self._entities = entity_store or EntityStore()
        self._converter = converter or EntityConverter(self._entities, self._workflows)
        self._directory = directory or UserDirectory()
        self._templates = template_engine or get_template_engine()

    async def execute(
        self,
        rule: BusinessRule,
        event: EntityEvent,
        result: DispatchResult,
    ) -> DispatchResult:
        """Run every action of a rule.

        A failing action is recorded in ``result.errors`` and the remaining
        actions still run.

        Args:
            rule: Matched rule
            event: Triggering entity event
            result: Result to fill in

        Returns:
            The same result object
        """
        for index, action in enumerate(rule.actions):
            try:
                if isinstance(action, NotifyAction):
                    await self._notify(rule, action, event, result)
                elif isinstance(action, TransitionStepAction):
                    await self._transition(action, event)
                elif isinstance(action, TriggerConversionAction):
                    await self._convert(action, event)
                else:
                    raise ActionError(f"unsupported action kind: {action.kind}")
                result.actions_completed += 1
            except ActionError as e:
                result.errors.append(f"{action.kind}: {e}")
                logger.warning(
                    "Action failed",
                    rule_id=rule.id,
                    action_index=index,
                    action=action.kind,
                    error=str(e),
                )
            except Exception as e:
                result.errors.append(f"{action.kind}: {e}")
                logger.error(
                    "Error executing action",
                    rule_id=rule.id,
                    action_index=index,
                    action=action.kind,
                    error=str(e),
                    exc_info=True,
                )
        return result

    async def preview(
        self,
        rule: BusinessRule,
        event: EntityEvent,
    ) -> list[NotificationPreview]:
        """Render the notifications a rule would create, without writing."""
        previews = []
        for action in rule.actions:
            if not isinstance(action, NotifyAction):
                continue
            title, message = self._render(action, event)
            recipients = await self.resolve_recipients(action.recipient, event.snapshot)
            for user_id in recipients or [None]:
                previews.append(
                    NotificationPreview(
                        user_id=user_id,
                        title=title,
                        message=message,
                        priority=action.priority,
                    )
                )
        return previews

    async def resolve_recipients(
        self,
        selector: RecipientSelector,
        snapshot: dict[str, Any],
    ) -> list[str]:
        """Resolve a recipient selector to user ids.

        Role selectors with no members fall back to the entity owner.
        """
        if selector.kind == RecipientKind.USER:
            return [selector.user_id]

        if selector.kind == RecipientKind.ROLE:
            members = await self._directory.users_with_role(selector.role)
            if members:
                return members

        owner = resolve_owner(snapshot)
        return [owner] if owner else []

    def _render(self, action: NotifyAction, event: EntityEvent) -> tuple[str, str]:
        title = self._templates.substitute(action.title_template, event.snapshot, event.entity_type)
        message = self._templates.substitute(
            action.message_template, event.snapshot, event.entity_type
        )
        return title, message

    async def _notify(
        self,
        rule: BusinessRule,
        action: NotifyAction,
        event: EntityEvent,
        result: DispatchResult,
    ) -> None:
        recipients = await self.resolve_recipients(action.recipient, event.snapshot)
        if not recipients:
            result.notifications_skipped += 1
            logger.info(
                "Notification skipped, no recipient",
                rule_id=rule.id,
                recipient=action.recipient.kind.value,
            )
            return

        title, message = self._render(action, event)
        expires_at = self._expiry(action)

        for user_id in recipients:
            notification = Notification(
                id=f"ntf_{uuid.uuid4().hex[:12]}",
                rule_id=rule.id,
                type=action.notification_type,
                title=title,
                message=message,
                priority=action.priority,
                user_id=user_id,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                metadata={
                    **action.metadata,
                    "rule_name": rule.name,
                    "trigger_event": event.trigger_event,
                },
                expires_at=expires_at,
            )
            await self._notifications.create(notification)
            result.notifications_created += 1
            NOTIFICATIONS_CREATED.labels(entity_type=event.entity_type.value).inc()

            logger.info(
                "Notification created",
                notification_id=notification.id,
                rule_id=rule.id,
                user_id=user_id,
            )

    @staticmethod
    def _expiry(action: NotifyAction) -> datetime | None:
        hours = action.expires_in_hours or get_settings().notification_default_expiry_hours
        if not hours:
            return None
        return datetime.now(timezone.utc) + timedelta(hours=hours)

    async def _transition(self, action: TransitionStepAction, event: EntityEvent) -> None:
        state = await self._workflows.get_entity_state(event.entity_type, event.entity_id)
        if state is None:
            raise ActionError("entity has no workflow state")

        current = await self._workflows.get_step(state.current_step_id)
        if current is not None and current.is_final_step:
            raise ActionError("entity already in terminal state")

        target = await self._workflows.get_step(action.target_step_id)
        if target is None or target.workflow_id != state.workflow_id:
            raise ActionError(
                f"step {action.target_step_id} is not part of workflow {state.workflow_id}"
            )

        if state.current_step_id == target.id:
            logger.debug("Entity already on target step", step_id=target.id)
            return

        try:
            await self._workflows.transition(
                event.entity_type,
                event.entity_id,
                expected_step_id=state.current_step_id,
                target_step_id=target.id,
            )
        except WorkflowStateConflict as e:
            raise ActionError(str(e)) from e

        await self._entities.update_fields(
            event.entity_type,
            event.entity_id,
            {"current_step_id": target.id},
        )
        logger.info(
            "Entity step transitioned",
            from_step_id=state.current_step_id,
            to_step_id=target.id,
        )

    async def _convert(self, action: TriggerConversionAction, event: EntityEvent) -> None:
        conversion = await self._converter.convert(
            event.entity_type,
            event.entity_id,
            action.target_entity_type,
            field_mappings=action.field_mappings,
            reason=action.reason,
            source_snapshot=event.snapshot,
        )
        if not conversion.success:
            raise ActionError("; ".join(conversion.errors) or "conversion failed")

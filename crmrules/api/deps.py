"""API dependency injection."""

from typing import Annotated

from fastapi import Depends, Query

from crmrules.engine.outcome import OutcomeExecutor, get_outcome_executor
from crmrules.engine.processor import RulesProcessor, get_rules_processor
from crmrules.messaging.handler import EventHandler, get_event_handler
from crmrules.schemas.common import PaginationParams
from crmrules.storage.auxiliary import ExecutionStore, NotificationStore
from crmrules.storage.redis_client import get_redis
from crmrules.storage.rule_store import RuleStore


def get_rule_store() -> RuleStore:
    """Get rule store instance."""
    return RuleStore(get_redis())


def get_execution_store() -> ExecutionStore:
    """Get execution store instance."""
    return ExecutionStore(get_redis())


def get_notification_store() -> NotificationStore:
    """Get notification store instance."""
    return NotificationStore(get_redis())


# Type aliases for dependency injection
RuleStoreDep = Annotated[RuleStore, Depends(get_rule_store)]
ExecutionStoreDep = Annotated[ExecutionStore, Depends(get_execution_store)]
NotificationStoreDep = Annotated[NotificationStore, Depends(get_notification_store)]
ProcessorDep = Annotated[RulesProcessor, Depends(get_rules_processor)]
OutcomeExecutorDep = Annotated[OutcomeExecutor, Depends(get_outcome_executor)]
EventHandlerDep = Annotated[EventHandler, Depends(get_event_handler)]


def get_pagination(
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=20, ge=1, le=100, description="Items per page"),
) -> PaginationParams:
    """Get pagination parameters from query."""
    return PaginationParams(page=page, page_size=page_size)


PaginationDep = Annotated[PaginationParams, Depends(get_pagination)]

"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# Event metrics
EVENTS_RECEIVED = Counter(
    "crm_rules_events_received_total",
    "Total number of entity events received",
    ["entity_type", "trigger_event"],
)

EVENTS_PROCESSED = Counter(
    "crm_rules_events_processed_total",
    "Total number of entity events processed",
    ["entity_type", "status"],
)

# Rule metrics
RULES_EVALUATED = Counter(
    "crm_rules_rules_evaluated_total",
    "Total number of rule evaluations",
    ["rule_id"],
)

RULES_MATCHED = Counter(
    "crm_rules_rules_matched_total",
    "Total number of rule evaluations whose conditions held",
    ["rule_id"],
)

RULE_TIMEOUTS = Counter(
    "crm_rules_rule_timeouts_total",
    "Total number of rule evaluations that hit the timeout",
    ["rule_id"],
)

RULE_LATENCY = Histogram(
    "crm_rules_rule_action_latency_seconds",
    "Time spent executing a matched rule's actions",
    ["rule_id"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Notification metrics
NOTIFICATIONS_CREATED = Counter(
    "crm_rules_notifications_created_total",
    "Total notifications created",
    ["entity_type"],
)

# Outcome metrics
OUTCOMES_EXECUTED = Counter(
    "crm_rules_outcomes_executed_total",
    "Total outcome execution requests",
    ["entity_type", "outcome", "status"],
)

CONVERSIONS = Counter(
    "crm_rules_conversions_total",
    "Total entity conversions",
    ["source_entity_type", "target_entity_type", "status"],
)

# Scheduler metrics
SCHEDULED_ENTITIES = Gauge(
    "crm_rules_scheduled_entities",
    "Entities swept in the last scheduled run",
    ["entity_type"],
)

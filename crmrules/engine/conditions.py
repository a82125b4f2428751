"""Condition evaluation for business rules.

Conditions are structured clauses, never code. A rule matches only when every
clause holds; a clause that refers to a field the snapshot (or change delta)
does not carry is simply false.
"""

import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping

from crmrules.core.logging import get_logger
from crmrules.models.entity import FieldChange
from crmrules.models.rule import (
    AgeCondition,
    AgeOperator,
    ChangedCondition,
    ChangedFromCondition,
    ChangedToCondition,
    ComparisonOperator,
    Condition,
    MembershipCondition,
    TextCondition,
    TextOperator,
    ThresholdCondition,
)

logger = get_logger(__name__)

ChangeDelta = Mapping[str, FieldChange | Mapping[str, Any]]

_INTERVAL = re.compile(r"^\s*(\d+)\s*(minute|hour|day|week)s?\s*$", re.IGNORECASE)
_INTERVAL_UNITS = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}


def coerce_number(value: Any) -> Decimal | None:
    """Coerce numbers and numeric strings to Decimal, None if not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        candidate = str(value)
    elif isinstance(value, str):
        candidate = value.strip()
    else:
        return None
    try:
        number = Decimal(candidate)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def values_equal(left: Any, right: Any) -> bool:
    """Numeric equality when both sides are numeric, text equality otherwise."""
    left_number, right_number = coerce_number(left), coerce_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return _as_text(left) == _as_text(right)


def parse_interval(interval: str) -> timedelta | None:
    """Parse intervals like "30 minutes", "1 hour", "2 days"."""
    match = _INTERVAL.match(interval)
    if not match:
        return None
    amount, unit = match.groups()
    return int(amount) * _INTERVAL_UNITS[unit.lower()]


def parse_timestamp(value: Any) -> datetime | None:
    """Parse datetimes, dates and ISO strings into aware UTC datetimes."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _split_change(change: FieldChange | Mapping[str, Any]) -> tuple[Any, Any]:
    if isinstance(change, FieldChange):
        return change.old, change.new
    return change.get("old"), change.get("new")


class ConditionEvaluator:
    """Evaluates rule conditions against an entity snapshot and change delta."""

    def __init__(self, clock: Callable[[], datetime] | None = None):
        """Initialize evaluator.

        Args:
            clock: Source of "now" for age clauses
        """
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: dict[str, Callable[[Any, Mapping[str, Any], ChangeDelta], bool]] = {
            "field_threshold": self._threshold,
            "field_changed": self._changed,
            "field_changed_to": self._changed_to,
            "field_changed_from": self._changed_from,
            "field_text": self._text,
            "field_in": self._membership,
            "field_age": self._age,
        }

    def evaluate(
        self,
        conditions: list[Condition],
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta | None = None,
    ) -> bool:
        """Check that all conditions hold.

        Args:
            conditions: Clauses to AND together (empty list matches)
            snapshot: Entity field values
            change_delta: Changed fields of the triggering mutation

        Returns:
            True if every clause is satisfied
        """
        delta = change_delta or {}
        return all(self.evaluate_clause(clause, snapshot, delta) for clause in conditions)

    def evaluate_clause(
        self,
        clause: Condition,
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta,
    ) -> bool:
        """Evaluate one clause; never raises."""
        handler = self._handlers.get(clause.kind)
        if handler is None:
            logger.warning("Unknown condition kind", kind=clause.kind)
            return False
        try:
            return handler(clause, snapshot, change_delta)
        except (TypeError, ValueError, ArithmeticError) as e:
            logger.warning(
                "Condition evaluation error",
                kind=clause.kind,
                field=clause.field,
                error=str(e),
            )
            return False

    def _threshold(
        self,
        clause: ThresholdCondition,
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta,
    ) -> bool:
        if clause.field not in snapshot:
            return False
        actual = snapshot[clause.field]

        if clause.op == ComparisonOperator.EQ:
            return values_equal(actual, clause.value)
        if clause.op == ComparisonOperator.NE:
            return not values_equal(actual, clause.value)

        left, right = coerce_number(actual), coerce_number(clause.value)
        if left is None or right is None:
            return False
        if clause.op == ComparisonOperator.GT:
            return left > right
        if clause.op == ComparisonOperator.GE:
            return left >= right
        if clause.op == ComparisonOperator.LT:
            return left < right
        return left <= right

    def _changed(
        self,
        clause: ChangedCondition,
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta,
    ) -> bool:
        return clause.field in change_delta

    def _changed_to(
        self,
        clause: ChangedToCondition,
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta,
    ) -> bool:
        if clause.field not in change_delta:
            return False
        _, new = _split_change(change_delta[clause.field])
        return values_equal(new, clause.value)

    def _changed_from(
        self,
        clause: ChangedFromCondition,
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta,
    ) -> bool:
        if clause.field not in change_delta:
            return False
        old, _ = _split_change(change_delta[clause.field])
        return values_equal(old, clause.value)

    def _text(
        self,
        clause: TextCondition,
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta,
    ) -> bool:
        actual = snapshot.get(clause.field)
        if actual is None:
            return False
        haystack = _as_text(actual).lower()
        needle = clause.value.lower()
        if clause.op == TextOperator.CONTAINS:
            return needle in haystack
        if clause.op == TextOperator.STARTS_WITH:
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    def _membership(
        self,
        clause: MembershipCondition,
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta,
    ) -> bool:
        if clause.field not in snapshot:
            return False
        actual = snapshot[clause.field]
        found = any(values_equal(actual, candidate) for candidate in clause.values)
        return not found if clause.negate else found

    def _age(
        self,
        clause: AgeCondition,
        snapshot: Mapping[str, Any],
        change_delta: ChangeDelta,
    ) -> bool:
        timestamp = parse_timestamp(snapshot.get(clause.field))
        interval = parse_interval(clause.interval)
        if timestamp is None or interval is None:
            return False
        age = self._clock() - timestamp
        if clause.op == AgeOperator.OLDER_THAN:
            return age > interval
        return age < interval


# Singleton instance
_evaluator: ConditionEvaluator | None = None


def get_condition_evaluator() -> ConditionEvaluator:
    """Get condition evaluator singleton."""
    global _evaluator
    if _evaluator is None:
        _evaluator = ConditionEvaluator()
    return _evaluator

"""Placeholder substitution for notification titles and messages.

Templates use ``{{name}}`` placeholders. A placeholder is resolved, in order,
from:

1. entity-type aliases (``deal_name``, ``deal_amount``, ``lead_value`` ...)
2. ``<entity type>_<field>`` prefixed fields (``deal_probability``)
3. plain snapshot fields (``name``, ``amount``)
4. generic variables (``entity_id``, ``entity_name``, ``current_date`` ...)

Anything that does not resolve stays in the output verbatim.
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from crmrules.core.config import get_settings
from crmrules.models.entity import EntityType

PLACEHOLDER = re.compile(r"(?<!\{)\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}(?!\})")

_OPEN_RUN = re.compile(r"\{\{+")
_CLOSE_RUN = re.compile(r"\}\}+")

# alias -> (snapshot field, render style)
ALIASES: dict[EntityType, dict[str, tuple[str, str]]] = {
    EntityType.DEAL: {
        "deal_name": ("name", "text"),
        "deal_amount": ("amount", "money"),
        "deal_currency": ("currency", "text"),
        "deal_stage": ("stage_name", "text"),
        "deal_owner": ("assigned_to_user_name", "text"),
        "deal_close_date": ("expected_close_date", "date"),
    },
    EntityType.LEAD: {
        "lead_name": ("name", "text"),
        "lead_email": ("contact_email", "text"),
        "lead_value": ("estimated_value", "money"),
        "lead_source": ("source", "text"),
        "lead_company": ("company_name", "text"),
        "lead_owner": ("assigned_to_user_name", "text"),
    },
    EntityType.PERSON: {
        "person_email": ("email", "text"),
        "person_phone": ("phone", "text"),
    },
    EntityType.ORGANIZATION: {
        "organization_name": ("name", "text"),
        "organization_website": ("website", "text"),
    },
    EntityType.ACTIVITY: {
        "activity_subject": ("subject", "text"),
        "activity_type": ("type", "text"),
        "activity_due_date": ("due_date", "date"),
    },
}

NAME_FIELDS = ("name", "title", "subject", "contact_name")


def format_number(value: int | float | Decimal) -> str:
    """Render a number with ``,`` thousands separators, independent of locale."""
    if isinstance(value, int):
        return f"{value:,}"
    decimal_value = Decimal(str(value))
    if not decimal_value.is_finite():
        return str(value)
    if decimal_value == decimal_value.to_integral_value():
        return f"{int(decimal_value):,}"
    return f"{decimal_value:,.2f}"


def format_money(value: Any, currency: str | None) -> str:
    """Render an amount as ``EUR 95,000.00`` (currency omitted when unknown)."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return render_value(value)
    if not amount.is_finite():
        return render_value(value)
    rendered = f"{amount:,.2f}"
    return f"{currency} {rendered}" if currency else rendered


def render_value(value: Any) -> str:
    """Render a snapshot value as notification text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return format_number(value)
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return ", ".join(render_value(item) for item in value)
    return str(value)


def _render_date(value: Any) -> str:
    if isinstance(value, str) and "T" in value:
        # ISO timestamps from the API layer: keep the date part
        return value.split("T", 1)[0]
    if isinstance(value, datetime):
        return value.date().isoformat()
    return render_value(value)


def _neutralize(text: str) -> str:
    """Collapse placeholder delimiters inside substituted values."""
    return _CLOSE_RUN.sub("}", _OPEN_RUN.sub("{", text))


class TemplateEngine:
    """Single-pass ``{{placeholder}}`` renderer."""

    def __init__(
        self,
        default_currency: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize engine.

        Args:
            default_currency: Currency used for money fields when the entity has none
            clock: Source of "now" for date variables
        """
        if default_currency is None:
            default_currency = get_settings().default_currency
        self._default_currency = default_currency
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def substitute(
        self,
        template: str,
        snapshot: dict[str, Any],
        entity_type: EntityType,
    ) -> str:
        """Replace every resolvable placeholder in ``template``.

        Args:
            template: Text with ``{{name}}`` placeholders
            snapshot: Entity field values
            entity_type: Type of the entity, used for aliases

        Returns:
            Rendered text; unknown placeholders are left as they were
        """
        if "{{" not in template:
            return template

        def replace(match: re.Match[str]) -> str:
            value = self.resolve(match.group(1), snapshot, entity_type)
            if value is None:
                return match.group(0)
            return _neutralize(value)

        return PLACEHOLDER.sub(replace, template)

    def resolve(
        self,
        name: str,
        snapshot: dict[str, Any],
        entity_type: EntityType,
    ) -> str | None:
        """Resolve one placeholder name, None if it is unknown."""
        alias = ALIASES.get(entity_type, {}).get(name)
        if alias is not None:
            field, style = alias
            if field in snapshot:
                return self._render(snapshot[field], style, snapshot)

        if entity_type == EntityType.PERSON and name == "person_name":
            if "first_name" in snapshot or "last_name" in snapshot:
                return self._person_name(snapshot)

        prefix = f"{entity_type.value.lower()}_"
        if name.startswith(prefix) and name[len(prefix):] in snapshot:
            return render_value(snapshot[name[len(prefix):]])

        if name in snapshot:
            return render_value(snapshot[name])

        return self._generic(name, snapshot, entity_type)

    def _render(self, value: Any, style: str, snapshot: dict[str, Any]) -> str:
        if style == "money":
            if value is None:
                return ""
            currency = snapshot.get("currency") or self._default_currency
            return format_money(value, currency)
        if style == "date":
            return _render_date(value)
        return render_value(value)

    def _generic(
        self,
        name: str,
        snapshot: dict[str, Any],
        entity_type: EntityType,
    ) -> str | None:
        if name == "entity_id" and "id" in snapshot:
            return render_value(snapshot["id"])
        if name == "entity_type":
            return entity_type.value
        if name == "entity_name":
            return self._entity_name(snapshot)
        if name == "current_date":
            return self._clock().date().isoformat()
        if name == "current_time":
            return self._clock().strftime("%Y-%m-%d %H:%M:%S")
        return None

    def _entity_name(self, snapshot: dict[str, Any]) -> str:
        for field in NAME_FIELDS:
            if snapshot.get(field):
                return render_value(snapshot[field])
        person_name = self._person_name(snapshot)
        return person_name or "Entity"

    @staticmethod
    def _person_name(snapshot: dict[str, Any]) -> str:
        parts = [snapshot.get("first_name"), snapshot.get("last_name")]
        return " ".join(str(part) for part in parts if part)


# Singleton instance
_engine: TemplateEngine | None = None


def get_template_engine() -> TemplateEngine:
    """Get template engine singleton."""
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine


def substitute(template: str, snapshot: dict[str, Any], entity_type: EntityType) -> str:
    """Render a template with the singleton engine."""
    return get_template_engine().substitute(template, snapshot, entity_type)

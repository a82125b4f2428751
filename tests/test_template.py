"""Tests for notification template rendering."""

from datetime import datetime, timezone

from crmrules.engine.template import TemplateEngine, format_money, format_number
from crmrules.models.entity import EntityType

FIXED_NOW = datetime(2026, 3, 14, 9, 30, 0, tzinfo=timezone.utc)


def make_engine(currency: str = "") -> TemplateEngine:
    return TemplateEngine(default_currency=currency, clock=lambda: FIXED_NOW)


def test_template_without_placeholders_is_unchanged() -> None:
    engine = make_engine()
    template = "Deal {single braces} stay as they are"

    assert engine.substitute(template, {"name": "x"}, EntityType.DEAL) == template


def test_deal_alias_resolves_name() -> None:
    engine = make_engine()

    rendered = engine.substitute(
        "High value deal: {{deal_name}}",
        {"id": "d1", "name": "Acme Deal", "amount": 95000},
        EntityType.DEAL,
    )

    assert rendered == "High value deal: Acme Deal"


def test_money_alias_uses_entity_currency() -> None:
    engine = make_engine(currency="USD")
    snapshot = {"amount": 95000, "currency": "EUR"}

    assert engine.substitute("{{deal_amount}}", snapshot, EntityType.DEAL) == "EUR 95,000.00"


def test_money_alias_falls_back_to_default_currency() -> None:
    assert make_engine(currency="USD").substitute(
        "{{deal_amount}}", {"amount": 1500.5}, EntityType.DEAL
    ) == "USD 1,500.50"
    assert make_engine().substitute(
        "{{deal_amount}}", {"amount": 1500.5}, EntityType.DEAL
    ) == "1,500.50"


def test_plain_and_prefixed_fields() -> None:
    engine = make_engine()
    snapshot = {"amount": 95000, "probability": 75}

    rendered = engine.substitute(
        "{{amount}} at {{deal_probability}}%",
        snapshot,
        EntityType.DEAL,
    )

    assert rendered == "95,000 at 75%"


def test_unknown_placeholder_is_left_literally() -> None:
    engine = make_engine()

    rendered = engine.substitute("Hello {{no_such_field}}", {"name": "x"}, EntityType.DEAL)

    assert rendered == "Hello {{no_such_field}}"


def test_generic_variables() -> None:
    engine = make_engine()
    snapshot = {"id": "p1", "first_name": "Ada", "last_name": "Lovelace"}

    rendered = engine.substitute(
        "{{entity_type}} {{entity_id}}: {{entity_name}} on {{current_date}}",
        snapshot,
        EntityType.PERSON,
    )

    assert rendered == "PERSON p1: Ada Lovelace on 2026-03-14"


def test_person_name_alias() -> None:
    engine = make_engine()

    rendered = engine.substitute(
        "{{person_name}}",
        {"first_name": "Ada", "last_name": "Lovelace"},
        EntityType.PERSON,
    )

    assert rendered == "Ada Lovelace"


def test_substitution_is_idempotent() -> None:
    engine = make_engine()
    snapshot = {"name": "Tricky {{deal_amount}} deal", "amount": 10}

    once = engine.substitute("Deal: {{deal_name}}", snapshot, EntityType.DEAL)
    twice = engine.substitute(once, snapshot, EntityType.DEAL)

    assert once == twice
    assert "{{" not in once


def test_brace_padded_placeholders_stay_literal() -> None:
    engine = make_engine()
    snapshot = {"name": "amount", "amount": 5}

    for template in ["{{{{name}}}}", "{{{name}}}", "{{{name}}", "{{name}}}"]:
        once = engine.substitute(template, snapshot, EntityType.DEAL)
        twice = engine.substitute(once, snapshot, EntityType.DEAL)

        assert once == template
        assert twice == once


def test_adjacent_placeholders_both_resolve() -> None:
    engine = make_engine()

    rendered = engine.substitute("{{name}}{{amount}}", {"name": "a", "amount": 5}, EntityType.DEAL)

    assert rendered == "a5"


def test_date_alias_keeps_date_part() -> None:
    engine = make_engine()

    rendered = engine.substitute(
        "Closes {{deal_close_date}}",
        {"expected_close_date": "2026-05-01T00:00:00Z"},
        EntityType.DEAL,
    )

    assert rendered == "Closes 2026-05-01"


def test_number_formatting_is_locale_neutral() -> None:
    assert format_number(1234567) == "1,234,567"
    assert format_number(1234.5) == "1,234.50"
    assert format_number(2000.0) == "2,000"
    assert format_money("95000", None) == "95,000.00"
    assert format_money("not a number", "EUR") == "not a number"

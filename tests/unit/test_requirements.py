"""
Tests for stage requirement parsing and evaluation.
"""

import pytest

from src.core.collaborators.requirements import (
    AnyOfFields,
    SingleField,
    is_empty,
    parse_required_field,
    parse_required_fields,
    unmet_requirements,
)


class TestParsing:

    def test_single_name(self):
        assert parse_required_field("amount") == SingleField("amount")

    def test_alternatives_text_form(self):
        requirement = parse_required_field("email||phone")
        assert requirement == AnyOfFields(("email", "phone"))
        assert requirement.label == "email||phone"

    def test_alternatives_list_form(self):
        assert parse_required_field(["email", "phone"]) == AnyOfFields(("email", "phone"))

    def test_whitespace_trimmed(self):
        assert parse_required_field(" email || phone ") == AnyOfFields(("email", "phone"))

    def test_blank_entry_rejected(self):
        with pytest.raises(ValueError):
            parse_required_field("  ")

    def test_parse_list_keeps_order(self):
        parsed = parse_required_fields(["budget", "email||phone"])
        assert [r.label for r in parsed] == ["budget", "email||phone"]

    def test_parse_none(self):
        assert parse_required_fields(None) == []


class TestIsEmpty:

    @pytest.mark.parametrize("value", [None, "", "   ", [], {}, ()])
    def test_empty_values(self, value):
        assert is_empty(value)

    @pytest.mark.parametrize("value", [0, 0.0, False, "x", [1], {"a": 1}])
    def test_present_values(self, value):
        assert not is_empty(value)


class TestUnmetRequirements:

    def test_all_unmet_reported_in_order(self):
        requirements = parse_required_fields(["budget", "email||phone", "amount"])
        values = {"amount": 10}
        missing = unmet_requirements(requirements, values.get)
        assert [r.label for r in missing] == ["budget", "email||phone"]

    def test_any_of_satisfied_by_one_alternative(self):
        requirements = parse_required_fields(["email||phone"])
        assert unmet_requirements(requirements, {"phone": "555-0100"}.get) == []

    def test_zero_satisfies_requirement(self):
        requirements = parse_required_fields(["amount"])
        assert unmet_requirements(requirements, {"amount": 0}.get) == []

    def test_describe_and_code(self):
        single, any_of = parse_required_fields(["budget", "email||phone"])
        assert single.code == "required"
        assert any_of.code == "required_any_of"
        assert "'email'" in any_of.describe() and "'phone'" in any_of.describe()

"""
Tests for opportunity models and stage rows.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from src.core.collaborators.stages import StageKind, stage_from_row, stage_kind
from src.core.errors import StageConfigurationError
from src.core.opportunities.models import (
    FixedDiscount,
    LifecycleState,
    LineItem,
    LineItemPatch,
    LineItemType,
    Opportunity,
    OpportunityPatch,
    PercentDiscount,
)


def _opportunity(**overrides) -> Opportunity:
    values = {"name": "Acme expansion", "pipeline_id": "p1", "stage_id": "s1"}
    values.update(overrides)
    return Opportunity(**values)


class TestOpportunity:

    def test_weighted_amount(self):
        opp = _opportunity(amount=Decimal("1000.00"), probability=25)
        assert opp.weighted_amount == Decimal("250.00")

    def test_weighted_amount_without_amount(self):
        assert _opportunity(probability=50).weighted_amount is None

    def test_weighted_amount_serialized(self):
        dumped = _opportunity(amount=Decimal("10.00"), probability=50).model_dump(mode="json")
        assert dumped["weighted_amount"] == "5.00"

    def test_state_open_by_default(self):
        opp = _opportunity()
        assert opp.state == LifecycleState.OPEN
        assert opp.is_open

    def test_state_from_timestamps(self):
        now = datetime.now(timezone.utc)
        assert _opportunity(won_at=now).state == LifecycleState.WON
        assert _opportunity(lost_at=now).state == LifecycleState.LOST
        assert not _opportunity(lost_at=now).is_open

    def test_probability_bounds(self):
        with pytest.raises(ValueError):
            _opportunity(probability=101)


class TestOpportunityPatch:

    def test_changes_only_include_set_fields(self):
        patch = OpportunityPatch(next_step="Call back", amount=None)
        assert patch.changes() == {"next_step": "Call back", "amount": None}

    def test_empty_patch(self):
        assert OpportunityPatch().changes() == {}


class TestLineItem:

    def test_discount_derived_from_columns(self):
        fixed = LineItem(opportunity_id="o", discount_amount=Decimal("5"))
        percent = LineItem(opportunity_id="o", discount_percent=Decimal("10"))
        none = LineItem(opportunity_id="o")

        assert fixed.discount == FixedDiscount(value=Decimal("5"))
        assert percent.discount == PercentDiscount(value=Decimal("10"))
        assert none.discount is None

    @pytest.mark.parametrize("line_item_type,derived", [
        (LineItemType.STANDARD, False),
        (LineItemType.BUNDLE_CHILD, False),
        (LineItemType.BUNDLE_PARENT, True),
        (LineItemType.BUNDLE_DISCOUNT, True),
    ])
    def test_carries_derived_price(self, line_item_type, derived):
        assert LineItem(opportunity_id="o", line_item_type=line_item_type).carries_derived_price is derived

    def test_patch_touches_price(self):
        assert LineItemPatch(quantity=Decimal("2")).touches_price
        assert LineItemPatch(discount={"kind": "percent", "value": 5}).touches_price
        assert not LineItemPatch(description="Renamed").touches_price


class TestStageRows:

    def test_kind_flags(self):
        assert stage_kind(False, False) == StageKind.OPEN
        assert stage_kind(True, False) == StageKind.WON
        assert stage_kind(False, True) == StageKind.LOST

    def test_won_and_lost_refused(self):
        with pytest.raises(StageConfigurationError):
            stage_kind(True, True, "broken")

    def test_stage_from_row_parses_requirements(self):
        stage = stage_from_row({
            "id": "s2",
            "pipeline_id": "p1",
            "name": "Proposal",
            "sort_order": 3,
            "probability": 60,
            "is_won": 0,
            "is_lost": 0,
            "is_active": 1,
            "required_fields": '["budget", "email||phone"]',
        })

        assert stage.kind == StageKind.OPEN
        assert not stage.is_terminal
        assert [r.label for r in stage.required_fields] == ["budget", "email||phone"]

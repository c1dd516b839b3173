"""
Integration tests for line items, bundle expansion and amount rollup.
"""

from decimal import Decimal

import pytest

from src.core.errors import InvalidStateError, NotFoundError
from src.core.events.taxonomy import ActivityType
from src.core.opportunities import LineItemPatch, LineItemType, NewLineItem

from tests.seed import (
    PRODUCT_BUNDLE,
    PRODUCT_EMPTY_BUNDLE,
    PRODUCT_SUPPORT,
    PRODUCT_WIDGET,
)


class TestAddLineItem:

    async def test_standard_product(self, make_opportunity, service, activity_log):
        opp = await make_opportunity(amount=Decimal("999"))

        rows = await service.add_line_item(
            opp.id,
            NewLineItem(product_id=PRODUCT_WIDGET, quantity=Decimal("3"), discount={"kind": "fixed", "value": 30}),
        )

        assert len(rows) == 1
        item = rows[0]
        assert item.product_name == "Widget"
        assert item.unit_price == Decimal("100.00")
        assert item.total_price == Decimal("270.00")
        assert item.billing_frequency.value == "one_time"

        detail = await service.get_opportunity(opp.id)
        assert detail.amount == Decimal("270.00")

        activity = activity_log.entries[-1]
        assert activity.activity_type == ActivityType.LINE_ITEM_ADDED
        assert activity.title == "Line item added: Widget"

    async def test_price_override_and_subscription_billing(self, make_opportunity, service):
        opp = await make_opportunity()

        rows = await service.add_line_item(
            opp.id,
            NewLineItem(product_id=PRODUCT_SUPPORT, quantity=Decimal("12"), unit_price=Decimal("18")),
        )

        assert rows[0].unit_price == Decimal("18")
        assert rows[0].total_price == Decimal("216.00")
        assert rows[0].billing_frequency.value == "monthly"

    async def test_custom_line_without_product(self, make_opportunity, service):
        opp = await make_opportunity()

        rows = await service.add_line_item(
            opp.id,
            NewLineItem(description="Onboarding", unit_price=Decimal("250"), discount={"kind": "percent", "value": 10}),
        )

        assert rows[0].product_id is None
        assert rows[0].description == "Onboarding"
        assert rows[0].total_price == Decimal("225.00")

    async def test_bundle_expansion(self, make_opportunity, service, activity_log):
        opp = await make_opportunity()

        rows = await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_BUNDLE))

        assert [r.line_item_type for r in rows] == [
            LineItemType.BUNDLE_PARENT,
            LineItemType.BUNDLE_CHILD,
            LineItemType.BUNDLE_CHILD,
            LineItemType.BUNDLE_DISCOUNT,
        ]
        assert [r.total_price for r in rows] == [
            Decimal("0.00"), Decimal("50.00"), Decimal("75.00"), Decimal("-12.50")
        ]
        assert rows[-1].description == "Bundle Discount (10%)"

        detail = await service.get_opportunity(opp.id)
        assert detail.amount == Decimal("112.50")
        assert len(detail.line_items) == 4
        assert activity_log.entries[-1].activity_type == ActivityType.BUNDLE_ADDED

    async def test_bundle_without_children(self, make_opportunity, service):
        opp = await make_opportunity()

        rows = await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_EMPTY_BUNDLE))

        assert len(rows) == 1
        assert rows[0].line_item_type == LineItemType.STANDARD
        assert rows[0].total_price == Decimal("40.00")

    async def test_sort_order_appends(self, make_opportunity, service):
        opp = await make_opportunity()
        await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_WIDGET))
        await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_BUNDLE))

        items = await service.list_line_items(opp.id)
        assert [i.sort_order for i in items] == sorted(i.sort_order for i in items)
        assert items[0].product_id == PRODUCT_WIDGET
        assert len({i.sort_order for i in items}) == len(items)

    async def test_unknown_product(self, make_opportunity, service):
        opp = await make_opportunity()
        with pytest.raises(NotFoundError) as exc_info:
            await service.add_line_item(opp.id, NewLineItem(product_id="prod-missing"))
        assert exc_info.value.resource == "Product"
        assert await service.list_line_items(opp.id) == []


class TestUpdateLineItem:

    async def test_reprice(self, make_opportunity, service, audit_log):
        opp = await make_opportunity()
        item = (await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_WIDGET)))[0]

        updated = await service.update_line_item(
            opp.id, item.id, LineItemPatch(quantity=Decimal("2"), discount={"kind": "percent", "value": 50})
        )

        assert updated.total_price == Decimal("100.00")
        assert updated.discount_percent == Decimal("50")
        assert updated.discount_amount == 0
        assert (await service.get_opportunity(opp.id)).amount == Decimal("100.00")
        assert audit_log.entries[-1].new_values["line_item"]["id"] == item.id

    async def test_description_only(self, make_opportunity, service):
        opp = await make_opportunity()
        item = (await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_WIDGET)))[0]

        updated = await service.update_line_item(opp.id, item.id, LineItemPatch(description="Blue widget"))

        assert updated.description == "Blue widget"
        assert updated.total_price == Decimal("100.00")

    async def test_derived_rows_cannot_be_repriced(self, make_opportunity, service):
        opp = await make_opportunity()
        rows = await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_BUNDLE))
        parent, discount = rows[0], rows[-1]

        with pytest.raises(InvalidStateError):
            await service.update_line_item(opp.id, parent.id, LineItemPatch(unit_price=Decimal("10")))
        with pytest.raises(InvalidStateError):
            await service.update_line_item(opp.id, discount.id, LineItemPatch(quantity=Decimal("2")))

        renamed = await service.update_line_item(opp.id, parent.id, LineItemPatch(description="Kit"))
        assert renamed.description == "Kit"

    async def test_child_reprice_rolls_up(self, make_opportunity, service):
        opp = await make_opportunity()
        rows = await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_BUNDLE))
        child = rows[1]

        await service.update_line_item(opp.id, child.id, LineItemPatch(quantity=Decimal("2")))

        assert (await service.get_opportunity(opp.id)).amount == Decimal("162.50")

    async def test_unknown_item(self, make_opportunity, service):
        opp = await make_opportunity()
        with pytest.raises(NotFoundError) as exc_info:
            await service.update_line_item(opp.id, "item-missing", LineItemPatch(quantity=Decimal("2")))
        assert exc_info.value.resource == "Line item"


class TestRemoveLineItem:

    async def test_remove_bundle_removes_children(self, make_opportunity, service, activity_log):
        opp = await make_opportunity()
        await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_WIDGET))
        bundle = await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_BUNDLE))

        await service.remove_line_item(opp.id, bundle[0].id)

        items = await service.list_line_items(opp.id)
        assert [i.product_id for i in items] == [PRODUCT_WIDGET]
        assert (await service.get_opportunity(opp.id)).amount == Decimal("100.00")
        assert activity_log.entries[-1].activity_type == ActivityType.BUNDLE_REMOVED

    async def test_removing_last_item_keeps_amount(self, make_opportunity, service):
        opp = await make_opportunity()
        item = (await service.add_line_item(opp.id, NewLineItem(product_id=PRODUCT_WIDGET)))[0]

        await service.remove_line_item(opp.id, item.id)

        assert await service.list_line_items(opp.id) == []
        assert (await service.get_opportunity(opp.id)).amount == Decimal("100.00")

    async def test_item_of_other_opportunity_not_found(self, make_opportunity, service):
        first = await make_opportunity(name="First")
        second = await make_opportunity(name="Second")
        item = (await service.add_line_item(first.id, NewLineItem(product_id=PRODUCT_WIDGET)))[0]

        with pytest.raises(NotFoundError):
            await service.remove_line_item(second.id, item.id)
        assert len(await service.list_line_items(first.id)) == 1

"""
Line item pricing

Pure pricing rules: line totals, discount columns, billing frequency
detection and bundle expansion. Nothing here touches storage.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple, Union

from ..collaborators.catalog import BundleConfiguration, BundleItem, Product
from ..money import CENTS, ZERO
from .models import (
    BillingFrequency,
    FixedDiscount,
    LineItem,
    LineItemType,
    PercentDiscount,
)

PERCENTAGE_DISCOUNT = "percentage"


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def line_total(
    quantity: Decimal,
    unit_price: Decimal,
    discount_percent: Decimal = ZERO,
    discount_amount: Decimal = ZERO,
) -> Decimal:
    """quantity * unit_price, less the fixed discount and the percent discount of the subtotal."""
    subtotal = quantity * unit_price
    total = subtotal - discount_amount - subtotal * discount_percent / Decimal(100)
    return round_money(total)


def discount_columns(discount: Optional[Union[PercentDiscount, FixedDiscount]]) -> Tuple[Decimal, Decimal]:
    """(discount_percent, discount_amount) for a tagged discount; the other column is zeroed."""
    if discount is None:
        return ZERO, ZERO
    if isinstance(discount, PercentDiscount):
        return discount.value, ZERO
    return ZERO, discount.value


def detect_billing_frequency(unit: Optional[str], product_type: Optional[str]) -> BillingFrequency:
    unit = (unit or "").lower()
    if unit == "month":
        return BillingFrequency.MONTHLY
    if unit == "year":
        return BillingFrequency.ANNUALLY
    if (product_type or "").lower() == "subscription":
        return BillingFrequency.MONTHLY
    return BillingFrequency.ONE_TIME


def bundle_discount_total(children_total: Decimal, discount_type: Optional[str], discount_value: Decimal) -> Decimal:
    """Negative total of a bundle's discount row."""
    if discount_type == PERCENTAGE_DISCOUNT:
        return round_money(-(children_total * discount_value / Decimal(100)))
    return round_money(-discount_value)


def bundle_discount_label(discount_type: Optional[str], discount_value: Decimal) -> str:
    if discount_type == PERCENTAGE_DISCOUNT:
        return f"Bundle Discount ({discount_value.normalize():f}%)"
    return "Bundle Discount"


def standard_item(
    opportunity_id: str,
    sort_order: int,
    quantity: Decimal,
    unit_price: Decimal,
    discount: Optional[Union[PercentDiscount, FixedDiscount]] = None,
    product: Optional[Product] = None,
    description: Optional[str] = None,
    billing_frequency: Optional[BillingFrequency] = None,
    price_book_entry_id: Optional[str] = None,
) -> LineItem:
    discount_percent, discount_amount = discount_columns(discount)
    if billing_frequency is None:
        billing_frequency = (
            detect_billing_frequency(product.unit, product.type) if product else BillingFrequency.ONE_TIME
        )
    return LineItem(
        opportunity_id=opportunity_id,
        line_item_type=LineItemType.STANDARD,
        product_id=product.id if product else None,
        product_name=product.name if product else None,
        price_book_entry_id=price_book_entry_id,
        description=description,
        quantity=quantity,
        unit_price=unit_price,
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        total_price=line_total(quantity, unit_price, discount_percent, discount_amount),
        billing_frequency=billing_frequency,
        sort_order=sort_order,
    )


def _child_item(opportunity_id: str, parent_id: str, item: BundleItem, sort_order: int) -> LineItem:
    price = item.effective_price
    return LineItem(
        opportunity_id=opportunity_id,
        line_item_type=LineItemType.BUNDLE_CHILD,
        parent_line_item_id=parent_id,
        product_id=item.product_id,
        product_name=item.product_name,
        description=item.product_name,
        quantity=item.quantity,
        unit_price=price,
        total_price=line_total(item.quantity, price),
        billing_frequency=detect_billing_frequency(item.unit, item.product_type),
        is_optional=item.is_optional,
        sort_order=sort_order,
    )


def expand_bundle(
    opportunity_id: str,
    product: Product,
    config: Optional[BundleConfiguration],
    start_sort_order: int,
) -> List[LineItem]:
    """
    Rows produced by adding a bundle product.

    With no configured children the bundle is added as a single standard
    row at its base price. Otherwise: one zero-priced parent, one child per
    bundle item, and a negative discount row when the bundle carries a
    discount. Children and discount row point at the parent.
    """
    if config is None or not config.items:
        return [
            standard_item(
                opportunity_id,
                start_sort_order,
                quantity=Decimal("1"),
                unit_price=product.base_price,
                product=product,
                description=product.name,
            )
        ]

    parent = LineItem(
        opportunity_id=opportunity_id,
        line_item_type=LineItemType.BUNDLE_PARENT,
        product_id=product.id,
        product_name=product.name,
        description=f"Bundle: {product.name}",
        quantity=Decimal("1"),
        unit_price=ZERO,
        total_price=ZERO,
        billing_frequency=BillingFrequency.ONE_TIME,
        sort_order=start_sort_order,
    )
    rows = [parent]

    sort_order = start_sort_order
    for item in config.items:
        sort_order += 1
        rows.append(_child_item(opportunity_id, parent.id, item, sort_order))

    if config.discount_value > 0:
        children_total = sum((row.total_price for row in rows[1:]), ZERO)
        discount_total = bundle_discount_total(children_total, config.discount_type, config.discount_value)
        sort_order += 1
        rows.append(
            LineItem(
                opportunity_id=opportunity_id,
                line_item_type=LineItemType.BUNDLE_DISCOUNT,
                parent_line_item_id=parent.id,
                product_id=None,
                description=bundle_discount_label(config.discount_type, config.discount_value),
                quantity=Decimal("1"),
                unit_price=ZERO,
                total_price=discount_total,
                billing_frequency=BillingFrequency.ONE_TIME,
                sort_order=sort_order,
            )
        )

    return rows

"""
Line Items

Storage and pricing rules for the products attached to an opportunity.
Adding a bundle product expands it into parent, child and discount rows;
every write recalculates the opportunity amount from the stored rows.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..collaborators.catalog import ProductCatalog
from ..database import DatabaseAdapter, affected_rows, get_database
from ..errors import InvalidStateError, NotFoundError
from ..money import ZERO, to_decimal, to_money
from ..observability import record_counter
from .models import LineItem, LineItemPatch, NewLineItem, utcnow
from .pricing import discount_columns, expand_bundle, line_total, standard_item
from .repository import OpportunityRepository

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id", "opportunity_id", "product_id", "price_book_entry_id", "description",
    "quantity", "unit_price", "discount_percent", "discount_amount", "total_price",
    "billing_frequency", "sort_order", "line_item_type", "parent_line_item_id",
    "is_optional", "created_at", "updated_at",
)

_SELECT = ", ".join(f"li.{c}" for c in _COLUMNS)


def line_item_from_row(row: Dict[str, Any]) -> LineItem:
    return LineItem(
        id=row["id"],
        opportunity_id=row["opportunity_id"],
        line_item_type=row["line_item_type"] or "standard",
        parent_line_item_id=row.get("parent_line_item_id"),
        product_id=row.get("product_id"),
        product_name=row.get("product_name"),
        price_book_entry_id=row.get("price_book_entry_id"),
        description=row.get("description"),
        quantity=to_decimal(row["quantity"], default="1"),
        unit_price=to_money(row["unit_price"]),
        discount_percent=to_decimal(row["discount_percent"]),
        discount_amount=to_money(row["discount_amount"]),
        total_price=to_money(row["total_price"]),
        billing_frequency=row["billing_frequency"] or "one_time",
        is_optional=bool(row["is_optional"]),
        sort_order=row["sort_order"] or 0,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class LineItemRepository:
    def __init__(self, db: Optional[DatabaseAdapter] = None):
        self._db = db

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def list(self, opportunity_id: str) -> List[LineItem]:
        db = await self._get_db()
        rows = await db.fetch(
            f"""
            SELECT {_SELECT}, p.name AS product_name
            FROM opportunity_line_items li
            LEFT JOIN products p ON p.id = li.product_id
            WHERE li.opportunity_id = $1
            ORDER BY li.sort_order ASC, li.created_at ASC
            """,
            opportunity_id,
        )
        return [line_item_from_row(row) for row in rows]

    async def get(self, opportunity_id: str, item_id: str) -> Optional[LineItem]:
        db = await self._get_db()
        row = await db.fetchrow(
            f"""
            SELECT {_SELECT}, p.name AS product_name
            FROM opportunity_line_items li
            LEFT JOIN products p ON p.id = li.product_id
            WHERE li.id = $1 AND li.opportunity_id = $2
            """,
            item_id,
            opportunity_id,
        )
        return line_item_from_row(row) if row else None

    async def insert(self, item: LineItem) -> None:
        db = await self._get_db()
        placeholders = ", ".join(f"${i}" for i in range(1, len(_COLUMNS) + 1))
        await db.execute(
            f"INSERT INTO opportunity_line_items ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            *[getattr(item, c).value if c in ("billing_frequency", "line_item_type") else getattr(item, c)
              for c in _COLUMNS],
        )

    async def update(self, item: LineItem) -> None:
        db = await self._get_db()
        await db.execute(
            """
            UPDATE opportunity_line_items
            SET quantity = $1, unit_price = $2, discount_percent = $3, discount_amount = $4,
                total_price = $5, description = $6, billing_frequency = $7, updated_at = $8
            WHERE id = $9
            """,
            item.quantity,
            item.unit_price,
            item.discount_percent,
            item.discount_amount,
            item.total_price,
            item.description,
            item.billing_frequency.value,
            item.updated_at,
            item.id,
        )

    async def delete(self, item_id: str) -> int:
        """Delete a row and any rows parented to it; returns the number removed."""
        db = await self._get_db()
        children = await db.execute(
            "DELETE FROM opportunity_line_items WHERE parent_line_item_id = $1", item_id
        )
        removed = await db.execute("DELETE FROM opportunity_line_items WHERE id = $1", item_id)
        return affected_rows(children) + affected_rows(removed)

    async def next_sort_order(self, opportunity_id: str) -> int:
        db = await self._get_db()
        current = await db.fetchval(
            "SELECT MAX(sort_order) FROM opportunity_line_items WHERE opportunity_id = $1",
            opportunity_id,
        )
        return 0 if current is None else int(current) + 1

    async def totals(self, opportunity_id: str) -> Tuple[int, Decimal]:
        """(row count, sum of total_price) over every row of an opportunity."""
        db = await self._get_db()
        row = await db.fetchrow(
            """
            SELECT COUNT(*) AS item_count, COALESCE(SUM(total_price), 0) AS total
            FROM opportunity_line_items
            WHERE opportunity_id = $1
            """,
            opportunity_id,
        )
        return int(row["item_count"]), to_money(row["total"])


class LineItemPricingEngine:
    """
    Prices and stores line items for an opportunity.

    Runs inside the caller's transaction; the opportunity row is expected
    to be locked already.
    """

    def __init__(
        self,
        catalog: ProductCatalog,
        line_items: LineItemRepository,
        opportunities: OpportunityRepository,
    ):
        self.catalog = catalog
        self.line_items = line_items
        self.opportunities = opportunities

    async def list_line_items(self, opportunity_id: str) -> List[LineItem]:
        return await self.line_items.list(opportunity_id)

    async def add_line_item(self, opportunity_id: str, data: NewLineItem) -> List[LineItem]:
        """
        Add a product to an opportunity.

        Args:
            opportunity_id: Target opportunity
            data: Product, quantity, price and discount for the new row

        Returns:
            Every row written: one for a standard product, or the parent,
            children and optional discount row of an expanded bundle

        Raises:
            NotFoundError: Unknown product
        """
        product = None
        if data.product_id:
            product = await self.catalog.get_product(data.product_id)
            if product is None:
                raise NotFoundError("Product", data.product_id)

        sort_order = await self.line_items.next_sort_order(opportunity_id)

        if product is not None and product.is_bundle:
            config = await self.catalog.get_bundle_config(product.id)
            rows = expand_bundle(opportunity_id, product, config, sort_order)
        else:
            unit_price = data.unit_price
            if unit_price is None:
                unit_price = product.base_price if product else ZERO
            rows = [
                standard_item(
                    opportunity_id,
                    sort_order,
                    quantity=data.quantity,
                    unit_price=unit_price,
                    discount=data.discount,
                    product=product,
                    description=data.description or (product.name if product else None),
                    billing_frequency=data.billing_frequency,
                    price_book_entry_id=data.price_book_entry_id,
                )
            ]

        for row in rows:
            await self.line_items.insert(row)

        record_counter("line_items_written_total", value=len(rows), attributes={"operation": "add"})
        logger.info(
            "Line items added",
            extra={"opportunity_id": opportunity_id, "row_count": len(rows)},
        )
        return rows

    async def update_line_item(
        self,
        opportunity_id: str,
        item_id: str,
        patch: LineItemPatch,
    ) -> Tuple[LineItem, LineItem]:
        """
        Reprice a line item.

        Returns:
            (previous, updated) rows

        Raises:
            NotFoundError: Unknown line item
            InvalidStateError: Pricing change on a bundle parent or discount row
        """
        current = await self.line_items.get(opportunity_id, item_id)
        if current is None:
            raise NotFoundError("Line item", item_id)
        if current.carries_derived_price and patch.touches_price:
            raise InvalidStateError(
                f"Pricing of a {current.line_item_type.value} line item is derived and cannot be edited"
            )

        quantity = patch.quantity if patch.quantity is not None else current.quantity
        unit_price = patch.unit_price if patch.unit_price is not None else current.unit_price

        if patch.discount is not None:
            discount_percent, discount_amount = discount_columns(patch.discount)
        else:
            discount_percent = (
                patch.discount_percent if patch.discount_percent is not None else current.discount_percent
            )
            discount_amount = (
                patch.discount_amount if patch.discount_amount is not None else current.discount_amount
            )

        total = current.total_price
        if not current.carries_derived_price:
            total = line_total(quantity, unit_price, discount_percent, discount_amount)

        updated = current.model_copy(update={
            "quantity": quantity,
            "unit_price": unit_price,
            "discount_percent": discount_percent,
            "discount_amount": discount_amount,
            "total_price": total,
            "description": patch.description if patch.description is not None else current.description,
            "billing_frequency": patch.billing_frequency or current.billing_frequency,
            "updated_at": utcnow(),
        })
        await self.line_items.update(updated)
        record_counter("line_items_written_total", attributes={"operation": "update"})
        return current, updated

    async def remove_line_item(self, opportunity_id: str, item_id: str) -> LineItem:
        """
        Remove a line item. A bundle parent takes its children and discount
        row with it.

        Raises:
            NotFoundError: Unknown line item
        """
        current = await self.line_items.get(opportunity_id, item_id)
        if current is None:
            raise NotFoundError("Line item", item_id)

        removed = await self.line_items.delete(item_id)
        record_counter("line_items_written_total", value=removed, attributes={"operation": "remove"})
        return current

    async def recalculate_amount(
        self,
        opportunity_id: str,
        actor_id: Optional[str] = None,
    ) -> Optional[Decimal]:
        """
        Overwrite the opportunity amount with the sum of its line items.

        Returns:
            The new amount, or None when the opportunity has no line items
            (the amount is then left untouched)
        """
        count, total = await self.line_items.totals(opportunity_id)
        if count == 0:
            return None
        await self.opportunities.set_amount(opportunity_id, total, actor_id, utcnow())
        return total

"""
Product/Bundle Catalog

Read-only product data the pricing engine needs: base prices, units and
bundle composition.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Protocol

from pydantic import BaseModel, Field

from ..database import DatabaseAdapter, get_database
from ..money import to_decimal, to_money

logger = logging.getLogger(__name__)

BUNDLE_PRODUCT_TYPE = "bundle"


class Product(BaseModel):
    id: str
    name: str
    code: Optional[str] = None
    type: str = "product"
    base_price: Decimal = Decimal("0.00")
    unit: Optional[str] = None

    @property
    def is_bundle(self) -> bool:
        return self.type == BUNDLE_PRODUCT_TYPE


class BundleItem(BaseModel):
    product_id: str
    product_name: str
    product_type: str = "product"
    unit: Optional[str] = None
    base_price: Decimal = Decimal("0.00")
    quantity: Decimal = Decimal("1")
    override_price: Optional[Decimal] = None
    is_optional: bool = False
    display_order: int = 0

    @property
    def effective_price(self) -> Decimal:
        return self.override_price if self.override_price is not None else self.base_price


class BundleConfiguration(BaseModel):
    id: str
    product_id: str
    bundle_type: str = "fixed"
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    discount_type: Optional[str] = None
    discount_value: Decimal = Decimal("0.00")
    items: List[BundleItem] = Field(default_factory=list)


class ProductCatalog(Protocol):
    async def get_product(self, product_id: str) -> Optional[Product]: ...

    async def get_bundle_config(self, product_id: str) -> Optional[BundleConfiguration]: ...


class SqlProductCatalog:
    """ProductCatalog reading the products, product_bundles and bundle_items tables."""

    def __init__(self, db: Optional[DatabaseAdapter] = None):
        self._db = db

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def get_product(self, product_id: str) -> Optional[Product]:
        db = await self._get_db()
        row = await db.fetchrow(
            """
            SELECT id, name, code, type, base_price, unit
            FROM products
            WHERE id = $1 AND deleted_at IS NULL
            """,
            product_id,
        )
        if not row:
            return None
        row["base_price"] = to_money(row["base_price"])
        return Product(**row)

    async def get_bundle_config(self, product_id: str) -> Optional[BundleConfiguration]:
        db = await self._get_db()
        bundle = await db.fetchrow(
            """
            SELECT id, product_id, bundle_type, min_items, max_items, discount_type, discount_value
            FROM product_bundles
            WHERE product_id = $1
            """,
            product_id,
        )
        if not bundle:
            return None

        rows = await db.fetch(
            """
            SELECT bi.product_id, bi.quantity, bi.override_price, bi.is_optional, bi.display_order,
                   p.name AS product_name, p.type AS product_type, p.unit, p.base_price
            FROM bundle_items bi
            JOIN products p ON p.id = bi.product_id AND p.deleted_at IS NULL
            WHERE bi.bundle_id = $1
            ORDER BY bi.display_order ASC
            """,
            bundle["id"],
        )

        items = [
            BundleItem(
                product_id=row["product_id"],
                product_name=row["product_name"],
                product_type=row["product_type"] or "product",
                unit=row["unit"],
                base_price=to_money(row["base_price"]),
                quantity=to_decimal(row["quantity"], default="1"),
                override_price=to_money(row["override_price"]) if row["override_price"] is not None else None,
                is_optional=bool(row["is_optional"]),
                display_order=row["display_order"] or 0,
            )
            for row in rows
        ]

        return BundleConfiguration(
            id=bundle["id"],
            product_id=bundle["product_id"],
            bundle_type=bundle["bundle_type"] or "fixed",
            min_items=bundle["min_items"],
            max_items=bundle["max_items"],
            discount_type=bundle["discount_type"],
            discount_value=to_money(bundle["discount_value"]),
            items=items,
        )

# listingsync/services/catalog.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from listingsync.data.models.catalog import Product

logger = logging.getLogger("lsync.catalog")


class CatalogError(Exception):
    """The catalog refused to materialize a product."""


@dataclass(frozen=True)
class NewProduct:
    sku: Optional[str]
    name: str
    price: Optional[Decimal] = None
    quantity: Optional[int] = None


class CatalogService(Protocol):
    """Internal product catalog as seen by the reconciliation engine."""

    def find_by_sku(self, sku: str) -> list[Product]: ...

    def get(self, product_id: int) -> Product | None: ...

    def create(self, data: NewProduct) -> Product: ...


class SqlCatalogService:
    """Catalog backed by the ``products`` table in the same database."""

    def __init__(self, db: Session):
        self.db = db

    def find_by_sku(self, sku: str) -> list[Product]:
        # exact match only; no trimming or case folding
        q = select(Product).where(Product.sku == sku).order_by(Product.id.asc())
        return list(self.db.execute(q).scalars().all())

    def get(self, product_id: int) -> Product | None:
        return self.db.get(Product, int(product_id))

    def create(self, data: NewProduct) -> Product:
        name = (data.name or "").strip() or (data.sku or "")
        if not name:
            raise CatalogError("a product needs a name or a SKU")
        row = Product(
            sku=data.sku,
            name=name[:512],
            price=data.price if data.price is not None else Decimal("0"),
            quantity=data.quantity,
        )
        self.db.add(row)
        self.db.flush()
        logger.info("catalog product created id=%s sku=%s", row.id, data.sku)
        return row

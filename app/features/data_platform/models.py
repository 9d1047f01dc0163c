"""ORM models for the pharmacy raw-fact tables read by the KPI engine.

The tables are owned by the upstream ingestion pipeline; the engine only
reads them. They follow a snowflake-like layout:

- Dimensions: Pharmacy, GlobalProduct (catalogue reference, one row per
  EAN-13 code), InternalProduct (a catalogue product as stocked by one
  pharmacy)
- Facts: InventorySnapshot, Sale, Order, ProductOrder

A sale points at the inventory snapshot that priced it, so unit price and
weighted average cost at sale time come from exactly one snapshot row.
"""

import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base

GENERIC_STATUS_GENERIC = "GÉNÉRIQUE"
GENERIC_STATUS_REFERENT = "RÉFÉRENT"

# ============================================================================
# DIMENSION TABLES
# ============================================================================


class Pharmacy(Base):
    """Pharmacy dimension table.

    Attributes:
        id: Pharmacy identifier (UUID string).
        name: Display name.
        region: Administrative region.
    """

    __tablename__ = "data_pharmacy"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    region: Mapped[str | None] = mapped_column(String(100), nullable=True)

    products: Mapped[list["InternalProduct"]] = relationship(back_populates="pharmacy")


class GlobalProduct(Base):
    """Catalogue reference for one EAN-13 product code.

    Attributes:
        code_13_ref: EAN-13 product code (primary key).
        name: Product label.
        bcb_lab: Laboratory name.
        bcb_segment_l1: Level-1 category.
        bcb_generic_group_id: Generic group the product belongs to, if any.
        bcb_generic_status: "GÉNÉRIQUE", "RÉFÉRENT" or NULL.
        tva_percentage: VAT rate in percent (e.g. 2.10, 5.50, 20.00).
        is_reimbursable: Reimbursed by social security.
        prix_achat_ht_fabricant: Manufacturer list purchase price, tax excluded.
    """

    __tablename__ = "data_globalproduct"

    code_13_ref: Mapped[str] = mapped_column(String(13), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    bcb_lab: Mapped[str | None] = mapped_column(String(200), index=True, nullable=True)
    bcb_segment_l1: Mapped[str | None] = mapped_column(String(200), index=True, nullable=True)
    bcb_generic_group_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    bcb_generic_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    tva_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    is_reimbursable: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    prix_achat_ht_fabricant: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 4), nullable=True
    )

    internal_products: Mapped[list["InternalProduct"]] = relationship(
        back_populates="global_product"
    )


class InternalProduct(Base):
    """A catalogue product as referenced by one pharmacy."""

    __tablename__ = "data_internalproduct"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pharmacy_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("data_pharmacy.id"), index=True
    )
    code_13_ref_id: Mapped[str] = mapped_column(
        String(13), ForeignKey("data_globalproduct.code_13_ref"), index=True
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    pharmacy: Mapped["Pharmacy"] = relationship(back_populates="products")
    global_product: Mapped["GlobalProduct"] = relationship(back_populates="internal_products")


# ============================================================================
# FACT TABLES
# ============================================================================


class InventorySnapshot(Base):
    """Stock and price snapshot for one internal product on one day.

    Attributes:
        product_id: Internal product (FK).
        date: Snapshot date.
        stock: Units on hand.
        price_with_tax: Shelf price, tax included.
        weighted_average_price: Weighted average purchase cost, tax excluded.
    """

    __tablename__ = "data_inventorysnapshot"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_internalproduct.id"))
    date: Mapped[datetime.date] = mapped_column(Date)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    price_with_tax: Mapped[Decimal] = mapped_column(Numeric(12, 4))
    weighted_average_price: Mapped[Decimal] = mapped_column(Numeric(12, 4))

    __table_args__ = (
        # Latest-snapshot lookups: WHERE product_id = ? AND date <= ? ORDER BY date DESC
        Index("ix_inventorysnapshot_product_date", "product_id", "date"),
    )


class Sale(Base):
    """Sales fact: units sold, priced by the referenced snapshot."""

    __tablename__ = "data_sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    snapshot_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_inventorysnapshot.id"))
    date: Mapped[datetime.date] = mapped_column(Date, index=True)
    quantity: Mapped[int] = mapped_column(Integer)

    snapshot: Mapped["InventorySnapshot"] = relationship()


class Order(Base):
    """Purchase order header."""

    __tablename__ = "data_order"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pharmacy_id: Mapped[str] = mapped_column(String(36), ForeignKey("data_pharmacy.id"))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), index=True)

    lines: Mapped[list["ProductOrder"]] = relationship(back_populates="order")


class ProductOrder(Base):
    """Purchase order line: quantity of one internal product."""

    __tablename__ = "data_productorder"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_order.id"), index=True)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_internalproduct.id"))
    qte: Mapped[int] = mapped_column(Integer)

    order: Mapped["Order"] = relationship(back_populates="lines")
